"""
Out-of-process interpreter for function-agent code.

The code is validated in the host, then executed by a short-lived child
Python process (``RUNNER_CODE``) that talks to the host over stdin/stdout
with length-prefixed JSON frames. In the child the code sees a reduced
``__builtins__`` and an import hook that hands out filtered copies of the
allow-listed modules. The code must define a callable entrypoint (``main`` by
default, sync or async), which is then called without arguments; inputs reach
it as top-level bindings.

Bindings are split in two: JSON values are copied into the child, callables
(and ``SimpleNamespace`` objects holding callables) become stubs that send a
``call`` frame back to the host, which runs the real function and replies
with its result. No host object is ever reachable from user code.

Frames sent by the child:
    {"type": "log", "line": ...}
    {"type": "call", "id": ..., "name": ..., "args": [...], "kwargs": {...}}
    {"type": "result", "value": ...}
    {"type": "error", "kind": "entrypoint" | "host" | "user", ...}
"""

import asyncio
import builtins
import inspect
import json
import logging
import os
import platform
from types import SimpleNamespace
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from agentexec.agents.exceptions import SandboxError

from .config import SandboxConfig
from .validators import INTROSPECTION_ATTRIBUTES, validate_sandbox_code

logger = logging.getLogger(__name__)

SAFE_FUNCTION_NAMES = [
    "abs", "all", "any", "ascii", "bin", "bool", "bytearray", "bytes", "callable", "chr",
    "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset", "hasattr",
    "hash", "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map", "max",
    "min", "next", "object", "oct", "ord", "pow", "range", "repr", "reversed", "round",
    "set", "slice", "sorted", "str", "sum", "tuple", "zip",
]

# Exceptions user code may raise or catch; these keep their type across the process boundary
EXCEPTION_NAMES = [
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError", "RuntimeError",
    "ZeroDivisionError", "AttributeError", "StopIteration", "ArithmeticError", "LookupError",
    "NotImplementedError", "AssertionError", "NameError", "ImportError", "OverflowError",
    "RecursionError", "MemoryError",
]

SAFE_BUILTIN_NAMES = SAFE_FUNCTION_NAMES + EXCEPTION_NAMES

LogCallback = Callable[[str, str], Optional[Awaitable[None]]]

RUNNER_CODE = r'''
import asyncio
import builtins
import importlib
import inspect
import json
import sys
import types

STDIN = sys.stdin.buffer
STDOUT = sys.stdout.buffer
sys.stdout = sys.stderr
CALLS = [0]


def _read_exactly(n):
    data = b""
    while len(data) < n:
        chunk = STDIN.read(n - len(data))
        if not chunk:
            raise SystemExit(0)
        data += chunk
    return data


def _receive():
    size = int.from_bytes(_read_exactly(8), "big")
    return json.loads(_read_exactly(size).decode("utf-8"))


def _send(message):
    data = json.dumps(message, ensure_ascii=False, default=str).encode("utf-8")
    STDOUT.write(len(data).to_bytes(8, "big"))
    STDOUT.write(data)
    STDOUT.flush()


class HostCallError(Exception):
    def __init__(self, call_id, message):
        super().__init__(message)
        self.call_id = call_id


def _call(name, args, kwargs):
    CALLS[0] += 1
    call_id = CALLS[0]
    _send({"type": "call", "id": call_id, "name": name, "args": list(args), "kwargs": kwargs})
    reply = _receive()
    if "error" in reply:
        raise HostCallError(call_id, reply["error"])
    return reply.get("result")


def _stub(name, is_async):
    if is_async:
        async def call(*args, **kwargs):
            return _call(name, args, kwargs)
    else:
        def call(*args, **kwargs):
            return _call(name, args, kwargs)
    call.__name__ = call.__qualname__ = name
    return call


def _proxy(module, allowed, hidden, seen):
    if module.__name__ in seen:
        return seen[module.__name__]
    proxy = types.ModuleType(module.__name__)
    seen[module.__name__] = proxy
    for name in dir(module):
        if name.startswith("_") or name in hidden:
            continue
        try:
            value = getattr(module, name)
        except AttributeError:
            continue
        if isinstance(value, types.ModuleType):
            if value.__name__.split(".")[0] not in allowed:
                continue
            value = _proxy(value, allowed, hidden, seen)
        setattr(proxy, name, value)
    return proxy


def _make_import(allowed, hidden):
    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        root = name.split(".")[0]
        if level != 0 or root not in allowed:
            raise ImportError(f"Import of '{name}' is not allowed in function agents")
        module = importlib.import_module(name)
        for item in fromlist or ():
            if not hasattr(module, item):
                try:
                    importlib.import_module(f"{name}.{item}")
                except ImportError:
                    pass
        target = module if fromlist else importlib.import_module(root)
        return _proxy(target, allowed, hidden, {})

    return guarded_import


def _format(value):
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _builtins(request, allowed, hidden):
    safe = {name: getattr(builtins, name) for name in request["builtins"] if hasattr(builtins, name)}
    limit = request["max_log_line_length"]

    def _print(*values, sep=" ", **_):
        line = (" " if sep is None else sep).join(_format(v) for v in values)
        if len(line) > limit:
            line = line[:limit] + "..."
        _send({"type": "log", "line": line})

    safe["print"] = _print
    safe["__import__"] = _make_import(allowed, hidden)
    safe["__build_class__"] = builtins.__build_class__
    return safe


async def _resolve(awaitable):
    return await awaitable


def _serve():
    request = _receive()
    allowed = frozenset(request["allowed_modules"])
    hidden = frozenset(request["hidden_attributes"])
    namespace = {"__name__": "agent_function", "__builtins__": _builtins(request, allowed, hidden)}
    namespace.update(request["values"])
    for name, is_async in request["functions"].items():
        owner, _, attribute = name.rpartition(".")
        if owner:
            setattr(namespace.setdefault(owner, types.SimpleNamespace()), attribute, _stub(name, is_async))
        else:
            namespace[name] = _stub(name, is_async)

    try:
        exec(compile(request["code"], "<agent-function>", "exec"), namespace)
        entrypoint = namespace.get(request["entrypoint"])
        if not callable(entrypoint):
            _send({"type": "error", "kind": "entrypoint"})
            return
        result = entrypoint()
        if inspect.isawaitable(result):
            result = asyncio.run(_resolve(result))
    except HostCallError as e:
        _send({"type": "error", "kind": "host", "call_id": e.call_id, "message": str(e)})
        return
    except Exception as e:
        _send({"type": "error", "kind": "user", "error_type": type(e).__name__, "message": str(e)})
        return
    _send({"type": "result", "value": result})


_serve()
'''


def _build_preexec_fn(config: SandboxConfig):
    """
    Build preexec function applying CPU and memory limits to the child.

    Returns:
        Function to call in the child before exec, or None off Linux
    """
    if platform.system() != "Linux":
        return None

    def _apply_limits():
        try:
            import resource

            if config.max_cpu_seconds:
                resource.setrlimit(resource.RLIMIT_CPU, (config.max_cpu_seconds, config.max_cpu_seconds))
            if config.max_memory_mb:
                mem_bytes = config.max_memory_mb * 1024 * 1024
                resource.setrlimit(resource.RLIMIT_AS, (mem_bytes, mem_bytes))
        except (ImportError, ValueError, OSError):
            pass

    return _apply_limits


def build_sandbox_env(config: SandboxConfig) -> Dict[str, str]:
    """Environment for the child process: only the allowed variables."""
    return {k: v for k, v in os.environ.items() if k in config.allowed_env_vars}


def split_bindings(bindings: Mapping[str, Any]) -> Tuple[Dict[str, Any], Dict[str, Callable]]:
    """
    Split bindings into values copied into the child and host functions.

    A ``SimpleNamespace`` of callables (e.g. ``storage``) is flattened into
    dotted names (``storage.get_item``).
    """
    values: Dict[str, Any] = {}
    functions: Dict[str, Callable] = {}
    for name, value in bindings.items():
        if isinstance(value, SimpleNamespace):
            for attribute, member in vars(value).items():
                if callable(member):
                    functions[f"{name}.{attribute}"] = member
        elif callable(value):
            functions[name] = value
        else:
            values[name] = value
    return values, functions


async def _read_exactly(stream: asyncio.StreamReader, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = await stream.read(n - len(data))
        if not chunk:
            return b""
        data += chunk
    return data


async def _read_frame(stream: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    header = await _read_exactly(stream, 8)
    if not header:
        return None
    body = await _read_exactly(stream, int.from_bytes(header, "big"))
    if not body:
        return None
    return json.loads(body.decode("utf-8"))


class CodeSandbox:
    """
    Runs one piece of function-agent code in a child process.

    Example:
        sandbox = CodeSandbox(SandboxConfig())
        result = await sandbox.run(code, {"name": "world"}, on_log)
    """

    def __init__(self, config: Optional[SandboxConfig] = None):
        self.config = config or SandboxConfig()

    async def run(
        self,
        code: str,
        bindings: Mapping[str, Any],
        on_log: Optional[LogCallback] = None,
        agent_id: Optional[str] = None,
    ) -> Any:
        """
        Execute ``code`` and return what its entrypoint returns.

        Errors the code raises come back as the builtin exception of the same
        name when there is one; an uncaught error from a host binding is
        re-raised as the original host exception.

        Raises:
            SandboxError: The code failed validation, did not define a callable
                entrypoint, raised a non-builtin exception, or exceeded the
                timeout.
        """
        is_valid, error = validate_sandbox_code(code, self.config)
        if not is_valid:
            raise SandboxError(f"Function code rejected: {error}", agent_id=agent_id)

        values, functions = split_bindings(bindings)
        request = {
            "code": code,
            "entrypoint": self.config.entrypoint,
            "allowed_modules": list(self.config.allowed_modules),
            "hidden_attributes": sorted(INTROSPECTION_ATTRIBUTES),
            "builtins": SAFE_BUILTIN_NAMES,
            "max_log_line_length": self.config.max_log_line_length,
            "values": values,
            "functions": {name: inspect.iscoroutinefunction(fn) for name, fn in functions.items()},
        }

        process = await asyncio.create_subprocess_exec(
            self.config.resolve_python_executable(),
            "-I",
            "-B",
            "-u",
            "-c",
            RUNNER_CODE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=build_sandbox_env(self.config),
            preexec_fn=_build_preexec_fn(self.config),
        )
        logger.debug(f"Started function sandbox (pid={process.pid})", extra={"agent_id": agent_id})

        host_errors: Dict[int, Exception] = {}
        try:
            outcome = await asyncio.wait_for(
                self._converse(process, request, functions, host_errors, on_log, agent_id),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise SandboxError(
                f"Function code timed out after {self.config.timeout_seconds}s", agent_id=agent_id
            ) from e
        finally:
            await self._shutdown(process)

        if outcome.get("type") == "result":
            return outcome.get("value")
        raise self._child_error(outcome, host_errors, agent_id)

    async def _converse(
        self,
        process: asyncio.subprocess.Process,
        request: Dict[str, Any],
        functions: Dict[str, Callable],
        host_errors: Dict[int, Exception],
        on_log: Optional[LogCallback],
        agent_id: Optional[str],
    ) -> Dict[str, Any]:
        await self._write(process, request, agent_id)
        while True:
            message = await _read_frame(process.stdout)
            if message is None:
                raise SandboxError("Function code process exited unexpectedly", agent_id=agent_id)
            kind = message.get("type")
            if kind == "log":
                await self._emit_log(message.get("line", ""), on_log, agent_id)
            elif kind == "call":
                reply = await self._host_call(message, functions, host_errors, agent_id)
                await self._write(process, reply, agent_id)
            elif kind in ("result", "error"):
                return message

    @staticmethod
    async def _host_call(
        message: Dict[str, Any],
        functions: Dict[str, Callable],
        host_errors: Dict[int, Exception],
        agent_id: Optional[str],
    ) -> Dict[str, Any]:
        call_id, name = message.get("id"), message.get("name")
        function = functions.get(name)
        try:
            if function is None:
                raise SandboxError(f"Unknown sandbox binding: {name}", agent_id=agent_id)
            result = function(*(message.get("args") or []), **(message.get("kwargs") or {}))
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            host_errors[call_id] = e
            logger.debug(f"Sandbox binding {name} failed: {e}", extra={"agent_id": agent_id})
            return {"id": call_id, "error": f"{type(e).__name__}: {e}"}
        return {"id": call_id, "result": result}

    def _child_error(
        self, message: Dict[str, Any], host_errors: Dict[int, Exception], agent_id: Optional[str]
    ) -> Exception:
        kind = message.get("kind")
        if kind == "entrypoint":
            return SandboxError(
                f"Invalid function code: it must define a callable '{self.config.entrypoint}'",
                agent_id=agent_id,
                config_field="code",
            )
        if kind == "host" and message.get("call_id") in host_errors:
            return host_errors[message["call_id"]]

        error_type = message.get("error_type") or "Error"
        text = message.get("message") or ""
        if error_type in EXCEPTION_NAMES:
            return getattr(builtins, error_type)(text)
        return SandboxError(f"Function code raised {error_type}: {text}", agent_id=agent_id)

    @staticmethod
    async def _write(process: asyncio.subprocess.Process, message: Dict[str, Any], agent_id: Optional[str]) -> None:
        payload = json.dumps(message, ensure_ascii=False, default=str).encode("utf-8")
        try:
            process.stdin.write(len(payload).to_bytes(8, "big"))
            process.stdin.write(payload)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SandboxError("Function code process exited unexpectedly", agent_id=agent_id) from e

    @staticmethod
    async def _emit_log(line: str, on_log: Optional[LogCallback], agent_id: Optional[str]) -> None:
        if on_log is None:
            logger.info(line, extra={"agent_id": agent_id})
            return
        result = on_log(line, "info")
        if inspect.isawaitable(result):
            await result

    @staticmethod
    async def _shutdown(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
        await process.wait()
