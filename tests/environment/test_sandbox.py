"""
Tests for the function-agent sandbox (agentexec.environment.code).

This module tests:
- Static validation of imports, blocked names and private attribute access
- Running code in the child process: bindings, sync and async entrypoints,
  print forwarding
- Module copies that hide everything outside the allow-list
- Host binding errors, export shape and timeout errors
"""

import asyncio
import time
from types import SimpleNamespace

import pytest

from agentexec.agents.exceptions import AgentConfigurationError, SandboxError
from agentexec.environment.code import CodeSandbox, SandboxConfig, validate_sandbox_code
from agentexec.environment.code.sandbox import split_bindings


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidateSandboxCode:
    @pytest.fixture
    def config(self):
        return SandboxConfig()

    def test_allowed_import(self, config):
        assert validate_sandbox_code("import json\nfrom math import sqrt", config) == (True, None)

    @pytest.mark.parametrize("code", ["import os", "from subprocess import run", "import socket"])
    def test_disallowed_import(self, config, code):
        is_valid, error = validate_sandbox_code(code, config)

        assert not is_valid
        assert "Import not allowed" in error

    def test_relative_import(self, config):
        is_valid, error = validate_sandbox_code("from . import x", config)

        assert not is_valid
        assert "Relative" in error

    @pytest.mark.parametrize("code", ["open('x')", "eval('1')", "exec('1')", "globals()"])
    def test_blocked_calls(self, config, code):
        is_valid, _ = validate_sandbox_code(code, config)
        assert not is_valid

    def test_dunder_attribute(self, config):
        is_valid, error = validate_sandbox_code("x = ().__class__", config)

        assert not is_valid
        assert "__class__" in error

    @pytest.mark.parametrize(
        "code,attribute",
        [
            ("import random\nrandom._os.popen('id')", "_os"),
            ("x = storage._executor.context", "_executor"),
            ("def g():\n    yield 1\nf = g().gi_frame", "gi_frame"),
            ("import string\nf = string.Formatter()", "Formatter"),
        ],
    )
    def test_private_and_introspection_attributes(self, config, code, attribute):
        is_valid, error = validate_sandbox_code(code, config)

        assert not is_valid
        assert attribute in error

    def test_private_from_import(self, config):
        is_valid, error = validate_sandbox_code("from random import _os", config)

        assert not is_valid
        assert "_os" in error

    def test_underscore_loop_variable_allowed(self, config):
        assert validate_sandbox_code("for _ in range(2):\n    pass\n", config) == (True, None)

    def test_syntax_error(self, config):
        is_valid, error = validate_sandbox_code("def main(:\n  pass", config)

        assert not is_valid
        assert "Syntax error" in error

    def test_empty_code(self, config):
        assert validate_sandbox_code("   ", config) == (False, "Empty code")


# =============================================================================
# Binding Tests
# =============================================================================


class TestSplitBindings:
    def test_values_functions_and_namespaces(self):
        async def get_item(key):
            return key

        values, functions = split_bindings(
            {"n": 1, "args": {"n": 1}, "fetch": print, "storage": SimpleNamespace(get_item=get_item, label="x")}
        )

        assert values == {"n": 1, "args": {"n": 1}}
        assert functions == {"fetch": print, "storage.get_item": get_item}


# =============================================================================
# Execution Tests
# =============================================================================


class TestCodeSandboxRun:
    @pytest.fixture
    def sandbox(self):
        return CodeSandbox(SandboxConfig(timeout_seconds=10.0))

    @pytest.mark.asyncio
    async def test_returns_entrypoint_result_with_bindings(self, sandbox):
        code = "def main():\n    return {'double': n * 2}\n"

        assert await sandbox.run(code, {"n": 21}) == {"double": 42}

    @pytest.mark.asyncio
    async def test_async_entrypoint_can_await_bindings(self, sandbox):
        async def fetch(url):
            return {"url": url}

        code = "async def main():\n    data = await fetch('https://example.com')\n    return data['url']\n"

        assert await sandbox.run(code, {"fetch": fetch}) == "https://example.com"

    @pytest.mark.asyncio
    async def test_namespace_binding_called_in_host(self, sandbox):
        calls = []

        def set_item(key, value):
            calls.append((key, value))

        code = "def main():\n    storage.set_item('k', [1, 2])\n    return 'ok'\n"

        assert await sandbox.run(code, {"storage": SimpleNamespace(set_item=set_item)}) == "ok"
        assert calls == [("k", [1, 2])]

    @pytest.mark.asyncio
    async def test_allowed_module_usable(self, sandbox):
        code = "import math\nfrom collections import Counter\ndef main():\n    return [math.floor(2.7), Counter('aab')['a']]\n"

        assert await sandbox.run(code, {}) == [2, 2]

    @pytest.mark.asyncio
    async def test_modules_hide_non_allowed_submodules(self, sandbox):
        code = (
            "import uuid\nimport statistics\n"
            "def main():\n    return [hasattr(uuid, 'os'), hasattr(statistics, 'random'), hasattr(uuid, 'uuid4')]\n"
        )

        assert await sandbox.run(code, {}) == [False, True, True]

    @pytest.mark.asyncio
    async def test_module_escape_fails(self, sandbox):
        code = "import uuid\ndef main():\n    return uuid.os.popen('id').read()\n"

        with pytest.raises(AttributeError):
            await sandbox.run(code, {})

    @pytest.mark.asyncio
    async def test_private_module_attribute_rejected(self, sandbox):
        code = "import random\ndef main():\n    return {'out': random._os.popen('echo hi').read()}\n"

        with pytest.raises(SandboxError, match="_os"):
            await sandbox.run(code, {})

    @pytest.mark.asyncio
    async def test_print_forwarded_in_order(self, sandbox):
        lines = []

        async def on_log(line, level):
            lines.append((line, level))

        code = "print('loading')\ndef main():\n    print('value', {'a': 1})\n    return 1\n"

        await sandbox.run(code, {}, on_log=on_log)

        assert lines[0] == ("loading", "info")
        assert lines[1][0].startswith("value {")

    @pytest.mark.asyncio
    async def test_long_log_lines_truncated(self):
        lines = []
        sandbox = CodeSandbox(SandboxConfig(max_log_line_length=10))

        await sandbox.run("def main():\n    print('x' * 50)\n", {}, on_log=lambda line, level: lines.append(line))

        assert lines == ["x" * 10 + "..."]

    @pytest.mark.asyncio
    async def test_missing_entrypoint(self, sandbox):
        with pytest.raises(SandboxError) as exc_info:
            await sandbox.run("result = 1\n", {})

        assert "main" in str(exc_info.value)
        assert exc_info.value.config_field == "code"

    @pytest.mark.asyncio
    async def test_rejected_code(self, sandbox):
        with pytest.raises(SandboxError):
            await sandbox.run("import os\ndef main():\n    return os.getcwd()\n", {})

    @pytest.mark.asyncio
    async def test_dunder_name_rejected(self, sandbox):
        code = "def main():\n    return __builtins__\n"

        with pytest.raises(SandboxError):
            await sandbox.run(code, {})

    @pytest.mark.asyncio
    async def test_timeout(self):
        sandbox = CodeSandbox(SandboxConfig(timeout_seconds=0.05))
        code = "async def main():\n    await sleep(5)\n"

        with pytest.raises(SandboxError) as exc_info:
            await sandbox.run(code, {"sleep": asyncio.sleep}, agent_id="slow")

        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_applies_to_sync_code(self):
        sandbox = CodeSandbox(SandboxConfig(timeout_seconds=0.5))
        code = "import time\ndef main():\n    time.sleep(5)\n    return 'late'\n"
        started = time.monotonic()

        with pytest.raises(SandboxError, match="timed out"):
            await sandbox.run(code, {})

        assert time.monotonic() - started < 4

    @pytest.mark.asyncio
    async def test_user_exceptions_propagate(self, sandbox):
        code = "def main():\n    raise ValueError('bad input')\n"

        with pytest.raises(ValueError, match="bad input"):
            await sandbox.run(code, {})

    @pytest.mark.asyncio
    async def test_custom_exception_becomes_sandbox_error(self, sandbox):
        code = "class BadInput(Exception):\n    pass\ndef main():\n    raise BadInput('nope')\n"

        with pytest.raises(SandboxError, match="BadInput: nope"):
            await sandbox.run(code, {})

    @pytest.mark.asyncio
    async def test_host_binding_error_reraised_in_host(self, sandbox):
        async def lookup(key):
            raise AgentConfigurationError(f"no store for {key}")

        code = "async def main():\n    return await lookup('x')\n"

        with pytest.raises(AgentConfigurationError, match="no store for x"):
            await sandbox.run(code, {"lookup": lookup})

    @pytest.mark.asyncio
    async def test_host_binding_error_catchable_in_code(self, sandbox):
        def lookup(key):
            raise KeyError(key)

        code = "def main():\n    try:\n        lookup('x')\n    except Exception as e:\n        return 'caught'\n"

        assert await sandbox.run(code, {"lookup": lookup}) == "caught"
