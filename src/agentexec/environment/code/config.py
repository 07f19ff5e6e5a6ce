"""
Configuration for the function-agent code sandbox.

Controls which modules user code may import, which builtins are withheld,
the resource limits of the child interpreter and how forwarded log output
is bounded.
"""

import sys
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_ALLOWED_MODULES = [
    "json",
    "math",
    "re",
    "datetime",
    "random",
    "statistics",
    "itertools",
    "functools",
    "collections",
    "string",
    "time",
    "uuid",
    "hashlib",
    "base64",
]

DEFAULT_BLOCKED_CALLS = [
    "eval",
    "exec",
    "compile",
    "open",
    "input",
    "breakpoint",
    "globals",
    "locals",
    "vars",
    "memoryview",
    "exit",
    "quit",
    "help",
    "__import__",
]

DEFAULT_ALLOWED_ENV_VARS = ["PATH", "LANG", "LC_ALL", "SYSTEMROOT", "TZ"]


@dataclass
class SandboxConfig:
    """
    Configuration for executing function-agent code.

    User code runs in a separate Python process with a reduced set of
    builtins and an import hook that only admits ``allowed_modules``.
    Everything the code needs beyond that (fetch, run_agent, storage, ...)
    is injected as a binding by the executor and called back in the host.
    """

    allowed_modules: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_MODULES))
    """Root module names user code may import."""

    blocked_calls: List[str] = field(default_factory=lambda: list(DEFAULT_BLOCKED_CALLS))
    """Names that may not appear in user code at all."""

    entrypoint: str = "main"
    """Name of the callable the code must define."""

    max_log_line_length: int = 4000
    """Forwarded print() lines longer than this are truncated."""

    timeout_seconds: float = 30.0
    """Wall-clock budget for the whole run, including process start-up."""

    max_cpu_seconds: int = 30
    """CPU time limit of the child process (Linux only)."""

    max_memory_mb: int = 1024
    """Address-space limit of the child process in MB (Linux only)."""

    python_executable: Optional[str] = None
    """Interpreter for the child process; defaults to the running one."""

    allowed_env_vars: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ENV_VARS))
    """Environment variables passed through to the child process."""

    def resolve_python_executable(self) -> str:
        return self.python_executable or sys.executable
