"""
Static validation of function-agent code.

This is the first line of the sandbox: the code is parsed and rejected if it
imports modules outside the allow-list, names a blocked builtin, or touches
private or introspection attributes (the usual routes from an object back to
the interpreter). The child process, with its restricted builtins and
filtered module proxies, is the second line.
"""

import ast
from typing import Optional, Set, Tuple

from .config import SandboxConfig

# Public attributes that still lead to frames, code objects or arbitrary
# attribute lookup (string.Formatter.get_field).
INTROSPECTION_ATTRIBUTES = frozenset(
    {
        "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "tb_frame", "tb_next",
        "co_code", "co_consts",
        "Formatter",
    }
)


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


def extract_imports(tree: ast.AST) -> Set[str]:
    """Root module names imported anywhere in ``tree``."""
    modules = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                modules.add(alias.name.split(".")[0])
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                modules.add(".")
            elif node.module:
                modules.add(node.module.split(".")[0])
    return modules


def validate_sandbox_code(code: str, config: SandboxConfig) -> Tuple[bool, Optional[str]]:
    """
    Validate function-agent code against the sandbox policy.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not code or not code.strip():
        return False, "Empty code"

    try:
        tree = ast.parse(code, mode="exec")
    except SyntaxError as e:
        return False, f"Syntax error at line {e.lineno}: {e.msg}"

    allowed = set(config.allowed_modules)
    for module in extract_imports(tree):
        if module == ".":
            return False, "Relative imports are not allowed"
        if module not in allowed:
            return False, f"Import not allowed: {module}"

    blocked = set(config.blocked_calls)
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            if node.id in blocked:
                return False, f"Use of '{node.id}' is not allowed"
            if _is_dunder(node.id):
                return False, f"Access to '{node.id}' is not allowed"
        elif isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in INTROSPECTION_ATTRIBUTES:
                return False, f"Access to attribute '{node.attr}' is not allowed"
        elif isinstance(node, ast.ImportFrom):
            for alias in node.names:
                if alias.name.startswith("_") or alias.name in INTROSPECTION_ATTRIBUTES:
                    return False, f"Import of '{alias.name}' is not allowed"

    return True, None
