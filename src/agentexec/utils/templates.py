"""
Template rendering for prompts, parameters and derived outputs.

Templates use jinja2 expression syntax (``{{ name }}``, ``{{ a.b }}``,
``{% if %}``) rendered in a sandboxed environment. Two rules sit on top:

- A template that is exactly one variable reference returns the bound value
  unchanged, so ``"{{ count }}"`` with ``count=3`` yields ``3``, not ``"3"``.
- Names may start with ``$`` (``$text``, ``$sys.session_id``). jinja2 does
  not accept ``$`` in identifiers, so such names are rewritten internally.

Undefined names render as an empty string; dicts and lists render as JSON.
Text that is not valid jinja2 (a stray ``{%`` or an unterminated ``{#``) is
not an error: only its plain ``{{ name }}`` references are substituted.
"""

import json
import logging
import re
from functools import lru_cache
from typing import Any, Dict, Mapping

from jinja2 import ChainableUndefined, Template, TemplateSyntaxError, meta
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

_DOLLAR_PREFIX = "dollar__"
_BLOCK_PATTERN = re.compile(r"(\{\{.*?\}\}|\{%.*?%\})", re.DOTALL)
_DOLLAR_NAME_PATTERN = re.compile(r"\$(?=[A-Za-z_])")
_SINGLE_VARIABLE_PATTERN = re.compile(r"^\{\{\s*(\$?[A-Za-z_][\w]*(?:\.[\w$]+)*)\s*\}\}$")
_VARIABLE_BLOCK_PATTERN = re.compile(r"\{\{\s*(\$?[A-Za-z_][\w]*(?:\.[\w$]+)*)\s*\}\}")

_FALSY_RENDERS = {"", "false", "0", "null", "none", "undefined"}


def _finalize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


_environment = SandboxedEnvironment(
    undefined=ChainableUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    finalize=_finalize,
)


def _rewrite_dollar_names(source: str) -> str:
    return _BLOCK_PATTERN.sub(lambda m: _DOLLAR_NAME_PATTERN.sub(_DOLLAR_PREFIX, m.group(0)), source)


def _rewrite_context(variables: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        (_DOLLAR_PREFIX + key[1:] if key.startswith("$") else key): value
        for key, value in variables.items()
    }


@lru_cache(maxsize=512)
def _compile(source: str) -> Template:
    return _environment.from_string(_rewrite_dollar_names(source))


_MISSING = object()


def _lookup(variables: Mapping[str, Any], path: str) -> Any:
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _substitute_variables(template: str, variables: Mapping[str, Any]) -> str:
    def replace(match: "re.Match") -> str:
        value = _lookup(variables, match.group(1))
        return "" if value is _MISSING else str(_finalize(value))

    return _VARIABLE_BLOCK_PATTERN.sub(replace, template)


def render_string(template: str, variables: Mapping[str, Any]) -> str:
    """Render ``template`` and always return a string."""
    if "{{" not in template and "{%" not in template:
        return template
    try:
        compiled = _compile(template)
    except TemplateSyntaxError as e:
        logger.warning(f"Template is not valid jinja2 ({e.message}, line {e.lineno}); substituting variables only")
        return _substitute_variables(template, variables)
    return compiled.render(_rewrite_context(variables))


def render_template(template: str, variables: Mapping[str, Any]) -> Any:
    """
    Render ``template``, preserving the bound value's type when the whole
    template is a single variable reference.
    """
    match = _SINGLE_VARIABLE_PATTERN.match(template)
    if match:
        value = _lookup(variables, match.group(1))
        if value is not _MISSING and value is not None:
            return value
    return render_string(template, variables)


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render every string leaf of ``value`` (recursing into dicts and lists)."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, dict):
        return {key: render_value(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_value(item, variables) for item in value]
    return value


def render_truthy(template: str, variables: Mapping[str, Any]) -> bool:
    """Render a condition template and interpret the text as a boolean."""
    return render_string(template, variables).strip().lower() not in _FALSY_RENDERS


def template_variables(template: str) -> set:
    """Top-level variable names referenced by ``template`` (``$`` names restored)."""
    try:
        ast = _environment.parse(_rewrite_dollar_names(template))
    except TemplateSyntaxError:
        return {m.group(1).split(".")[0] for m in _VARIABLE_BLOCK_PATTERN.finditer(template)}
    return {
        ("$" + name[len(_DOLLAR_PREFIX):] if name.startswith(_DOLLAR_PREFIX) else name)
        for name in meta.find_undeclared_variables(ast)
    }
