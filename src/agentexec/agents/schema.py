"""
Output schema builder.

Derives a JSON schema from an agent's declared output variables and validates
strategy results against it. Validation first normalizes the data the way the
authoring side expects: undeclared keys are stripped, empty values (``None``
or ``""``) count as absent, declared defaults fill absent values and numeric or
boolean strings are coerced. In partial mode required-ness is ignored and
invalid keys are dropped instead of failing, which lets the executor publish
whatever outputs are already satisfied before the strategy runs.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import jsonschema
from jsonschema.exceptions import best_match

from .definitions import OutputVariable, RuntimeOutput
from .exceptions import OutputValidationError

logger = logging.getLogger(__name__)

RUNTIME_OUTPUT_SCHEMAS: Dict[str, Dict[str, Any]] = {
    RuntimeOutput.TEXT.value: {"type": "string"},
    RuntimeOutput.IMAGES.value: {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"url": {"type": "string"}},
            "required": ["url"],
        },
    },
    RuntimeOutput.SUGGESTED_QUESTIONS.value: {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"question": {"type": "string"}},
            "required": ["question"],
        },
    },
    RuntimeOutput.REFERENCE_LINKS.value: {
        "type": "array",
        "items": {
            "type": "object",
            "properties": {"title": {"type": "string"}, "url": {"type": "string"}},
            "required": ["url"],
        },
    },
}

# Values that are passed through untouched (e.g. a live stream object).
UNVALIDATED_OUTPUTS = frozenset({RuntimeOutput.LLM_RESPONSE_STREAM.value})

_MISSING = object()


def _schema_variables(variables: Sequence[OutputVariable]) -> List[OutputVariable]:
    return [v for v in variables if v.name and not v.hidden and v.name not in UNVALIDATED_OUTPUTS]


def output_variable_schema(variable: OutputVariable, partial: bool = False) -> Dict[str, Any]:
    """JSON schema for a single output variable (recursing into objects/arrays)."""
    if variable.name in RUNTIME_OUTPUT_SCHEMAS:
        schema = dict(RUNTIME_OUTPUT_SCHEMAS[variable.name])
    elif variable.type == "object":
        schema = output_variables_schema(variable.properties, partial=partial) if variable.properties else {"type": "object"}
    elif variable.type == "array":
        schema = {"type": "array"}
        if variable.element is not None:
            schema["items"] = output_variable_schema(variable.element, partial=partial)
    else:
        schema = {"type": variable.type}

    if variable.description:
        schema["description"] = variable.description
    return schema


def output_variables_schema(variables: Sequence[OutputVariable], partial: bool = False) -> Dict[str, Any]:
    """Object schema whose properties are the visible ``variables``."""
    visible = _schema_variables(variables)
    schema: Dict[str, Any] = {
        "type": "object",
        "properties": {v.name: output_variable_schema(v, partial=partial) for v in visible},
    }
    required = [v.name for v in visible if v.required]
    if required and not partial:
        schema["required"] = required
    return schema


def _coerce_scalar(variable: OutputVariable, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    if variable.type == "integer":
        try:
            return int(text)
        except ValueError:
            return value
    if variable.type == "number":
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return value
    if variable.type == "boolean" and text.lower() in ("true", "false"):
        return text.lower() == "true"
    return value


def _normalize_value(variable: OutputVariable, value: Any) -> Any:
    if value is None or value == "":
        if variable.has_default and variable.default_value is not None:
            return variable.default_value
        return _MISSING

    if variable.type == "object" and isinstance(value, dict) and variable.properties:
        return normalize_outputs(variable.properties, value)
    if variable.type == "array" and isinstance(value, list) and variable.element is not None:
        items = (_normalize_value(variable.element, item) for item in value)
        return [item for item in items if item is not _MISSING]
    return _coerce_scalar(variable, value)


def normalize_outputs(variables: Sequence[OutputVariable], data: Dict[str, Any]) -> Dict[str, Any]:
    """Strip undeclared keys, drop empty values and apply defaults."""
    result: Dict[str, Any] = {}
    for variable in _schema_variables(variables):
        value = _normalize_value(variable, data.get(variable.name))
        if value is not _MISSING:
            result[variable.name] = value
    for name in UNVALIDATED_OUTPUTS:
        if data.get(name) is not None:
            result[name] = data[name]
    return result


class OutputSchema:
    """
    Validator for the declared outputs of one agent.

    Example:
        schema = OutputSchema(agent.output_variables)
        validated = schema.validate({"answer": "42"})
    """

    def __init__(self, variables: Sequence[OutputVariable]):
        self.variables = list(variables)
        self.json_schema = output_variables_schema(self.variables)
        self._partial_schema = output_variables_schema(self.variables, partial=True)
        self._validator = jsonschema.Draft7Validator(self.json_schema)

    @property
    def is_empty(self) -> bool:
        return not self.json_schema["properties"]

    def validate(self, data: Any, partial: bool = False) -> Dict[str, Any]:
        if not isinstance(data, dict):
            if partial:
                return {}
            raise OutputValidationError(f"Expected an object of outputs, got {type(data).__name__}")

        normalized = normalize_outputs(self.variables, data)
        if partial:
            return self._validate_partial(normalized)

        error = best_match(self._validator.iter_errors(normalized))
        if error is not None:
            error_path = ".".join(map(str, error.absolute_path))
            message = f"Validation Error at '{error_path}': {error.message}" if error_path else f"Validation Error: {error.message}"
            logger.debug(f"Output validation failed: {message}")
            raise OutputValidationError(message, error_path=error_path or None)
        return normalized

    def _validate_partial(self, normalized: Dict[str, Any]) -> Dict[str, Any]:
        properties = self._partial_schema["properties"]
        result = {}
        for key, value in normalized.items():
            subschema = properties.get(key)
            if subschema is None or jsonschema.Draft7Validator(subschema).is_valid(value):
                result[key] = value
        return result


def find_output(variables: Sequence[OutputVariable], name: str) -> Optional[OutputVariable]:
    return next((v for v in variables if v.name == name), None)
