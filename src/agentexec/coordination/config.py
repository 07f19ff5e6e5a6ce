"""
Configuration for the execution engine.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class EngineConfig:
    """Limits and defaults shared by every task of a call tree."""

    # Retry budget of the LLM-class strategies (total attempts)
    max_retries: int = 5

    # Deepest allowed nesting of agent invocations
    max_depth: int = 32

    # Model rounds per tool-calling pass
    max_tool_rounds: int = 8

    # Model fallbacks when neither the agent nor the project names one
    default_text_model: str = "gpt-4o-mini"
    default_image_model: str = "dall-e-3"

    # Ask the model to rename tools whose names are not valid function names
    translate_tool_names: bool = True

    # Look up KEY.upper() in the process environment before the secret store
    secret_env_fallback: bool = True

    # Platform operations backing knowledge-base and history parameters
    knowledge_operation_id: str = "knowledge-search"
    history_operation_id: str = "conversation-history"

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")
        if self.max_depth < 1:
            raise ValueError(f"max_depth must be at least 1, got {self.max_depth}")
        if self.max_tool_rounds < 1:
            raise ValueError(f"max_tool_rounds must be at least 1, got {self.max_tool_rounds}")

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """Create a config from plain data, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.debug(f"Ignoring unknown engine config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, prefix: str = "AGENTEXEC_", environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        """
        Create a config from environment variables.

        ``AGENTEXEC_MAX_RETRIES=3`` sets ``max_retries``; values are converted
        to the type of the field's default.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                values[f.name] = raw.strip().lower() in _TRUE_VALUES
            elif isinstance(default, int):
                values[f.name] = int(raw)
            else:
                values[f.name] = raw
        return cls(**values)

    def replace(self, **overrides: Any) -> "EngineConfig":
        return dataclasses.replace(self, **overrides)
