"""
Agent Execution Engine Exception Hierarchy

This module defines the exception hierarchy for the execution engine,
providing specific error types for the categories of failure a call tree can
hit, each with rich context for logging and display.

The hierarchy is designed to:
1. Separate configuration, validation and upstream failures
2. Include rich context information (agent ids, task ids, timestamps)
3. Let the LLM strategies decide what to retry without string matching
4. Keep the tool-loop exit directive outside the error tree
"""

import time
from enum import Enum
from typing import Any, Dict, Optional


class AgentFrameworkError(Exception):
    """
    Base exception class for all execution engine errors.

    Attributes:
        error_code: Unique error code for programmatic handling
        agent_id: Id of the agent where the error occurred (if applicable)
        task_id: Task id where the error occurred (if applicable)
        timestamp: When the error occurred
        context: Additional context information
        user_message: User-friendly error message
        developer_message: Detailed technical error message
        suggestion: Suggested fix or next steps (if applicable)
    """

    def __init__(
        self,
        message: str,
        error_code: str = "AGENT_FRAMEWORK_ERROR",
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.agent_id = agent_id
        self.task_id = task_id
        self.timestamp = time.time()
        self.context = context or {}
        self.user_message = user_message or message
        self.developer_message = message
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.developer_message,
            "user_message": self.user_message,
            "agent_id": self.agent_id,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "context": self.context,
            "suggestion": self.suggestion,
        }

    def __str__(self) -> str:
        parts = [f"[{self.error_code}]"]
        if self.agent_id:
            parts.append(f"Agent:{self.agent_id}")
        if self.task_id:
            parts.append(f"Task:{self.task_id}")
        parts.append(self.developer_message)
        return " ".join(parts)


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class AgentConfigurationError(AgentFrameworkError):
    """
    Raised when an agent definition is missing something it needs to run.

    Examples:
    - LLM agent without any prompt
    - Function agent without code
    - HTTP agent without a url
    - Call agent with no sub-agents selected
    """

    def __init__(
        self,
        message: str,
        config_field: Optional[str] = None,
        config_value: Optional[Any] = None,
        **kwargs,
    ):
        self.config_field = config_field
        self.config_value = config_value

        context = kwargs.pop("context", None) or {}
        if config_field:
            context["config_field"] = config_field
        if config_value is not None:
            context["config_value"] = str(config_value)

        error_code = kwargs.pop("error_code", "AGENT_CONFIGURATION_ERROR")
        kwargs.setdefault("suggestion", "Check the agent definition and fill in the missing field.")
        super().__init__(message, error_code=error_code, context=context, **kwargs)


class UnknownAgentKindError(AgentConfigurationError):
    """Raised by the dispatcher for a kind it has no strategy for."""

    def __init__(self, kind: Any, **kwargs):
        self.kind = kind
        super().__init__(
            f"Unsupported agent kind: {kind!r}",
            config_field="kind",
            config_value=kind,
            error_code="UNKNOWN_AGENT_KIND",
            **kwargs,
        )


class AgentNotFoundError(AgentConfigurationError):
    """Raised when a required agent reference does not resolve."""

    def __init__(self, aid: str, **kwargs):
        self.aid = aid
        super().__init__(
            f"No such agent: {aid}",
            config_field="agent",
            config_value=aid,
            error_code="AGENT_NOT_FOUND",
            **kwargs,
        )


class SecretMissingError(AgentConfigurationError):
    """Raised when a secret parameter has neither a literal nor a stored value."""

    def __init__(self, key: str, **kwargs):
        self.key = key
        super().__init__(
            f"Missing required agent secret {key}",
            config_field=key,
            error_code="SECRET_MISSING",
            user_message=f"The secret '{key}' has not been configured.",
            suggestion="Store a value for this secret or pass it explicitly as an input.",
            **kwargs,
        )


class SandboxError(AgentConfigurationError):
    """Raised when function-agent code is rejected or has the wrong export shape."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "SANDBOX_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(AgentFrameworkError):
    """Base class for data that does not match its declared shape."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "VALIDATION_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class OutputValidationError(ValidationError):
    """
    Raised when an agent's outputs fail its output schema.

    Inside the LLM strategies this triggers a retry; everywhere else it is
    fatal to the branch.
    """

    def __init__(
        self,
        message: str,
        error_path: Optional[str] = None,
        **kwargs,
    ):
        self.error_path = error_path
        context = kwargs.pop("context", None) or {}
        if error_path:
            context["error_path"] = error_path
        super().__init__(
            message,
            error_code="OUTPUT_VALIDATION_ERROR",
            context=context,
            user_message="The agent produced output in an unexpected format.",
            **kwargs,
        )


class InputValidationError(ValidationError):
    """Raised when a structured input parameter does not have its fixed shape."""

    def __init__(self, message: str, parameter_key: Optional[str] = None, **kwargs):
        self.parameter_key = parameter_key
        context = kwargs.pop("context", None) or {}
        if parameter_key:
            context["parameter_key"] = parameter_key
        super().__init__(message, error_code="INPUT_VALIDATION_ERROR", context=context, **kwargs)


class ResponseFormatError(ValidationError):
    """Raised when a model response cannot be parsed as the expected JSON."""

    def __init__(self, message: str, invalid_content: Optional[str] = None, **kwargs):
        self.invalid_content = invalid_content
        context = kwargs.pop("context", None) or {}
        if invalid_content:
            context["invalid_content"] = (
                invalid_content[:200] + "..." if len(invalid_content) > 200 else invalid_content
            )
        super().__init__(
            message,
            error_code="RESPONSE_FORMAT_ERROR",
            context=context,
            user_message="Unexpected response format from AI",
            **kwargs,
        )


# =============================================================================
# UPSTREAM ERRORS
# =============================================================================


class UpstreamError(AgentFrameworkError):
    """Base class for failures of HTTP, model and protocol backends."""

    def __init__(self, message: str, **kwargs):
        error_code = kwargs.pop("error_code", "UPSTREAM_ERROR")
        super().__init__(message, error_code=error_code, **kwargs)


class HttpRequestError(UpstreamError):
    """Transport failure of an outbound HTTP request, enriched with status and body."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[Any] = None,
        url: Optional[str] = None,
        **kwargs,
    ):
        self.status = status
        self.body = body
        self.url = url
        context = kwargs.pop("context", None) or {}
        if status is not None:
            context["status"] = status
        if body is not None:
            context["body"] = body
        if url:
            context["url"] = url
        super().__init__(message, error_code="HTTP_REQUEST_ERROR", context=context, **kwargs)


class ModelError(UpstreamError):
    """Raised when the language or image model backend fails."""

    def __init__(self, message: str, model: Optional[str] = None, **kwargs):
        self.model = model
        context = kwargs.pop("context", None) or {}
        if model:
            context["model"] = model
        super().__init__(message, error_code="MODEL_ERROR", context=context, **kwargs)


class ProtocolClientError(UpstreamError):
    """Raised when a protocol-client call returns an error or cannot connect."""

    def __init__(self, message: str, platform_id: Optional[str] = None, **kwargs):
        self.platform_id = platform_id
        context = kwargs.pop("context", None) or {}
        if platform_id:
            context["platform_id"] = platform_id
        super().__init__(message, error_code="PROTOCOL_CLIENT_ERROR", context=context, **kwargs)


# =============================================================================
# LIMIT ERRORS
# =============================================================================


class AgentLimitError(AgentFrameworkError):
    """Raised when the call tree exceeds its depth or the tool loop its round budget."""

    def __init__(
        self,
        message: str,
        limit_type: Optional[str] = None,
        limit_value: Optional[int] = None,
        **kwargs,
    ):
        self.limit_type = limit_type
        self.limit_value = limit_value
        context = kwargs.pop("context", None) or {}
        if limit_type:
            context["limit_type"] = limit_type
        if limit_value is not None:
            context["limit_value"] = limit_value
        super().__init__(message, error_code="AGENT_LIMIT_ERROR", context=context, **kwargs)


# =============================================================================
# CONTROL FLOW
# =============================================================================


class OnTaskCompletion(str, Enum):
    """What the tool loop does once a tool returns."""

    CONTINUE = "continue"
    EXIT = "exit"


class ToolCompletionDirective(Exception):
    """
    Unwinds the router's tool loop when a tool is configured to end the task.

    Not an AgentFrameworkError: the dispatcher treats it as a stop signal,
    never as a failure.
    """

    def __init__(self, message: str, directive: OnTaskCompletion = OnTaskCompletion.EXIT):
        super().__init__(message)
        self.directive = directive
