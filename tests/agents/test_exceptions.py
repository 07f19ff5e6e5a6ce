"""
Tests for agentexec.agents.exceptions.

This module tests:
- AgentFrameworkError base class attributes and formatting
- Context enrichment of the specialized errors
- The tool completion directive
"""

import pytest

from agentexec.agents.exceptions import (
    AgentConfigurationError,
    AgentFrameworkError,
    AgentLimitError,
    AgentNotFoundError,
    HttpRequestError,
    InputValidationError,
    ModelError,
    OnTaskCompletion,
    OutputValidationError,
    ResponseFormatError,
    SandboxError,
    SecretMissingError,
    ToolCompletionDirective,
    UnknownAgentKindError,
    UpstreamError,
    ValidationError,
)


# =============================================================================
# AgentFrameworkError Tests
# =============================================================================


class TestAgentFrameworkError:
    def test_basic_creation(self):
        error = AgentFrameworkError("Something went wrong")

        assert "Something went wrong" in str(error)
        assert error.error_code == "AGENT_FRAMEWORK_ERROR"
        assert error.user_message == "Something went wrong"

    def test_str_includes_agent_and_task(self):
        error = AgentFrameworkError("Boom", error_code="E1", agent_id="a1", task_id="t1")

        assert str(error) == "[E1] Agent:a1 Task:t1 Boom"

    def test_to_dict(self):
        error = AgentFrameworkError("Boom", agent_id="a1", context={"k": "v"}, suggestion="retry")

        data = error.to_dict()

        assert data["error_type"] == "AgentFrameworkError"
        assert data["message"] == "Boom"
        assert data["agent_id"] == "a1"
        assert data["context"] == {"k": "v"}
        assert data["suggestion"] == "retry"
        assert isinstance(data["timestamp"], float)


# =============================================================================
# Configuration Error Tests
# =============================================================================


class TestConfigurationErrors:
    def test_config_field_in_context(self):
        error = AgentConfigurationError("bad", config_field="url", config_value=3)

        assert error.context == {"config_field": "url", "config_value": "3"}
        assert error.suggestion is not None

    def test_unknown_kind(self):
        error = UnknownAgentKindError("teleporter")

        assert isinstance(error, AgentConfigurationError)
        assert error.error_code == "UNKNOWN_AGENT_KIND"
        assert "teleporter" in str(error)

    def test_agent_not_found(self):
        error = AgentNotFoundError("pl/p1/main/a")

        assert error.aid == "pl/p1/main/a"
        assert error.error_code == "AGENT_NOT_FOUND"

    def test_secret_missing(self):
        error = SecretMissingError("api_key", agent_id="a1")

        assert str(error).endswith("Missing required agent secret api_key")
        assert error.user_message == "The secret 'api_key' has not been configured."

    def test_sandbox_error_is_configuration_error(self):
        error = SandboxError("rejected", config_field="code")

        assert isinstance(error, AgentConfigurationError)
        assert error.error_code == "SANDBOX_ERROR"


# =============================================================================
# Validation and Upstream Error Tests
# =============================================================================


class TestValidationErrors:
    def test_hierarchy(self):
        for error in (
            OutputValidationError("x"),
            InputValidationError("x"),
            ResponseFormatError("x"),
        ):
            assert isinstance(error, ValidationError)

    def test_output_error_path(self):
        error = OutputValidationError("bad", error_path="a.b")
        assert error.context["error_path"] == "a.b"

    def test_response_format_truncates_content(self):
        error = ResponseFormatError("bad", invalid_content="x" * 500)
        assert len(error.context["invalid_content"]) == 203

    def test_input_error_parameter_key(self):
        error = InputValidationError("bad", parameter_key="messages")
        assert error.parameter_key == "messages"


class TestUpstreamErrors:
    def test_http_error_carries_response(self):
        error = HttpRequestError("failed", status=502, body={"error": "down"}, url="https://x")

        assert isinstance(error, UpstreamError)
        assert error.context == {"status": 502, "body": {"error": "down"}, "url": "https://x"}

    def test_model_error(self):
        error = ModelError("failed", model="gpt")
        assert error.context["model"] == "gpt"

    def test_limit_error(self):
        error = AgentLimitError("too deep", limit_type="depth", limit_value=32)
        assert error.context == {"limit_type": "depth", "limit_value": 32}


class TestToolCompletionDirective:
    def test_not_a_framework_error(self):
        directive = ToolCompletionDirective("stop")

        assert not isinstance(directive, AgentFrameworkError)
        assert directive.directive == OnTaskCompletion.EXIT

    def test_raise_and_catch(self):
        with pytest.raises(ToolCompletionDirective):
            raise ToolCompletionDirective("stop", OnTaskCompletion.EXIT)
