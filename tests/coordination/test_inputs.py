"""
Tests for input resolution (agentexec.coordination.execution.inputs).

This module tests:
- Literal templating, variable fallback, defaults and required parameters
- Boolean and number coercion
- Secret, datastore and sub-agent tool sources
- Knowledge, conversation-history and external-platform API sources
- Parsing of LLM plumbing parameters
"""

import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from agentexec.agents.definitions import Parameter, ParameterType, PlatformOperation, VariableScope
from agentexec.agents.exceptions import AgentConfigurationError, InputValidationError, SecretMissingError, UpstreamError
from agentexec.coordination.config import EngineConfig
from agentexec.coordination.execution.base import ExecutorOptions
from agentexec.coordination.execution.inputs import coerce_boolean, coerce_number, parse_llm_input, resolve_inputs
from agentexec.coordination.execution.logic_executor import LogicExecutor


@pytest.fixture
def resolve(make_context, load_agents):
    """Resolve inputs of a function agent declaring ``parameters``."""

    async def _resolve(parameters, inputs=None, variables=None, context=None, extra_agents=()):
        agents = load_agents({"id": "reader", "kind": "function", "parameters": parameters}, *extra_agents)
        options = ExecutorOptions(inputs=dict(inputs or {}), variables=dict(variables or {}))
        executor = LogicExecutor(context or make_context(), agents["reader"], options)
        return await resolve_inputs(executor)

    return _resolve


# =============================================================================
# Literal Parameters
# =============================================================================


class TestLiteralParameters:
    @pytest.mark.asyncio
    async def test_templates_rendered_with_caller_variables(self, resolve):
        resolved = await resolve([{"key": "greeting"}], {"greeting": "Hi {{ name }}"}, {"name": "Ada"})

        assert resolved["greeting"] == "Hi Ada"

    @pytest.mark.asyncio
    async def test_single_variable_keeps_type(self, resolve):
        resolved = await resolve([{"key": "items", "type": "array"}], {"items": "{{ rows }}"}, {"rows": [1, 2]})

        assert resolved["items"] == [1, 2]

    @pytest.mark.asyncio
    async def test_missing_value_falls_back_to_variable(self, resolve):
        resolved = await resolve([{"key": "city"}], {}, {"city": "Oslo"})

        assert resolved["city"] == "Oslo"

    @pytest.mark.asyncio
    async def test_default_value(self, resolve):
        resolved = await resolve([{"key": "lang", "default_value": "en"}])

        assert resolved["lang"] == "en"

    @pytest.mark.asyncio
    async def test_undeclared_inputs_pass_through(self, resolve):
        resolved = await resolve([], {"extra": "{{ untouched }}"})

        assert resolved == {"extra": "{{ untouched }}"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, ""])
    async def test_required(self, resolve, value):
        with pytest.raises(InputValidationError) as exc_info:
            await resolve([{"key": "q", "required": True}], {"q": value})

        assert exc_info.value.parameter_key == "q"

    @pytest.mark.asyncio
    async def test_booleans_and_numbers_coerced(self, resolve):
        resolved = await resolve(
            [
                {"key": "flag", "type": "boolean"},
                {"key": "on", "type": "boolean", "default_value": True},
                {"key": "ratio", "type": "number"},
            ],
            {"flag": "false", "ratio": "0.5"},
        )

        assert resolved == {"flag": False, "on": True, "ratio": 0.5}


class TestCoercion:
    @pytest.mark.parametrize(
        "value,expected",
        [("true", True), ("Yes", True), ("1", True), ("off", False), ("", False), (0, False), ([1], True)],
    )
    def test_coerce_boolean(self, value, expected):
        assert coerce_boolean(value) is expected

    @pytest.mark.parametrize(
        "value,expected",
        [("3", 3), (" 2.5 ", 2.5), (7, 7), (True, 1), ("abc", None), (None, None)],
    )
    def test_coerce_number(self, value, expected):
        assert coerce_number(value) == expected

    def test_coerce_number_default(self):
        assert coerce_number("n/a", default=0) == 0


# =============================================================================
# Source Parameters
# =============================================================================


class TestSecrets:
    @pytest.mark.asyncio
    async def test_supplied_value_used(self, resolve, secrets):
        resolved = await resolve([{"key": "token", "type": "secret"}], {"token": "given"})

        assert resolved["token"] == "given"
        assert secrets.lookups == []

    @pytest.mark.asyncio
    async def test_looked_up_in_store(self, resolve, secrets):
        secrets.secrets[("p1", "reader", "token")] = "stored"

        resolved = await resolve([{"key": "token", "type": "secret"}])

        assert resolved["token"] == "stored"
        assert secrets.lookups == [("p1", "reader", "token")]

    @pytest.mark.asyncio
    async def test_environment_fallback(self, resolve, make_context, monkeypatch):
        monkeypatch.setenv("TOKEN", "from-env")

        resolved = await resolve([{"key": "token", "type": "secret"}], context=make_context(config=EngineConfig()))

        assert resolved["token"] == "from-env"

    @pytest.mark.asyncio
    async def test_missing_secret(self, resolve):
        with pytest.raises(SecretMissingError) as exc_info:
            await resolve([{"key": "token", "type": "secret"}])

        assert exc_info.value.agent_id == "reader"


class TestDatastore:
    async def remember(self, context, key, *values, scope=VariableScope.SESSION):
        for value in values:
            await context.memory.write(
                key, value, scope, project_id="p1", session_id="session-1", agent_id="reader"
            )

    @pytest.mark.asyncio
    async def test_reset_binding_returns_single_value(self, resolve, make_context):
        context = make_context()
        await self.remember(context, "color", "blue")

        resolved = await resolve(
            [{"key": "color", "type": "datastore-variable", "source": {"variable": {"key": "Color", "reset": True}}}],
            context=context,
        )

        assert resolved["color"] == "blue"

    @pytest.mark.asyncio
    async def test_append_binding_returns_list(self, resolve, make_context):
        context = make_context()
        await self.remember(context, "notes", "a", "b")

        resolved = await resolve([{"key": "notes", "type": "datastore-variable"}], context=context)

        assert resolved["notes"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_empty_reset_binding_uses_default(self, resolve):
        resolved = await resolve(
            [
                {
                    "key": "color",
                    "type": "datastore-variable",
                    "source": {"variable": {"key": "color", "reset": True, "default_value": "grey"}},
                }
            ]
        )

        assert resolved["color"] == "grey"

    @pytest.mark.asyncio
    async def test_no_memory_store(self, resolve, make_context):
        with pytest.raises(AgentConfigurationError):
            await resolve([{"key": "color", "type": "datastore-variable"}], context=make_context(memory=None))


class TestToolSource:
    @pytest.mark.asyncio
    async def test_tool_agent_result(self, resolve, bus):
        forecast = {
            "id": "forecast",
            "kind": "function",
            "code": "def main():\n    return {'city': city, 'sky': 'clear'}\n",
            "parameters": [{"key": "city"}],
        }

        resolved = await resolve(
            [
                {"key": "city"},
                {
                    "key": "weather",
                    "type": "sub-agent-tool",
                    "source": {"tool": {"agent": {"agent_id": "forecast"}, "parameters": {"city": "{{ city }}"}}},
                },
            ],
            {"city": "Oslo"},
            extra_agents=[forecast],
        )

        assert resolved["weather"] == {"city": "Oslo", "sky": "clear"}
        assert any(e.agent_id == "forecast" for e in bus.events)

    @pytest.mark.asyncio
    async def test_missing_tool_agent_uses_default(self, resolve):
        resolved = await resolve(
            [
                {
                    "key": "weather",
                    "type": "sub-agent-tool",
                    "default_value": "unknown",
                    "source": {"tool": {"agent": {"agent_id": "ghost"}}},
                }
            ]
        )

        assert resolved["weather"] == "unknown"

    @pytest.mark.asyncio
    async def test_source_not_configured(self, resolve):
        with pytest.raises(AgentConfigurationError):
            await resolve([{"key": "weather", "type": "sub-agent-tool"}])


# =============================================================================
# Platform Sources
# =============================================================================


PLATFORM_SEND = "agentexec.coordination.execution.platform_executor.send_http_request"


@pytest.fixture
def catalogue():
    calls = []

    async def list_operations(platform_id):
        calls.append(platform_id)
        return [
            PlatformOperation(id="knowledge-search", url="https://kb.example.com/search"),
            PlatformOperation(id="conversation-history", url="https://chat.example.com/history"),
            PlatformOperation(id="weather-now", url="https://weather.example.com/now"),
        ]

    list_operations.calls = calls
    return list_operations


class TestKnowledgeSource:
    PARAMETERS = [
        {"key": "city"},
        {
            "key": "docs",
            "type": "knowledge-base",
            "source": {"knowledge": {"id": "kb-1", "platform_id": "kb", "parameters": {"query": "{{ city }}"}}},
        },
    ]

    @pytest.mark.asyncio
    async def test_docs_serialized_as_json(self, resolve, make_context, catalogue):
        docs = [{"title": "Øslo guide", "score": 0.9}, {"title": "Fjords", "score": 0.5}]
        send = AsyncMock(return_value={"docs": docs, "total": 2})

        with patch(PLATFORM_SEND, new=send):
            resolved = await resolve(
                self.PARAMETERS, {"city": "Oslo"}, context=make_context(list_platform_operations=catalogue)
            )

        assert resolved["docs"] == json.dumps(docs, ensure_ascii=False)
        assert json.loads(resolved["docs"]) == docs
        assert catalogue.calls == ["kb"]
        params = send.await_args.kwargs["params"]
        assert params["query"] == "Oslo"
        assert params["knowledge_id"] == "kb-1"

    @pytest.mark.asyncio
    async def test_no_docs(self, resolve, make_context, catalogue):
        with patch(PLATFORM_SEND, new=AsyncMock(return_value={"total": 0})):
            resolved = await resolve(
                self.PARAMETERS, {"city": "Oslo"}, context=make_context(list_platform_operations=catalogue)
            )

        assert resolved["docs"] == "[]"

    @pytest.mark.asyncio
    async def test_search_failure(self, resolve, make_context, catalogue):
        with patch(PLATFORM_SEND, new=AsyncMock(side_effect=RuntimeError("index offline"))):
            with pytest.raises(UpstreamError, match="index offline"):
                await resolve(self.PARAMETERS, {"city": "Oslo"}, context=make_context(list_platform_operations=catalogue))


class TestHistorySource:
    PARAMETERS = [
        {"key": "topic"},
        {
            "key": "history",
            "type": "conversation-history",
            "source": {"chat_history": {"limit": 5, "keyword": "{{ topic }}"}},
        },
    ]

    @pytest.mark.asyncio
    async def test_messages_named_after_agents(self, resolve, make_context, catalogue):
        messages = [
            {"role": "assistant", "agent_id": "writer", "content": "Draft ready"},
            {"role": "assistant", "agent_id": "ghost", "content": "?"},
            {"role": "user", "content": "Thanks"},
        ]
        send = AsyncMock(return_value={"messages": messages})
        writer = {"id": "writer", "name": "Writer", "kind": "function", "code": "def main():\n    return {}\n"}

        with patch(PLATFORM_SEND, new=send):
            resolved = await resolve(
                self.PARAMETERS,
                {"topic": "fjords"},
                context=make_context(list_platform_operations=catalogue),
                extra_agents=[writer],
            )

        assert [m.get("name") for m in resolved["history"]] == ["Writer", None, None]
        assert resolved["history"][0]["content"] == "Draft ready"
        params = send.await_args.kwargs["params"]
        assert params == {"session_id": "session-1", "limit": 5, "keyword": "fjords"}

    @pytest.mark.asyncio
    async def test_failed_agent_lookup_leaves_name_empty(self, resolve, make_context, registry, catalogue, caplog):
        async def resolve_agent(identity):
            if identity.agent_id == "broken":
                raise RuntimeError("registry unavailable")
            return await registry.resolve(identity)

        messages = [
            {"role": "assistant", "agent_id": "broken", "content": "one"},
            {"role": "assistant", "agent_id": "writer", "content": "two"},
        ]
        writer = {"id": "writer", "name": "Writer", "kind": "function", "code": "def main():\n    return {}\n"}
        context = make_context(list_platform_operations=catalogue, resolve_agent=resolve_agent)

        with patch(PLATFORM_SEND, new=AsyncMock(return_value={"messages": messages})):
            with caplog.at_level(logging.WARNING, logger="agentexec.coordination.execution.inputs"):
                resolved = await resolve(self.PARAMETERS, {"topic": "x"}, context=context, extra_agents=[writer])

        assert [m["name"] for m in resolved["history"]] == [None, "Writer"]
        assert "broken" in caplog.text

    @pytest.mark.asyncio
    async def test_unexpected_response_is_empty(self, resolve, make_context, catalogue):
        with patch(PLATFORM_SEND, new=AsyncMock(return_value={"messages": "none"})):
            resolved = await resolve(
                self.PARAMETERS, {"topic": "x"}, context=make_context(list_platform_operations=catalogue)
            )

        assert resolved["history"] == []


class TestPlatformApiSource:
    @pytest.mark.asyncio
    async def test_operation_result(self, resolve, make_context, catalogue):
        send = AsyncMock(return_value={"temperature": 4})

        with patch(PLATFORM_SEND, new=send):
            resolved = await resolve(
                [
                    {"key": "city"},
                    {
                        "key": "weather",
                        "type": "external-platform-api",
                        "source": {"api": {"id": "weather-now", "platform_id": "meteo", "parameters": {"q": "{{ city }}"}}},
                    },
                ],
                {"city": "Bergen"},
                context=make_context(list_platform_operations=catalogue),
            )

        assert resolved["weather"] == {"temperature": 4}
        assert catalogue.calls == ["meteo"]
        assert send.await_args.kwargs["url"] == "https://weather.example.com/now"
        assert send.await_args.kwargs["params"] == {"q": "Bergen"}


# =============================================================================
# LLM Plumbing
# =============================================================================


class TestParseLlmInput:
    def parameter(self, type_):
        return Parameter(key="p", type=type_)

    def test_messages_from_json(self):
        value = parse_llm_input(self.parameter(ParameterType.LLM_INPUT_MESSAGES), '[{"role": "system", "content": "x"}]')

        assert value == [{"role": "system", "content": "x"}]

    def test_plain_text_becomes_user_message(self):
        value = parse_llm_input(self.parameter(ParameterType.LLM_INPUT_MESSAGES), "hello")

        assert value == [{"role": "user", "content": "hello"}]

    def test_empty_role_defaults_to_user(self):
        value = parse_llm_input(self.parameter(ParameterType.LLM_INPUT_MESSAGES), [{"role": "", "content": "x"}])

        assert value == [{"role": "user", "content": "x"}]

    def test_invalid_message_part(self):
        with pytest.raises(InputValidationError):
            parse_llm_input(
                self.parameter(ParameterType.LLM_INPUT_MESSAGES), [{"content": [{"type": "image_url"}]}]
            )

    def test_tools(self):
        tools = [{"type": "function", "function": {"name": "f", "parameters": {"type": "object"}}}]

        assert parse_llm_input(self.parameter(ParameterType.LLM_INPUT_TOOLS), tools) == tools
        assert parse_llm_input(self.parameter(ParameterType.LLM_INPUT_TOOLS), "[]") is None

    def test_invalid_tools(self):
        with pytest.raises(InputValidationError):
            parse_llm_input(self.parameter(ParameterType.LLM_INPUT_TOOLS), [{"type": "function"}])

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("auto", "auto"),
            ('{"type": "function", "function": {"name": "f"}}', {"type": "function", "function": {"name": "f"}}),
            ("", None),
        ],
    )
    def test_tool_choice(self, value, expected):
        assert parse_llm_input(self.parameter(ParameterType.LLM_INPUT_TOOL_CHOICE), value) == expected

    def test_response_format(self):
        value = parse_llm_input(
            self.parameter(ParameterType.LLM_INPUT_RESPONSE_FORMAT),
            {"type": "json_schema", "json_schema": {"name": "out", "schema": {"type": "object"}}},
        )

        assert value == {"type": "json_schema", "json_schema": {"name": "out", "schema": {"type": "object"}}}

    def test_response_format_requires_schema(self):
        with pytest.raises(InputValidationError):
            parse_llm_input(self.parameter(ParameterType.LLM_INPUT_RESPONSE_FORMAT), {"type": "json_schema"})
