"""
agentexec - Agent Execution Engine

Runs declarative agent definitions (LLM prompts, routers, sandboxed
functions, HTTP calls, image generators, composed sub-agents, external
platform and protocol-client operations) and streams progress events while
producing validated outputs.
"""

__version__ = "0.1.0"

# Definitions
from .agents import (
    AgentDefinitionRegistry,
    AgentIdentity,
    AgentKind,
    BaseAgentDefinition,
    parse_agent_definition,
)

# Execution
from .coordination import (
    Dispatcher,
    EngineConfig,
    EventBus,
    ExecutionContext,
    ExecutorOptions,
    execute_agent,
    resolve_secret_inputs,
)

__all__ = [
    # Version
    "__version__",
    # Definitions
    "AgentDefinitionRegistry",
    "AgentIdentity",
    "AgentKind",
    "BaseAgentDefinition",
    "parse_agent_definition",
    # Execution
    "Dispatcher",
    "EngineConfig",
    "EventBus",
    "ExecutionContext",
    "ExecutorOptions",
    "execute_agent",
    "resolve_secret_inputs",
]
