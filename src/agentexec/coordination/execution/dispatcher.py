"""
Dispatcher: maps an agent definition's kind to its executor.

The mapping is a single exhaustive ``match`` over :class:`AgentKind`, so the
set of runnable kinds is closed. Before delegating, a child agent inherits
the unset parts of its identity from the agent that invoked it.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Type

from agentexec.agents.definitions import AgentIdentity, AgentKind, BaseAgentDefinition
from agentexec.agents.exceptions import AgentLimitError, ToolCompletionDirective, UnknownAgentKindError
from agentexec.coordination.events import ExecuteEvent, ExecutionPhase

from .api_executor import HttpApiExecutor
from .base import AgentExecutorBase, ExecutorOptions
from .call_executor import CallAgentExecutor, ParallelCallExecutor
from .image_executor import ImageCompositorExecutor, ImageExecutor
from .llm_executor import LLMExecutor
from .logic_executor import LogicExecutor
from .platform_executor import ExternalPlatformExecutor
from .protocol_executor import ProtocolClientExecutor
from .router_executor import RouterExecutor

if TYPE_CHECKING:  # pragma: no cover
    from .context import ExecutionContext

logger = logging.getLogger(__name__)


def executor_class(kind: Any) -> Type[AgentExecutorBase]:
    """
    The executor for ``kind``.

    Raises:
        UnknownAgentKindError: No executor handles ``kind``.
    """
    try:
        kind = AgentKind(kind)
    except ValueError:
        raise UnknownAgentKindError(kind) from None

    match kind:
        case AgentKind.LLM:
            return LLMExecutor
        case AgentKind.ROUTER:
            return RouterExecutor
        case AgentKind.FUNCTION:
            return LogicExecutor
        case AgentKind.HTTP_API:
            return HttpApiExecutor
        case AgentKind.IMAGE:
            return ImageExecutor
        case AgentKind.CALL_AGENT:
            return CallAgentExecutor
        case AgentKind.PARALLEL_CALL:
            return ParallelCallExecutor
        case AgentKind.EXTERNAL_PLATFORM:
            return ExternalPlatformExecutor
        case AgentKind.PROTOCOL_CLIENT:
            return ProtocolClientExecutor
        case AgentKind.IMAGE_COMPOSITOR:
            return ImageCompositorExecutor
        case _:
            raise UnknownAgentKindError(kind)


def inherit_identity(agent: BaseAgentDefinition, parent: Optional[AgentIdentity]) -> BaseAgentDefinition:
    """Copy of ``agent`` whose identity fills unset fields from ``parent``."""
    if parent is None:
        return agent
    identity = agent.identity or AgentIdentity(agent_id=agent.id)
    inherited = identity.inherit_from(parent)
    if inherited == agent.identity:
        return agent
    return agent.model_copy(update={"identity": inherited})


class Dispatcher:
    """Runs agent definitions against one execution context."""

    def __init__(self, context: "ExecutionContext"):
        self.context = context

    async def execute(self, agent: BaseAgentDefinition, options: Optional[ExecutorOptions] = None) -> Any:
        """
        Run ``agent`` and return its validated outputs.

        Returns ``None`` when a tool of a router configured to end the task
        stopped it.

        Raises:
            AgentLimitError: The call tree is deeper than ``max_depth``.
            UnknownAgentKindError: ``agent.kind`` has no executor.
        """
        options = options or ExecutorOptions()
        max_depth = self.context.config.max_depth
        if options.depth > max_depth:
            raise AgentLimitError(
                f"Agent call tree exceeds the maximum depth of {max_depth}",
                limit_type="depth",
                limit_value=max_depth,
                agent_id=agent.id,
                task_id=options.task_id,
            )

        if options.parent_task_id:
            agent = inherit_identity(agent, options.parent_identity)

        executor = executor_class(agent.kind)(self.context, agent, options)
        try:
            return await executor.execute()
        except ToolCompletionDirective as directive:
            logger.info(
                f"Task {options.task_id} stopped by tool directive: {directive}",
                extra={"agent_id": agent.id},
            )
            await self.context.emit(
                ExecuteEvent(
                    options.task_id,
                    parent_task_id=options.parent_task_id,
                    agent_id=agent.id,
                    agent_name=agent.name,
                    phase=ExecutionPhase.STOP,
                )
            )
            return None


async def execute_agent(
    context: "ExecutionContext",
    agent: BaseAgentDefinition,
    inputs: Optional[Dict[str, Any]] = None,
) -> Any:
    """Run ``agent`` as the root of a new call tree."""
    return await context.dispatcher().execute(agent, ExecutorOptions(inputs=dict(inputs or {})))
