"""
Secret-input discovery.

Before running an agent, a host application usually wants to know which
secret parameters the whole call tree will need, and which of them already
have a stored value. ``resolve_secret_inputs`` walks every agent reachable
from a definition (tool sources, routes, composed sub-agents, executor
overrides and call-agent outputs) and reports one requirement per secret
parameter.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Set

from agentexec.agents.definitions import (
    AgentReference,
    BaseAgentDefinition,
    CallAgent,
    ParallelCallAgent,
    ParameterType,
    RouterAgent,
)

if TYPE_CHECKING:  # pragma: no cover
    from agentexec.coordination.execution.context import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretRequirement:
    agent_id: str
    project_id: Optional[str]
    key: str
    has_value: bool = False


def agent_references(agent: BaseAgentDefinition) -> List[AgentReference]:
    """Every agent reference ``agent`` can execute, in declaration order."""
    references: List[AgentReference] = []

    for parameter in agent.parameters:
        if parameter.type == ParameterType.TOOL and parameter.source and parameter.source.tool:
            references.append(parameter.source.tool.agent)

    if isinstance(agent, RouterAgent):
        references.extend(r.reference for r in agent.routes if r.from_ == "agent")
    if isinstance(agent, (CallAgent, ParallelCallAgent)):
        references.extend(r.reference for r in agent.agents if r.from_ == "agent")

    if agent.executor is not None:
        references.append(agent.executor.agent)

    for output in agent.output_variables:
        if output.from_ is not None and output.from_.type == "call-agent" and output.from_.agent:
            references.append(output.from_.agent)

    return references


async def resolve_secret_inputs(
    context: "ExecutionContext", agent: BaseAgentDefinition
) -> List[SecretRequirement]:
    """
    Report the secret parameters of ``agent`` and every agent it references.

    Each agent is visited once, so reference cycles terminate. References
    that cannot be resolved are logged and skipped.
    """
    requirements: List[SecretRequirement] = []
    visited: Set[str] = set()

    async def visit(definition: BaseAgentDefinition) -> None:
        identity = definition.identity
        visit_key = identity.aid if identity else definition.id
        if visit_key in visited:
            return
        visited.add(visit_key)

        project_id = (identity and identity.project_id) or context.entry_project_id
        for parameter in definition.parameters:
            if parameter.type != ParameterType.SECRET:
                continue
            secret = await context.lookup_secret(project_id, definition.id, parameter.key)
            requirements.append(
                SecretRequirement(
                    agent_id=definition.id,
                    project_id=project_id,
                    key=parameter.key,
                    has_value=bool(secret),
                )
            )

        for reference in agent_references(definition):
            target = await context.get_agent(reference.resolve(identity), required=False)
            if target is None:
                logger.warning(
                    f"Referenced agent {reference.agent_id} not found while collecting secrets",
                    extra={"agent_id": definition.id},
                )
                continue
            await visit(target)

    await visit(agent)
    return requirements
