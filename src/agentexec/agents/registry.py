import logging
import threading
from pathlib import Path
from typing import IO, Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from .definitions import AgentIdentity, BaseAgentDefinition, parse_agent_definition
from .exceptions import AgentConfigurationError, AgentNotFoundError

logger = logging.getLogger(__name__)


class AgentDefinitionRegistry:
    """
    In-memory store of agent definitions addressed by identity.

    Serves as the agent resolver collaborator of an ExecutionContext when no
    external definition store is wired in (local runs, tests). Lookups try the
    exact ``(aid, working)`` pair, then the published copy of the same aid,
    then an unqualified registration of the bare agent id.
    """

    def __init__(self, definitions: Optional[Iterable[BaseAgentDefinition]] = None):
        self._definitions: Dict[Tuple[str, bool], BaseAgentDefinition] = {}
        self._lock = threading.Lock()
        for definition in definitions or []:
            self.register(definition)

    def register(
        self, definition: BaseAgentDefinition, identity: Optional[AgentIdentity] = None
    ) -> BaseAgentDefinition:
        """
        Register ``definition``, optionally stamping it with ``identity``.

        Raises:
            AgentConfigurationError: If the identity's agent id does not match
                the definition id, or a different definition is already
                registered under the same identity.
        """
        identity = identity or definition.identity or AgentIdentity(agent_id=definition.id)
        if identity.agent_id != definition.id:
            raise AgentConfigurationError(
                f"Identity {identity.aid} does not match definition id '{definition.id}'",
                config_field="identity",
                config_value=identity.aid,
                agent_id=definition.id,
            )
        definition = definition.model_copy(update={"identity": identity})
        key = (identity.aid, identity.working)

        with self._lock:
            existing = self._definitions.get(key)
            if existing is not None and existing != definition:
                raise AgentConfigurationError(
                    f"Agent '{identity.aid}' is already registered with a different definition.",
                    config_field="id",
                    config_value=identity.aid,
                    agent_id=definition.id,
                )
            self._definitions[key] = definition

        logger.info(
            f"Agent registered: {identity.aid} (kind: {definition.kind})",
            extra={"agent_id": definition.id},
        )
        return definition

    def unregister(self, identity: AgentIdentity) -> None:
        with self._lock:
            removed = self._definitions.pop((identity.aid, identity.working), None)
        if removed is None:
            logger.warning(f"Unregister of unknown agent {identity.aid}")

    def get(self, identity: AgentIdentity) -> Optional[BaseAgentDefinition]:
        with self._lock:
            for key in (
                (identity.aid, identity.working),
                (identity.aid, False),
                (AgentIdentity(agent_id=identity.agent_id).aid, False),
            ):
                definition = self._definitions.get(key)
                if definition is not None:
                    return definition
        return None

    async def resolve(self, identity: AgentIdentity) -> Optional[BaseAgentDefinition]:
        """Agent-resolver collaborator: returns ``None`` when nothing matches."""
        return self.get(identity)

    def require(self, identity: AgentIdentity) -> BaseAgentDefinition:
        definition = self.get(identity)
        if definition is None:
            raise AgentNotFoundError(identity.aid)
        return definition

    def all(self) -> List[BaseAgentDefinition]:
        with self._lock:
            return list(self._definitions.values())

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()

    def __len__(self) -> int:
        return len(self._definitions)

    # --- Loading ---

    def load_data(self, data: Any) -> List[BaseAgentDefinition]:
        """
        Register definitions from plain data.

        Accepts either a list of agent mappings or a project document::

            platform_id: my-platform
            project_id: p1
            project_ref: main
            agents:
              - id: echo
                kind: llm-prompt
                prompt: "Echo {{ word }}"
        """
        if isinstance(data, list):
            project: Dict[str, Any] = {}
            agents = data
        elif isinstance(data, dict):
            project = data
            agents = data.get("agents") or []
        else:
            raise AgentConfigurationError(
                f"Unsupported agent document of type {type(data).__name__}",
                config_field="agents",
            )

        registered = []
        for item in agents:
            definition = parse_agent_definition(item)
            identity = definition.identity or AgentIdentity(
                platform_id=project.get("platform_id"),
                project_id=project.get("project_id"),
                project_ref=project.get("project_ref"),
                agent_id=definition.id,
                working=bool(project.get("working", False)),
            )
            registered.append(self.register(definition, identity))
        return registered

    def load_yaml(self, source: Union[str, Path, IO[str]]) -> List[BaseAgentDefinition]:
        """Load a YAML document from a path or an open stream."""
        if isinstance(source, (str, Path)):
            with open(source, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        else:
            data = yaml.safe_load(source)
        return self.load_data(data)
