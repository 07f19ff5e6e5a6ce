"""
Execution context shared by every task of one call tree.

The context is a bag of collaborators (agent resolver, model callers, event
sink, stores, secret resolver, protocol-client factory) plus session and user
identity. It is treated as immutable: ``copy(**overrides)`` produces a
shallow clone, typically to scope a different event sink to a nested call.
Clones share the memoization tables (resolved agents, protocol clients,
translated tool names), so every branch of the tree sees the same lazily
initialized resources.
"""

import asyncio
import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from agentexec.agents.definitions import (
    AgentIdentity,
    BaseAgentDefinition,
    PlatformOperation,
    ProjectSettings,
)
from agentexec.agents.exceptions import (
    AgentConfigurationError,
    AgentFrameworkError,
    AgentNotFoundError,
    ModelError,
    ProtocolClientError,
)
from agentexec.coordination.config import EngineConfig
from agentexec.coordination.events import ExecutionEvent
from agentexec.coordination.stores import CacheStore, MemoryStore
from agentexec.environment.code.config import SandboxConfig
from agentexec.environment.protocol_client import ProtocolClient, ProtocolClientFactory
from agentexec.models.requests import ChatCompletionChunk, ChatCompletionRequest, ImageGenerationRequest

if TYPE_CHECKING:  # pragma: no cover
    from .base import ExecutorOptions
    from .dispatcher import Dispatcher

logger = logging.getLogger(__name__)

AgentResolver = Callable[[AgentIdentity], Awaitable[Optional[BaseAgentDefinition]]]
TextModelCaller = Callable[[ChatCompletionRequest], Any]
ImageModelCaller = Callable[[ImageGenerationRequest], Awaitable[List[Dict[str, Any]]]]
EventSink = Callable[[ExecutionEvent], Optional[Awaitable[None]]]
SecretResolver = Callable[[Optional[str], str, str], Awaitable[Optional[str]]]
OperationCatalogue = Callable[[Optional[str]], Awaitable[List[PlatformOperation]]]


@dataclass
class UserInfo:
    id: Optional[str] = None
    did: Optional[str] = None
    role: Optional[str] = None
    full_name: Optional[str] = None
    provider: Optional[str] = None
    wallet_os: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclass
class ExecutionContext:
    """
    Per-call-tree collaborators and identity.

    Attributes:
        resolve_agent: Looks up a definition by identity; returns None when absent.
        call_model: Takes a ChatCompletionRequest, returns (or resolves to) an
            async iterable of ChatCompletionChunk.
        sink: Receives every ExecutionEvent; may be sync or async.
        call_image_model: Takes an ImageGenerationRequest, returns ``[{"url": ...}]``.
        memory: Long-term memory store.
        get_secret: ``(project_id, agent_id, input_key) -> secret``.
        cache: Result cache store.
        list_platform_operations: Enumerates a platform's external operations.
        protocol_client_factory: Connects a protocol client for a platform id.
    """

    resolve_agent: AgentResolver
    call_model: TextModelCaller
    sink: EventSink
    call_image_model: Optional[ImageModelCaller] = None
    memory: Optional[MemoryStore] = None
    get_secret: Optional[SecretResolver] = None
    cache: Optional[CacheStore] = None
    list_platform_operations: Optional[OperationCatalogue] = None
    protocol_client_factory: Optional[ProtocolClientFactory] = None

    user: Optional[UserInfo] = None
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    client_time: Optional[str] = None
    entry_project_id: Optional[str] = None
    project: Optional[ProjectSettings] = None

    config: EngineConfig = field(default_factory=EngineConfig)
    sandbox_config: SandboxConfig = field(default_factory=SandboxConfig)

    # Shared by every copy of this context
    tool_name_cache: Dict[str, str] = field(default_factory=dict, repr=False)
    agent_futures: Dict[Tuple[str, bool], "asyncio.Future"] = field(default_factory=dict, repr=False)
    protocol_clients: Dict[str, "asyncio.Future"] = field(default_factory=dict, repr=False)

    def copy(self, **overrides: Any) -> "ExecutionContext":
        """Shallow clone with ``overrides`` applied; memoization tables stay shared."""
        return dataclasses.replace(self, **overrides)

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    # --- Dispatch ---

    def dispatcher(self) -> "Dispatcher":
        from .dispatcher import Dispatcher

        return Dispatcher(self)

    async def execute(self, agent: BaseAgentDefinition, options: "ExecutorOptions") -> Any:
        return await self.dispatcher().execute(agent, options)

    # --- Events ---

    async def emit(self, event: ExecutionEvent) -> None:
        result = self.sink(event)
        if inspect.isawaitable(result):
            await result

    # --- Agent resolution ---

    async def get_agent(self, identity: AgentIdentity, required: bool = False) -> Optional[BaseAgentDefinition]:
        """
        Resolve ``identity`` once per (aid, working) for the whole call tree.

        Concurrent lookups of the same identity share one in-flight
        resolution. Failed resolutions are not memoized.

        Raises:
            AgentNotFoundError: If ``required`` and nothing matches.
        """
        key = (identity.aid, identity.working)
        future = self.agent_futures.get(key)
        if future is None:
            future = asyncio.ensure_future(self.resolve_agent(identity))
            self.agent_futures[key] = future

        try:
            definition = await asyncio.shield(future)
        except Exception:
            self.agent_futures.pop(key, None)
            raise

        if definition is None:
            if required:
                raise AgentNotFoundError(identity.aid)
            return None
        if definition.identity is None:
            definition = definition.model_copy(update={"identity": identity})
        return definition

    # --- Model backends ---

    async def stream_model(self, request: ChatCompletionRequest) -> AsyncIterator[ChatCompletionChunk]:
        """Call the text model and yield its chunks, wrapping backend failures in ModelError."""
        try:
            stream = self.call_model(request)
            if inspect.isawaitable(stream):
                stream = await stream
            async for chunk in stream:
                yield chunk
        except AgentFrameworkError:
            raise
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            raise ModelError(f"Model call failed: {e}", model=request.model) from e

    async def generate_images(self, request: ImageGenerationRequest) -> List[Dict[str, Any]]:
        if self.call_image_model is None:
            raise AgentConfigurationError("No image model caller configured", config_field="call_image_model")
        try:
            return await self.call_image_model(request)
        except AgentFrameworkError:
            raise
        except Exception as e:
            logger.error(f"Image model call failed: {e}")
            raise ModelError(f"Image model call failed: {e}", model=request.model) from e

    # --- Secrets ---

    async def lookup_secret(self, project_id: Optional[str], agent_id: str, key: str) -> Optional[str]:
        if self.get_secret is None:
            return None
        return await self.get_secret(project_id, agent_id, key)

    # --- Platform operations ---

    async def platform_operations(self, platform_id: Optional[str]) -> List[PlatformOperation]:
        if self.list_platform_operations is None:
            raise AgentConfigurationError(
                "No platform operation catalogue configured", config_field="list_platform_operations"
            )
        return await self.list_platform_operations(platform_id)

    # --- Protocol clients ---

    async def get_protocol_client(self, platform_id: str) -> ProtocolClient:
        """
        Connect (once per platform id for the lifetime of the context) and
        return the protocol client.
        """
        future = self.protocol_clients.get(platform_id)
        if future is None:
            if self.protocol_client_factory is None:
                raise ProtocolClientError("No protocol client factory configured", platform_id=platform_id)
            future = asyncio.ensure_future(self.protocol_client_factory(platform_id))
            self.protocol_clients[platform_id] = future
            logger.info(f"Connecting protocol client for {platform_id}")

        try:
            return await asyncio.shield(future)
        except Exception:
            self.protocol_clients.pop(platform_id, None)
            raise

    async def aclose(self) -> None:
        """Close every protocol client this context tree created."""
        futures = list(self.protocol_clients.values())
        self.protocol_clients.clear()
        for future in futures:
            if not future.done() or future.cancelled() or future.exception() is not None:
                future.cancel()
                continue
            try:
                await future.result().close()
            except Exception as e:
                logger.error(f"Error closing protocol client: {e}")

    # --- Template globals ---

    def system_variables(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message_id": self.message_id,
            "client_time": self.client_time,
            "user": self.user.to_dict() if self.user else None,
        }

    def user_headers(self) -> Dict[str, str]:
        user = self.user or UserInfo()
        headers = {
            "x-user-did": user.did,
            "x-user-role": user.role,
            "x-user-provider": user.provider,
            "x-user-fullname": user.full_name,
            "x-user-wallet-os": user.wallet_os,
        }
        return {k: v for k, v in headers.items() if v}
