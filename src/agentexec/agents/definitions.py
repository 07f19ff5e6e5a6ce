"""
Declarative agent definitions.

An agent definition is a tagged union keyed by ``kind``. All kinds share the
fields on :class:`BaseAgentDefinition`; each kind adds the configuration its
execution strategy needs. Definitions are plain pydantic models so they can
be loaded from JSON/YAML exported by the authoring side.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .exceptions import OnTaskCompletion


class AgentKind(str, Enum):
    """The closed set of agent kinds the dispatcher knows how to run."""

    LLM = "llm-prompt"
    ROUTER = "router"
    FUNCTION = "function"
    HTTP_API = "http-api"
    IMAGE = "image"
    CALL_AGENT = "call-agent"
    PARALLEL_CALL = "parallel-call"
    EXTERNAL_PLATFORM = "external-platform"
    PROTOCOL_CLIENT = "protocol-client"
    IMAGE_COMPOSITOR = "image-compositor"


class ParameterType(str, Enum):
    """Declared value type of an agent parameter."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    IMAGE = "image"
    SELECT = "select"
    # Source types: resolved by calling a collaborator, not supplied literally
    SECRET = "secret"
    TOOL = "sub-agent-tool"
    DATASTORE = "datastore-variable"
    KNOWLEDGE = "knowledge-base"
    HISTORY = "conversation-history"
    PLATFORM_API = "external-platform-api"
    # Plumbing types forwarded verbatim to an LLM-class strategy
    LLM_INPUT_MESSAGES = "llm-input-messages"
    LLM_INPUT_TOOLS = "llm-input-tools"
    LLM_INPUT_TOOL_CHOICE = "llm-input-tool-choice"
    LLM_INPUT_RESPONSE_FORMAT = "llm-input-response-format"


SOURCE_PARAMETER_TYPES = frozenset(
    {
        ParameterType.SECRET,
        ParameterType.TOOL,
        ParameterType.DATASTORE,
        ParameterType.KNOWLEDGE,
        ParameterType.HISTORY,
        ParameterType.PLATFORM_API,
    }
)

LLM_INPUT_PARAMETER_TYPES = frozenset(
    {
        ParameterType.LLM_INPUT_MESSAGES,
        ParameterType.LLM_INPUT_TOOLS,
        ParameterType.LLM_INPUT_TOOL_CHOICE,
        ParameterType.LLM_INPUT_RESPONSE_FORMAT,
    }
)


class VariableScope(str, Enum):
    """Scope a persisted memory value is keyed under."""

    GLOBAL = "global"
    SESSION = "session"
    AGENT = "agent"


class RuntimeOutput(str, Enum):
    """Output names with engine-defined meaning."""

    TEXT = "$text"
    IMAGES = "$images"
    SUGGESTED_QUESTIONS = "$suggested.questions"
    REFERENCE_LINKS = "$reference.links"
    LLM_RESPONSE_STREAM = "$llm.response.stream"


# =============================================================================
# Identity and references
# =============================================================================


class AgentIdentity(BaseModel):
    """Which platform/project/ref/working copy a definition belongs to."""

    platform_id: Optional[str] = None
    project_id: Optional[str] = None
    project_ref: Optional[str] = None
    agent_id: str
    working: bool = False

    @property
    def aid(self) -> str:
        return "/".join(
            part or "" for part in (self.platform_id, self.project_id, self.project_ref, self.agent_id)
        )

    @classmethod
    def parse(cls, aid: str, working: bool = False) -> "AgentIdentity":
        parts = aid.split("/")
        if len(parts) != 4 or not parts[3]:
            raise ValueError(f"Invalid agent identity: {aid!r}")
        platform_id, project_id, project_ref, agent_id = (p or None for p in parts)
        return cls(
            platform_id=platform_id,
            project_id=project_id,
            project_ref=project_ref,
            agent_id=agent_id,
            working=working,
        )

    def inherit_from(self, parent: "AgentIdentity") -> "AgentIdentity":
        """Fill unset platform/project/ref from ``parent`` and OR the working flag."""
        return self.model_copy(
            update={
                "platform_id": self.platform_id or parent.platform_id,
                "project_id": self.project_id or parent.project_id,
                "project_ref": self.project_ref or parent.project_ref,
                "working": self.working or parent.working,
            }
        )


class AgentReference(BaseModel):
    """A pointer from one definition to another, relative to the referrer."""

    agent_id: str
    project_id: Optional[str] = None
    platform_id: Optional[str] = None

    def resolve(self, referrer: Optional[AgentIdentity]) -> AgentIdentity:
        if referrer is None:
            return AgentIdentity(
                platform_id=self.platform_id, project_id=self.project_id, agent_id=self.agent_id
            )
        return AgentIdentity(
            platform_id=self.platform_id or referrer.platform_id,
            project_id=self.project_id or referrer.project_id,
            project_ref=referrer.project_ref,
            agent_id=self.agent_id,
            working=referrer.working,
        )


# =============================================================================
# Parameters
# =============================================================================


class MemoryBinding(BaseModel):
    """A persisted-memory slot: key + scope, with reset-vs-append semantics."""

    key: str
    scope: VariableScope = VariableScope.SESSION
    reset: bool = False
    default_value: Any = None


class ToolSource(BaseModel):
    agent: AgentReference
    parameters: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeSource(BaseModel):
    id: str
    platform_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ChatHistorySource(BaseModel):
    limit: int = 50
    keyword: str = ""


class ApiSource(BaseModel):
    id: str
    platform_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ParameterSource(BaseModel):
    """Where a source-typed parameter gets its value from."""

    tool: Optional[ToolSource] = None
    variable: Optional[MemoryBinding] = None
    knowledge: Optional[KnowledgeSource] = None
    chat_history: Optional[ChatHistorySource] = None
    api: Optional[ApiSource] = None


class SelectOption(BaseModel):
    label: Optional[str] = None
    value: str


class Parameter(BaseModel):
    """A declared input of an agent."""

    id: Optional[str] = None
    key: str
    type: ParameterType = ParameterType.STRING
    default_value: Any = None
    hidden: bool = False
    required: bool = False
    description: Optional[str] = None
    options: List[SelectOption] = Field(default_factory=list)
    source: Optional[ParameterSource] = None

    @model_validator(mode="after")
    def _default_id(self) -> "Parameter":
        if not self.id:
            self.id = self.key
        return self

    @property
    def is_source(self) -> bool:
        return self.type in SOURCE_PARAMETER_TYPES


# =============================================================================
# Outputs
# =============================================================================


class OutputFrom(BaseModel):
    """
    Binds an output to something other than the strategy's raw result.

    - ``input``: the value of the parameter whose id is ``id``
    - ``output``: a sub-agent result, either by dotted ``path`` into the
      composition scope (``"a.value"``) or by output-variable ``id`` with an
      optional nested ``path`` of property ids
    - ``call-agent``: the result of running ``agent`` with ``inputs``
    """

    type: Literal["input", "output", "call-agent"]
    id: Optional[str] = None
    path: Optional[str] = None
    agent: Optional[AgentReference] = None
    inputs: Dict[str, Any] = Field(default_factory=dict)


class OutputVariable(BaseModel):
    """A declared output of an agent; object/array shapes nest recursively."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    type: Literal["string", "number", "integer", "boolean", "object", "array"] = "string"
    description: Optional[str] = None
    required: bool = False
    default_value: Any = None
    properties: List["OutputVariable"] = Field(default_factory=list)
    element: Optional["OutputVariable"] = None
    hidden: bool = False
    from_: Optional[OutputFrom] = Field(default=None, alias="from")
    variable: Optional[MemoryBinding] = None
    value_template: Optional[str] = None
    active_when: Optional[str] = None

    @model_validator(mode="after")
    def _default_id(self) -> "OutputVariable":
        if not self.id and self.name:
            self.id = self.name
        return self

    @property
    def has_default(self) -> bool:
        return "default_value" in self.model_fields_set


# =============================================================================
# Shared blocks
# =============================================================================


class ModelInfo(BaseModel):
    """Model name plus sampling parameters (text) or generation options (image)."""

    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    n: Optional[int] = None
    size: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None


class CachePolicy(BaseModel):
    enabled: bool = False


class ExecutorOverride(BaseModel):
    """Delegate model calls to another (gateway) agent."""

    agent: AgentReference
    input_values: Dict[str, Any] = Field(default_factory=dict)


class PromptMessage(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str = ""
    visibility: Literal["visible", "hidden"] = "visible"


class Route(BaseModel):
    """A callable target of a router or composition agent."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_: Literal["agent", "platform-api"] = Field(default="agent", alias="from")
    function_name: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    on_end: OnTaskCompletion = OnTaskCompletion.CONTINUE
    project_id: Optional[str] = None
    platform_id: Optional[str] = None

    @property
    def reference(self) -> AgentReference:
        return AgentReference(agent_id=self.id, project_id=self.project_id, platform_id=self.platform_id)


class ProtocolOperation(BaseModel):
    type: Literal["tool", "prompt", "resource"]
    name: str
    uri: Optional[str] = None


class CompositorField(BaseModel):
    name: str
    value: Any = None


# =============================================================================
# Agent kinds
# =============================================================================


class BaseAgentDefinition(BaseModel):
    """Fields common to every agent kind."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    kind: str
    name: Optional[str] = None
    description: Optional[str] = None
    model: Optional[ModelInfo] = None
    parameters: List[Parameter] = Field(default_factory=list)
    output_variables: List[OutputVariable] = Field(default_factory=list)
    cache: Optional[CachePolicy] = None
    identity: Optional[AgentIdentity] = None
    executor: Optional[ExecutorOverride] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def visible_outputs(self) -> List[OutputVariable]:
        return [o for o in self.output_variables if o.name and not o.hidden]

    def has_output(self, name: str) -> bool:
        return any(o.name == name for o in self.visible_outputs)

    def parameter(self, key: str) -> Optional[Parameter]:
        return next((p for p in self.parameters if p.key == key), None)

    def parameter_of_type(self, type_: ParameterType) -> Optional[Parameter]:
        return next((p for p in self.parameters if p.type == type_ and not p.hidden), None)


class LLMAgent(BaseAgentDefinition):
    kind: Literal["llm-prompt"] = "llm-prompt"
    prompts: List[PromptMessage] = Field(default_factory=list)
    prompt: Optional[str] = None

    @model_validator(mode="after")
    def _single_prompt(self) -> "LLMAgent":
        if self.prompt and not self.prompts:
            self.prompts = [PromptMessage(role="user", content=self.prompt)]
        return self


class RouterAgent(BaseAgentDefinition):
    kind: Literal["router"] = "router"
    prompt: Optional[str] = None
    routes: List[Route] = Field(default_factory=list)


class FunctionAgent(BaseAgentDefinition):
    kind: Literal["function"] = "function"
    code: Optional[str] = None


class HttpApiAgent(BaseAgentDefinition):
    kind: Literal["http-api"] = "http-api"
    url: Optional[str] = None
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)


class ImageAgent(BaseAgentDefinition):
    kind: Literal["image"] = "image"
    prompt: Optional[str] = None


class CallAgent(BaseAgentDefinition):
    kind: Literal["call-agent"] = "call-agent"
    agents: List[Route] = Field(default_factory=list)


class ParallelCallAgent(BaseAgentDefinition):
    kind: Literal["parallel-call"] = "parallel-call"
    agents: List[Route] = Field(default_factory=list)


class ExternalPlatformAgent(BaseAgentDefinition):
    kind: Literal["external-platform"] = "external-platform"
    platform_id: Optional[str] = None
    operation_id: Optional[str] = None


class ProtocolClientAgent(BaseAgentDefinition):
    kind: Literal["protocol-client"] = "protocol-client"
    platform_id: Optional[str] = None
    operation: Optional[ProtocolOperation] = None


class ImageCompositorAgent(BaseAgentDefinition):
    kind: Literal["image-compositor"] = "image-compositor"
    template_url: Optional[str] = None
    fields: List[CompositorField] = Field(default_factory=list)


AgentDefinition = Annotated[
    Union[
        LLMAgent,
        RouterAgent,
        FunctionAgent,
        HttpApiAgent,
        ImageAgent,
        CallAgent,
        ParallelCallAgent,
        ExternalPlatformAgent,
        ProtocolClientAgent,
        ImageCompositorAgent,
    ],
    Field(discriminator="kind"),
]

_agent_definition_adapter: TypeAdapter = TypeAdapter(AgentDefinition)


def parse_agent_definition(data: Dict[str, Any]) -> BaseAgentDefinition:
    """Validate plain data (e.g. loaded from YAML) into the matching kind model."""
    return _agent_definition_adapter.validate_python(data)


# =============================================================================
# External platform catalogue
# =============================================================================


class OperationParameter(BaseModel):
    name: str
    location: Literal["query", "body", "path", "header"] = "query"
    required: bool = False
    description: Optional[str] = None


class PlatformOperation(BaseModel):
    """One externally exposed operation of a platform, as returned by discovery."""

    id: str
    platform_id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    method: str = "GET"
    url: str
    parameters: List[OperationParameter] = Field(default_factory=list)

    @property
    def required_fields(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]


class CacheEntry(BaseModel):
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)


class ProjectSettings(ModelInfo):
    """Project-wide defaults consulted when an agent leaves a setting unset."""

    executor: Optional[ExecutorOverride] = None
