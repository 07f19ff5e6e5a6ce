from .definitions import (
    AgentDefinition,
    AgentIdentity,
    AgentKind,
    AgentReference,
    BaseAgentDefinition,
    CallAgent,
    ExternalPlatformAgent,
    FunctionAgent,
    HttpApiAgent,
    ImageAgent,
    ImageCompositorAgent,
    LLMAgent,
    OutputVariable,
    ParallelCallAgent,
    Parameter,
    ParameterType,
    PlatformOperation,
    ProjectSettings,
    ProtocolClientAgent,
    RouterAgent,
    Route,
    RuntimeOutput,
    VariableScope,
    parse_agent_definition,
)
from .exceptions import (
    AgentConfigurationError,
    AgentFrameworkError,
    AgentLimitError,
    AgentNotFoundError,
    HttpRequestError,
    InputValidationError,
    ModelError,
    OnTaskCompletion,
    OutputValidationError,
    ProtocolClientError,
    SecretMissingError,
    ToolCompletionDirective,
    UnknownAgentKindError,
    UpstreamError,
    ValidationError,
)
from .registry import AgentDefinitionRegistry
from .schema import OutputSchema
from .utils import init_agent_logging

__all__ = [
    # Definitions
    "AgentDefinition",
    "AgentIdentity",
    "AgentKind",
    "AgentReference",
    "BaseAgentDefinition",
    "CallAgent",
    "ExternalPlatformAgent",
    "FunctionAgent",
    "HttpApiAgent",
    "ImageAgent",
    "ImageCompositorAgent",
    "LLMAgent",
    "OutputVariable",
    "ParallelCallAgent",
    "Parameter",
    "ParameterType",
    "PlatformOperation",
    "ProjectSettings",
    "ProtocolClientAgent",
    "RouterAgent",
    "Route",
    "RuntimeOutput",
    "VariableScope",
    "parse_agent_definition",
    # Errors
    "AgentConfigurationError",
    "AgentFrameworkError",
    "AgentLimitError",
    "AgentNotFoundError",
    "HttpRequestError",
    "InputValidationError",
    "ModelError",
    "OnTaskCompletion",
    "OutputValidationError",
    "ProtocolClientError",
    "SecretMissingError",
    "ToolCompletionDirective",
    "UnknownAgentKindError",
    "UpstreamError",
    "ValidationError",
    # Registry, schema, logging
    "AgentDefinitionRegistry",
    "OutputSchema",
    "init_agent_logging",
]
