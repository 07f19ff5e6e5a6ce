from .code import CodeSandbox, SandboxConfig
from .protocol_client import HttpProtocolClient, ProtocolClient, http_protocol_client_factory

__all__ = [
    "CodeSandbox",
    "SandboxConfig",
    "HttpProtocolClient",
    "ProtocolClient",
    "http_protocol_client_factory",
]
