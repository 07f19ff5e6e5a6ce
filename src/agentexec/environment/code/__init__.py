from .config import SandboxConfig
from .sandbox import CodeSandbox
from .validators import validate_sandbox_code

__all__ = ["SandboxConfig", "CodeSandbox", "validate_sandbox_code"]
