"""
Normalized request and response types exchanged with the model backends.

The engine never talks to a provider directly: the text caller receives a
ChatCompletionRequest and yields ChatCompletionChunk objects, the image caller
receives an ImageGenerationRequest and returns a list of ``{"url": ...}``
dicts.
"""

import dataclasses
from typing import Any, Dict, List, Optional


@dataclasses.dataclass
class ToolCallMsg:
    """Represents a complete tool call requested by the model."""
    id: str
    name: str
    arguments: str
    type: str = "function"

    def __post_init__(self):
        if not self.id:
            raise ValueError("Tool call id cannot be empty")
        if not self.name:
            raise ValueError("Tool call name cannot be empty")
        if not isinstance(self.arguments, str):
            raise ValueError("Tool call arguments must be a string")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format compatible with OpenAI API."""
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallMsg":
        function_data = data.get("function", {})
        return cls(
            id=data.get("id", ""),
            type=data.get("type", "function"),
            name=function_data.get("name", ""),
            arguments=function_data.get("arguments", "{}"),
        )


@dataclasses.dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call; fragments share ``index``."""
    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclasses.dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclasses.dataclass
class ChatCompletionChunk:
    """One streamed unit of a chat completion."""
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None
    usage: Optional[Usage] = None


@dataclasses.dataclass
class ChatCompletionRequest:
    messages: List[Dict[str, Any]]
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Any = None
    response_format: Optional[Dict[str, Any]] = None
    stream: bool = True

    def to_payload(self) -> Dict[str, Any]:
        """Provider payload with unset fields omitted."""
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclasses.dataclass
class ImageGenerationRequest:
    prompt: str
    model: Optional[str] = None
    n: Optional[int] = None
    size: Optional[str] = None
    quality: Optional[str] = None
    style: Optional[str] = None
    # placeholder name (``image-0``) -> image url referenced by the prompt
    images: Dict[str, str] = dataclasses.field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {k: v for k, v in dataclasses.asdict(self).items() if v is not None}
        if not self.images:
            payload.pop("images", None)
        return payload
