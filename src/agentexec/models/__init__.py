from .requests import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ImageGenerationRequest,
    ToolCallDelta,
    ToolCallMsg,
    Usage,
)
from .utils import (
    FencedJsonExtractor,
    finalize_tool_calls,
    merge_tool_call_deltas,
    parse_json_response,
    to_strict_json_schema,
)

__all__ = [
    "ChatCompletionChunk",
    "ChatCompletionRequest",
    "ImageGenerationRequest",
    "ToolCallDelta",
    "ToolCallMsg",
    "Usage",
    "FencedJsonExtractor",
    "finalize_tool_calls",
    "merge_tool_call_deltas",
    "parse_json_response",
    "to_strict_json_schema",
]
