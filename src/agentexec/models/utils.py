import copy
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from agentexec.agents.exceptions import ResponseFormatError

from .requests import ToolCallDelta, ToolCallMsg

logger = logging.getLogger(__name__)

FENCE = "```"


# =============================================================================
# Tool-call streaming
# =============================================================================


def merge_tool_call_deltas(accumulated: Dict[int, Dict[str, Any]], deltas: Iterable[ToolCallDelta]) -> None:
    """
    Fold streamed tool-call fragments into ``accumulated`` (keyed by index).

    ids and names arrive once; argument text arrives in pieces and is
    concatenated in order.
    """
    for delta in deltas:
        entry = accumulated.setdefault(delta.index, {"id": None, "name": "", "arguments": ""})
        if delta.id:
            entry["id"] = delta.id
        if delta.name:
            entry["name"] += delta.name
        if delta.arguments:
            entry["arguments"] += delta.arguments


def finalize_tool_calls(accumulated: Dict[int, Dict[str, Any]]) -> List[ToolCallMsg]:
    calls = []
    for index in sorted(accumulated):
        entry = accumulated[index]
        if not entry["name"]:
            logger.warning(f"Dropping tool call #{index} without a function name")
            continue
        calls.append(
            ToolCallMsg(
                id=entry["id"] or f"call_{index}",
                name=entry["name"],
                arguments=entry["arguments"] or "{}",
            )
        )
    return calls


def parse_tool_arguments(tool_call: ToolCallMsg) -> Dict[str, Any]:
    try:
        arguments = json.loads(tool_call.arguments or "{}")
    except json.JSONDecodeError as e:
        raise ResponseFormatError(
            f"Invalid JSON arguments for tool {tool_call.name}: {e}",
            invalid_content=tool_call.arguments,
        ) from e
    if not isinstance(arguments, dict):
        raise ResponseFormatError(
            f"Arguments for tool {tool_call.name} must be a JSON object",
            invalid_content=tool_call.arguments,
        )
    return arguments


# =============================================================================
# Fenced JSON extraction
# =============================================================================


class FencedJsonExtractor:
    """
    Splits a token stream into live text and a trailing fenced JSON block.

    Text before the opening fence is returned from :meth:`feed` as soon as it
    is known not to be part of a fence marker. The fence's language tag line
    (e.g. ``json``) is skipped. Everything between the fences is accumulated
    and only parsed by :meth:`parse_json` after the stream ends.
    """

    def __init__(self):
        self.text = ""
        self.json_text = ""
        self._pending = ""
        self._state = "text"  # text -> tag -> json -> done

    def feed(self, delta: str) -> str:
        """Consume a delta and return the part of it that is live text."""
        if not delta:
            return ""
        self._pending += delta
        forwarded = ""

        while self._pending:
            if self._state == "text":
                index = self._pending.find(FENCE)
                if index >= 0:
                    forwarded += self._pending[:index]
                    self._pending = self._pending[index + len(FENCE):]
                    self._state = "tag"
                    continue
                keep = self._partial_fence_suffix(self._pending)
                forwarded += self._pending[: len(self._pending) - keep]
                self._pending = self._pending[len(self._pending) - keep:]
                break
            elif self._state == "tag":
                newline = self._pending.find("\n")
                brace = self._pending.find("{")
                if newline >= 0 and (brace < 0 or newline < brace):
                    self._pending = self._pending[newline + 1:]
                elif brace >= 0:
                    self._pending = self._pending[brace:]
                else:
                    break
                self._state = "json"
            elif self._state == "json":
                index = self._pending.find(FENCE)
                if index >= 0:
                    self.json_text += self._pending[:index]
                    self._pending = ""
                    self._state = "done"
                    break
                keep = self._partial_fence_suffix(self._pending)
                self.json_text += self._pending[: len(self._pending) - keep]
                self._pending = self._pending[len(self._pending) - keep:]
                break
            else:
                # Anything after the closing fence is ignored.
                self._pending = ""

        self.text += forwarded
        return forwarded

    def finish(self) -> str:
        """Flush held-back characters once the stream has ended."""
        rest = ""
        if self._state == "text":
            rest = self._pending
            self.text += rest
        elif self._state == "json":
            self.json_text += self._pending
        elif self._state == "tag":
            self.json_text += self._pending.lstrip("abcdefghijklmnopqrstuvwxyz")
        self._pending = ""
        return rest

    @property
    def found_fence(self) -> bool:
        return self._state != "text"

    def parse_json(self) -> Dict[str, Any]:
        """Parse the fenced block; an absent block yields an empty object."""
        if not self.found_fence:
            return {}
        try:
            data = json.loads(self.json_text)
        except json.JSONDecodeError as e:
            raise ResponseFormatError(f"Malformed JSON in model output: {e}", invalid_content=self.json_text) from e
        if not isinstance(data, dict):
            raise ResponseFormatError("Model JSON output must be an object", invalid_content=self.json_text)
        return data

    @staticmethod
    def _partial_fence_suffix(buffer: str) -> int:
        for size in range(min(len(FENCE) - 1, len(buffer)), 0, -1):
            if FENCE.startswith(buffer[-size:]):
                return size
        return 0


def parse_json_response(content: str) -> Dict[str, Any]:
    """Parse a whole (non-fenced) JSON response, tolerating a surrounding fence."""
    text = content.strip()
    if text.startswith(FENCE):
        extractor = FencedJsonExtractor()
        extractor.feed(text)
        extractor.finish()
        text = extractor.json_text
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseFormatError(f"Malformed JSON in model output: {e}", invalid_content=content) from e
    if not isinstance(data, dict):
        raise ResponseFormatError("Model JSON output must be an object", invalid_content=content)
    return data


# =============================================================================
# Schemas for model requests
# =============================================================================


def to_strict_json_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a JSON schema to the strict structured-output dialect.

    Every object node gets ``additionalProperties: false`` and lists all of
    its properties as required. Returns a deep copy; the input is not mutated.
    """
    schema = copy.deepcopy(schema)

    def _fix(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if node.get("type") == "object":
            node.setdefault("properties", {})
            node["additionalProperties"] = False
            node["required"] = list(node["properties"].keys())
        for v in node.values():
            if isinstance(v, dict):
                _fix(v)
            elif isinstance(v, list):
                for item in v:
                    _fix(item)

    _fix(schema)
    return schema


def json_response_format(schema: Dict[str, Any], name: str = "output") -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {"name": name, "schema": to_strict_json_schema(schema), "strict": True},
    }


def metadata_instruction(schema: Dict[str, Any], allow_text: bool) -> str:
    """System-prompt section asking the model for a fenced JSON block matching ``schema``."""
    lead = (
        "You may answer in free text first. After the text, output"
        if allow_text
        else "Output only"
    )
    return (
        "\n\n## Metadata\n"
        f"{lead} a single fenced JSON block (```json ... ```) whose content "
        "conforms to this JSON schema:\n"
        f"{json.dumps(schema, ensure_ascii=False)}\n"
        "Do not add any text after the JSON block."
    )


def function_tool(name: str, description: Optional[str], parameters: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description or "",
            "parameters": parameters,
        },
    }
