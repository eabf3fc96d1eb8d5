"""Value types that flow from the provider stream into the tool pipeline."""

import json
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ToolCall:
    """A complete tool invocation requested by the model.

    ``arguments`` is the raw JSON text exactly as the model produced it
    (re-serialized for the text protocols). Parsing happens in the
    orchestrator so that malformed payloads surface as a ParseError
    on the call's result.
    """

    id: str
    name: str
    arguments: str
    source_index: int = 0

    def to_message(self) -> dict:
        """OpenAI-style entry for an assistant message's ``tool_calls``."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def arguments_preview(self) -> str:
        try:
            return json.dumps(json.loads(self.arguments), indent=2)
        except (json.JSONDecodeError, TypeError):
            return self.arguments


@dataclass(frozen=True)
class PartialToolCall:
    """One native tool-call fragment from a single stream chunk."""

    index: int
    id: str | None = None
    name_fragment: str | None = None
    arguments_fragment: str | None = None


@dataclass(frozen=True)
class StreamDelta:
    content: str | None = None
    tool_calls: tuple[PartialToolCall, ...] = ()
    finish_reason: str | None = None


@dataclass
class ParsedTurn:
    """What one model turn amounts to once the stream has ended."""

    clean_text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
