"""Tool-call extraction for models without native function calling.

Two text protocols are understood:

- inline: the model writes ``{"tool": "<name>", "arguments": {...}}``
  objects into its ordinary prose, optionally separating independent
  messages with a ``\\n----\\n`` line;
- structured: the whole reply is one JSON object constrained by
  TOOL_RESPONSE_SCHEMA.

The inline pattern is deliberately flat: ``arguments`` may not contain
nested objects. Anything the pattern matches that is not valid JSON is
left in the text untouched.
"""

import json
import logging
import re

from .models import ParsedTurn, ToolCall

logger = logging.getLogger(__name__)

TOOL_CALL_RE = re.compile(
    r'\{"tool"\s*:\s*"[^"]+"\s*,\s*"arguments"\s*:\s*\{[^}]*\}\}'
)
MESSAGE_DELIMITER = "\n----\n"


def _call_id(n: int) -> str:
    return f"call_{n}"


def _decode_span(span: str) -> tuple[str, str] | None:
    """Return (tool, arguments_json) for a well-formed span, else None."""
    try:
        payload = json.loads(span)
    except json.JSONDecodeError:
        return None
    tool = payload.get("tool")
    arguments = payload.get("arguments")
    if not isinstance(tool, str) or not tool or not isinstance(arguments, dict):
        return None
    return tool, json.dumps(arguments)


def parse_tool_calls(text: str, start: int = 0) -> list[ToolCall]:
    """Extract every well-formed inline tool call from ``text``.

    Calls are numbered sequentially from ``start + 1``. Malformed spans
    are skipped.
    """
    calls: list[ToolCall] = []
    for m in TOOL_CALL_RE.finditer(text):
        decoded = _decode_span(m.group(0))
        if decoded is None:
            logger.debug("skipping malformed tool call span: %.200s", m.group(0))
            continue
        n = start + len(calls)
        calls.append(ToolCall(_call_id(n + 1), decoded[0], decoded[1], n))
    return calls


def strip_tool_calls(text: str) -> str:
    """Remove well-formed tool-call spans, keeping everything else."""

    def _drop(m: re.Match) -> str:
        return "" if _decode_span(m.group(0)) is not None else m.group(0)

    stripped = TOOL_CALL_RE.sub(_drop, text)
    stripped = re.sub(r"[ \t]+\n", "\n", stripped)
    stripped = re.sub(r"\n{3,}", "\n\n", stripped)
    return stripped.strip()


def split_messages(text: str) -> list[str]:
    """Split on the message delimiter, dropping empty segments."""
    return [part.strip() for part in text.split(MESSAGE_DELIMITER) if part.strip()]


def parse_message(text: str) -> ParsedTurn:
    """Separate narrative text from inline tool calls.

    Each delimited segment is handled on its own. A segment holding tool
    calls contributes them plus whatever prose surrounds them; a segment
    without any contributes its text verbatim. Text with no tool calls at
    all is returned unchanged.
    """
    if not any(_decode_span(m.group(0)) for m in TOOL_CALL_RE.finditer(text)):
        return ParsedTurn(clean_text=text)

    texts: list[str] = []
    calls: list[ToolCall] = []
    for segment in split_messages(text):
        found = parse_tool_calls(segment, start=len(calls))
        if found:
            calls.extend(found)
            rest = strip_tool_calls(segment)
            if rest:
                texts.append(rest)
        else:
            texts.append(segment)
    return ParsedTurn(clean_text="\n\n".join(texts), tool_calls=calls)


# -- Streaming ---------------------------------------------------------------


def _literal(s: str, i: int, lit: str) -> int | None:
    """Match ``lit`` at s[i:]. Returns the new index, -1 if s ran out, None on mismatch."""
    n = min(len(s) - i, len(lit))
    if s[i : i + n] != lit[:n]:
        return None
    if n < len(lit):
        return -1
    return i + len(lit)


def _spaces(s: str, i: int) -> int:
    while i < len(s) and s[i].isspace():
        i += 1
    return i


def could_become_tool_call(s: str) -> bool:
    """True if ``s`` is a proper prefix of something TOOL_CALL_RE could match.

    Mirrors the pattern token by token; used to decide how much of a
    streamed tail must be held back until more text arrives.
    """
    steps = ['{"tool"', None, ":", None, '"']
    i = 0
    for lit in steps:
        if lit is None:
            i = _spaces(s, i)
            if i == len(s):
                return True
            continue
        i = _literal(s, i, lit)
        if i is None:
            return False
        if i == -1:
            return True

    # tool name: [^"]+ then a closing quote
    start = i
    while i < len(s) and s[i] != '"':
        i += 1
    if i == len(s):
        return True
    if i == start:
        return False
    i += 1

    for lit in (None, ",", None, '"arguments"', None, ":", None, "{"):
        if lit is None:
            i = _spaces(s, i)
            if i == len(s):
                return True
            continue
        i = _literal(s, i, lit)
        if i is None:
            return False
        if i == -1:
            return True

    # arguments body: [^}]* then "}}"
    while i < len(s) and s[i] != "}":
        i += 1
    i = _literal(s, i, "}}")
    return i == -1


class StreamingExtractor:
    """Incremental inline-protocol extraction over a chunked stream.

    Text is released as soon as it can no longer be part of a tool call.
    Only the undecided tail of the current segment is buffered, so a call
    split across any number of chunks is found exactly once and memory
    stays bounded by the longest pending span.
    """

    def __init__(self):
        self._pending = ""
        self._count = 0
        self.tool_calls: list[ToolCall] = []

    @property
    def pending(self) -> str:
        return self._pending

    def add_chunk(self, chunk: str) -> tuple[str, list[ToolCall]]:
        """Feed one chunk. Returns (clean text to display, newly completed calls)."""
        self._pending += chunk
        out: list[str] = []
        new: list[ToolCall] = []

        while True:
            idx = self._pending.find(MESSAGE_DELIMITER)
            if idx == -1:
                break
            segment = self._pending[:idx]
            self._pending = self._pending[idx + len(MESSAGE_DELIMITER) :]
            text, _ = self._drain(segment, new)
            out.append(text)
            out.append("\n\n")

        text, self._pending = self._drain(self._pending, new, hold=True)
        out.append(text)
        return "".join(out), new

    def flush(self) -> tuple[str, list[ToolCall]]:
        """Release everything still held. Call once at end of stream."""
        new: list[ToolCall] = []
        text, _ = self._drain(self._pending, new)
        self._pending = ""
        return text, new

    def _drain(
        self, text: str, new: list[ToolCall], hold: bool = False
    ) -> tuple[str, str]:
        """Consume complete spans from ``text``.

        Returns (releasable text, held tail). Without ``hold`` the tail is
        always empty.
        """
        out: list[str] = []
        pos = 0
        for m in TOOL_CALL_RE.finditer(text):
            decoded = _decode_span(m.group(0))
            if decoded is None:
                continue
            out.append(text[pos : m.start()])
            call = ToolCall(_call_id(self._count + 1), decoded[0], decoded[1], self._count)
            self._count += 1
            self.tool_calls.append(call)
            new.append(call)
            pos = m.end()

        tail = text[pos:]
        if not hold:
            out.append(tail)
            return "".join(out), ""

        cut = len(tail)
        brace = tail.find("{")
        while brace != -1:
            if could_become_tool_call(tail[brace:]):
                cut = brace
                break
            brace = tail.find("{", brace + 1)
        for k in range(1, len(MESSAGE_DELIMITER)):
            if tail.endswith(MESSAGE_DELIMITER[:k]) and len(tail) - k < cut:
                cut = len(tail) - k
        out.append(tail[:cut])
        return "".join(out), tail[cut:]


# -- Structured output -------------------------------------------------------


TOOL_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "response_type": {
            "type": "string",
            "description": (
                "Type of response: text for normal responses, "
                "tool_call for tool invocations, both for mixed"
            ),
            "enum": ["text", "tool_call", "both"],
        },
        "text": {
            "type": ["string", "null"],
            "description": "The text content of the response (null when response_type is tool_call)",
        },
        "tool_calls": {
            "type": "array",
            "description": "List of tool calls to execute",
            "items": {
                "type": "object",
                "properties": {
                    "tool": {
                        "type": "string",
                        "description": "Name of the tool to invoke",
                    },
                    "arguments": {
                        "type": "object",
                        "description": "Arguments to pass to the tool",
                        "additionalProperties": True,
                    },
                },
                "required": ["tool", "arguments"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["response_type", "text", "tool_calls"],
    "additionalProperties": False,
}

RESPONSE_TYPES = ("text", "tool_call", "both")


def response_format() -> dict:
    """The ``response_format`` request parameter for schema-constrained output."""
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "tool_response",
            "description": "Structured response with optional tool calls",
            "schema": TOOL_RESPONSE_SCHEMA,
            "strict": True,
        },
    }


def parse_structured_output(text: str) -> dict:
    """Decode a structured reply. Raises ValueError if it is not one."""
    try:
        resp = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"not a structured response: {e}") from e
    if not isinstance(resp, dict):
        raise ValueError("structured response must be a JSON object")
    if resp.get("response_type") not in RESPONSE_TYPES:
        raise ValueError(f"invalid response_type: {resp.get('response_type')!r}")
    if resp.get("text") is not None and not isinstance(resp["text"], str):
        raise ValueError("'text' must be a string or null")
    calls = resp.get("tool_calls") or []
    if not isinstance(calls, list):
        raise ValueError("'tool_calls' must be an array")
    for i, tc in enumerate(calls):
        if (
            not isinstance(tc, dict)
            or not isinstance(tc.get("tool"), str)
            or not isinstance(tc.get("arguments"), dict)
        ):
            raise ValueError(f"tool_calls[{i}]: expected {{tool, arguments}}")
    resp["tool_calls"] = calls
    return resp


def structured_to_tool_calls(resp: dict) -> list[ToolCall]:
    return [
        ToolCall(_call_id(i + 1), tc["tool"], json.dumps(tc["arguments"]), i)
        for i, tc in enumerate(resp.get("tool_calls") or [])
    ]


def parse_structured_message(text: str) -> ParsedTurn:
    """Structured reply to ParsedTurn; unparseable replies become plain text."""
    try:
        resp = parse_structured_output(text)
    except ValueError as e:
        logger.debug("structured output fallback to raw text: %s", e)
        return ParsedTurn(clean_text=text)
    return ParsedTurn(
        clean_text=resp.get("text") or "",
        tool_calls=structured_to_tool_calls(resp),
    )
