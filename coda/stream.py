"""Assemble streamed model output into narrative text and tool calls.

The assembler is fed one StreamDelta per provider chunk. The protocol is
picked automatically: the first delta that carries native tool-call
fragments switches the turn to native mode; otherwise content is run
through the inline extractor (or, when ``structured`` is set, buffered
and decoded as one JSON reply at the end).
"""

import json
import logging
import time
from dataclasses import dataclass, field, replace

from .errors import CancellationError
from .models import ParsedTurn, PartialToolCall, StreamDelta, ToolCall
from .text_parser import StreamingExtractor, parse_message, parse_structured_message

logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    index: int
    id: str | None = None
    name: str = ""
    arguments: str = ""
    emitted: bool = False

    def is_complete(self) -> bool:
        if not self.name:
            return False
        try:
            json.loads(self.arguments)
        except json.JSONDecodeError:
            return False
        return True

    def freeze(self) -> ToolCall:
        return ToolCall(
            id=self.id or f"call_{self.index + 1}",
            name=self.name,
            arguments=self.arguments,
            source_index=self.index,
        )


@dataclass
class StreamMetrics:
    started_at: float = field(default_factory=time.monotonic)
    ended_at: float | None = None
    chunks: int = 0
    content_chars: int = 0

    @property
    def duration(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at


class StreamAssembler:
    def __init__(self, structured: bool = False):
        self.structured = structured
        self.native = False
        self.finish_reason: str | None = None
        self.metrics = StreamMetrics()
        self._content: list[str] = []
        self._pending: dict[int, _PendingCall] = {}
        self._native_calls: list[ToolCall] = []
        self._inline_calls: list[ToolCall] = []
        self._ids: set[str] = set()
        self._extractor = StreamingExtractor()
        self._finalized: ParsedTurn | None = None

    @property
    def content(self) -> str:
        return "".join(self._content)

    def process(self, delta: StreamDelta) -> tuple[str, list[ToolCall]]:
        """Consume one delta.

        Returns (text to show the user now, tool calls completed by this
        delta). Each call is returned exactly once over the whole stream.
        """
        if self._finalized is not None:
            raise RuntimeError("stream already finalized")
        self.metrics.chunks += 1
        text = ""
        completed: list[ToolCall] = []

        if delta.tool_calls:
            if not self.native:
                self.native = True
                logger.debug("native tool-call deltas seen, switching protocol")
            for frag in delta.tool_calls:
                call = self._apply(frag)
                if call is not None:
                    completed.append(call)

        if delta.content:
            self._content.append(delta.content)
            self.metrics.content_chars += len(delta.content)
            if not self.structured:
                text, found = self._extractor.add_chunk(delta.content)
                found = self._keep_inline(found)
                completed.extend(found)
            elif self.native:
                text = delta.content

        if delta.finish_reason:
            self.finish_reason = delta.finish_reason
            completed.extend(self._sweep())

        return text, completed

    def _apply(self, frag: PartialToolCall) -> ToolCall | None:
        call = self._pending.get(frag.index)
        if call is None:
            call = _PendingCall(index=frag.index)
            self._pending[frag.index] = call
        if frag.id and not call.id:
            call.id = frag.id
        if frag.name_fragment and not call.name:
            call.name = frag.name_fragment
        if frag.arguments_fragment:
            call.arguments += frag.arguments_fragment
        if not call.emitted and call.is_complete():
            return self._emit(call)
        return None

    def _emit(self, call: _PendingCall) -> ToolCall:
        call.emitted = True
        frozen = self._claim(call.freeze())
        self._native_calls.append(frozen)
        return frozen

    def _claim(self, call: ToolCall) -> ToolCall:
        """Reserve ``call.id`` for this turn, renaming it if already taken."""
        if call.id in self._ids:
            n = len(self._ids) + 1
            while f"call_{n}" in self._ids:
                n += 1
            call = replace(call, id=f"call_{n}")
        self._ids.add(call.id)
        return call

    def _keep_inline(self, found: list[ToolCall]) -> list[ToolCall]:
        kept = [self._claim(c) for c in found]
        self._inline_calls.extend(kept)
        return kept

    def _sweep(self) -> list[ToolCall]:
        """Finish-reason pass: emit anything that is now complete."""
        out = []
        for index in sorted(self._pending):
            call = self._pending[index]
            if call.emitted:
                continue
            if call.name and not call.arguments.strip():
                call.arguments = "{}"
            if call.is_complete():
                out.append(self._emit(call))
        return out

    def flush(self) -> str:
        """Release text the inline extractor was still holding back."""
        if self.structured:
            return ""
        text, found = self._extractor.flush()
        self._keep_inline(found)
        return text

    def finalize(self) -> ParsedTurn:
        """Build the turn once the stream has ended. Idempotent."""
        if self._finalized is not None:
            return self._finalized
        self.metrics.ended_at = time.monotonic()

        if self.native:
            self._sweep()
            calls = list(self._native_calls)
            # Named calls whose arguments never became valid JSON still go
            # through, so the orchestrator can report a ParseError for them.
            for index in sorted(self._pending):
                call = self._pending[index]
                if not call.emitted and call.name:
                    calls.append(self._claim(call.freeze()))
            calls.sort(key=lambda c: c.source_index)
            # Inline calls found in the text run after the native ones.
            if not self.structured:
                self.flush()
                calls.extend(self._inline_calls)
                clean = parse_message(self.content).clean_text
            else:
                clean = self.content
            turn = ParsedTurn(clean, calls, self.finish_reason)
        elif self.structured:
            turn = parse_structured_message(self.content)
            turn.finish_reason = self.finish_reason
        else:
            self.flush()
            parsed = parse_message(self.content)
            turn = ParsedTurn(
                parsed.clean_text, list(self._inline_calls), self.finish_reason
            )

        self._finalized = turn
        return turn


def delta_from_chunk(chunk) -> StreamDelta:
    """Adapt a litellm (OpenAI-shaped) streaming chunk to a StreamDelta."""
    choices = getattr(chunk, "choices", None)
    if not choices:
        return StreamDelta()
    choice = choices[0]
    delta = getattr(choice, "delta", None)
    content = getattr(delta, "content", None) if delta is not None else None
    fragments = []
    for i, tc in enumerate(getattr(delta, "tool_calls", None) or []):
        fn = getattr(tc, "function", None)
        index = getattr(tc, "index", None)
        fragments.append(
            PartialToolCall(
                index=i if index is None else index,
                id=getattr(tc, "id", None),
                name_fragment=getattr(fn, "name", None) if fn is not None else None,
                arguments_fragment=getattr(fn, "arguments", None)
                if fn is not None
                else None,
            )
        )
    return StreamDelta(
        content=content or None,
        tool_calls=tuple(fragments),
        finish_reason=getattr(choice, "finish_reason", None) or None,
    )


def consume_stream(stream, assembler: StreamAssembler, ctx=None, on_text=None):
    """Drive ``assembler`` over every chunk of ``stream`` and finalize it.

    ``on_text`` receives displayable text as it is released. Raises the
    context's CancellationError if ``ctx`` is cancelled mid-stream.
    """
    for chunk in stream:
        if ctx is not None and ctx.cancelled:
            raise ctx.error() or CancellationError("stream cancelled")
        text, _ = assembler.process(delta_from_chunk(chunk))
        if text and on_text is not None:
            on_text(text)
    tail = assembler.flush()
    if tail and on_text is not None:
        on_text(tail)
    return assembler.finalize()
