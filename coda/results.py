"""Turn ToolResults into display text and bounded model feedback.

Processed outputs are cached per (tool, call id, start time) for the
lifetime of a session. A hit only happens when the same result is processed
twice (e.g. building the tool messages after rendering it for display).
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import PurePath
from typing import Any, Callable

import tiktoken

from .orchestrator import ToolResult

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

DEFAULT_CACHE_SIZE = 100
DEFAULT_CACHE_MAX_AGE = 30 * 60
DEFAULT_MAX_TOKENS = 16000

SUMMARY_LINE_THRESHOLD = 100
SUMMARY_CHAR_THRESHOLD = 5000
HEAD_LINES = 10
TAIL_LINES = 10

LANGUAGES = {
    ".go": "go",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".hpp": "cpp",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".sh": "bash",
    ".bash": "bash",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".xml": "xml",
    ".md": "markdown",
    ".markdown": "markdown",
}


def count_tokens(text: str) -> int:
    return len(_encoder.encode(text, disallowed_special=()))


def detect_language(filename: str) -> str:
    """Language name for ``filename`` by extension, or "text"."""
    return LANGUAGES.get(PurePath(filename).suffix.lower(), "text")


@dataclass(frozen=True)
class ProcessedOutput:
    display: str
    feedback: str
    token_count: int
    summarized: bool = False
    cache_hit: bool = False
    metadata: dict = field(default_factory=dict)


# -- Cache -------------------------------------------------------------------


@dataclass
class CacheEntry:
    value: ProcessedOutput
    created_at: float
    hit_count: int = 0


class ResultCache:
    """Fixed-capacity cache; evicts the oldest entry, expires lazily on read."""

    def __init__(
        self,
        max_size: int = DEFAULT_CACHE_SIZE,
        max_age: float = DEFAULT_CACHE_MAX_AGE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, ...], CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: tuple[str, ...]) -> ProcessedOutput | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() - entry.created_at > self.max_age:
                self._misses += 1
                return None
            entry.hit_count += 1
            self._hits += 1
            return entry.value

    def set(self, key: tuple[str, ...], value: ProcessedOutput) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k].created_at)
                del self._entries[oldest]
                logger.debug("evicted cached result %s:%s", oldest[0], oldest[1])
            self._entries[key] = CacheEntry(value, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> dict:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / lookups if lookups else 0.0,
                "max_age": self.max_age,
            }


# -- Summarizing -------------------------------------------------------------


def should_summarize(content: str) -> bool:
    return (
        content.count("\n") > SUMMARY_LINE_THRESHOLD
        or len(content) > SUMMARY_CHAR_THRESHOLD
    )


def summarize(content: str, max_length: int) -> str:
    """Shrink ``content`` to at most ``max_length`` characters.

    Keeps the first and last lines around an omission marker when that
    fits; otherwise cuts hard and appends an ellipsis.
    """
    if len(content) <= max_length:
        return content

    lines = content.split("\n")
    if len(lines) > HEAD_LINES + TAIL_LINES:
        omitted = len(lines) - HEAD_LINES - TAIL_LINES
        summary = (
            "\n".join(lines[:HEAD_LINES])
            + f"\n\n... ({omitted} lines omitted) ...\n\n"
            + "\n".join(lines[-TAIL_LINES:])
        )
        if len(summary) <= max_length:
            return summary

    return content[: max(max_length - 3, 0)] + "..."


# -- Formatting --------------------------------------------------------------


def _rule(char: str, width: int) -> str:
    return char * width


def format_file_content(content: str, metadata) -> str:
    filename = metadata.get("path", "unknown")
    language = detect_language(filename)
    header = f"File: {filename}"
    if language != "text":
        header += f" ({language})"
    body = content if content.endswith("\n") or not content else content + "\n"
    return f"{header}\n{_rule('-', 60)}\n{body}{_rule('-', 60)}\n"


def format_file_list(files: list) -> str:
    lines = ["Files and Directories:", _rule("-", 40)]
    lines += [f"  {f}" for f in files]
    lines += [_rule("-", 40), f"Total: {len(files)} items"]
    return "\n".join(lines) + "\n"


def format_search_results(results: dict) -> str:
    lines = ["Search Results:", _rule("=", 60)]
    total = 0
    for filename, matches in results.items():
        lines.append(f"\n{filename} ({len(matches)} matches):")
        for i, match in enumerate(matches, start=1):
            lines.append(f"  {i}: {match}")
        total += len(matches)
    lines += [_rule("=", 60), f"Total: {total} matches in {len(results)} files"]
    return "\n".join(lines) + "\n"


def format_write_result(value: Any, metadata) -> str:
    lines = ["Write operation completed"]
    if "path" in metadata:
        lines.append(f"Path: {metadata['path']}")
    if isinstance(value, str) and value:
        lines.append(value)
    return "\n".join(lines) + "\n"


def format_generic(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def format_result(result: ToolResult) -> str:
    """Human-readable rendering of a successful result, by tool."""
    value = result.result
    meta = result.metadata
    name = result.tool_name
    if name == "read_file" and isinstance(value, str):
        return format_file_content(value, meta)
    if name == "list_files" and isinstance(value, list):
        return format_file_list(value)
    if name == "search_files" and isinstance(value, dict):
        return format_search_results(value)
    if name in ("write_file", "edit_file"):
        return format_write_result(value, meta)
    return format_generic(value)


# -- Processor ---------------------------------------------------------------


class ResultProcessor:
    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        cache: ResultCache | None = None,
        formatter: Callable[[ToolResult], str] = format_result,
        token_counter: Callable[[str], int] = count_tokens,
    ):
        self.max_tokens = max_tokens
        self.cache = cache if cache is not None else ResultCache()
        self.formatter = formatter
        self.count_tokens = token_counter

    def _needs_summary(self, content: str) -> bool:
        return self.count_tokens(content) > self.max_tokens // 3 or should_summarize(
            content
        )

    def process(self, result: ToolResult) -> ProcessedOutput:
        # Inline and structured call ids restart at call_1 every turn.
        key = (result.tool_name, result.call_id, result.started_at.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            return replace(cached, cache_hit=True)

        summarized = False
        if result.error is not None:
            display = f"Error: {result.error}"
            feedback = f"Error executing {result.tool_name}: {result.error}"
        else:
            display = self.formatter(result)
            feedback = format_generic(result.result)
            if self._needs_summary(feedback):
                feedback = summarize(feedback, self.max_tokens // 2)
                summarized = True

        metadata = {
            "tool": result.tool_name,
            "duration": round(result.duration, 3),
            "timestamp": result.started_at.isoformat(),
        }
        if result.error is not None:
            metadata["error_kind"] = result.error.kind
        path = result.metadata.get("path")
        if isinstance(path, str):
            metadata["path"] = path
            metadata["language"] = detect_language(path)

        output = ProcessedOutput(
            display=display,
            feedback=feedback,
            token_count=self.count_tokens(feedback),
            summarized=summarized,
            metadata=metadata,
        )
        self.cache.set(key, output)
        return output

    def stats(self) -> dict:
        return self.cache.stats()

    def clear(self) -> None:
        self.cache.clear()


def tool_messages(results: list[ToolResult], processor: ResultProcessor, order=None):
    """Role="tool" messages for ``results``.

    ``order`` is the list of call ids as the assistant issued them; when
    given, messages follow it instead of completion order.
    """
    if order is not None:
        position = {call_id: i for i, call_id in enumerate(order)}
        results = sorted(results, key=lambda r: position.get(r.call_id, len(position)))
    return [
        {
            "role": "tool",
            "tool_call_id": r.call_id,
            "content": processor.process(r).feedback,
        }
        for r in results
    ]
