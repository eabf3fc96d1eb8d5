"""Tool definitions, the tool registry, and the filesystem sandbox."""

import fnmatch
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Any, Callable

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read the contents of a file or list a directory. "
                "For files, returns lines prefixed with line numbers. "
                "Use offset/limit to paginate. "
                "For directories, returns a listing with / suffix for subdirectories."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file or directory to read.",
                    },
                    "offset": {
                        "type": "integer",
                        "description": "1-based line number to start reading from. Defaults to 1.",
                        "default": 1,
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum number of lines to return. Defaults to 2000.",
                        "default": 2000,
                    },
                },
                "required": ["file_path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Create or overwrite a file with the given content, creating parent directories as needed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["file_path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "edit_file",
            "description": (
                "Make a targeted edit to an existing file by replacing old_string with new_string. "
                "old_string must match exactly and, unless replace_all is set, only once. "
                "For creating new files, use write_file instead."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "file_path": {
                        "type": "string",
                        "description": "Path to the file to edit.",
                    },
                    "old_string": {
                        "type": "string",
                        "description": "The exact text to find and replace.",
                    },
                    "new_string": {
                        "type": "string",
                        "description": "The replacement text.",
                    },
                    "replace_all": {
                        "type": "boolean",
                        "description": "Replace all occurrences.",
                        "default": False,
                    },
                },
                "required": ["file_path", "old_string", "new_string"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": (
                "Recursively list files matching a glob pattern. "
                "Returns paths sorted by modification time (newest first), "
                "relative to the base directory."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": (
                            'Glob pattern to match files, e.g. "**/*.py", '
                            '"src/**/*.ts".'
                        ),
                    },
                    "path": {
                        "type": "string",
                        "description": (
                            "Directory to search in, relative to base directory. "
                            'Defaults to "." (base directory).'
                        ),
                        "default": ".",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": (
                "Search file contents for a regex pattern. "
                "Returns matching lines grouped by file, with line numbers."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Python regex pattern to search for.",
                    },
                    "directory": {
                        "type": "string",
                        "description": (
                            "Directory to search in, relative to base directory. "
                            'Defaults to "." (base directory).'
                        ),
                        "default": ".",
                    },
                    "include": {
                        "type": "string",
                        "description": 'Glob pattern to filter filenames, e.g. "*.py".',
                    },
                },
                "required": ["pattern"],
            },
        },
    },
]

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_SEARCH_MATCHES = 100

DENIED_PATHS = ("/etc", "/sys", "/proc", "/dev", "/root", "/boot", "~/.ssh", "~/.gnupg")


# --- Sandbox ---


def safe_resolve(
    file_path: str,
    base_dir: str,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> Path:
    """Resolve a file path, ensuring it stays within allowed roots.

    Resolves symlinks for both the base directory and the target path,
    then checks containment against base_dir first, then each extra root.

    When unrestricted is True, resolves the path but skips containment checks.

    Raises:
        ValueError: If the resolved path escapes all allowed roots (when not unrestricted).
    """
    base = Path(base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted:
        # Even in unrestricted mode, block the filesystem root
        if resolved == Path(resolved.anchor):
            raise ValueError(
                f"Path {file_path!r} resolves to the filesystem root, "
                f"which is not allowed even in unrestricted mode"
            )
        return resolved

    if resolved.is_relative_to(base):
        return resolved
    for root in extra_roots:
        if resolved.is_relative_to(root):
            return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


class PathValidator:
    """Security policy applied to every path-like tool argument before approval."""

    def __init__(
        self,
        base_dir: str,
        extra_roots: list[Path] = (),
        unrestricted: bool = False,
        denied_paths: tuple[str, ...] = DENIED_PATHS,
    ):
        self.base_dir = base_dir
        self.extra_roots = list(extra_roots)
        self.unrestricted = unrestricted
        self.denied = [Path(p).expanduser() for p in denied_paths]

    def validate_path(self, path: str) -> Path:
        """Return the resolved path, or raise ValueError if it is not allowed."""
        if not isinstance(path, str) or not path:
            raise ValueError("path must be a non-empty string")
        if "\x00" in path:
            raise ValueError("path contains a NUL byte")
        resolved = safe_resolve(
            path, self.base_dir, self.extra_roots, unrestricted=self.unrestricted
        )
        if self.unrestricted:
            for denied in self.denied:
                if resolved.is_relative_to(denied):
                    raise ValueError(f"access to {denied} is denied")
        return resolved


def _check_pattern(pattern: str) -> None:
    """Reject glob patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        raise ValueError(f"pattern {pattern!r} must be relative, not absolute")
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        raise ValueError(f"pattern {pattern!r} contains '..', which is not allowed")


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


def _walk(root: Path):
    """Yield files under root, pruning .git directories."""
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            yield Path(dirpath) / filename


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


# --- Tool implementations ---


def _read_file(
    file_path: str,
    base_dir: str,
    offset: int = 1,
    limit: int = 2000,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> str:
    """Read a file as numbered lines, or list a directory."""
    resolved = safe_resolve(file_path, base_dir, extra_roots, unrestricted)
    if not resolved.exists():
        raise FileNotFoundError(f"path does not exist: {file_path}")

    if resolved.is_dir():
        names = [
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(resolved.iterdir())
        ]
        return "\n".join(names)

    if _is_binary(resolved):
        raise ValueError(f"binary file detected: {file_path}")
    lines = resolved.read_text(encoding="utf-8").splitlines()

    start = max(int(offset) - 1, 0)
    selected = lines[start : start + int(limit)]

    output_parts = []
    total_bytes = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        total_bytes += len(numbered.encode("utf-8")) + 1
        if total_bytes > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)

    remaining = len(lines) - (start + len(output_parts))
    result = "\n".join(output_parts)
    if remaining > 0:
        next_offset = start + len(output_parts) + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return result


def _write_file(
    file_path: str,
    content: str,
    base_dir: str,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> str:
    """Create or overwrite a file with content."""
    resolved = safe_resolve(file_path, base_dir, extra_roots, unrestricted)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


def _edit_file(
    file_path: str,
    old_string: str,
    new_string: str,
    base_dir: str,
    replace_all: bool = False,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> str:
    """Replace old_string with new_string in an existing file."""
    resolved = safe_resolve(file_path, base_dir, extra_roots, unrestricted)
    if not resolved.is_file():
        raise FileNotFoundError(f"file does not exist: {file_path}")
    if not old_string:
        raise ValueError("old_string must not be empty")

    content = resolved.read_text(encoding="utf-8")
    count = content.count(old_string)
    if count == 0:
        raise ValueError(f"old_string not found in {file_path}")
    if count > 1 and not replace_all:
        raise ValueError(
            f"old_string appears {count} times in {file_path}; "
            "add more context or set replace_all"
        )
    if replace_all:
        new_content = content.replace(old_string, new_string)
    else:
        new_content = content.replace(old_string, new_string, 1)
    resolved.write_text(new_content, encoding="utf-8")
    return f"Edited {file_path} ({count if replace_all else 1} replacement(s))"


def _list_files(
    pattern: str,
    path: str,
    base_dir: str,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> list[str]:
    """Recursively list files matching a glob pattern, newest first."""
    _check_pattern(pattern)
    root = safe_resolve(path, base_dir, extra_roots, unrestricted)
    if not root.is_dir():
        raise NotADirectoryError(f"path is not a directory: {path}")

    matched = [
        f for f in _walk(root) if PurePath(f.relative_to(root)).full_match(pattern)
    ]
    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    base = Path(base_dir).resolve()
    return [_relative(f, base) for f in matched[:MAX_LIST_RESULTS]]


def _search_files(
    pattern: str,
    directory: str,
    base_dir: str,
    include: str | None = None,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
) -> dict[str, list[str]]:
    """Search file contents for a regex. Returns {path: ["Line N: text", ...]}."""
    if include is not None:
        _check_pattern(include)
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"invalid regex {pattern!r}: {exc}") from exc

    root = safe_resolve(directory, base_dir, extra_roots, unrestricted)
    if not root.is_dir():
        raise NotADirectoryError(f"path is not a directory: {directory}")
    base = Path(base_dir).resolve()

    results: dict[str, list[str]] = {}
    found = 0
    for filepath in sorted(_walk(root)):
        if include and not fnmatch.fnmatch(filepath.name, include):
            continue
        try:
            if _is_binary(filepath):
                continue
            text = filepath.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                results.setdefault(_relative(filepath, base), []).append(
                    f"Line {line_no}: {line[:MAX_LINE_LENGTH]}"
                )
                found += 1
                if found >= MAX_SEARCH_MATCHES:
                    return results
    return results


# --- Registry ---


@dataclass(frozen=True)
class Tool:
    name: str
    handler: Callable[[dict], Any]
    schema: dict = field(default_factory=dict)

    @property
    def required(self) -> list[str]:
        return self.schema.get("function", {}).get("parameters", {}).get("required", [])


class ToolRegistry:
    """Name -> Tool lookup shared by the orchestrator and the LLM request builder."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._lock = threading.Lock()

    def register(self, name: str, handler: Callable[[dict], Any], schema: dict | None = None):
        with self._lock:
            self._tools[name] = Tool(name, handler, schema or {})

    def get(self, name: str) -> Tool:
        """Raises KeyError if the tool is not registered."""
        with self._lock:
            try:
                return self._tools[name]
            except KeyError:
                raise KeyError(f"Unknown tool: {name!r}") from None

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._tools)

    def schemas(self) -> list[dict]:
        with self._lock:
            return [t.schema for t in self._tools.values() if t.schema]

    def execute(self, ctx, name: str, args: dict) -> Any:
        if ctx is not None:
            ctx.raise_if_cancelled()
        return self.get(name).handler(args)


def build_registry(
    base_dir: str,
    extra_roots: list[Path] = (),
    unrestricted: bool = False,
    deny_tools: list[str] | None = None,
) -> ToolRegistry:
    """Register the built-in file tools, bound to ``base_dir``."""
    roots = dict(extra_roots=list(extra_roots), unrestricted=unrestricted)
    handlers = {
        "read_file": lambda a: _read_file(
            a["file_path"], base_dir, a.get("offset", 1), a.get("limit", 2000), **roots
        ),
        "write_file": lambda a: _write_file(
            a["file_path"], a["content"], base_dir, **roots
        ),
        "edit_file": lambda a: _edit_file(
            a["file_path"],
            a["old_string"],
            a["new_string"],
            base_dir,
            replace_all=a.get("replace_all", False),
            **roots,
        ),
        "list_files": lambda a: _list_files(
            a["pattern"], a.get("path", "."), base_dir, **roots
        ),
        "search_files": lambda a: _search_files(
            a["pattern"], a.get("directory", "."), base_dir, a.get("include"), **roots
        ),
    }
    denied = set(deny_tools or ())
    registry = ToolRegistry()
    for schema in TOOLS:
        name = schema["function"]["name"]
        if name not in denied:
            registry.register(name, handlers[name], schema)
    return registry
