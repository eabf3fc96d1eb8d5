"""Configuration file loading and merging for coda.

Reads TOML config from ~/.config/coda/config.toml (global) and
<base_dir>/coda.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "tool_protocol": str,
    "approval_mode": str,
    "auto_approve": list,
    "deny_tools": list,
    "approve_paths": list,
    "deny_paths": list,
    "concurrency": int,
    "tool_timeout": (int, float),
    "retry_max_attempts": int,
    "retry_base_delay": (int, float),
    "retry_backoff": (int, float),
    "cache_size": int,
    "cache_max_age": (int, float),
    "max_feedback_tokens": int,
    "approval_history_limit": int,
    "yolo": bool,
    "allowed_dirs": list,
    "color": bool,
    "quiet": bool,
    "debug": bool,
}

_LIST_OF_STR_KEYS = {
    "auto_approve",
    "deny_tools",
    "approve_paths",
    "deny_paths",
    "allowed_dirs",
}

_CHOICES: dict[str, tuple[str, ...]] = {
    "tool_protocol": ("native", "inline", "structured"),
    "approval_mode": ("all", "none", "write", "interactive"),
}

_POSITIVE_KEYS = {
    "max_turns",
    "concurrency",
    "retry_max_attempts",
    "cache_size",
    "max_feedback_tokens",
    "approval_history_limit",
}

# Config key -> argparse dest (only where they differ)
_CONFIG_TO_ARGPARSE: dict[str, str] = {
    "allowed_dirs": "add_dir",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 32768,
    "temperature": None,
    "max_turns": 100,
    "system_prompt": None,
    "tool_protocol": "native",
    "approval_mode": "interactive",
    "auto_approve": [],
    "deny_tools": [],
    "approve_paths": [],
    "deny_paths": [],
    "concurrency": 5,
    "tool_timeout": 120.0,
    "retry_max_attempts": 3,
    "retry_base_delay": 1.0,
    "retry_backoff": 2.0,
    "cache_size": 100,
    "cache_max_age": 1800.0,
    "max_feedback_tokens": 16000,
    "approval_history_limit": 1000,
    "yolo": False,
    "add_dir": [],
    "color": False,
    "no_color": False,
    "quiet": False,
    "debug": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "coda"
    return Path.home() / ".config" / "coda"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _CHOICES and value not in _CHOICES[key]:
            raise ConfigError(
                f"{source}: {key!r} must be one of {', '.join(_CHOICES[key])}, got {value!r}"
            )

        if key in _POSITIVE_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory.

    Applies expanduser() before checking is_absolute(), so that ~/... paths
    expand to the user's home directory instead of becoming <config_dir>/~/...
    """
    if "allowed_dirs" in config:
        resolved = []
        for p in config["allowed_dirs"]:
            expanded = Path(p).expanduser()
            if expanded.is_absolute():
                resolved.append(str(expanded))
            else:
                resolved.append(str(config_dir / p))
        config["allowed_dirs"] = resolved


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "coda.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, maps to the argparse dest name and checks if
    the value is still _UNSET. If so, applies the config value. After
    processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """
    # Dests that use None as sentinel (argparse append actions can't use _UNSET)
    _NONE_SENTINEL_DESTS = {"add_dir", "auto_approve", "deny_tools"}

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest in _NONE_SENTINEL_DESTS:
            return val is None
        return val is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue

        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    quiet -> verbose (inverted); allowed_dirs -> allowed_dirs as-is.
    Drops keys that aren't Session concerns (color, debug).
    """
    kwargs = {}
    _DROP_KEYS = {"color", "debug"}
    _INVERT_KEYS = {"quiet": "verbose"}

    for key, value in config.items():
        if key in _DROP_KEYS:
            continue
        if key in _INVERT_KEYS:
            kwargs[_INVERT_KEYS[key]] = not value
        else:
            kwargs[key] = value

    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# coda configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/coda.toml' if project else '~/.config/coda/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "openrouter" | "generic"',
        '# model = "qwen/qwen3-235b-a22b"',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 32768",
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 50",
        '# system_prompt = "You are a helpful assistant."',
        '# tool_protocol = "native"       # "native" | "inline" | "structured"',
        "",
        "# --- Approval ---",
        '# approval_mode = "interactive"  # "all" | "none" | "write" | "interactive"',
        '# auto_approve = ["edit_file"]',
        '# approve_paths = ["src/"]',
        '# deny_paths = ["secrets/"]',
        "# approval_history_limit = 1000",
        "",
        "# --- Tool execution ---",
        '# deny_tools = ["write_file"]',
        "# concurrency = 5",
        "# tool_timeout = 120",
        "# retry_max_attempts = 3",
        "# retry_base_delay = 1.0",
        "# retry_backoff = 2.0",
        "",
        "# --- Tool results ---",
        "# cache_size = 100",
        "# cache_max_age = 1800",
        "# max_feedback_tokens = 16000",
        "",
        "# --- Sandbox / security ---",
        "# yolo = false",
        '# allowed_dirs = ["../shared-lib", "/data/assets"]',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "# debug = false",
        "",
    ]
    return "\n".join(lines)
