"""Approval gate: decides whether a tool call may run.

Rules live in an ApprovalState owned by the caller and passed in at
construction, so several gates (or a gate and the REPL) can share them.
The interactive prompt is the only place a decision can block; rule
locks are never held while waiting for the user.
"""

import enum
import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Mapping

from . import fmt
from .errors import ApprovalRejected

logger = logging.getLogger(__name__)

SAFE_OPERATIONS = frozenset({"read_file", "list_files", "search_files", "get_info"})
PATH_KEYS = ("file_path", "path")

MAX_VALUE_DISPLAY = 100
DEFAULT_HISTORY_LIMIT = 1000


class ApprovalMode(str, enum.Enum):
    ALL = "all"
    NONE = "none"
    WRITE = "write"
    INTERACTIVE = "interactive"


class RuleScope(str, enum.Enum):
    GLOBAL = "global"
    PATH = "path"
    SESSION = "session"


@dataclass(frozen=True)
class ApprovalRule:
    scope: RuleScope
    approved: bool
    tool: str | None = None
    pattern: str | None = None
    session_id: str | None = None

    @classmethod
    def global_rule(cls, tool: str, approved: bool) -> "ApprovalRule":
        return cls(RuleScope.GLOBAL, approved, tool=tool)

    @classmethod
    def path_rule(cls, pattern: str, approved: bool) -> "ApprovalRule":
        return cls(RuleScope.PATH, approved, pattern=pattern)

    @classmethod
    def session_rule(cls, session_id: str, tool: str, approved: bool) -> "ApprovalRule":
        return cls(RuleScope.SESSION, approved, tool=tool, session_id=session_id)

    def describe(self) -> str:
        verdict = "allow" if self.approved else "deny"
        if self.scope is RuleScope.GLOBAL:
            return f"{verdict} {self.tool} (always)"
        if self.scope is RuleScope.PATH:
            return f"{verdict} paths under {self.pattern}"
        return f"{verdict} {self.tool} (session {self.session_id})"


@dataclass(frozen=True)
class ApprovalRecord:
    tool: str
    parameters: Mapping[str, Any]
    approved: bool
    reason: str
    mode: ApprovalMode
    session_id: str | None = None
    automatic: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "tool": self.tool,
            "parameters": dict(self.parameters),
            "approved": self.approved,
            "reason": self.reason,
            "mode": self.mode.value,
            "session_id": self.session_id,
            "automatic": self.automatic,
        }


class ApprovalState:
    """Rule tables and the bounded decision history, behind one lock."""

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self._lock = threading.Lock()
        self._global: dict[str, bool] = {}
        self._paths: dict[str, bool] = {}
        self._sessions: dict[str, dict[str, bool]] = {}
        self._history: deque[ApprovalRecord] = deque(maxlen=history_limit)
        self.appended = 0

    def add_rule(self, rule: ApprovalRule) -> None:
        with self._lock:
            if rule.scope is RuleScope.GLOBAL:
                self._global[rule.tool] = rule.approved
            elif rule.scope is RuleScope.PATH:
                self._paths[rule.pattern] = rule.approved
            else:
                self._sessions.setdefault(rule.session_id, {})[rule.tool] = (
                    rule.approved
                )

    def rules(self) -> list[ApprovalRule]:
        with self._lock:
            out = [
                ApprovalRule.session_rule(sid, tool, ok)
                for sid, tools in self._sessions.items()
                for tool, ok in tools.items()
            ]
            out += [ApprovalRule.path_rule(p, ok) for p, ok in self._paths.items()]
            out += [ApprovalRule.global_rule(t, ok) for t, ok in self._global.items()]
        return out

    def session_decision(self, session_id: str | None, tool: str) -> bool | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.get(session_id, {}).get(tool)

    def path_decision(self, path: str | None) -> tuple[str, bool] | None:
        if not path:
            return None
        with self._lock:
            for pattern, approved in self._paths.items():
                if path.startswith(pattern):
                    return pattern, approved
        return None

    def global_decision(self, tool: str) -> bool | None:
        with self._lock:
            return self._global.get(tool)

    def has_scoped_rules(self, tool: str) -> bool:
        """Whether any path rule, or any session rule for ``tool``, exists."""
        with self._lock:
            if self._paths:
                return True
            return any(tool in tools for tools in self._sessions.values())

    def append(self, record: ApprovalRecord) -> None:
        with self._lock:
            self._history.append(record)
            self.appended += 1

    def history(self) -> list[ApprovalRecord]:
        with self._lock:
            return list(self._history)

    def records_since(self, mark: int) -> list[ApprovalRecord]:
        """Records appended after ``appended`` was ``mark`` and still retained."""
        with self._lock:
            new = min(self.appended - mark, len(self._history))
            if new <= 0:
                return []
            return list(self._history)[-new:]

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()


def risk_level(tool: str) -> str:
    if tool in ("delete_file", "remove_directory"):
        return "HIGH - Permanent data loss"
    if tool in ("write_file", "edit_file"):
        return "MEDIUM - Data modification"
    if tool == "create_directory":
        return "LOW - Filesystem change"
    return "MINIMAL - Read-only operation"


def operation_impact(tool: str, params: Mapping[str, Any]) -> str:
    path = params.get("file_path")
    if not isinstance(path, str):
        return ""
    if tool == "write_file":
        return f"Will create or overwrite file: {path}"
    if tool == "edit_file":
        return f"Will modify existing file: {path}"
    if tool == "delete_file":
        return f"Will permanently delete: {path}"
    return ""


def format_value(value: Any) -> str:
    if isinstance(value, str):
        if len(value) > MAX_VALUE_DISPLAY:
            return value[: MAX_VALUE_DISPLAY - 3] + "..."
        return value
    return str(value)


def extract_paths(params: Mapping[str, Any]) -> list[str]:
    """Every non-empty path-like parameter, in PATH_KEYS order."""
    return [
        value
        for key in PATH_KEYS
        if isinstance(value := params.get(key), str) and value
    ]


def match_path_rules(state: ApprovalState, params: Mapping[str, Any]) -> tuple[str, bool] | None:
    """Path rule decision over all path parameters. A denial on any path wins."""
    first = None
    for path in extract_paths(params):
        match = state.path_decision(path)
        if match is None:
            continue
        if not match[1]:
            return match
        if first is None:
            first = match
    return first


def _read_response(prompt_text: str) -> str:
    """Read one answer from the terminal, or from stdin when piped."""
    if sys.stdin is not None and sys.stdin.isatty():
        from prompt_toolkit import prompt

        return prompt(prompt_text)
    sys.stderr.write(prompt_text)
    sys.stderr.flush()
    line = sys.stdin.readline() if sys.stdin is not None else ""
    if not line:
        raise EOFError("stdin closed")
    return line


class ApprovalGate:
    def __init__(
        self,
        mode: ApprovalMode = ApprovalMode.INTERACTIVE,
        state: ApprovalState | None = None,
        input_func: Callable[[str], str] | None = None,
    ):
        self._mode = ApprovalMode(mode)
        self.state = state if state is not None else ApprovalState()
        self._input = input_func or _read_response

    @property
    def mode(self) -> ApprovalMode:
        return self._mode

    def set_mode(self, mode: ApprovalMode | str) -> None:
        self._mode = ApprovalMode(mode)

    def history(self) -> list[ApprovalRecord]:
        return self.state.history()

    def clear_history(self) -> None:
        self.state.clear_history()

    def record(
        self,
        tool: str,
        params: Mapping[str, Any],
        approved: bool,
        reason: str,
        *,
        session_id: str | None = None,
        automatic: bool = True,
    ) -> None:
        logger.debug("approval %s: %s (%s)", tool, approved, reason)
        self.state.append(
            ApprovalRecord(
                tool=tool,
                parameters=MappingProxyType(dict(params)),
                approved=approved,
                reason=reason,
                mode=self._mode,
                session_id=session_id,
                automatic=automatic,
            )
        )

    def is_auto_approved(self, tool: str) -> bool:
        """Fast path: True only when decide() would surely approve without asking.

        Conservative whenever a path rule or a session rule for the tool
        exists, since those depend on parameters or context.
        """
        mode = self._mode
        if mode is ApprovalMode.NONE:
            return False
        if mode is ApprovalMode.ALL:
            return True
        if self.state.has_scoped_rules(tool):
            return False
        decision = self.state.global_decision(tool)
        if decision is not None:
            return decision
        return tool in SAFE_OPERATIONS

    def decide(self, ctx, tool: str, params: Mapping[str, Any]) -> bool:
        """Return whether the call may proceed. Records exactly one decision.

        Raises ApprovalRejected if no answer could be read, and the
        context's CancellationError if it was cancelled first.
        """
        mode = self._mode
        if mode is ApprovalMode.ALL:
            self.record(tool, params, True, "auto-approved (mode: all)")
            return True
        if mode is ApprovalMode.NONE:
            self.record(tool, params, False, "auto-rejected (mode: none)")
            return False
        if mode is ApprovalMode.WRITE and tool in SAFE_OPERATIONS:
            self.record(tool, params, True, "auto-approved (read operation)")
            return True
        return self._evaluate(ctx, tool, params)

    def _evaluate(self, ctx, tool: str, params: Mapping[str, Any]) -> bool:
        session_id = getattr(ctx, "session_id", None)

        def decided(approved: bool, reason: str) -> bool:
            self.record(tool, params, approved, reason, session_id=session_id)
            return approved

        approved = self.state.session_decision(session_id, tool)
        if approved is not None:
            return decided(approved, f"session rule ({session_id})")

        match = match_path_rules(self.state, params)
        if match is not None:
            pattern, approved = match
            return decided(approved, f"path rule ({pattern})")

        approved = self.state.global_decision(tool)
        if approved is not None:
            return decided(approved, "global rule")

        if tool in SAFE_OPERATIONS:
            return decided(True, "auto-approved (safe operation)")

        return self._ask(ctx, tool, params, session_id)

    def _ask(self, ctx, tool: str, params: Mapping[str, Any], session_id) -> bool:
        def answered(approved: bool, reason: str) -> bool:
            self.record(
                tool, params, approved, reason, session_id=session_id, automatic=False
            )
            return approved

        fmt.approval_request(
            tool,
            risk_level(tool),
            {k: format_value(v) for k, v in params.items()},
            operation_impact(tool, params),
        )
        while True:
            if ctx is not None:
                ctx.raise_if_cancelled()
            try:
                response = self._input("Choice: ")
            except EOFError as e:
                self.record(
                    tool,
                    params,
                    False,
                    "no response (input closed)",
                    session_id=session_id,
                )
                raise ApprovalRejected(f"approval input unavailable: {e}") from e
            answer = response.strip().lower()

            if answer in ("y", "yes"):
                return answered(True, "user approved")
            if answer in ("n", "no"):
                return answered(False, "user rejected")
            if answer in ("a", "always"):
                self.state.add_rule(ApprovalRule.global_rule(tool, True))
                return answered(True, "user approved (always)")
            if answer == "never":
                self.state.add_rule(ApprovalRule.global_rule(tool, False))
                return answered(False, "user rejected (never)")
            if answer == "session":
                if session_id:
                    self.state.add_rule(
                        ApprovalRule.session_rule(session_id, tool, True)
                    )
                    return answered(True, "user approved (session)")
                fmt.warning("No active session for session-specific approval")
                continue
            fmt.warning("Invalid response. Please enter y/n/a/never/session")
