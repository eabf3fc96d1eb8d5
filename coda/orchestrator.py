"""Validate, approve and execute one turn's batch of tool calls.

Preparation (argument parsing, path validation, approval) runs on the
caller's thread, one call at a time, so an interactive prompt never holds
a worker slot. Approved calls are handed to a bounded thread pool as soon
as they clear the gate; results are collected as they finish.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping

from . import fmt
from .approval import ApprovalGate
from .context import Context
from .errors import (
    ApprovalRejected,
    CancellationError,
    ExecutionError,
    ParseError,
    ToolError,
    ValidationError,
)
from .models import ToolCall
from .tools import PathValidator, ToolRegistry

logger = logging.getLogger(__name__)

PATH_PARAMS = ("path", "file_path", "directory")

DEFAULT_CONCURRENCY = 5
DEFAULT_TIMEOUT = 120.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay(self, failed_attempt: int) -> float:
        """Seconds to wait after ``failed_attempt`` (1-based) before the next one."""
        return self.base_delay * (failed_attempt - 1) * self.backoff_multiplier


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    result: Any = None
    error: ToolError | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration: float = 0.0
    arguments: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def ok(self) -> bool:
        return self.error is None


class _Clock:
    def __init__(self):
        self.started_at = datetime.now(timezone.utc)
        self._t0 = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self._t0


class ToolExecutionOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        validator: PathValidator | None,
        gate: ApprovalGate,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: float | None = DEFAULT_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        verbose: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.registry = registry
        self.validator = validator
        self.gate = gate
        self.concurrency = concurrency
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.verbose = verbose
        self._lock = threading.Lock()
        self._recorded: list[ToolResult] = []

    def execute(self, ctx: Context, calls: list[ToolCall]) -> list[ToolResult]:
        """Run every call and return exactly one ToolResult per call.

        Results arrive in completion order; correlate them by ``call_id``.
        Raises CancellationError only when ``ctx`` is already done before
        any work starts.
        """
        ctx.raise_if_cancelled()
        if not calls:
            return []
        batch = ctx.with_timeout(self.timeout)

        results: list[ToolResult] = []
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="coda-tool"
        ) as pool:
            futures = []
            for call in calls:
                prepared = self._prepare(batch, call)
                if isinstance(prepared, ToolResult):
                    results.append(prepared)
                    continue
                params, meta, clock = prepared
                futures.append(pool.submit(self._run, batch, call, params, meta, clock))
            for future in as_completed(futures):
                results.append(future.result())

        with self._lock:
            self._recorded.extend(results)
        return results

    # -- preparation (caller thread) -----------------------------------------

    def _prepare(self, ctx: Context, call: ToolCall):
        clock = _Clock()
        params = None

        def failed(err: ToolError, meta: dict | None = None) -> ToolResult:
            logger.debug("call %s (%s) stopped: %s", call.id, call.name, err)
            return self._result(call, clock, params, error=err, meta=meta or {})

        err = ctx.error()
        if err is not None:
            return failed(err)

        try:
            params = _parse_arguments(call.arguments)
        except ParseError as e:
            return failed(e)

        meta: dict[str, Any] = {}
        path = next(
            (params[k] for k in PATH_PARAMS if isinstance(params.get(k), str)), None
        )
        if path is not None:
            meta["path"] = path

        try:
            self._validate(call.name, params)
        except ValidationError as e:
            return failed(e, meta)

        try:
            if self.gate.is_auto_approved(call.name):
                self.gate.record(
                    call.name,
                    params,
                    True,
                    "auto-approved (fast path)",
                    session_id=ctx.session_id,
                )
                meta["approval"] = "auto"
            elif self.gate.decide(ctx, call.name, params):
                meta["approval"] = "granted"
            else:
                return failed(
                    ApprovalRejected(f"{call.name} was not approved"), meta
                )
        except ToolError as e:
            return failed(e, meta)

        return params, meta, clock

    def _validate(self, name: str, params: dict) -> None:
        try:
            tool = self.registry.get(name)
        except KeyError:
            raise ValidationError(f"tool not found: {name}") from None
        missing = [k for k in tool.required if k not in params]
        if missing:
            raise ValidationError(
                f"missing required argument(s) for {name}: {', '.join(missing)}"
            )
        if self.validator is None:
            return
        for key in PATH_PARAMS:
            value = params.get(key)
            if value is None:
                continue
            try:
                self.validator.validate_path(value)
            except (ValueError, OSError) as e:
                raise ValidationError(f"invalid {key}: {e}") from e

    # -- execution (worker thread) -------------------------------------------

    def _run(
        self, ctx: Context, call: ToolCall, params: dict, meta: dict, clock: _Clock
    ) -> ToolResult:
        policy = self.retry_policy
        attempts = 0
        last: Exception | None = None
        try:
            for attempt in range(1, policy.max_attempts + 1):
                ctx.raise_if_cancelled()
                attempts = attempt
                try:
                    value = self.registry.execute(ctx, call.name, params)
                except CancellationError:
                    raise
                except Exception as e:
                    last = e
                    logger.debug(
                        "%s attempt %d/%d failed: %s",
                        call.name,
                        attempt,
                        policy.max_attempts,
                        e,
                    )
                    if attempt < policy.max_attempts:
                        delay = policy.delay(attempt)
                        if self.verbose:
                            fmt.retry_notice(
                                call.name, attempt, policy.max_attempts, delay, str(e)
                            )
                        if delay > 0 and ctx.wait(delay):
                            ctx.raise_if_cancelled()
                    continue
                meta["attempts"] = attempts
                # A successful result is never None.
                if value is None:
                    value = ""
                return self._result(call, clock, params, value=value, meta=meta)
        except CancellationError as e:
            meta["attempts"] = attempts
            return self._result(call, clock, params, error=e, meta=meta)

        meta["attempts"] = attempts
        err = ExecutionError(f"failed after {attempts} attempts: {last}", attempts)
        err.__cause__ = last
        return self._result(call, clock, params, error=err, meta=meta)

    def _result(self, call, clock, params, *, value=None, error=None, meta):
        return ToolResult(
            call_id=call.id,
            tool_name=call.name,
            result=None if error is not None else value,
            error=error,
            started_at=clock.started_at,
            duration=clock.elapsed(),
            arguments=MappingProxyType(dict(params)) if params is not None else None,
            metadata=MappingProxyType(dict(meta)),
        )

    # -- statistics ----------------------------------------------------------

    def recorded(self) -> list[ToolResult]:
        with self._lock:
            return list(self._recorded)

    def clear_statistics(self) -> None:
        with self._lock:
            self._recorded.clear()

    def statistics(self) -> dict:
        return summarize_results(self.recorded())


def _parse_arguments(raw: str) -> dict:
    if raw is None or not raw.strip():
        return {}
    try:
        params = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid tool arguments: {e}") from e
    if not isinstance(params, dict):
        raise ParseError(
            f"tool arguments must be a JSON object, got {type(params).__name__}"
        )
    return params


def summarize_results(results: list[ToolResult]) -> dict:
    """Totals, per-tool usage, error count and mean duration over ``results``."""
    usage: dict[str, int] = {}
    errors = 0
    total = 0.0
    for r in results:
        usage[r.tool_name] = usage.get(r.tool_name, 0) + 1
        if r.error is not None:
            errors += 1
        total += r.duration
    return {
        "total_executions": len(results),
        "tool_usage": usage,
        "error_count": errors,
        "avg_duration": total / len(results) if results else 0.0,
    }
