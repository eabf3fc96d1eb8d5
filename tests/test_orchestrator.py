"""Tests for ToolExecutionOrchestrator: validation, approval, retries, concurrency."""

import json
import threading
import time

import pytest

from coda.approval import ApprovalGate, ApprovalMode, ApprovalRule, ApprovalState
from coda.context import Context
from coda.errors import (
    ApprovalRejected,
    CancellationError,
    DeadlineExceeded,
    ExecutionError,
    ParseError,
    ValidationError,
)
from coda.models import ToolCall
from coda.orchestrator import (
    RetryPolicy,
    ToolExecutionOrchestrator,
    ToolResult,
    _parse_arguments,
    summarize_results,
)
from coda.tools import PathValidator, ToolRegistry, build_registry


def _call(name, args, id=None, index=0):
    raw = args if isinstance(args, str) else json.dumps(args)
    return ToolCall(id or f"call_{index + 1}", name, raw, index)


def _no_input(prompt):
    raise AssertionError("the user should not have been asked")


class Flaky:
    """Handler that fails ``failures`` times before returning ``value``."""

    def __init__(self, failures, value="ok"):
        self.failures = failures
        self.value = value
        self.calls = 0
        self.times = []

    def __call__(self, args):
        self.calls += 1
        self.times.append(time.monotonic())
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        return self.value


def _orchestrator(tmp_path, registry=None, mode=ApprovalMode.ALL, **kwargs):
    registry = registry or build_registry(str(tmp_path))
    gate = kwargs.pop("gate", None) or ApprovalGate(mode, input_func=_no_input)
    kwargs.setdefault("retry_policy", RetryPolicy(3, 0.01, 2.0))
    return ToolExecutionOrchestrator(
        registry, PathValidator(str(tmp_path)), gate, **kwargs
    )


def _by_id(results):
    return {r.call_id: r for r in results}


@pytest.fixture
def ctx():
    return Context.background("sess")


# ===========================================================================
# Basics
# ===========================================================================


class TestExecute:
    def test_empty_batch(self, tmp_path, ctx):
        assert _orchestrator(tmp_path).execute(ctx, []) == []

    def test_cancelled_before_start_raises(self, tmp_path):
        ctx = Context.background()
        ctx.cancel()
        with pytest.raises(CancellationError):
            _orchestrator(tmp_path).execute(ctx, [_call("read_file", {"file_path": "a"})])

    def test_one_result_per_call(self, tmp_path, ctx):
        (tmp_path / "a.txt").write_text("alpha\n")
        calls = [
            _call("read_file", {"file_path": "a.txt"}, index=0),
            _call("list_files", {"pattern": "*.txt"}, index=1),
            _call("nope", {}, index=2),
        ]
        results = _orchestrator(tmp_path).execute(ctx, calls)
        assert sorted(r.call_id for r in results) == ["call_1", "call_2", "call_3"]

    def test_successful_result(self, tmp_path, ctx):
        (tmp_path / "a.txt").write_text("alpha\n")
        (r,) = _orchestrator(tmp_path).execute(
            ctx, [_call("read_file", {"file_path": "a.txt"})]
        )
        assert r.ok
        assert r.result == "1: alpha"
        assert r.tool_name == "read_file"
        assert r.arguments["file_path"] == "a.txt"
        assert r.metadata["attempts"] == 1
        assert r.metadata["path"] == "a.txt"
        assert r.metadata["approval"] == "auto"
        assert r.duration >= 0

    def test_none_return_becomes_empty_result(self, tmp_path, ctx):
        registry = ToolRegistry()
        registry.register("noop", lambda args: None)
        (r,) = _orchestrator(tmp_path, registry=registry).execute(
            ctx, [_call("noop", {})]
        )
        assert r.ok
        assert r.error is None
        assert r.result == ""
        assert r.metadata["attempts"] == 1

    def test_result_is_immutable(self, tmp_path, ctx):
        (r,) = _orchestrator(tmp_path).execute(ctx, [_call("list_files", {"pattern": "*"})])
        with pytest.raises(TypeError):
            r.metadata["attempts"] = 9
        with pytest.raises(AttributeError):
            r.error = None

    def test_results_recorded_for_statistics(self, tmp_path, ctx):
        orch = _orchestrator(tmp_path)
        orch.execute(ctx, [_call("list_files", {"pattern": "*"}), _call("nope", {}, "x")])
        stats = orch.statistics()
        assert stats["total_executions"] == 2
        assert stats["error_count"] == 1
        assert stats["tool_usage"] == {"list_files": 1, "nope": 1}
        orch.clear_statistics()
        assert orch.statistics()["total_executions"] == 0


# ===========================================================================
# Failure taxonomy
# ===========================================================================


class TestFailures:
    def test_bad_json_is_parse_error(self, tmp_path, ctx):
        (r,) = _orchestrator(tmp_path).execute(ctx, [_call("read_file", '{"file_path": ')])
        assert isinstance(r.error, ParseError)
        assert r.arguments is None

    def test_non_object_arguments_is_parse_error(self, tmp_path, ctx):
        (r,) = _orchestrator(tmp_path).execute(ctx, [_call("read_file", "[1, 2]")])
        assert isinstance(r.error, ParseError)

    def test_unknown_tool_is_validation_error(self, tmp_path, ctx):
        (r,) = _orchestrator(tmp_path).execute(ctx, [_call("rm_rf", {})])
        assert isinstance(r.error, ValidationError)
        assert "tool not found: rm_rf" in str(r.error)

    def test_missing_required_argument(self, tmp_path, ctx):
        (r,) = _orchestrator(tmp_path).execute(ctx, [_call("write_file", {"file_path": "x"})])
        assert isinstance(r.error, ValidationError)
        assert "content" in str(r.error)

    def test_path_escape_is_validation_error(self, tmp_path, ctx):
        handler = Flaky(0)
        reg = ToolRegistry()
        reg.register("touch", handler)
        (r,) = _orchestrator(tmp_path, reg).execute(
            ctx, [_call("touch", {"path": "../../etc/passwd"})]
        )
        assert isinstance(r.error, ValidationError)
        assert handler.calls == 0

    def test_validation_happens_before_approval(self, tmp_path, ctx):
        gate = ApprovalGate(ApprovalMode.INTERACTIVE, input_func=_no_input)
        orch = _orchestrator(tmp_path, gate=gate)
        (r,) = orch.execute(ctx, [_call("write_file", {"file_path": "../x", "content": ""})])
        assert isinstance(r.error, ValidationError)
        assert gate.history() == []

    def test_rejection(self, tmp_path, ctx):
        orch = _orchestrator(tmp_path, mode=ApprovalMode.NONE)
        (r,) = orch.execute(ctx, [_call("list_files", {"pattern": "*"})])
        assert isinstance(r.error, ApprovalRejected)
        assert r.error.kind == "approval_rejected"
        assert orch.gate.history()[-1].approved is False

    def test_failures_not_retried(self, tmp_path, ctx):
        handler = Flaky(0)
        reg = ToolRegistry()
        reg.register("noop", handler)
        orch = _orchestrator(tmp_path, reg, mode=ApprovalMode.NONE)
        (r,) = orch.execute(ctx, [_call("noop", {})])
        assert isinstance(r.error, ApprovalRejected)
        assert handler.calls == 0

    def test_one_failure_does_not_affect_others(self, tmp_path, ctx):
        (tmp_path / "ok.txt").write_text("fine\n")
        results = _by_id(
            _orchestrator(tmp_path).execute(
                ctx,
                [
                    _call("read_file", {"file_path": "ok.txt"}, "good"),
                    _call("read_file", "{oops", "bad"),
                ],
            )
        )
        assert results["good"].ok
        assert isinstance(results["bad"].error, ParseError)


# ===========================================================================
# Retries
# ===========================================================================


class TestRetry:
    def test_delay_schedule(self):
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, backoff_multiplier=2.0)
        assert policy.delay(1) == 0.0
        assert policy.delay(2) == 2.0
        assert policy.delay(3) == 4.0

    def test_fails_twice_then_succeeds(self, tmp_path, ctx):
        handler = Flaky(2, value="done")
        reg = ToolRegistry()
        reg.register("flaky", handler)
        orch = _orchestrator(tmp_path, reg, retry_policy=RetryPolicy(3, 0.05, 2.0))
        t0 = time.monotonic()
        (r,) = orch.execute(ctx, [_call("flaky", {})])
        elapsed = time.monotonic() - t0
        assert r.ok
        assert r.result == "done"
        assert r.metadata["attempts"] == 3
        # Backoff: 0.05*0*2 after the first failure, 0.05*1*2 after the second.
        assert elapsed >= 0.1
        assert handler.times[2] - handler.times[1] >= 0.09

    def test_exhausted(self, tmp_path, ctx):
        handler = Flaky(10)
        reg = ToolRegistry()
        reg.register("broken", handler)
        (r,) = _orchestrator(tmp_path, reg).execute(ctx, [_call("broken", {})])
        assert isinstance(r.error, ExecutionError)
        assert r.error.attempts == 3
        assert r.error.retryable
        assert str(r.error) == "failed after 3 attempts: boom 3"
        assert handler.calls == 3

    def test_single_attempt_policy(self, tmp_path, ctx):
        handler = Flaky(1)
        reg = ToolRegistry()
        reg.register("once", handler)
        orch = _orchestrator(tmp_path, reg, retry_policy=RetryPolicy(1, 1.0, 2.0))
        (r,) = orch.execute(ctx, [_call("once", {})])
        assert isinstance(r.error, ExecutionError)
        assert handler.calls == 1

    def test_retry_sleep_observes_deadline(self, tmp_path, ctx):
        handler = Flaky(10)
        reg = ToolRegistry()
        reg.register("slow_retry", handler)
        orch = _orchestrator(
            tmp_path, reg, timeout=0.1, retry_policy=RetryPolicy(5, 10.0, 2.0)
        )
        t0 = time.monotonic()
        (r,) = orch.execute(ctx, [_call("slow_retry", {})])
        assert time.monotonic() - t0 < 5.0
        assert isinstance(r.error, DeadlineExceeded)
        assert r.metadata["attempts"] == 2

    def test_parent_cancel_interrupts_retry_sleep(self, tmp_path):
        ctx = Context.background()
        handler = Flaky(10)
        reg = ToolRegistry()
        reg.register("never_ok", handler)
        orch = _orchestrator(tmp_path, reg, retry_policy=RetryPolicy(5, 10.0, 2.0))
        threading.Timer(0.1, ctx.cancel, args=("interrupted",)).start()
        t0 = time.monotonic()
        (r,) = orch.execute(ctx, [_call("never_ok", {})])
        assert time.monotonic() - t0 < 5.0
        assert isinstance(r.error, CancellationError)
        assert "interrupted" in str(r.error)


# ===========================================================================
# Concurrency
# ===========================================================================


class TestConcurrency:
    def _tracking_registry(self, delay=0.05):
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def handler(args):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(delay)
            with lock:
                state["active"] -= 1
            return args["n"]

        reg = ToolRegistry()
        reg.register("work", handler)
        return reg, state

    def test_bounded(self, tmp_path, ctx):
        reg, state = self._tracking_registry()
        orch = _orchestrator(tmp_path, reg, concurrency=2)
        calls = [_call("work", {"n": i}, f"c{i}", i) for i in range(6)]
        results = orch.execute(ctx, calls)
        assert len(results) == 6
        assert state["peak"] <= 2
        assert {r.result for r in results} == set(range(6))

    def test_runs_in_parallel(self, tmp_path, ctx):
        reg, state = self._tracking_registry(delay=0.2)
        orch = _orchestrator(tmp_path, reg, concurrency=4)
        t0 = time.monotonic()
        orch.execute(ctx, [_call("work", {"n": i}, f"c{i}", i) for i in range(4)])
        assert time.monotonic() - t0 < 0.6
        assert state["peak"] > 1

    def test_invalid_concurrency(self, tmp_path):
        with pytest.raises(ValueError):
            _orchestrator(tmp_path, concurrency=0)

    def test_prompt_runs_on_caller_thread(self, tmp_path, ctx):
        seen = []

        def answer(prompt):
            seen.append(threading.current_thread())
            return "y"

        gate = ApprovalGate(ApprovalMode.INTERACTIVE, input_func=answer)
        orch = _orchestrator(tmp_path, gate=gate)
        (r,) = orch.execute(ctx, [_call("write_file", {"file_path": "o.txt", "content": "x"})])
        assert r.ok
        assert seen == [threading.current_thread()]
        assert r.metadata["approval"] == "granted"


# ===========================================================================
# End to end
# ===========================================================================


class TestScenarios:
    def test_write_mode_rejection_leaves_read_unaffected(self, tmp_path, ctx):
        (tmp_path / "README.md").write_text("# hi\n")
        prompts = []

        def reject(prompt):
            prompts.append(prompt)
            return "n"

        gate = ApprovalGate(ApprovalMode.WRITE, input_func=reject)
        orch = _orchestrator(tmp_path, gate=gate, concurrency=1)
        results = _by_id(
            orch.execute(
                ctx,
                [
                    _call("read_file", {"file_path": "README.md"}, "r"),
                    _call("write_file", {"file_path": "out.txt", "content": "x"}, "w"),
                ],
            )
        )
        assert results["r"].ok
        assert results["r"].result == "1: # hi"
        assert isinstance(results["w"].error, ApprovalRejected)
        assert len(prompts) == 1
        assert not (tmp_path / "out.txt").exists()

    def test_path_rule_applies_in_pipeline(self, tmp_path, ctx):
        state = ApprovalState()
        state.add_rule(ApprovalRule.path_rule("generated/", True))
        gate = ApprovalGate(ApprovalMode.INTERACTIVE, state, input_func=_no_input)
        orch = _orchestrator(tmp_path, gate=gate)
        (r,) = orch.execute(
            ctx, [_call("write_file", {"file_path": "generated/a.txt", "content": "x"})]
        )
        assert r.ok
        assert (tmp_path / "generated" / "a.txt").read_text() == "x"


class TestHelpers:
    def test_parse_arguments_empty(self):
        assert _parse_arguments("") == {}
        assert _parse_arguments("   ") == {}

    def test_parse_arguments_error(self):
        with pytest.raises(ParseError):
            _parse_arguments("{nope")

    def test_summarize_empty(self):
        assert summarize_results([]) == {
            "total_executions": 0,
            "tool_usage": {},
            "error_count": 0,
            "avg_duration": 0.0,
        }

    def test_summarize_average(self):
        results = [
            ToolResult("a", "read_file", duration=1.0),
            ToolResult("b", "read_file", duration=3.0, error=ParseError("x")),
        ]
        summary = summarize_results(results)
        assert summary["avg_duration"] == 2.0
        assert summary["error_count"] == 1
