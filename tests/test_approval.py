"""Tests for the approval gate, its rule state and decision history."""

import pytest

from coda.approval import (
    ApprovalGate,
    ApprovalMode,
    ApprovalRule,
    ApprovalState,
    extract_paths,
    match_path_rules,
    format_value,
    operation_impact,
    risk_level,
)
from coda.context import Context
from coda.errors import ApprovalRejected, CancellationError


def _answers(*responses):
    """input_func returning each response in turn, recording the prompts."""
    queue = list(responses)
    prompts = []

    def _input(prompt):
        prompts.append(prompt)
        if not queue:
            raise EOFError("no more input")
        return queue.pop(0)

    _input.prompts = prompts
    return _input


def _no_input(prompt):
    raise AssertionError("the user should not have been asked")


@pytest.fixture
def ctx():
    return Context.background("sess-1")


WRITE_PARAMS = {"file_path": "src/main.py", "content": "print(1)"}


# ===========================================================================
# Modes
# ===========================================================================


class TestModes:
    def test_all_approves_everything(self, ctx):
        gate = ApprovalGate(ApprovalMode.ALL, input_func=_no_input)
        assert gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "auto-approved (mode: all)"

    def test_none_rejects_everything(self, ctx):
        gate = ApprovalGate(ApprovalMode.NONE, input_func=_no_input)
        assert not gate.decide(ctx, "read_file", {"file_path": "a"})
        assert gate.history()[-1].reason == "auto-rejected (mode: none)"

    def test_write_mode_auto_approves_reads(self, ctx):
        gate = ApprovalGate(ApprovalMode.WRITE, input_func=_no_input)
        assert gate.decide(ctx, "search_files", {"pattern": "x"})
        assert gate.history()[-1].reason == "auto-approved (read operation)"

    def test_write_mode_asks_for_writes(self, ctx):
        ask = _answers("y")
        gate = ApprovalGate(ApprovalMode.WRITE, input_func=ask)
        assert gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert len(ask.prompts) == 1

    def test_interactive_safe_operation_not_asked(self, ctx):
        gate = ApprovalGate(ApprovalMode.INTERACTIVE, input_func=_no_input)
        assert gate.decide(ctx, "read_file", {"file_path": "a"})
        assert gate.history()[-1].reason == "auto-approved (safe operation)"

    def test_set_mode_from_string(self):
        gate = ApprovalGate()
        gate.set_mode("write")
        assert gate.mode is ApprovalMode.WRITE
        with pytest.raises(ValueError):
            gate.set_mode("sometimes")


# ===========================================================================
# Interactive answers
# ===========================================================================


class TestInteractive:
    def test_yes(self, ctx):
        gate = ApprovalGate(input_func=_answers("y"))
        assert gate.decide(ctx, "write_file", WRITE_PARAMS)
        rec = gate.history()[-1]
        assert rec.approved and not rec.automatic
        assert rec.reason == "user approved"
        assert rec.session_id == "sess-1"

    def test_no(self, ctx):
        gate = ApprovalGate(input_func=_answers("n"))
        assert not gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "user rejected"

    def test_always_adds_global_rule(self, ctx):
        gate = ApprovalGate(input_func=_answers("always"))
        assert gate.decide(ctx, "edit_file", WRITE_PARAMS)
        assert gate.state.global_decision("edit_file") is True
        # Second call is decided by the rule, without asking.
        gate._input = _no_input
        assert gate.decide(ctx, "edit_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "global rule"

    def test_never_adds_global_denial(self, ctx):
        gate = ApprovalGate(input_func=_answers("never"))
        assert not gate.decide(ctx, "write_file", WRITE_PARAMS)
        gate._input = _no_input
        assert not gate.decide(ctx, "write_file", WRITE_PARAMS)

    def test_session_rule_scoped_to_session(self):
        gate = ApprovalGate(input_func=_answers("session"))
        first = Context.background("s-a")
        assert gate.decide(first, "write_file", WRITE_PARAMS)
        gate._input = _no_input
        assert gate.decide(first, "write_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "session rule (s-a)"

        gate._input = _answers("n")
        other = Context.background("s-b")
        assert not gate.decide(other, "write_file", WRITE_PARAMS)

    def test_session_without_session_id_reprompts(self):
        ask = _answers("session", "y")
        gate = ApprovalGate(input_func=ask)
        assert gate.decide(Context.background(), "write_file", WRITE_PARAMS)
        assert len(ask.prompts) == 2

    def test_invalid_then_valid(self, ctx):
        ask = _answers("maybe", "  YES  ")
        gate = ApprovalGate(input_func=ask)
        assert gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert len(ask.prompts) == 2

    def test_eof_rejects_and_records(self, ctx):
        gate = ApprovalGate(input_func=_answers())
        with pytest.raises(ApprovalRejected):
            gate.decide(ctx, "write_file", WRITE_PARAMS)
        rec = gate.history()[-1]
        assert not rec.approved
        assert "input closed" in rec.reason

    def test_cancelled_context_raises_before_prompt(self):
        ctx = Context.background("s")
        ctx.cancel()
        gate = ApprovalGate(input_func=_no_input)
        with pytest.raises(CancellationError):
            gate.decide(ctx, "write_file", WRITE_PARAMS)


# ===========================================================================
# Rules
# ===========================================================================


class TestRules:
    def test_precedence_session_over_path_over_global(self, ctx):
        state = ApprovalState()
        state.add_rule(ApprovalRule.global_rule("write_file", False))
        state.add_rule(ApprovalRule.path_rule("src/", True))
        gate = ApprovalGate(state=state, input_func=_no_input)
        assert gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "path rule (src/)"

        state.add_rule(ApprovalRule.session_rule("sess-1", "write_file", False))
        assert not gate.decide(ctx, "write_file", WRITE_PARAMS)
        assert gate.history()[-1].reason == "session rule (sess-1)"

    def test_path_rule_uses_path_key(self, ctx):
        state = ApprovalState()
        state.add_rule(ApprovalRule.path_rule("secrets/", False))
        gate = ApprovalGate(state=state, input_func=_no_input)
        assert not gate.decide(ctx, "read_file", {"path": "secrets/key"})

    def test_path_rule_checks_every_path_parameter(self, ctx):
        state = ApprovalState()
        state.add_rule(ApprovalRule.path_rule("secrets/", False))
        gate = ApprovalGate(state=state, input_func=_no_input)
        params = {"file_path": "src/main.py", "path": "secrets/key"}
        assert not gate.decide(ctx, "read_file", params)
        assert gate.history()[-1].reason == "path rule (secrets/)"

    def test_denial_on_any_path_beats_approval(self):
        state = ApprovalState()
        state.add_rule(ApprovalRule.path_rule("src/", True))
        state.add_rule(ApprovalRule.path_rule("secrets/", False))
        params = {"file_path": "src/a.py", "path": "secrets/b"}
        assert match_path_rules(state, params) == ("secrets/", False)
        assert match_path_rules(state, {"file_path": "src/a.py"}) == ("src/", True)
        assert match_path_rules(state, {"pattern": "*"}) is None

    def test_global_rule_overrides_safe_list(self, ctx):
        state = ApprovalState()
        state.add_rule(ApprovalRule.global_rule("read_file", False))
        gate = ApprovalGate(state=state, input_func=_no_input)
        assert not gate.decide(ctx, "read_file", {"file_path": "a"})

    def test_rules_listing(self):
        state = ApprovalState()
        state.add_rule(ApprovalRule.global_rule("edit_file", True))
        state.add_rule(ApprovalRule.path_rule("tmp/", False))
        state.add_rule(ApprovalRule.session_rule("s", "write_file", True))
        described = [r.describe() for r in state.rules()]
        assert "allow write_file (session s)" in described
        assert "deny paths under tmp/" in described
        assert "allow edit_file (always)" in described

    def test_shared_state_between_gates(self, ctx):
        state = ApprovalState()
        a = ApprovalGate(state=state, input_func=_answers("always"))
        b = ApprovalGate(state=state, input_func=_no_input)
        a.decide(ctx, "write_file", WRITE_PARAMS)
        assert b.decide(ctx, "write_file", WRITE_PARAMS)


# ===========================================================================
# Fast path
# ===========================================================================


class TestIsAutoApproved:
    def test_modes(self):
        assert ApprovalGate(ApprovalMode.ALL).is_auto_approved("write_file")
        assert not ApprovalGate(ApprovalMode.NONE).is_auto_approved("read_file")

    def test_safe_operations(self):
        gate = ApprovalGate()
        assert gate.is_auto_approved("read_file")
        assert not gate.is_auto_approved("write_file")

    def test_global_rule(self):
        state = ApprovalState()
        state.add_rule(ApprovalRule.global_rule("write_file", True))
        assert ApprovalGate(state=state).is_auto_approved("write_file")

    def test_conservative_with_path_rules(self):
        state = ApprovalState()
        state.add_rule(ApprovalRule.path_rule("secrets/", False))
        assert not ApprovalGate(state=state).is_auto_approved("read_file")

    def test_conservative_with_session_rules(self):
        state = ApprovalState()
        state.add_rule(ApprovalRule.session_rule("s", "read_file", False))
        assert not ApprovalGate(state=state).is_auto_approved("read_file")


# ===========================================================================
# History
# ===========================================================================


class TestHistory:
    def test_bounded(self, ctx):
        gate = ApprovalGate(ApprovalMode.ALL, ApprovalState(history_limit=3))
        for i in range(5):
            gate.decide(ctx, "read_file", {"file_path": str(i)})
        history = gate.history()
        assert len(history) == 3
        assert [r.parameters["file_path"] for r in history] == ["2", "3", "4"]

    def test_clear(self, ctx):
        gate = ApprovalGate(ApprovalMode.ALL)
        gate.decide(ctx, "read_file", {"file_path": "a"})
        gate.clear_history()
        assert gate.history() == []

    def test_records_since(self, ctx):
        gate = ApprovalGate(ApprovalMode.ALL)
        gate.decide(ctx, "read_file", {"file_path": "a"})
        mark = gate.state.appended
        gate.decide(ctx, "read_file", {"file_path": "b"})
        gate.decide(ctx, "read_file", {"file_path": "c"})
        new = gate.state.records_since(mark)
        assert [r.parameters["file_path"] for r in new] == ["b", "c"]

    def test_parameters_are_read_only_copies(self, ctx):
        params = {"file_path": "a"}
        gate = ApprovalGate(ApprovalMode.ALL)
        gate.decide(ctx, "read_file", params)
        params["file_path"] = "changed"
        rec = gate.history()[-1]
        assert rec.parameters["file_path"] == "a"
        with pytest.raises(TypeError):
            rec.parameters["file_path"] = "x"

    def test_to_dict(self, ctx):
        gate = ApprovalGate(ApprovalMode.ALL)
        gate.decide(ctx, "read_file", {"file_path": "a"})
        d = gate.history()[-1].to_dict()
        assert d["tool"] == "read_file"
        assert d["mode"] == "all"
        assert d["approved"] is True
        assert d["parameters"] == {"file_path": "a"}


# ===========================================================================
# Display helpers
# ===========================================================================


class TestHelpers:
    def test_risk_levels(self):
        assert risk_level("write_file").startswith("MEDIUM")
        assert risk_level("read_file").startswith("MINIMAL")
        assert risk_level("delete_file").startswith("HIGH")

    def test_impact(self):
        assert "overwrite" in operation_impact("write_file", {"file_path": "x"})
        assert operation_impact("read_file", {"file_path": "x"}) == ""
        assert operation_impact("write_file", {}) == ""

    def test_format_value_truncates(self):
        out = format_value("x" * 500)
        assert len(out) == 100
        assert out.endswith("...")
        assert format_value(42) == "42"

    def test_extract_paths(self):
        assert extract_paths({"file_path": "a", "path": "b"}) == ["a", "b"]
        assert extract_paths({"path": "b", "file_path": ""}) == ["b"]
        assert extract_paths({"pattern": "*"}) == []
