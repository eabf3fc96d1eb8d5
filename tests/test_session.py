"""Tests for the Session library API."""

import types
from unittest.mock import patch

import pytest

from coda import agent
from coda.errors import ConfigError
from coda.session import Result, Session


def _chunk(content=None, tool_calls=None, finish_reason=None):
    delta = types.SimpleNamespace(content=content, tool_calls=tool_calls)
    choice = types.SimpleNamespace(delta=delta, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice])


def _reply(text):
    return iter([_chunk(content=text), _chunk(finish_reason="stop")])


def _echo_last_user(model_str, messages, *args, **kwargs):
    """Answer with the last user message, so tests can see what was sent."""
    users = [m["content"] for m in messages if m["role"] == "user"]
    return _reply(f"{len(users)}:{users[-1]}")


@pytest.fixture
def session(tmp_path):
    return Session(base_dir=str(tmp_path), model="test", approval_mode="all")


class TestSessionInit:
    def test_defaults(self):
        s = Session()
        assert s.provider == "lmstudio"
        assert s.max_turns == 100
        assert s.tool_protocol == "native"
        assert s.approval_mode == "interactive"
        assert s.auto_approve == []
        assert s.verbose is False

    def test_setup_is_lazy(self, tmp_path):
        # No model: nothing fails until the session is used.
        s = Session(base_dir=str(tmp_path))
        with pytest.raises(ConfigError, match="no model"):
            s.run("hi")

    def test_setup_runs_once(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            session.run("a")
            orchestrator = session._orchestrator
            session.run("b")
        assert session._orchestrator is orchestrator


class TestRun:
    def test_returns_result(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            result = session.run("hello")
        assert isinstance(result, Result)
        assert result.answer == "1:hello"
        assert not result.exhausted
        assert result.report is None
        assert result.messages[0]["role"] == "system"

    def test_runs_are_independent(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            session.run("first")
            result = session.run("second")
        assert result.answer == "1:second"

    def test_messages_are_a_copy(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            result = session.run("hello")
        result.messages.clear()
        assert result.messages == []

    def test_report(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            result = session.run("hello", report=True)
        report = result.report
        assert report["task"] == "hello"
        assert report["model"] == "openai/test"
        assert report["result"]["outcome"] == "success"
        assert report["settings"]["approval_mode"] == "all"
        assert report["stats"]["llm_calls"] == 1
        assert "cache" in report["stats"]

    def test_custom_system_prompt(self, tmp_path):
        s = Session(base_dir=str(tmp_path), model="m", system_prompt="Be brief.")
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            result = s.run("x")
        assert result.messages[0]["content"].startswith("Be brief.")


class TestAsk:
    def test_shares_history(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            session.ask("one")
            result = session.ask("two")
        assert result.answer == "2:two"

    def test_reset(self, session):
        with patch.object(agent, "call_llm", side_effect=_echo_last_user):
            session.ask("one")
            session.reset()
            result = session.ask("two")
        assert result.answer == "1:two"


class TestSharedState:
    def test_approvals_persist_across_runs(self, tmp_path):
        s = Session(base_dir=str(tmp_path), model="m", auto_approve=["write_file"])
        assert s.approvals.state.global_decision("write_file") is True
        assert s.approvals.mode.value == "interactive"

    def test_processor_exposed(self, session):
        assert session.processor.stats()["size"] == 0
