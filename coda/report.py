"""JSON report generation for a single agent run."""

import json
from datetime import datetime, timezone


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.error_kinds: dict[str, int] = {}
        self.approvals = {"approved": 0, "rejected": 0, "asked": 0}
        self.compactions = 0
        self.truncated_responses = 0
        self.llm_calls = 0
        self.llm_errors = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        token_est: int,
        finish_reason: str | None,
        *,
        chunks: int = 0,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
            "chunks": chunks,
            "is_retry": is_retry,
        }
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_llm_error(self, turn: int, kind: str, message: str):
        self.llm_errors += 1
        self.events.append(
            {"turn": turn, "type": "llm_error", "kind": kind, "message": message}
        )

    def record_tool_call(
        self,
        turn: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
        *,
        error_kind: str | None = None,
        attempts: int = 0,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        if error_kind is not None:
            self.error_kinds[error_kind] = self.error_kinds.get(error_kind, 0) + 1
        event: dict = {
            "turn": turn,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
            "attempts": attempts,
        }
        if error is not None:
            event["error"] = error
            event["error_kind"] = error_kind
        self.events.append(event)

    def record_approvals(self, turn: int, records: list[dict]):
        """Fold the approval decisions made during ``turn`` into the report."""
        for r in records:
            self.approvals["approved" if r["approved"] else "rejected"] += 1
            if not r["automatic"]:
                self.approvals["asked"] += 1
            self.events.append(
                {
                    "turn": turn,
                    "type": "approval",
                    "tool": r["tool"],
                    "approved": r["approved"],
                    "reason": r["reason"],
                    "mode": r["mode"],
                }
            )

    def record_compaction(
        self, turn: int, strategy: str, tokens_before: int, tokens_after: int
    ):
        self.compactions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "compaction",
                "strategy": strategy,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_truncated_response(self, turn: int):
        self.truncated_responses += 1
        self.events.append({"turn": turn, "type": "truncated_response"})

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
        cache_stats: dict | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "tool_errors_by_kind": dict(self.error_kinds),
                "approvals": dict(self.approvals),
                "compactions": self.compactions,
                "truncated_responses": self.truncated_responses,
                "llm_calls": self.llm_calls,
                "llm_errors": self.llm_errors,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                **({"cache": cache_stats} if cache_stats else {}),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
