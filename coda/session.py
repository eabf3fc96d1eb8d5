"""Public library API for coda: Session class and Result dataclass."""

import copy
import uuid
from dataclasses import dataclass
from typing import Callable

from .context import Context
from .report import ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    exhausted: bool
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the coda agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. Approval rules and
    the result cache are shared by every run of the same Session.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "lmstudio",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_turns: int = 100,
        max_output_tokens: int = 32768,
        temperature: float | None = None,
        system_prompt: str | None = None,
        tool_protocol: str = "native",
        approval_mode: str = "interactive",
        auto_approve: list[str] | None = None,
        deny_tools: list[str] | None = None,
        approve_paths: list[str] | None = None,
        deny_paths: list[str] | None = None,
        concurrency: int = 5,
        tool_timeout: float | None = 120.0,
        retry_max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_backoff: float = 2.0,
        cache_size: int = 100,
        cache_max_age: float = 1800.0,
        max_feedback_tokens: int = 16000,
        approval_history_limit: int = 1000,
        yolo: bool = False,
        allowed_dirs: list[str] | None = None,
        verbose: bool = False,
        input_func: Callable[[str], str] | None = None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_turns = max_turns
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.tool_protocol = tool_protocol
        self.approval_mode = approval_mode
        self.auto_approve = auto_approve or []
        self.deny_tools = deny_tools or []
        self.approve_paths = approve_paths or []
        self.deny_paths = deny_paths or []
        self.concurrency = concurrency
        self.tool_timeout = tool_timeout
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_backoff = retry_backoff
        self.cache_size = cache_size
        self.cache_max_age = cache_max_age
        self.max_feedback_tokens = max_feedback_tokens
        self.approval_history_limit = approval_history_limit
        self.yolo = yolo
        self.allowed_dirs = allowed_dirs or []
        self.verbose = verbose
        self.input_func = input_func

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._model_str: str | None = None
        self._llm_kwargs: dict = {}
        self._orchestrator = None
        self._processor = None
        self._system_content: str | None = None

        # Per-conversation state (for ask() mode)
        self._conv_state: dict | None = None

    def _setup(self) -> None:
        """Resolve the provider and build the tool runtime and system prompt once."""
        if self._setup_done:
            return

        from .agent import build_runtime, build_system_prompt, resolve_provider

        self._model_str, self._llm_kwargs = resolve_provider(
            self.provider, self.model, self.api_key, self.base_url
        )
        self._orchestrator, self._processor = build_runtime(
            self.base_dir,
            approval_mode=self.approval_mode,
            auto_approve=self.auto_approve,
            deny_tools=self.deny_tools,
            approve_paths=self.approve_paths,
            deny_paths=self.deny_paths,
            concurrency=self.concurrency,
            tool_timeout=self.tool_timeout,
            retry_max_attempts=self.retry_max_attempts,
            retry_base_delay=self.retry_base_delay,
            retry_backoff=self.retry_backoff,
            cache_size=self.cache_size,
            cache_max_age=self.cache_max_age,
            max_feedback_tokens=self.max_feedback_tokens,
            approval_history_limit=self.approval_history_limit,
            yolo=self.yolo,
            allowed_dirs=self.allowed_dirs,
            verbose=self.verbose,
            input_func=self.input_func,
        )
        self._system_content = build_system_prompt(
            self.system_prompt,
            self.tool_protocol,
            self._orchestrator.registry.schemas(),
        )

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    @property
    def approvals(self):
        """The approval gate shared by every run of this session."""
        self._setup()
        return self._orchestrator.gate

    @property
    def processor(self):
        self._setup()
        return self._processor

    def _make_per_run_state(self) -> dict:
        """Fresh messages and a fresh context with its own session id."""
        return {
            "ctx": Context.background(uuid.uuid4().hex),
            "messages": [{"role": "system", "content": self._system_content}],
        }

    def _build_loop_kwargs(self, state: dict) -> dict:
        """Build kwargs for run_agent_loop() from setup + per-run state."""
        return dict(
            model_str=self._model_str,
            max_turns=self.max_turns,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            llm_kwargs=self._llm_kwargs,
            orchestrator=self._orchestrator,
            processor=self._processor,
            ctx=state["ctx"],
            verbose=self.verbose,
            tool_protocol=self.tool_protocol,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        from .agent import run_agent_loop

        state = self._make_per_run_state()
        messages = state["messages"]
        messages.append({"role": "user", "content": question})

        collector = ReportCollector() if report else None
        answer, exhausted = run_agent_loop(
            messages, **self._build_loop_kwargs(state), report=collector
        )

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self._model_str or "unknown",
                provider=self.provider,
                settings={
                    "max_turns": self.max_turns,
                    "max_output_tokens": self.max_output_tokens,
                    "temperature": self.temperature,
                    "tool_protocol": self.tool_protocol,
                    "approval_mode": self._orchestrator.gate.mode.value,
                    "concurrency": self.concurrency,
                    "tool_timeout": self.tool_timeout,
                    "retry_max_attempts": self.retry_max_attempts,
                    "yolo": self.yolo,
                },
                outcome="exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
                turns=collector.max_turn_seen,
                cache_stats=self._processor.stats(),
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(messages),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        from .agent import run_agent_loop

        if self._conv_state is None:
            self._conv_state = self._make_per_run_state()

        state = self._conv_state
        messages = state["messages"]
        messages.append({"role": "user", "content": question})

        answer, exhausted = run_agent_loop(messages, **self._build_loop_kwargs(state))

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=copy.deepcopy(messages),
            report=None,
        )

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._conv_state = None
