import argparse
import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .approval import ApprovalGate, ApprovalMode, ApprovalRule, ApprovalState
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .context import Context
from .errors import (
    AgentError,
    CancellationError,
    ConfigError,
    ContextOverflowError,
    ErrorKind,
    ProviderError,
)
from .models import ParsedTurn
from .orchestrator import RetryPolicy, ToolExecutionOrchestrator
from .report import ReportCollector
from .results import ResultCache, ResultProcessor, tool_messages
from .stream import StreamAssembler, consume_stream
from .text_parser import response_format
from .tools import PathValidator, build_registry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
MAX_PREVIEW = 120

PROVIDER_MAX_ATTEMPTS = 3
PROVIDER_RETRY_DELAY = 1.0

TOOL_PROTOCOLS = ("native", "inline", "structured")

_encoder = tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(_encoder.encode(content, disallowed_special=()))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


# ---------------------------------------------------------------------------
# History compaction
# ---------------------------------------------------------------------------


def group_into_turns(messages: list[dict]) -> list[list[dict]]:
    """Group messages into atomic turns.

    A turn is either a single message, or an assistant message with
    tool_calls followed by all of its matching tool results.
    """
    turns = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        calls = msg.get("tool_calls")
        if msg.get("role") != "assistant" or not calls:
            turns.append([msg])
            i += 1
            continue
        ids = {tc["id"] for tc in calls}
        j = i + 1
        while (
            j < len(messages)
            and messages[j].get("role") == "tool"
            and messages[j].get("tool_call_id") in ids
        ):
            j += 1
        turns.append(messages[i:j])
        i = j
    return turns


def compact_messages(messages: list[dict]) -> list[dict]:
    """Truncate large tool results outside the two most recent turns."""
    turns = group_into_turns(messages)
    for turn in turns[: max(0, len(turns) - 2)]:
        for msg in turn:
            content = msg.get("content") or ""
            if msg.get("role") == "tool" and len(content) > 1000:
                msg["content"] = f"[compacted, originally {len(content)} chars]"
    return [msg for turn in turns for msg in turn]


def drop_middle_turns(messages: list[dict]) -> list[dict]:
    """Keep the leading system/user block and the last 3 turns."""
    turns = group_into_turns(messages)
    leading = 0
    for turn in turns:
        if turn[0].get("role") not in ("system", "user"):
            break
        leading += 1

    keep_tail = 3
    if leading + keep_tail >= len(turns):
        return [msg for turn in turns for msg in turn]

    marker = {
        "role": "user",
        "content": "[context compacted: older tool calls and results were removed to fit the context window]",
    }
    kept = turns[:leading] + [[marker]] + turns[-keep_tail:]
    return [msg for turn in kept for msg in turn]


_COMPACTION_STEPS = (
    ("compact_messages", compact_messages),
    ("drop_middle_turns", drop_middle_turns),
)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------


def describe_tools(tools: list[dict]) -> str:
    lines = []
    for tool in tools:
        fn = tool["function"]
        params = fn.get("parameters", {})
        required = set(params.get("required", []))
        args = ", ".join(
            f"{name}{'' if name in required else '?'}: {spec.get('type', 'any')}"
            for name, spec in params.get("properties", {}).items()
        )
        lines.append(f"- `{fn['name']}({args})`: {fn.get('description', '')}")
    return "\n".join(lines)


def protocol_instructions(protocol: str, tools: list[dict]) -> str:
    """Extra system-prompt text telling text-protocol models how to call tools."""
    if protocol == "native" or not tools:
        return ""
    catalog = describe_tools(tools)
    if protocol == "inline":
        return (
            "**Calling tools:**\n"
            "To call a tool, write a JSON object on its own line:\n"
            '{"tool": "<name>", "arguments": {"<param>": <value>}}\n'
            "Argument values must be strings, numbers or booleans; nested objects "
            "are not supported. You may call several tools in one reply. To separate "
            "independent messages, put a line containing only ---- between them. "
            "Tool results are returned to you in the next turn.\n\n"
            f"Available tools:\n{catalog}"
        )
    return (
        "**Reply format:**\n"
        "Every reply is one JSON object with the keys response_type, text and "
        'tool_calls. Use response_type "text" for a plain answer, "tool_call" to '
        'call tools, or "both" for text together with tool calls. Each entry in '
        'tool_calls is {"tool": "<name>", "arguments": {...}}.\n\n'
        f"Available tools:\n{catalog}"
    )


def build_system_prompt(
    system_prompt: str | None, protocol: str, tools: list[dict]
) -> str:
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    extra = protocol_instructions(protocol, tools)
    if extra:
        content += "\n\n" + extra
    now = datetime.now().astimezone()
    content += f"\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


def resolve_provider(
    provider: str, model: str | None, api_key: str | None, base_url: str | None
) -> tuple[str, dict]:
    """Return (litellm model string, extra completion kwargs)."""
    if not model:
        raise ConfigError("no model configured; pass --model or set it in coda.toml")

    if provider == "lmstudio":
        base = base_url or "http://127.0.0.1:1234"
        return f"openai/{model}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}

    if provider == "openrouter":
        key = api_key or os.environ.get("OPENROUTER_API_KEY")
        if not key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )
        # Only strip a doubled "openrouter/" prefix; "openrouter/free" is a real model id.
        bare = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        kwargs = {"api_key": key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"openrouter/{bare}", kwargs

    if provider == "generic":
        if not base_url:
            raise ConfigError("--base-url is required for the generic provider")
        key = api_key or os.environ.get("OPENAI_API_KEY") or "none"
        return f"openai/{model}", {"api_base": base_url, "api_key": key}

    raise ConfigError(f"unknown provider {provider!r}")


def classify_provider_error(exc: Exception) -> ProviderError:
    """Map a litellm exception to a ProviderError by exception type."""
    import litellm

    if isinstance(exc, litellm.ContextWindowExceededError):
        return ContextOverflowError(f"context window exceeded: {exc}")

    # Subclasses before their bases: ContentPolicyViolationError is a
    # BadRequestError and Timeout is an APIConnectionError.
    kinds = (
        (litellm.ContentPolicyViolationError, ErrorKind.CONTENT_FILTER),
        (litellm.AuthenticationError, ErrorKind.AUTHENTICATION),
        (litellm.PermissionDeniedError, ErrorKind.AUTHENTICATION),
        (litellm.RateLimitError, ErrorKind.RATE_LIMIT),
        (litellm.Timeout, ErrorKind.TIMEOUT),
        (litellm.APIConnectionError, ErrorKind.NETWORK),
        (litellm.ServiceUnavailableError, ErrorKind.SERVER_ERROR),
        (litellm.InternalServerError, ErrorKind.SERVER_ERROR),
        (litellm.NotFoundError, ErrorKind.INVALID_REQUEST),
        (litellm.BadRequestError, ErrorKind.INVALID_REQUEST),
    )
    for cls, kind in kinds:
        if isinstance(exc, cls):
            return ProviderError(f"LLM call failed ({kind.value}): {exc}", kind)
    return ProviderError(f"LLM call failed: {exc}")


def call_llm(
    model_str: str,
    messages: list[dict],
    max_output_tokens: int,
    temperature: float | None,
    tools: list[dict],
    verbose: bool,
    *,
    llm_kwargs: dict,
    protocol: str = "native",
):
    """Start a streaming completion and return the chunk iterator."""
    import litellm

    litellm.suppress_debug_info = True

    if verbose:
        extra = f", temperature={temperature}" if temperature is not None else ""
        fmt.model_info(
            f"Calling model {model_str} with max_tokens={max_output_tokens}{extra} "
            f"(protocol={protocol})"
        )

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        stream=True,
        **llm_kwargs,
    )
    if protocol == "native" and tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"
    elif protocol == "structured":
        completion_kwargs["response_format"] = response_format()
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    try:
        return litellm.completion(**completion_kwargs)
    except Exception as e:
        raise classify_provider_error(e) from e


def stream_turn(
    messages: list[dict],
    tools: list[dict],
    *,
    model_str: str,
    max_output_tokens: int,
    temperature: float | None,
    llm_kwargs: dict,
    protocol: str = "native",
    verbose: bool = False,
    ctx: Context | None = None,
) -> tuple[ParsedTurn, StreamAssembler]:
    """Stream one model reply, echoing clean text as it arrives.

    Retryable provider failures are retried with exponential backoff, but
    only while nothing has been streamed yet.
    """
    attempt = 0
    while True:
        attempt += 1
        assembler = StreamAssembler(structured=protocol == "structured")
        shown = []

        def on_text(fragment: str) -> None:
            shown.append(fragment)
            if verbose:
                fmt.stream_text(fragment)

        try:
            stream = call_llm(
                model_str,
                messages,
                max_output_tokens,
                temperature,
                tools,
                verbose,
                llm_kwargs=llm_kwargs,
                protocol=protocol,
            )
            turn = consume_stream(stream, assembler, ctx, on_text)
            if verbose and shown:
                fmt.stream_end()
            elif verbose and turn.clean_text:
                # Structured replies are buffered, so nothing was streamed.
                fmt.assistant_text(turn.clean_text)
            return turn, assembler
        except CancellationError:
            raise
        except ProviderError as e:
            err = e
        except Exception as e:
            err = classify_provider_error(e)
            err.__cause__ = e

        if verbose and shown:
            fmt.stream_end()
        if (
            not err.kind.retryable
            or assembler.metrics.chunks
            or attempt >= PROVIDER_MAX_ATTEMPTS
        ):
            raise err
        delay = PROVIDER_RETRY_DELAY * 2 ** (attempt - 1)
        if verbose:
            fmt.warning(f"{err} (retrying in {delay:.0f}s)")
        if ctx is not None:
            if ctx.wait(delay):
                ctx.raise_if_cancelled()
        else:
            time.sleep(delay)


def _call_with_compaction(
    messages: list[dict],
    tools: list[dict],
    llm: dict,
    *,
    turn: int,
    token_est: int,
    verbose: bool,
    ctx: Context,
    report: ReportCollector | None,
) -> tuple[ParsedTurn, StreamAssembler]:
    """stream_turn(), shrinking the history step by step on context overflow."""
    steps = iter(_COMPACTION_STEPS)
    retry_reason = None
    while True:
        t0 = time.monotonic()
        try:
            parsed, assembler = stream_turn(
                messages, tools, verbose=verbose, ctx=ctx, **llm
            )
        except ContextOverflowError:
            if report:
                report.record_llm_call(
                    turn,
                    time.monotonic() - t0,
                    token_est,
                    "context_overflow",
                    is_retry=retry_reason is not None,
                    retry_reason=retry_reason,
                )
            step = next(steps, None)
            if step is None:
                raise AgentError("context window exceeded even after compaction")
            retry_reason, compact = step
            fmt.warning(f"context window exceeded, compacting history ({retry_reason})...")
            tokens_before = estimate_tokens(messages, tools)
            messages[:] = compact(messages)
            token_est = estimate_tokens(messages, tools)
            if report:
                report.record_compaction(turn, retry_reason, tokens_before, token_est)
            if verbose:
                fmt.context_stats("Context after compaction", token_est)
            continue
        except ProviderError as e:
            if report:
                report.record_llm_call(
                    turn,
                    time.monotonic() - t0,
                    token_est,
                    "error",
                    is_retry=retry_reason is not None,
                    retry_reason=retry_reason,
                )
                report.record_llm_error(turn, e.kind.value, str(e))
            raise

        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed, parsed.finish_reason, assembler.metrics.chunks)
        if report:
            report.record_llm_call(
                turn,
                elapsed,
                token_est,
                parsed.finish_reason,
                chunks=assembler.metrics.chunks,
                is_retry=retry_reason is not None,
                retry_reason=retry_reason,
            )
        return parsed, assembler


# ---------------------------------------------------------------------------
# Tool runtime
# ---------------------------------------------------------------------------


def resolve_allowed_dirs(dirs: list[str]) -> list[Path]:
    resolved = []
    for d in dirs or ():
        p = Path(d).expanduser().resolve()
        if not p.is_dir():
            raise ConfigError(f"allowed_dirs path is not a directory: {d}")
        if p == Path(p.anchor):
            raise ConfigError(f"allowed_dirs cannot be the filesystem root: {d}")
        resolved.append(p)
    return resolved


def build_runtime(
    base_dir: str,
    *,
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
    input_func=None,
) -> tuple[ToolExecutionOrchestrator, ResultProcessor]:
    """Wire the registry, validator, approval gate, orchestrator and result processor."""
    if not Path(base_dir).is_dir():
        raise ConfigError(f"base directory does not exist: {base_dir}")
    extra_roots = resolve_allowed_dirs(allowed_dirs)
    registry = build_registry(base_dir, extra_roots, yolo, deny_tools=deny_tools)
    validator = PathValidator(base_dir, extra_roots, unrestricted=yolo)

    try:
        mode = ApprovalMode(approval_mode)
    except ValueError:
        raise ConfigError(f"invalid approval mode {approval_mode!r}") from None

    state = ApprovalState(approval_history_limit)
    # Path rules match first-inserted first, so denials go in ahead of approvals.
    for pattern in deny_paths or ():
        state.add_rule(ApprovalRule.path_rule(pattern, False))
    for pattern in approve_paths or ():
        state.add_rule(ApprovalRule.path_rule(pattern, True))
    for tool in auto_approve or ():
        state.add_rule(ApprovalRule.global_rule(tool, True))
    gate = ApprovalGate(mode, state, input_func)

    orchestrator = ToolExecutionOrchestrator(
        registry,
        validator,
        gate,
        concurrency=concurrency,
        timeout=tool_timeout,
        retry_policy=RetryPolicy(retry_max_attempts, retry_base_delay, retry_backoff),
        verbose=verbose,
    )
    processor = ResultProcessor(
        max_feedback_tokens, ResultCache(cache_size, cache_max_age)
    )
    return orchestrator, processor


def assistant_message(parsed: ParsedTurn) -> dict:
    msg: dict = {"role": "assistant", "content": parsed.clean_text or None}
    if parsed.tool_calls:
        msg["tool_calls"] = [tc.to_message() for tc in parsed.tool_calls]
    return msg


def _preview(text: str) -> str:
    lines = text.strip().splitlines()
    if not lines:
        return ""
    first = lines[0][:MAX_PREVIEW]
    if len(lines) > 1:
        first += f"  (+{len(lines) - 1} lines)"
    return first


def run_tool_calls(
    calls,
    messages: list[dict],
    orchestrator: ToolExecutionOrchestrator,
    processor: ResultProcessor,
    ctx: Context,
    verbose: bool,
    report: ReportCollector | None = None,
    turn: int = 0,
) -> list:
    """Execute one turn's calls and append their tool messages, in call order."""
    if verbose:
        for call in calls:
            fmt.tool_call(call.name, call.arguments_preview()[:MAX_ARG_LOG])

    state = orchestrator.gate.state
    mark = state.appended
    results = orchestrator.execute(ctx, calls)

    position = {call.id: i for i, call in enumerate(calls)}
    results.sort(key=lambda r: position.get(r.call_id, len(position)))
    for r in results:
        out = processor.process(r)
        attempts = r.metadata.get("attempts", 0)
        if verbose:
            if r.ok:
                fmt.tool_result(r.tool_name, r.duration, _preview(out.display), attempts)
            else:
                fmt.tool_error(r.tool_name, str(r.error))
        if report:
            report.record_tool_call(
                turn,
                r.tool_name,
                dict(r.arguments) if r.arguments is not None else None,
                r.ok,
                r.duration,
                len(out.feedback),
                error=None if r.ok else str(r.error),
                error_kind=None if r.ok else r.error.kind,
                attempts=attempts,
            )
    if report:
        report.record_approvals(turn, [rec.to_dict() for rec in state.records_since(mark)])

    messages.extend(tool_messages(results, processor))
    return results


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def run_agent_loop(
    messages: list[dict],
    *,
    model_str: str,
    max_turns: int,
    max_output_tokens: int,
    temperature: float | None,
    llm_kwargs: dict,
    orchestrator: ToolExecutionOrchestrator,
    processor: ResultProcessor,
    ctx: Context,
    verbose: bool,
    tool_protocol: str = "native",
    report: ReportCollector | None = None,
    turn_offset: int = 0,
) -> tuple[str | None, bool]:
    """Run the tool-calling loop until a final answer or max turns.

    Mutates `messages` in place (appends assistant/tool messages,
    in-place compaction on overflow).
    Returns (final_answer, exhausted). final_answer is the last
    assistant text (may be None). exhausted is True if max_turns hit.
    """
    tools = orchestrator.registry.schemas()
    llm = dict(
        model_str=model_str,
        max_output_tokens=max_output_tokens,
        temperature=temperature,
        llm_kwargs=llm_kwargs,
        protocol=tool_protocol,
    )
    turns = 0

    while turns < max_turns:
        turns += 1
        turn = turns + turn_offset
        token_est = estimate_tokens(messages, tools)
        if verbose:
            fmt.turn_header(turns, max_turns, token_est)

        try:
            parsed, _ = _call_with_compaction(
                messages,
                tools,
                llm,
                turn=turn,
                token_est=token_est,
                verbose=verbose,
                ctx=ctx,
                report=report,
            )
        except CancellationError as e:
            raise AgentError(f"cancelled: {e}") from e
        messages.append(assistant_message(parsed))

        if not parsed.tool_calls:
            if parsed.finish_reason == "length":
                # Output was truncated before the model could finish;
                # nudge it to continue using tools instead of quitting.
                if report:
                    report.record_truncated_response(turn)
                if verbose:
                    fmt.info(
                        "Response truncated (finish_reason=length), prompting continuation."
                    )
                messages.append(
                    {
                        "role": "user",
                        "content": "Your response was cut off. Please use the provided tools to complete the task step by step.",
                    }
                )
                continue
            if verbose:
                fmt.completion(turns, "ok")
            return parsed.clean_text, False

        try:
            run_tool_calls(
                parsed.tool_calls,
                messages,
                orchestrator,
                processor,
                ctx,
                verbose,
                report=report,
                turn=turn,
            )
        except CancellationError as e:
            raise AgentError(f"cancelled: {e}") from e
        if verbose:
            fmt.context_stats(
                f"Context after turn {turns}", estimate_tokens(messages, tools)
            )

    if verbose:
        fmt.completion(turns, "max_turns")
    for m in reversed(messages):
        if m.get("role") == "assistant" and m.get("content"):
            return m["content"], True
    return None, True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="coda",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A CLI coding agent with streamed tool calls, approval-gated execution and multi-provider LLM support.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (coda.toml) template.",
    )

    parser.add_argument(
        "--provider",
        choices=["lmstudio", "openrouter", "generic"],
        default=_UNSET,
        help="LLM provider: lmstudio (local), openrouter, or generic (any OpenAI-compatible --base-url).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations (default: 100).",
    )
    parser.add_argument(
        "--tool-protocol",
        choices=TOOL_PROTOCOLS,
        default=_UNSET,
        help="How the model calls tools: native function calling, inline JSON in "
        "text, or a structured JSON reply (default: native).",
    )

    parser.add_argument(
        "--approval-mode",
        choices=[m.value for m in ApprovalMode],
        default=_UNSET,
        help="all: run everything; none: run nothing; write: ask only for "
        "non-read tools; interactive: apply rules, then ask (default).",
    )
    parser.add_argument(
        "--auto-approve",
        action="append",
        default=None,
        metavar="TOOL",
        help="Always approve TOOL without asking (repeatable).",
    )
    parser.add_argument(
        "--deny-tool",
        dest="deny_tools",
        action="append",
        default=None,
        metavar="TOOL",
        help="Do not offer TOOL to the model (repeatable).",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=_UNSET,
        help="Maximum tool calls executing at once (default: 5).",
    )
    parser.add_argument(
        "--tool-timeout",
        type=float,
        default=_UNSET,
        help="Deadline in seconds for one turn's tool calls (default: 120).",
    )
    parser.add_argument(
        "--retries",
        dest="retry_max_attempts",
        type=int,
        default=_UNSET,
        help="Attempts per tool call before giving up (default: 3).",
    )

    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--add-dir",
        action="append",
        default=None,
        metavar="DIR",
        help="Grant read/write access to an extra directory (repeatable).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable the filesystem sandbox (system directories stay blocked).",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--debug",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Show debug logging on stderr.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("coda")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)
    fmt.setup_logging(args.debug)

    report = ReportCollector() if args.report else None
    state: dict = {"processor": None}

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        processor = state["processor"]
        report.finalize(
            task=args.question or "",
            model=getattr(args, "_resolved_model_id", args.model or "unknown"),
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "max_turns": args.max_turns,
                "max_output_tokens": args.max_output_tokens,
                "tool_protocol": args.tool_protocol,
                "approval_mode": args.approval_mode,
                "concurrency": args.concurrency,
                "tool_timeout": args.tool_timeout,
                "retry_max_attempts": args.retry_max_attempts,
                "yolo": args.yolo,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=report.max_turn_seen,
            error_message=error_message,
            cache_stats=processor.stats() if processor else None,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report, state)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _run_main(args, report, _write_report, state):
    model_str, llm_kwargs = resolve_provider(
        args.provider, args.model, args.api_key, args.base_url
    )
    args._resolved_model_id = model_str

    orchestrator, processor = build_runtime(
        args.base_dir,
        approval_mode=args.approval_mode,
        auto_approve=args.auto_approve,
        deny_tools=args.deny_tools,
        approve_paths=args.approve_paths,
        deny_paths=args.deny_paths,
        concurrency=args.concurrency,
        tool_timeout=args.tool_timeout,
        retry_max_attempts=args.retry_max_attempts,
        retry_base_delay=args.retry_base_delay,
        retry_backoff=args.retry_backoff,
        cache_size=args.cache_size,
        cache_max_age=args.cache_max_age,
        max_feedback_tokens=args.max_feedback_tokens,
        approval_history_limit=args.approval_history_limit,
        yolo=args.yolo,
        allowed_dirs=args.add_dir,
        verbose=args.verbose,
    )
    state["processor"] = processor

    tools = orchestrator.registry.schemas()
    messages = [
        {
            "role": "system",
            "content": build_system_prompt(args.system_prompt, args.tool_protocol, tools),
        }
    ]
    session_id = uuid.uuid4().hex
    logger.debug("session %s started in %s", session_id, args.base_dir)

    loop_kwargs = dict(
        model_str=model_str,
        max_turns=args.max_turns,
        max_output_tokens=args.max_output_tokens,
        temperature=args.temperature,
        llm_kwargs=llm_kwargs,
        orchestrator=orchestrator,
        processor=processor,
        ctx=Context.background(session_id),
        verbose=args.verbose,
        tool_protocol=args.tool_protocol,
    )

    if not args.repl:
        messages.append({"role": "user", "content": args.question})
        answer, exhausted = run_agent_loop(messages, **loop_kwargs, report=report)
        if answer is not None:
            print(answer)
        _write_report(
            "exhausted" if exhausted else "success",
            answer=answer,
            exit_code=2 if exhausted else 0,
        )
        if exhausted:
            fmt.warning("max turns reached, agent stopped.")
            sys.exit(2)
        return

    if args.question:
        messages.append({"role": "user", "content": args.question})
        answer, exhausted = run_agent_loop(messages, **loop_kwargs)
        if answer is not None:
            print(answer)
        if exhausted:
            fmt.warning("max turns reached for initial question.")

    repl_loop(messages, base_dir=args.base_dir, **loop_kwargs)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /compact [--drop]  Compress context (--drop removes middle turns)\n"
        "  /mode [MODE]       Show or set the approval mode (all, none, write, interactive)\n"
        "  /approvals [clear] Show approval rules and decisions, or clear the decision log\n"
        "  /cache [clear]     Show tool-result cache statistics, or clear the cache\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(messages: list[dict]) -> None:
    """Clear conversation history, keeping only the leading system messages."""
    leading = []
    for msg in messages:
        if msg.get("role") != "system":
            break
        leading.append(msg)
    dropped = len(messages) - len(leading)
    messages[:] = leading
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compact(messages: list[dict], tools: list, arg: str) -> None:
    """Manually compact conversation context."""
    before = estimate_tokens(messages, tools)
    messages[:] = compact_messages(messages)
    if arg.strip() == "--drop":
        messages[:] = drop_middle_turns(messages)
    after = estimate_tokens(messages, tools)
    fmt.info(f"compacted: {before} -> {after} tokens ({before - after} saved)")


def _repl_mode(arg: str, gate: ApprovalGate) -> None:
    arg = arg.strip().lower()
    if not arg:
        fmt.info(f"approval mode: {gate.mode.value}")
        return
    try:
        gate.set_mode(arg)
    except ValueError:
        fmt.warning(
            f"unknown approval mode {arg!r} (use {', '.join(m.value for m in ApprovalMode)})"
        )
        return
    fmt.info(f"approval mode set to {gate.mode.value}")


def _repl_approvals(arg: str, gate: ApprovalGate) -> None:
    if arg.strip() == "clear":
        gate.clear_history()
        fmt.info("approval history cleared")
        return
    fmt.approval_rules([rule.describe() for rule in gate.state.rules()])
    fmt.approval_history([rec.to_dict() for rec in gate.history()[-20:]])


def _repl_cache(arg: str, processor: ResultProcessor) -> None:
    if arg.strip() == "clear":
        processor.clear()
        fmt.info("result cache cleared")
        return
    fmt.cache_stats(processor.stats())


def repl_loop(messages: list[dict], *, base_dir: str, **loop_kwargs) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".coda", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "coda> ")])

    orchestrator = loop_kwargs["orchestrator"]
    processor = loop_kwargs["processor"]
    verbose = loop_kwargs["verbose"]
    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            _repl_clear(messages)
            continue
        elif cmd == "/compact":
            _repl_compact(messages, orchestrator.registry.schemas(), cmd_arg)
            continue
        elif cmd == "/mode":
            _repl_mode(cmd_arg, orchestrator.gate)
            continue
        elif cmd == "/approvals":
            _repl_approvals(cmd_arg, orchestrator.gate)
            continue
        elif cmd == "/cache":
            _repl_cache(cmd_arg, processor)
            continue

        messages.append({"role": "user", "content": line})
        try:
            answer, exhausted = run_agent_loop(messages, **loop_kwargs)
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
            continue
        except AgentError as e:
            fmt.error(str(e))
            continue

        if answer is not None:
            print(answer)
        if exhausted:
            fmt.warning("max turns reached for this question.")


if __name__ == "__main__":
    main()
