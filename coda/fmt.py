"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


_NOISY_LOGGERS = ("LiteLLM", "httpx", "httpcore", "openai")


def setup_logging(debug: bool = False) -> None:
    """Route stdlib logging through Rich on stderr.

    Only warnings are shown unless ``debug`` is set.
    """
    level = logging.DEBUG if debug else logging.WARNING
    handler = RichHandler(
        console=_console, show_path=debug, rich_tracebacks=debug, markup=False
    )
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Turn {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None, chunks: int = 0) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    if chunks:
        text.append(f"  chunks={chunks}", style="dim")
    _console.print(text)


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  \u2713 Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Streamed assistant text -------------------------------------------------


def stream_text(fragment: str) -> None:
    """Write a fragment of assistant text as it arrives, without a newline."""
    _console.print(Text(fragment, style="blue"), end="", soft_wrap=True)


def stream_end() -> None:
    _console.print()


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str, attempts: int = 1) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    if attempts > 1:
        header.append(f"  ({attempts} attempts)", style="yellow")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def retry_notice(name: str, attempt: int, max_attempts: int, delay: float, err: str):
    line = Text()
    line.append(f"  \u21bb {name}", style="yellow")
    line.append(
        f"  attempt {attempt}/{max_attempts} failed, retrying in {delay:.1f}s: {err}",
        style="yellow",
    )
    _console.print(line)


# -- Approval ----------------------------------------------------------------


def approval_request(tool: str, risk: str, params: dict, impact: str) -> None:
    body = Text()
    body.append("Tool: ", style="bold")
    body.append(f"{tool}\n")
    body.append("Risk: ", style="bold")
    body.append(f"{risk}\n", style="red" if risk.startswith("HIGH") else "yellow")
    if params:
        body.append("Parameters:\n", style="bold")
        for key, value in params.items():
            body.append(f"  {key}: ", style="cyan")
            body.append(f"{value}\n")
    if impact:
        body.append("Impact: ", style="bold")
        body.append(f"{impact}\n")
    body.append("\n[y]es  [n]o  [a]lways  never  session", style="dim")
    _console.print(Panel(body, title="Approval required", border_style="yellow"))


def approval_rules(rules: list[str]) -> None:
    if not rules:
        _console.print(Text("  No approval rules.", style="dim"))
        return
    for rule in rules:
        _console.print(Text(f"  {rule}", style="dim"))


def approval_history(records: list[dict]) -> None:
    if not records:
        _console.print(Text("  No approval decisions yet.", style="dim"))
        return
    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("time")
    table.add_column("tool")
    table.add_column("approved")
    table.add_column("reason")
    for r in records:
        table.add_row(
            r["timestamp"][11:19],
            r["tool"],
            "yes" if r["approved"] else "no",
            escape(r["reason"]),
        )
    _console.print(table)


def cache_stats(stats: dict) -> None:
    _console.print(
        Text(
            f"  cache: {stats['size']}/{stats['max_size']} entries, "
            f"{stats['hits']} hits, {stats['misses']} misses "
            f"(hit rate {stats['hit_rate']:.0%})",
            style="dim",
        )
    )


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
