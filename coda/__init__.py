"""coda: a CLI coding agent with approval-gated, concurrent tool execution."""

from .session import Result, Session

__all__ = ["Result", "Session"]
