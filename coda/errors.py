"""Exception hierarchy shared by the agent loop and the tool pipeline."""

import enum


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad config file, etc.)."""


# -- Provider errors ---------------------------------------------------------


class ErrorKind(enum.Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CONTEXT_LENGTH = "context_length"
    CONTENT_FILTER = "content_filter"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (
            ErrorKind.RATE_LIMIT,
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.SERVER_ERROR,
        )


class ProviderError(AgentError):
    """An LLM provider call failed. ``kind`` is attached by the client wrapper."""

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.UNKNOWN):
        super().__init__(message)
        self.kind = kind


class ContextOverflowError(ProviderError):
    """Raised when the LLM call fails due to context window overflow."""

    def __init__(self, message: str = "context window exceeded"):
        super().__init__(message, ErrorKind.CONTEXT_LENGTH)


# -- Tool call outcomes ------------------------------------------------------


class ToolError(Exception):
    """Base for every per-call failure recorded on a ToolResult."""

    kind = "tool"
    retryable = False


class ParseError(ToolError):
    """Tool-call payload or its arguments are not valid JSON."""

    kind = "parse"


class ValidationError(ToolError):
    """Unknown tool or a path that violates the security policy."""

    kind = "validation"


class ApprovalRejected(ToolError):
    """The user or a rule declined the call. A normal terminal outcome."""

    kind = "approval_rejected"


class ExecutionError(ToolError):
    """The tool itself failed after exhausting its retries."""

    kind = "execution"
    retryable = True

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class CancellationError(ToolError):
    """The surrounding context was cancelled or hit its deadline."""

    kind = "cancelled"


class DeadlineExceeded(CancellationError):
    kind = "deadline_exceeded"
