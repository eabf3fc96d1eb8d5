"""Cancellation, deadline and session scope for one unit of agent work.

A Context is handed down from the agent loop into the tool pipeline.
Cancelling a context cancels every context derived from it. Deadlines
only ever shrink: a child's deadline is the earlier of its own and its
parent's.
"""

import threading
import time
import weakref

from .errors import CancellationError, DeadlineExceeded


class Context:
    def __init__(
        self,
        *,
        deadline: float | None = None,
        session_id: str | None = None,
        parent: "Context | None" = None,
    ):
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._err: CancellationError | None = None
        self._children: weakref.WeakSet = weakref.WeakSet()

        if parent is not None:
            if parent.deadline is not None:
                deadline = (
                    parent.deadline if deadline is None else min(deadline, parent.deadline)
                )
            if session_id is None:
                session_id = parent.session_id
        self.deadline = deadline
        self.session_id = session_id

        if parent is not None:
            parent._adopt(self)

    @classmethod
    def background(cls, session_id: str | None = None) -> "Context":
        """A root context with no deadline."""
        return cls(session_id=session_id)

    def with_timeout(self, seconds: float | None) -> "Context":
        if seconds is None:
            return Context(parent=self)
        return Context(deadline=time.monotonic() + seconds, parent=self)

    def with_session(self, session_id: str) -> "Context":
        return Context(session_id=session_id, parent=self)

    def _adopt(self, child: "Context") -> None:
        with self._lock:
            err = self._err
            if err is None:
                self._children.add(child)
        if err is not None:
            child._cancel(err)

    def _cancel(self, err: CancellationError) -> None:
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            children = list(self._children)
            self._children.clear()
        self._event.set()
        for child in children:
            child._cancel(err)

    def cancel(self, reason: str = "context cancelled") -> None:
        self._cancel(CancellationError(reason))

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def _check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self._cancel(DeadlineExceeded("context deadline exceeded"))

    @property
    def cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    def error(self) -> CancellationError | None:
        """The cancellation cause, or None while the context is live."""
        self._check_deadline()
        return self._err

    def raise_if_cancelled(self) -> None:
        err = self.error()
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``, waking early on cancellation.

        Returns True if the context was cancelled (or its deadline passed)
        before the full duration elapsed.
        """
        remaining = self.remaining()
        if remaining is not None and remaining <= seconds:
            if not self._event.wait(remaining):
                self._cancel(DeadlineExceeded("context deadline exceeded"))
            return True
        return self._event.wait(seconds)
