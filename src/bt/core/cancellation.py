"""
Cancellation tokens for API calls.

A :class:`CancellationToken` travels with a request through every retry
attempt and every page fetch. It fires either when :meth:`cancel` is called
(for example from another thread handling Ctrl-C) or when its deadline
passes. Tokens derived with :meth:`with_timeout` fire when their parent does.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from bt.core.exceptions import RequestCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELED = "context canceled"
DEADLINE_EXCEEDED = "context deadline exceeded"

POLL_INTERVAL = 0.05


class CancellationToken:
    """Cooperative cancellation signal with an optional deadline."""

    def __init__(
        self,
        timeout: float | None = None,
        parent: CancellationToken | None = None,
        clock=time.monotonic,
    ) -> None:
        """
        Args:
            timeout: Seconds from now after which the token expires
            parent: Token whose cancellation also cancels this one
            clock: Monotonic clock, replaceable in tests
        """
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], Any]] = []
        self._reason: str | None = None
        self._parent = parent
        self._deadline = clock() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            if self._deadline is None or parent.deadline < self._deadline:
                self._deadline = parent.deadline

    @classmethod
    def background(cls) -> CancellationToken:
        """Return a token that never fires on its own."""
        return cls()

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def with_timeout(self, timeout: float | None) -> CancellationToken:
        """Derive a child token that additionally expires after ``timeout`` seconds."""
        return CancellationToken(timeout=timeout, parent=self, clock=self._clock)

    def cancel(self, reason: str = CANCELED) -> None:
        """Fire the token and run its cancel callbacks. Only the first reason is kept."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        self._event.set()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("Cancel callback %r failed", callback, exc_info=True)

    def on_cancel(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """
        Run ``callback`` when :meth:`cancel` is called on this token or an ancestor.

        Deadlines do not trigger callbacks. A token that was already cancelled
        runs the callback immediately. Callbacks may run more than once and
        should be idempotent.

        Returns:
            A function that unregisters the callback
        """
        if self.cancelled:
            callback()
            return lambda: None

        registered: list[CancellationToken] = []
        token: CancellationToken | None = self
        while token is not None:
            with token._lock:
                token._callbacks.append(callback)
            registered.append(token)
            token = token._parent

        def remove() -> None:
            for owner in registered:
                with owner._lock:
                    if callback in owner._callbacks:
                        owner._callbacks.remove(callback)

        # cancel() may have run between the check above and the registration
        if self.cancelled:
            remove()
            callback()
        return remove

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    @property
    def reason(self) -> str | None:
        """Why the token fired, or None while it is still live."""
        if self._reason is not None:
            return self._reason
        if self._parent is not None and self._parent.reason is not None:
            return self._parent.reason
        if self._deadline is not None and self._clock() >= self._deadline:
            return DEADLINE_EXCEEDED
        return None

    def error(self) -> RequestCancelledError:
        """Build the error describing why the token fired."""
        return RequestCancelledError(self.reason or CANCELED)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early if the token fires.

        Returns:
            True if the token fired before the wait completed
        """
        end = self._clock() + max(0.0, seconds)
        while not self.cancelled:
            left = end - self._clock()
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            if left <= 0:
                break
            # Poll in short slices so a parent's cancel() is noticed promptly.
            self._event.wait(min(left, 0.1))
        return self.cancelled


def run_until_cancelled(
    token: CancellationToken,
    fn: Callable[[], T],
    discard: Callable[[T], Any] | None = None,
) -> T:
    """
    Run a blocking call on a helper thread and wait for it while watching ``token``.

    If the token fires first the caller gets :class:`RequestCancelledError`
    straight away. The call is left to finish in the background and its late
    result is passed to ``discard``.

    Raises:
        RequestCancelledError: If the token fires before ``fn`` returns
        Whatever ``fn`` raised
    """
    lock = threading.Lock()
    finished = threading.Event()
    outcome: dict[str, Any] = {}

    def run() -> None:
        try:
            result = fn()
        except BaseException as exc:  # re-raised in the waiting thread
            outcome["error"] = exc
        else:
            with lock:
                outcome["result"] = result
                abandoned = outcome.get("abandoned", False)
            if abandoned and discard is not None:
                discard(result)
        finally:
            finished.set()

    threading.Thread(target=run, name="bt-cancellable", daemon=True).start()

    while not finished.wait(POLL_INTERVAL):
        if token.cancelled:
            with lock:
                outcome["abandoned"] = True
                late = outcome.get("result")
            if late is not None and discard is not None:
                discard(late)
            raise token.error()

    error = outcome.get("error")
    if error is not None:
        if token.cancelled:
            raise token.error() from error
        raise error
    return outcome["result"]
