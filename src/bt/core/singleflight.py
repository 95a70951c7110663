"""
Duplicate call suppression.

:class:`SingleFlight` lets concurrent threads asking for the same key share
one execution of a function: the first caller starts it, the others block until
it finishes and receive the same result or the same exception.

Callers that pass a :class:`~bt.core.cancellation.CancellationToken` stop
waiting as soon as their token fires. The shared execution then runs on a
helper thread and is not interrupted by any single caller giving up, so its
result (a rotated OAuth token, for instance) is never lost half way.
"""

import threading
from collections.abc import Callable
from typing import Any, TypeVar

from bt.core.cancellation import POLL_INTERVAL, CancellationToken

T = TypeVar("T")


class _Call:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None
        self.waiters = 0


class SingleFlight:
    """Coalesce concurrent calls sharing a key into one in-flight execution."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, _Call] = {}

    def do(self, key: str, fn: Callable[[], T], token: CancellationToken | None = None) -> tuple[T, bool]:
        """
        Run ``fn`` once for all concurrent callers using ``key``.

        Args:
            key: Calls with the same key share one execution
            fn: The work to run
            token: Stop waiting when this token fires

        Returns:
            Tuple of (result, shared) where ``shared`` is True when more than
            one caller took part in the execution

        Raises:
            RequestCancelledError: If ``token`` fires before the execution ends
            Whatever ``fn`` raised, in every caller
        """
        with self._lock:
            call = self._calls.get(key)
            if call is not None:
                call.waiters += 1
                leader = False
            else:
                call = _Call()
                self._calls[key] = call
                leader = True

        if leader:
            if token is None:
                self._run(key, call, fn)
            else:
                threading.Thread(target=self._run, args=(key, call, fn), name=f"bt-flight-{key}", daemon=True).start()

        if token is None:
            call.done.wait()
        else:
            while not call.done.wait(POLL_INTERVAL):
                if token.cancelled:
                    raise token.error()

        if call.error is not None:
            raise call.error
        return call.result, not leader or call.waiters > 0

    def _run(self, key: str, call: _Call, fn: Callable[[], Any]) -> None:
        try:
            call.result = fn()
        except BaseException as exc:  # handed to every waiter
            call.error = exc
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls
