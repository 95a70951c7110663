"""
Retry policy for API requests.

The policy decides whether a failed attempt may be repeated and how long to
wait before the next one. It mirrors the knobs of urllib3's ``Retry``
(total retries, backoff factor, status list, allowed methods, Retry-After)
but is driven by :class:`~bt.core.executor.HTTPExecutor` so that waits are
interruptible and the sleep function can be swapped out in tests.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field

import requests
from urllib3.exceptions import NewConnectionError

from bt.core.cancellation import CancellationToken

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

Sleeper = Callable[[float, CancellationToken], None]


def interruptible_sleep(seconds: float, token: CancellationToken) -> None:
    """Default sleeper: wait on the token so cancellation cuts the wait short."""
    if token.wait(seconds):
        raise token.error()


def is_pre_send_failure(exc: BaseException) -> bool:
    """
    Whether a transport error happened before the request reached the server.

    Connection refused, DNS failures and connect timeouts qualify. Read
    timeouts and dropped connections do not: the server may have acted.
    """
    if isinstance(exc, requests.exceptions.ConnectTimeout):
        return True
    if not isinstance(exc, requests.exceptions.ConnectionError):
        return False

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (NewConnectionError, ConnectionRefusedError)):
            return True
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            current = reason
            continue
        if current.args and isinstance(current.args[0], BaseException):
            current = current.args[0]
            continue
        current = current.__cause__ or current.__context__
    return False


@dataclass
class RetryPolicy:
    """How many times, when, and how long to wait between attempts."""

    max_retries: int = 3
    backoff_factor: float = 1.0
    max_backoff: float = 30.0
    jitter: float = 0.25
    max_elapsed: float | None = 120.0
    respect_retry_after: bool = True
    idempotent_methods: frozenset[str] = IDEMPOTENT_METHODS
    sleep: Sleeper = field(default=interruptible_sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def no_retries(cls) -> "RetryPolicy":
        return cls(max_retries=0)

    def is_idempotent(self, method: str) -> bool:
        return method.upper() in self.idempotent_methods

    def is_retryable_status(self, method: str, status_code: int) -> bool:
        """Rate limits and server errors are retried for idempotent methods only."""
        if not self.is_idempotent(method):
            return False
        return status_code == 429 or 500 <= status_code < 600

    def is_retryable_exception(self, method: str, exc: BaseException) -> bool:
        """Transport failures: any for idempotent methods, pre-send ones otherwise."""
        if not isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return False
        if self.is_idempotent(method):
            return True
        return is_pre_send_failure(exc)

    def can_retry(self, attempt: int) -> bool:
        """``attempt`` is the zero-based index of the attempt that just failed."""
        return attempt < self.max_retries

    def compute_backoff(self, attempt: int) -> float:
        """Exponential backoff with jitter: factor * 2**attempt, +/- jitter, capped."""
        base = self.backoff_factor * (2**attempt)
        if self.jitter:
            base += base * self.jitter * (2 * self.rng.random() - 1)
        return max(0.0, min(base, self.max_backoff))

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before the next attempt; a server supplied Retry-After wins."""
        if self.respect_retry_after and retry_after is not None:
            return max(0.0, retry_after)
        return self.compute_backoff(attempt)
