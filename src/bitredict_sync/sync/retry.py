"""Handler results, error classification and the retry scheduler.

Handlers report what happened as a `HandlerResult` instead of raising for
control flow. Exceptions that do escape a handler are mapped onto the same
outcomes by `classify_exception`. `RetryScheduler` runs the first attempt
inline and moves transient failures onto tracked background tasks, so one
slow retry never holds up the log stream.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from bitredict_sync.chain.client import RPCError
from bitredict_sync.decoding import DecodeError
from bitredict_sync.storage.persistence import EntityNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 30.0

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    RPCError,
    # A dependent row (pool, cycle, slip) may simply not be projected yet.
    EntityNotFoundError,
    OperationalError,
    InterfaceError,
    DBAPIError,
    RedisConnectionError,
    RedisTimeoutError,
    TimeoutError,
    ConnectionError,
    OSError,
)


class HandlerOutcome(str, Enum):
    """How a handler invocation ended."""

    OK = "ok"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    TRANSIENT = "transient"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class HandlerResult:
    outcome: HandlerOutcome
    reason: str | None = None

    @classmethod
    def ok(cls, reason: str | None = None) -> HandlerResult:
        return cls(HandlerOutcome.OK, reason)

    @classmethod
    def duplicate(cls, reason: str | None = None) -> HandlerResult:
        return cls(HandlerOutcome.DUPLICATE, reason)

    @classmethod
    def skipped(cls, reason: str) -> HandlerResult:
        return cls(HandlerOutcome.SKIPPED, reason)

    @classmethod
    def transient(cls, reason: str) -> HandlerResult:
        return cls(HandlerOutcome.TRANSIENT, reason)

    @classmethod
    def terminal(cls, reason: str) -> HandlerResult:
        return cls(HandlerOutcome.TERMINAL, reason)

    @property
    def is_retryable(self) -> bool:
        return self.outcome is HandlerOutcome.TRANSIENT

    @property
    def is_recorded(self) -> bool:
        """True when the log's effect is in the database."""
        return self.outcome in (HandlerOutcome.OK, HandlerOutcome.DUPLICATE)


def classify_exception(exc: BaseException) -> HandlerOutcome:
    """Map an exception escaping a handler onto a handler outcome."""
    if isinstance(exc, DecodeError):
        return HandlerOutcome.TERMINAL
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return HandlerOutcome.TRANSIENT
    return HandlerOutcome.TERMINAL


Attempt = Callable[[], Awaitable[HandlerResult]]


@dataclass
class RetryStats:
    attempts: int = 0
    retries: int = 0
    transient_failures: int = 0
    terminal_failures: int = 0
    exhausted: int = 0


class RetryScheduler:
    """Runs handler attempts with bounded exponential-backoff retries.

    Retry `n` (1-based) waits `base_delay * 2 ** (n - 1)` seconds. Every
    attempt is bounded by `attempt_timeout`.
    """

    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
        name: str = "retry",
    ) -> None:
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._attempt_timeout = attempt_timeout
        self._name = name
        self._tasks: set[asyncio.Task[HandlerResult]] = set()
        self._closed = False
        self.stats = RetryStats()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def backoff(self, retry: int) -> float:
        return float(self._base_delay * 2 ** (retry - 1))

    async def run(self, label: str, attempt: Attempt) -> HandlerResult:
        """Run `attempt` now; schedule retries in the background if transient."""
        result = await self._attempt(label, attempt)
        if result.is_retryable and self._max_retries > 0 and not self._closed:
            task = asyncio.create_task(self._retry(label, attempt), name=f"{self._name}:{label}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return result

    async def _attempt(self, label: str, attempt: Attempt) -> HandlerResult:
        self.stats.attempts += 1
        try:
            result = await asyncio.wait_for(attempt(), timeout=self._attempt_timeout)
        except Exception as e:
            result = HandlerResult(classify_exception(e), f"{type(e).__name__}: {e}")

        if result.outcome is HandlerOutcome.TRANSIENT:
            self.stats.transient_failures += 1
            logger.warning("%s failed transiently: %s", label, result.reason)
        elif result.outcome is HandlerOutcome.TERMINAL:
            self.stats.terminal_failures += 1
            logger.error("%s failed terminally: %s", label, result.reason)
        return result

    async def _retry(self, label: str, attempt: Attempt) -> HandlerResult:
        result = HandlerResult.transient("not retried")
        for retry in range(1, self._max_retries + 1):
            delay = self.backoff(retry)
            logger.info("Retrying %s in %.1fs (retry %d/%d)", label, delay, retry, self._max_retries)
            await asyncio.sleep(delay)
            self.stats.retries += 1
            result = await self._attempt(label, attempt)
            if not result.is_retryable:
                return result
        self.stats.exhausted += 1
        logger.error(
            "%s gave up after %d retries: %s (left to the reconciler)",
            label,
            self._max_retries,
            result.reason,
        )
        return result

    async def drain(self, timeout: float) -> int:
        """Stop scheduling retries and wait for in-flight ones.

        Returns:
            Number of retries cancelled because the grace period ran out.
        """
        self._closed = True
        pending = set(self._tasks)
        if not pending:
            return 0
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        for task in still_pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if still_pending:
            logger.warning("%s: cancelled %d pending retries at shutdown", self._name, len(still_pending))
        return len(still_pending)

    def reopen(self) -> None:
        self._closed = False
