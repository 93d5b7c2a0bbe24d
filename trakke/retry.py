"""
Retry/backoff around a single source query.

Only rate-limit responses are retried. Every other failure, and running out
of attempts, degrades to an empty FetchOutcome carrying the error; nothing
but task cancellation propagates out of execute().
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from trakke import metrics
from trakke.config import get_config
from trakke.models import RawRecord
from trakke.providers.base import (
    CancelledByCaller,
    RateLimitError,
    SourceError,
    SourceTimeoutError,
    TransportError,
)
from trakke.utils.async_utils import (
    CancellationToken,
    SleepFn,
    TokenCancelled,
    cancellable_sleep,
    run_cancellable,
)

logger = logging.getLogger(__name__)

QueryFn = Callable[[], Awaitable[List[RawRecord]]]


@dataclass
class FetchOutcome:
    records: List[RawRecord] = field(default_factory=list)
    error: Optional[SourceError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, CancelledByCaller)


class RetryController:
    """Runs a query function with per-attempt timeouts and 429 backoff."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_step: Optional[float] = None,
        backoff_cap: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        retry_config = get_config().retry_config
        self.max_attempts = max_attempts if max_attempts is not None else retry_config.max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else retry_config.backoff_base
        self.backoff_step = backoff_step if backoff_step is not None else retry_config.backoff_step
        self.backoff_cap = backoff_cap if backoff_cap is not None else retry_config.backoff_cap
        self._sleep = sleep

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay after failed attempt number `attempt` (1-based).

        A server Retry-After longer than the computed delay is honoured up to the cap.
        """
        delay = min(self.backoff_base + attempt * self.backoff_step, self.backoff_cap)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.backoff_cap))
        return delay

    async def execute(
        self,
        query_fn: QueryFn,
        max_attempts: Optional[int] = None,
        per_attempt_timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        label: str = "query",
    ) -> FetchOutcome:
        """Run query_fn until it succeeds, fails terminally or runs out of attempts.

        Args:
            query_fn: Zero-argument coroutine function issuing one request
            max_attempts: Overrides the configured attempt count
            per_attempt_timeout: Seconds each attempt may take
            token: Cancellation token of the calling pass
            label: Query name used in logs and errors

        Returns:
            FetchOutcome with records on success, or [] and the error
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if per_attempt_timeout is None:
            per_attempt_timeout = get_config().get_timeout("viewport")

        last_error: Optional[SourceError] = None
        for attempt in range(1, attempts + 1):
            if token is not None and token.cancelled:
                return self._cancelled(label, attempt - 1)
            try:
                await metrics.increment("source.calls")
                records = await run_cancellable(query_fn(), token=token, timeout=per_attempt_timeout)
                return FetchOutcome(records=list(records), attempts=attempt)
            except TokenCancelled:
                return self._cancelled(label, attempt)
            except asyncio.TimeoutError:
                error = SourceTimeoutError(
                    f"{label} timed out after {per_attempt_timeout}s", query=label
                )
                logger.warning(f"[RETRY] {error}")
                return FetchOutcome(error=error, attempts=attempt)
            except RateLimitError as e:
                last_error = e
                await metrics.increment("source.rate_limited")
                if attempt >= attempts:
                    break
                delay = self.backoff_delay(attempt, e.retry_after)
                logger.info(
                    f"[RETRY] {label} rate limited (attempt {attempt}/{attempts}), "
                    f"retrying in {delay:.1f}s"
                )
                try:
                    await cancellable_sleep(delay, token=token, sleep=self._sleep)
                except TokenCancelled:
                    return self._cancelled(label, attempt)
            except CancelledByCaller as e:
                return FetchOutcome(error=e, attempts=attempt)
            except SourceError as e:
                logger.warning(f"[RETRY] {label} failed: {e}")
                return FetchOutcome(error=e, attempts=attempt)
            except Exception as e:
                logger.exception(f"[RETRY] {label} raised unexpectedly")
                return FetchOutcome(
                    error=TransportError(f"{label} failed: {e}", query=label), attempts=attempt
                )

        logger.warning(f"[RETRY] {label} still rate limited after {attempts} attempts")
        return FetchOutcome(error=last_error, attempts=attempts)

    @staticmethod
    def _cancelled(label: str, attempt: int) -> FetchOutcome:
        logger.info(f"[RETRY] {label} cancelled by caller")
        return FetchOutcome(
            error=CancelledByCaller(f"{label} cancelled", query=label), attempts=attempt
        )
