"""
Async utilities for cancellable source calls.

This module provides the pieces the pipeline threads through every await:
- CancellationToken, shared by one aggregation pass
- run_cancellable, which races an awaitable against a timeout and a token
- cancellable_sleep for backoff and throttling delays
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar('T')

SleepFn = Callable[[float], Awaitable[Any]]


class TokenCancelled(Exception):
    """Raised when the token of the running pass was cancelled."""
    pass


class CancellationToken:
    """One-shot cancellation flag that can also be awaited."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TokenCancelled()


async def run_cancellable(
    aw: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """Await aw, bounded by timeout and by cancellation of token.

    Args:
        aw: Awaitable to run
        token: Optional cancellation token
        timeout: Optional timeout in seconds

    Returns:
        Result of aw

    Raises:
        asyncio.TimeoutError: If timeout elapsed first
        TokenCancelled: If token was cancelled first
    """
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(aw):
            aw.close()
        raise TokenCancelled()

    if token is None:
        return await asyncio.wait_for(aw, timeout=timeout)

    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    # Collect the cancelled task so its outcome is not reported as never retrieved
    await asyncio.gather(task, return_exceptions=True)
    if waiter in done:
        raise TokenCancelled()
    waiter.cancel()
    raise asyncio.TimeoutError()


async def cancellable_sleep(
    delay: float,
    token: Optional[CancellationToken] = None,
    sleep: SleepFn = asyncio.sleep,
) -> None:
    """Sleep for delay seconds unless token is cancelled first."""
    if delay <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    await run_cancellable(sleep(delay), token=token)
