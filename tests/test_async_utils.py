import asyncio

import pytest

from trakke.utils.async_utils import (
    CancellationToken,
    TokenCancelled,
    cancellable_sleep,
    run_cancellable,
)


@pytest.mark.asyncio
async def test_run_cancellable_returns_result():
    async def work():
        return 42

    assert await run_cancellable(work(), token=CancellationToken(), timeout=1) == 42
    assert await run_cancellable(work()) == 42


@pytest.mark.asyncio
async def test_run_cancellable_times_out():
    with pytest.raises(asyncio.TimeoutError):
        await run_cancellable(asyncio.sleep(5), token=CancellationToken(), timeout=0.01)


@pytest.mark.asyncio
async def test_cancelling_token_interrupts_work():
    token = CancellationToken()
    started = asyncio.Event()
    finished = []

    async def work():
        started.set()
        await asyncio.sleep(5)
        finished.append(True)

    pending = asyncio.ensure_future(run_cancellable(work(), token=token, timeout=10))
    await started.wait()
    token.cancel()
    with pytest.raises(TokenCancelled):
        await pending
    assert finished == []


@pytest.mark.asyncio
async def test_already_cancelled_token_never_starts_work():
    token = CancellationToken()
    token.cancel()
    calls = []

    async def work():
        calls.append(1)

    with pytest.raises(TokenCancelled):
        await run_cancellable(work(), token=token)
    assert calls == []


@pytest.mark.asyncio
async def test_cancellable_sleep(no_sleep):
    await cancellable_sleep(2.5, sleep=no_sleep)
    await cancellable_sleep(0, sleep=no_sleep)
    assert no_sleep.calls == [2.5]

    token = CancellationToken()
    token.cancel()
    with pytest.raises(TokenCancelled):
        await cancellable_sleep(0, token=token, sleep=no_sleep)
