import asyncio

import pytest

from polling import ShutdownRequested, ShutdownSignal, poll_until


@pytest.mark.asyncio
async def test_poll_until_returns_attempt_count():
    answers = iter([False, False, True])
    calls = []

    async def predicate():
        calls.append(1)
        return next(answers)

    attempts = await poll_until(predicate, 0.001, ShutdownSignal())

    assert attempts == 3
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_poll_until_propagates_predicate_errors_without_retry():
    calls = []

    async def predicate():
        calls.append(1)
        raise ConnectionError("rpc down")

    with pytest.raises(ConnectionError):
        await poll_until(predicate, 0.001, ShutdownSignal())
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_shutdown_wakes_sleep_early():
    shutdown = ShutdownSignal()

    async def predicate():
        asyncio.get_running_loop().call_later(0.01, shutdown.request, "test stop")
        return False

    with pytest.raises(ShutdownRequested, match="test stop"):
        # A one-hour interval would hang the test if the sleep ignored the signal.
        await asyncio.wait_for(poll_until(predicate, 3600, shutdown), timeout=5)


@pytest.mark.asyncio
async def test_poll_until_checks_shutdown_before_first_attempt():
    shutdown = ShutdownSignal()
    shutdown.request()
    calls = []

    async def predicate():
        calls.append(1)
        return True

    with pytest.raises(ShutdownRequested):
        await poll_until(predicate, 0.001, shutdown)
    assert calls == []
