import asyncio

import pytest

from rozo_checkout.core.polling import start_polling


async def _wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.mark.asyncio
async def test_polls_until_stopped():
    calls = []
    results = []

    async def poll():
        calls.append(len(calls))
        return len(calls)

    handle = start_polling(
        key="test:1",
        interval_seconds=0.005,
        poll_fn=poll,
        on_result=results.append,
        on_error=lambda exc: None,
    )
    await _wait_until(lambda: len(results) >= 3)
    handle()
    delivered = len(results)
    await asyncio.sleep(0.03)

    assert handle.stopped
    assert len(results) == delivered
    assert results[:3] == [1, 2, 3]


@pytest.mark.asyncio
async def test_errors_are_reported_and_polling_continues():
    errors = []
    results = []
    attempts = {"n": 0}

    async def poll():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ConnectionError("flaky")
        return "ok"

    handle = start_polling(
        key="test:2",
        interval_seconds=0.005,
        poll_fn=poll,
        on_result=results.append,
        on_error=errors.append,
    )
    await _wait_until(lambda: results)
    handle.stop()

    assert isinstance(errors[0], ConnectionError)
    assert results[0] == "ok"


@pytest.mark.asyncio
async def test_raising_callback_does_not_stop_polling():
    results = []

    def on_result(value):
        results.append(value)
        if len(results) == 1:
            raise RuntimeError("handler bug")

    async def poll():
        return "value"

    handle = start_polling(
        key="test:3",
        interval_seconds=0.005,
        poll_fn=poll,
        on_result=on_result,
        on_error=lambda exc: None,
    )
    await _wait_until(lambda: len(results) >= 2)
    handle.stop()


@pytest.mark.asyncio
async def test_stop_from_callback_ends_loop():
    results = []
    handle = None

    def on_result(value):
        results.append(value)
        handle.stop()

    async def poll():
        return "once"

    handle = start_polling(
        key="test:4",
        interval_seconds=0.001,
        poll_fn=poll,
        on_result=on_result,
        on_error=lambda exc: None,
    )
    await asyncio.sleep(0.03)
    assert results == ["once"]
    assert handle.done


@pytest.mark.asyncio
async def test_stopping_during_delay_never_polls():
    calls = []

    async def poll():
        calls.append(1)

    handle = start_polling(
        key="test:5",
        interval_seconds=0.01,
        poll_fn=poll,
        on_result=lambda value: None,
        on_error=lambda exc: None,
        delay_seconds=0.05,
    )
    handle.stop()
    handle.stop()
    await asyncio.sleep(0.07)
    assert calls == []


@pytest.mark.asyncio
async def test_result_after_stop_is_not_delivered():
    gate = asyncio.Event()
    results = []

    async def poll():
        await gate.wait()
        return "late"

    handle = start_polling(
        key="test:6",
        interval_seconds=0.01,
        poll_fn=poll,
        on_result=results.append,
        on_error=lambda exc: None,
    )
    await asyncio.sleep(0.01)
    handle.stop()
    gate.set()
    await asyncio.sleep(0.02)
    assert results == []
