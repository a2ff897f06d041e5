"""
Cancellable interval polling on the running event loop.

The poller knows nothing about payments: deciding whether a result is still
relevant is up to ``on_result``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

__all__ = ["PollHandle", "start_polling"]

logger = logging.getLogger(__name__)


class PollHandle:
    """Stops the poller it was returned for. Calling it more than once is harmless."""

    def __init__(self, key: str) -> None:
        self.key = key
        self.stopped = False
        self._task: Optional[asyncio.Task[None]] = None

    def __call__(self) -> None:
        self.stop()

    def _attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        task = self._task
        # A handle stopped from inside its own callbacks just lets the loop exit.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("[POLL] stopped %s", self.key)


def start_polling(
    *,
    key: str,
    interval_seconds: float,
    poll_fn: Callable[[], Awaitable[Any]],
    on_result: Callable[[Any], None],
    on_error: Callable[[BaseException], None],
    delay_seconds: float = 0.0,
) -> PollHandle:
    """
    Run ``poll_fn`` after ``delay_seconds`` and then ``interval_seconds`` after
    each attempt settles, so calls never overlap.

    Must be called with a running event loop. Returns the handle that stops
    the poller.
    """
    handle = PollHandle(key)

    async def run() -> None:
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        while not handle.stopped:
            try:
                result = await poll_fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                if handle.stopped:
                    break
                _invoke(handle, on_error, exc)
            else:
                if handle.stopped:
                    break
                _invoke(handle, on_result, result)

            if handle.stopped:
                break
            await asyncio.sleep(interval_seconds)

    handle._attach(asyncio.get_running_loop().create_task(run(), name=f"poll:{key}"))
    logger.debug("[POLL] started %s every %ss", key, interval_seconds)
    return handle


def _invoke(handle: PollHandle, callback: Callable[[Any], None], value: Any) -> None:
    try:
        callback(value)
    except Exception:  # noqa: BLE001
        logger.exception("[POLL] callback for %s failed", handle.key)
