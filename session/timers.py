"""
Small asyncio timing helpers: fixed-rate periodic callbacks, one-shot
cancellable timers and bounded waits with a fallback.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PeriodicTimer:
    """
    Invokes `callback` every `interval_s` seconds on the running loop.

    Ticks are scheduled against a fixed timeline; a slow callback delays the
    next tick but does not shift later ones. Exceptions from the callback are
    logged and the timer keeps running.
    """

    def __init__(self, interval_s: float, callback: Callable[[], Any], name: str = "timer") -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.interval_s = interval_s
        self.callback = callback
        self.name = name
        self.ticks = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        while True:
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s callback failed", self.name)
            self.ticks += 1
            next_at += self.interval_s
            now = loop.time()
            if next_at < now:
                # fell behind; skip missed ticks
                next_at = now
            await asyncio.sleep(next_at - now)


class CancellableTimer:
    """One-shot timer; `cancel()` before expiry prevents the callback."""

    def __init__(self, delay_s: float, callback: Callable[[], Any]) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self.fired

    def start(self) -> None:
        self.cancel()
        self.fired = False
        self._handle = asyncio.get_running_loop().call_later(self.delay_s, self._fire)

    def _fire(self) -> None:
        self.fired = True
        self._handle = None
        try:
            self.callback()
        except Exception:
            logger.exception("timer callback failed")

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


async def wait_bounded(
    awaitable: Awaitable[T],
    timeout_s: float,
    fallback: Optional[Callable[[], T]] = None,
    shield: bool = False,
) -> Optional[T]:
    """
    Await `awaitable` for at most `timeout_s` seconds.

    On timeout returns `fallback()` (or None). With `shield=True` the
    underlying operation keeps running after the timeout.
    """
    target = asyncio.shield(awaitable) if shield else awaitable
    try:
        return await asyncio.wait_for(target, timeout_s)
    except asyncio.TimeoutError:
        logger.debug("wait timed out after %.1fs", timeout_s)
        return fallback() if fallback is not None else None
