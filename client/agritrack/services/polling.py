"""Fixed-interval polling loop with view-scoped cancellation."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from agritrack.core.errors import AgriTrackError
from agritrack.core.logging import logger


T = TypeVar("T")


class PollLoop(Generic[T]):
    """Runs ``fetch`` then ``apply`` every ``interval`` seconds.

    Cycles are strictly sequential: the next fetch is not issued until the
    previous result has been applied or discarded. ``stop()`` lets an in-flight
    fetch finish but its result is never applied.
    Service errors and unexpected exceptions are logged and skip the cycle.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fetch: Callable[[], Awaitable[T]],
        apply: Callable[[T], None],
    ) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.name = name
        self.interval = float(interval)
        self._fetch = fetch
        self._apply = apply
        self._stopped = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0
        self.discarded = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> "PollLoop[T]":
        if self._stopped:
            raise RuntimeError(f"Poll loop '{self.name}' was stopped and cannot restart")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name=f"poll:{self.name}")
            logger.debug("Poll loop started", poller=self.name, interval=self.interval)
        return self

    def stop(self) -> None:
        if not self._stopped:
            self._stopped = True
            self._wake.set()
            logger.debug("Poll loop stopped", poller=self.name, cycles=self.cycles)

    async def aclose(self) -> None:
        self.stop()
        if self._task is not None:
            await self._task

    async def poll_once(self) -> bool:
        """Run one fetch/apply cycle; returns False when the result was discarded."""
        result = await self._fetch()
        if self._stopped:
            self.discarded += 1
            logger.debug("Discarding poll result after stop", poller=self.name)
            return False
        self._apply(result)
        self.cycles += 1
        return True

    async def _run(self) -> None:
        while not self._stopped:
            try:
                await self.poll_once()
            except AgriTrackError as exc:
                logger.warning("Poll cycle skipped", poller=self.name, kind=exc.kind, error=exc.message)
            except Exception:
                self.failures += 1
                logger.exception("Poll cycle failed", poller=self.name, failures=self.failures)
            if self._stopped:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def __aenter__(self) -> "PollLoop[T]":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
