"""Fixed-delay polling and cooperative shutdown for the strategy loop."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class ShutdownRequested(Exception):
    """Raised at a checkpoint once a stop has been requested."""


class ShutdownSignal:
    """Cancellation token shared between the signal handlers and the loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def request(self, reason: str = "shutdown requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info("Shutdown requested: %s", reason)
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    def raise_if_requested(self) -> None:
        if self._event.is_set():
            raise ShutdownRequested(self.reason or "shutdown requested")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless a stop arrives first."""
        if seconds <= 0:
            self.raise_if_requested()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_requested()


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    interval_seconds: float,
    shutdown: ShutdownSignal,
) -> int:
    """
    Await ``predicate`` repeatedly, sleeping ``interval_seconds`` between
    attempts, until it returns True. Returns the number of attempts made.

    There is no attempt limit. Errors raised by the predicate propagate on the
    first occurrence and are never retried here.
    """
    attempts = 0
    while True:
        shutdown.raise_if_requested()
        attempts += 1
        if await predicate():
            return attempts
        await shutdown.sleep(interval_seconds)
