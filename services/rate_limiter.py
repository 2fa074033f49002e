#!/usr/bin/env python3
import asyncio
import threading
import time

from web3 import HTTPProvider


class RequestThrottle:
    """
    Hands out request slots spaced at least ``1 / rate_limit_per_second`` apart.

    One instance is shared by the async JSON-RPC client and the web3 provider
    running in worker threads, so the endpoint sees a single request stream.
    """

    def __init__(self, rate_limit_per_second: float) -> None:
        self.min_interval = 1.0 / rate_limit_per_second if rate_limit_per_second > 0 else 0.0
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def reserve(self) -> float:
        """Claim the next slot and return the seconds to wait for it."""
        if self.min_interval <= 0:
            return 0.0
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.min_interval
        return slot - now

    def wait(self) -> None:
        delay = self.reserve()
        if delay > 0:
            time.sleep(delay)

    async def wait_async(self) -> None:
        delay = self.reserve()
        if delay > 0:
            await asyncio.sleep(delay)


class RateLimitedHTTPProvider(HTTPProvider):
    """web3 HTTP provider whose every request waits for a throttle slot."""

    def __init__(self, endpoint_uri: str, throttle: RequestThrottle, **kwargs) -> None:
        super().__init__(endpoint_uri, **kwargs)
        self.throttle = throttle

    def make_request(self, method, params):
        self.throttle.wait()
        return super().make_request(method, params)
