"""
Process-wide gate in front of the chain RPC: one call in flight at a time,
and at least `min_interval_ms` between the end of one call and the start of
the next.
"""
import asyncio
import time


class RpcRateGate:
    def __init__(self, min_interval_ms: int = 500):
        self.min_interval = min_interval_ms / 1000
        self._lock = asyncio.Lock()
        self._last_call = 0.0

    async def __aenter__(self):
        await self._lock.acquire()
        wait = self._last_call + self.min_interval - time.monotonic()
        if wait > 0:
            try:
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                self._lock.release()
                raise
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._last_call = time.monotonic()
        self._lock.release()
        return False
