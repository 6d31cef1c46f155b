import asyncio
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_stopped(stop_event: Optional[asyncio.Event]) -> bool:
    return stop_event is not None and stop_event.is_set()


async def sleep_or_stop(seconds: float, stop_event: Optional[asyncio.Event] = None) -> bool:
    """Sleeps for `seconds`; returns True early if the stop event fires."""
    if stop_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
