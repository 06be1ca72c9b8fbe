from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import pytz

logger = logging.getLogger(__name__)


def next_run_at(hour: int, tz_name: str, now: Optional[datetime] = None) -> datetime:
    """Next occurrence of ``hour:00`` in *tz_name*, strictly after *now*."""
    tz = pytz.timezone(tz_name)
    local_now = now.astimezone(tz) if now is not None else datetime.now(tz)
    target = tz.localize(datetime(local_now.year, local_now.month, local_now.day, hour))
    if target <= local_now:
        # Re-localize so a DST change between today and tomorrow keeps the wall-clock hour.
        tomorrow = local_now.date() + timedelta(days=1)
        target = tz.localize(datetime(tomorrow.year, tomorrow.month, tomorrow.day, hour))
    return target


def seconds_until_next(hour: int, tz_name: str, now: Optional[datetime] = None) -> float:
    tz = pytz.timezone(tz_name)
    local_now = now.astimezone(tz) if now is not None else datetime.now(tz)
    return (next_run_at(hour, tz_name, local_now) - local_now).total_seconds()


class DailySchedule:
    """Run an async job once a day at a fixed wall-clock hour."""

    def __init__(
        self,
        hour: int,
        tz_name: str,
        job: Callable[[], Awaitable[object]],
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], Optional[datetime]] = lambda: None,
    ) -> None:
        self.hour = hour
        self.tz_name = tz_name
        self._job = job
        self._sleep = sleep
        self._clock = clock

    def next_run(self) -> datetime:
        return next_run_at(self.hour, self.tz_name, self._clock())

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        while stop_event is None or not stop_event.is_set():
            delay = seconds_until_next(self.hour, self.tz_name, self._clock())
            logger.info("[SCHEDULE] Next run at %s (in %.0fs)", self.next_run().isoformat(), delay)
            await self._sleep(delay)
            if stop_event is not None and stop_event.is_set():
                break
            try:
                await self._job()
            except Exception:
                logger.exception("[SCHEDULE] Daily job failed")
