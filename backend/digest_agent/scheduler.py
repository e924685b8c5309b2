"""Minute-granularity scheduler plus the daily maintenance tick."""
import asyncio
import logging
from datetime import date, datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import ScheduleSettings

logger = logging.getLogger(__name__)

TICK_SEC = 60
MIN_SLEEP_SEC = 0.5
MAINTENANCE_HOUR = 3


def _field_matches(field: str, value: int) -> bool:
    if field == "*":
        return True
    try:
        return int(field) == value
    except ValueError:
        logger.warning(f"Invalid schedule field {field!r}, expected '*' or an integer")
        return False


def cron_matches(pattern: str, now: datetime) -> bool:
    """Match "<minute> <hour> ..." against ``now``; extra fields are ignored."""
    fields = pattern.split()
    if len(fields) < 2:
        logger.warning(f"Invalid schedule pattern {pattern!r}")
        return False
    minute, hour = fields[0], fields[1]
    return _field_matches(minute, now.minute) and _field_matches(hour, now.hour)


def _zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using local time")
        return None


class Scheduler:
    def __init__(
        self,
        settings: ScheduleSettings,
        trigger: Callable[[], Awaitable[object]],
        maintenance: Callable[[], Awaitable[None]],
        clock: Callable[[Optional[ZoneInfo]], datetime] = datetime.now,
    ):
        self.settings = settings
        self._trigger = trigger
        self._maintenance = maintenance
        self._clock = clock
        self._last_fired: Optional[datetime] = None
        self._last_maintenance: Optional[date] = None
        self._task: Optional[asyncio.Task] = None
        self._runs: set = set()

    def reload(self, settings: ScheduleSettings) -> None:
        self.settings = settings
        state = "enabled" if settings.enabled else "disabled"
        logger.info(f"Schedule {state}: '{settings.cron}' ({settings.timezone})")

    async def tick(self) -> None:
        now = self._clock(_zone(self.settings.timezone))
        slot = now.replace(second=0, microsecond=0)

        if now.hour == MAINTENANCE_HOUR and self._last_maintenance != now.date():
            self._last_maintenance = now.date()
            logger.info("Running daily maintenance")
            await self._maintenance()

        if not self.settings.enabled or slot == self._last_fired:
            return
        if cron_matches(self.settings.cron, now):
            self._last_fired = slot
            logger.info("Scheduled digest run triggered")
            # Detached so a long run never delays the next tick
            run = asyncio.create_task(self._trigger())
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)

    def seconds_until_next_tick(self) -> float:
        """Time to the next wall-clock minute, so tick work never pushes a slot out."""
        now = self._clock(_zone(self.settings.timezone))
        return max(TICK_SEC - now.second - now.microsecond / 1_000_000, MIN_SLEEP_SEC)

    async def run_forever(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.seconds_until_next_tick())

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
