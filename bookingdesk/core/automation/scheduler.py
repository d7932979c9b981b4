"""
Recurring scan runner.

The FastAPI lifespan owns one Scheduler. Each RecurringTask runs in its
own asyncio task on a fixed cadence, and a failing pass is logged without
stopping the loop. With a lease store configured, only one process runs a
given scan per period.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

from bookingdesk.config import Settings, get_settings
from bookingdesk.core.automation.retry import RetryCoordinator
from bookingdesk.core.automation.rules import AutomationEngine
from bookingdesk.core.scheduling.lifecycle import ArchivalScanner, NoShowScanner
from bookingdesk.core.scheduling.timezones import as_utc, utcnow
from bookingdesk.core.store import StoreFactory
from bookingdesk.infra.messaging import MessagingGateway
from bookingdesk.infra.redis import ScanLeaseStore

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Job = Callable[[datetime], Awaitable[object]]


class Schedule(Protocol):
    lease_ttl_seconds: int

    def first_run(self, now: datetime) -> datetime: ...

    def next_run(self, after: datetime) -> datetime: ...


class IntervalSchedule:
    """Every N seconds, on boundaries aligned to the epoch.

    Alignment keeps a 60-second schedule inside its wall-clock minute even
    when the event loop wakes a few milliseconds late.
    """

    def __init__(self, seconds: int, run_immediately: bool = True):
        if seconds <= 0:
            raise ValueError(f"Interval must be positive, got {seconds}")
        self.seconds = seconds
        self.run_immediately = run_immediately

    @property
    def lease_ttl_seconds(self) -> int:
        return max(1, self.seconds - 5)

    def first_run(self, now: datetime) -> datetime:
        return now if self.run_immediately else self.next_run(now)

    def next_run(self, after: datetime) -> datetime:
        elapsed = (as_utc(after) - EPOCH).total_seconds()
        periods = int(elapsed // self.seconds) + 1
        return EPOCH + timedelta(seconds=periods * self.seconds)

    def __repr__(self) -> str:
        return f"IntervalSchedule(every {self.seconds}s)"


class DailySchedule:
    """Once a day at a fixed UTC time."""

    lease_ttl_seconds = 3600

    def __init__(self, hour: int, minute: int = 0):
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid time of day {hour:02d}:{minute:02d}")
        self.hour = hour
        self.minute = minute

    def first_run(self, now: datetime) -> datetime:
        return self.next_run(now)

    def next_run(self, after: datetime) -> datetime:
        after = as_utc(after)
        candidate = after.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= after:
            candidate += timedelta(days=1)
        return candidate

    def __repr__(self) -> str:
        return f"DailySchedule({self.hour:02d}:{self.minute:02d} UTC)"


class RecurringTask:
    """A named job driven by a schedule."""

    def __init__(
        self,
        name: str,
        schedule: Schedule,
        job: Job,
        clock: Optional[Callable[[], datetime]] = None,
        lease: Optional[ScanLeaseStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize task.

        Args:
            name: Scan name, also the lease key
            schedule: When to run
            job: Coroutine function taking the pass time
            clock: Returns the current UTC time
            lease: Optional cross-process lease store
            sleep: Injectable sleep for tests
        """
        self.name = name
        self.schedule = schedule
        self.job = job
        self.clock = clock or utcnow
        self.lease = lease
        self._sleep = sleep

        self.runs = 0
        self.failures = 0
        self.skipped = 0
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None

    async def run_once(self, now: Optional[datetime] = None) -> bool:
        """Run a single pass. Never raises.

        Returns:
            True if the job ran and completed
        """
        now = now or self.clock()
        token = None

        if self.lease is not None:
            token = await self.lease.acquire(self.name, self.schedule.lease_ttl_seconds)
            if token is None:
                self.skipped += 1
                logger.debug(f"Scan {self.name} skipped: lease held elsewhere")
                return False

        try:
            await self.job(now)
        except Exception as e:
            self.failures += 1
            logger.error(f"Scan {self.name} failed: {e}", exc_info=True)
            if self.lease is not None and token:
                await self.lease.release(self.name, token)
            return False

        self.runs += 1
        self.last_run = now
        return True

    async def run_forever(self) -> None:
        """Run on schedule until cancelled."""
        self.next_run = self.schedule.first_run(self.clock())
        logger.info(f"Scan {self.name} started ({self.schedule!r})")

        while True:
            delay = (self.next_run - self.clock()).total_seconds()
            if delay > 0:
                await self._sleep(delay)

            # Scheduled tick, so an early wake cannot repeat the last window
            await self.run_once(self.next_run)

            upcoming = self.schedule.next_run(self.next_run)
            now = self.clock()
            if upcoming <= now:
                # Fell behind; skip missed periods instead of bursting
                upcoming = self.schedule.next_run(now)
            self.next_run = upcoming

    def status(self) -> dict:
        return {
            "schedule": repr(self.schedule),
            "runs": self.runs,
            "failures": self.failures,
            "skipped": self.skipped,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }


class Scheduler:
    """Owns the asyncio tasks of all recurring scans."""

    def __init__(self):
        self._tasks: list[RecurringTask] = []
        self._running: dict[str, asyncio.Task] = {}

    def add(self, task: RecurringTask) -> RecurringTask:
        if any(existing.name == task.name for existing in self._tasks):
            raise ValueError(f"Duplicate scan name: {task.name}")
        self._tasks.append(task)
        return task

    @property
    def tasks(self) -> list[RecurringTask]:
        return list(self._tasks)

    @property
    def running(self) -> bool:
        return bool(self._running)

    async def start(self) -> None:
        if self.running:
            return
        for task in self._tasks:
            self._running[task.name] = asyncio.create_task(
                task.run_forever(),
                name=f"scan:{task.name}",
            )
        logger.info(f"Scheduler started with {len(self._tasks)} scan(s)")

    async def stop(self) -> None:
        if not self.running:
            return
        for handle in self._running.values():
            handle.cancel()
        await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._running.clear()
        logger.info("Scheduler stopped")

    def status(self) -> dict:
        return {
            "running": self.running,
            "scans": {task.name: task.status() for task in self._tasks},
        }


def build_scheduler(
    store_factory: StoreFactory,
    gateway: Optional[MessagingGateway] = None,
    lease: Optional[ScanLeaseStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
    settings: Optional[Settings] = None,
) -> Scheduler:
    """Wire the automation, no-show, archival and retry scans.

    Args:
        store_factory: Opens a unit of work per tenant/message
        gateway: Messaging gateway (defaults to singleton)
        lease: Cross-process scan lease store
        clock: Returns the current UTC time
        settings: Cadence configuration (defaults to app settings)
    """
    settings = settings or get_settings()
    clock = clock or utcnow

    automation = AutomationEngine(store_factory, gateway=gateway, clock=clock)
    no_shows = NoShowScanner(store_factory, clock=clock)
    archival = ArchivalScanner(store_factory, clock=clock, retention_days=settings.archive_after_days)
    retry = RetryCoordinator(
        store_factory,
        gateway=gateway,
        max_attempts=settings.max_retry_attempts,
        batch_size=settings.retry_batch_size,
        clock=clock,
        stale_after_seconds=settings.retry_stale_after_seconds,
    )

    scheduler = Scheduler()
    scheduler.add(RecurringTask(
        automation.name,
        IntervalSchedule(settings.automation_scan_interval_seconds),
        automation.run,
        clock=clock,
        lease=lease,
    ))
    scheduler.add(RecurringTask(
        no_shows.name,
        IntervalSchedule(settings.no_show_scan_interval_seconds),
        no_shows.run,
        clock=clock,
        lease=lease,
    ))
    scheduler.add(RecurringTask(
        archival.name,
        DailySchedule(settings.archive_hour_utc, settings.archive_minute_utc),
        archival.run,
        clock=clock,
        lease=lease,
    ))
    scheduler.add(RecurringTask(
        retry.name,
        IntervalSchedule(settings.retry_scan_interval_seconds),
        retry.run,
        clock=clock,
        lease=lease,
    ))
    return scheduler
