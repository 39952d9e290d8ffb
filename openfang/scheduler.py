"""Async scheduler for recurring tasks and one-shot reminders."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from openfang.db import Database
from openfang.delivery import Delivery
from openfang.errors import InvalidScheduleDefinition
from openfang.executor import ScheduleExecutor
from openfang.models import Schedule

LOGGER = logging.getLogger(__name__)

REMINDER_PREFIX = "⏰ Reminder: "


def next_occurrence(cron_expr: str, timezone_name: str, after: datetime) -> datetime:
    """Return the first cron occurrence strictly after ``after``, in UTC.

    The expression is evaluated in ``timezone_name`` so that e.g. "0 9 * * *"
    means 9am local time across DST changes.
    """

    try:
        tz = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidScheduleDefinition(f"Unknown timezone: {timezone_name!r}") from exc

    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    try:
        itr = croniter(cron_expr, after.astimezone(tz))
        upcoming = itr.get_next(datetime)
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidScheduleDefinition(f"Invalid cron expression {cron_expr!r}: {exc}") from exc
    return upcoming.astimezone(timezone.utc)


def reminder_text(prompt: str) -> str:
    return f"{REMINDER_PREFIX}{prompt}"


class TaskScheduler:
    """Polls due schedules and dispatches them one at a time."""

    def __init__(
        self,
        db: Database,
        executor: ScheduleExecutor,
        delivery: Delivery,
        poll_interval_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._executor = executor
        self._delivery = delivery
        self._poll_interval_seconds = poll_interval_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()

    def recompute_next_runs(self, now: datetime | None = None) -> None:
        """Re-anchor every enabled recurring schedule at ``now``.

        Occurrences missed while the process was down are skipped, not
        replayed.
        """

        now = now or self._clock()
        for schedule in self._db.list_enabled_recurring():
            try:
                next_run_at = next_occurrence(schedule.cron_expr or "", schedule.timezone, now)
            except InvalidScheduleDefinition as exc:
                LOGGER.error("Disabling schedule %s: %s", schedule.id, exc)
                self._db.disable_schedule(schedule.id)
                continue
            self._db.set_schedule_next_run(schedule.id, next_run_at)

    async def tick(self, now: datetime | None = None) -> int:
        """Process every due schedule sequentially. Returns how many ran."""

        if self._tick_lock.locked():
            LOGGER.warning("Previous scheduler tick still running; skipping this one")
            return 0

        async with self._tick_lock:
            now = now or self._clock()
            due = self._db.get_due_schedules(now)
            for schedule in due:
                await self._execute(schedule, now)
            return len(due)

    async def _execute(self, schedule: Schedule, now: datetime) -> None:
        LOGGER.info(
            "Executing schedule %s (%s): %r",
            schedule.id,
            schedule.kind,
            schedule.prompt[:50],
        )

        if schedule.is_recurring:
            try:
                text = await self._executor.execute(schedule.prompt, schedule.tools_enabled)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Schedule %s execution failed", schedule.id)
                text = f"Scheduled task failed: {exc}"
        else:
            text = reminder_text(schedule.prompt)

        try:
            await self._delivery.deliver(schedule.recipient, text)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Delivery failed for schedule %s", schedule.id)

        if not schedule.is_recurring:
            self._db.delete_schedule(schedule.id)
            return

        # Anchor on the time the run finished, so a slow run cannot leave
        # next_run_at in the past.
        finished_at = max(now, self._clock())
        try:
            next_run_at = next_occurrence(schedule.cron_expr or "", schedule.timezone, finished_at)
        except InvalidScheduleDefinition as exc:
            LOGGER.error("Failed to compute next run for schedule %s, disabling: %s", schedule.id, exc)
            self._db.disable_schedule(schedule.id)
            return
        self._db.mark_schedule_run(schedule.id, last_run_at=now, next_run_at=next_run_at)

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        self.recompute_next_runs()
        LOGGER.info("Scheduler started (interval=%ss)", self._poll_interval_seconds)
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Scheduler stopped")

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
