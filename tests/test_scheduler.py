import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from openfang.db import Database
from openfang.delivery import Delivery
from openfang.errors import DeliveryError, InvalidScheduleDefinition
from openfang.models import KIND_ONE_SHOT, KIND_RECURRING
from openfang.scheduler import TaskScheduler, next_occurrence, reminder_text

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class RecordingDelivery(Delivery):
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[str | None, str]] = []
        self._fail = fail

    async def deliver(self, recipient, text):  # noqa: ANN001, ANN201
        self.sent.append((recipient, text))
        if self._fail:
            raise DeliveryError("destination unreachable")


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "openfang.db")
    database.initialize()
    return database


@pytest.fixture
def executor():
    fake = AsyncMock()
    fake.execute.return_value = "task output"
    return fake


def _scheduler(db, executor, delivery, now=T0) -> TaskScheduler:  # noqa: ANN001
    return TaskScheduler(db=db, executor=executor, delivery=delivery, clock=lambda: now)


class TestNextOccurrence:
    def test_every_minute_from_aligned_start_is_one_minute_later(self):
        assert next_occurrence("* * * * *", "UTC", T0) == T0 + timedelta(minutes=1)

    def test_local_timezone_is_honoured(self):
        # 09:00 in New York on 2 March 2026 (EST, UTC-5) is 14:00 UTC.
        assert next_occurrence("0 9 * * *", "America/New_York", T0) == datetime(
            2026, 3, 2, 14, 0, tzinfo=timezone.utc
        )

    def test_result_is_strictly_after_reference(self):
        assert next_occurrence("0 8 * * *", "UTC", T0) == T0 + timedelta(days=1)

    def test_invalid_cron_raises(self):
        with pytest.raises(InvalidScheduleDefinition):
            next_occurrence("not a cron", "UTC", T0)

    def test_unknown_timezone_raises(self):
        with pytest.raises(InvalidScheduleDefinition):
            next_occurrence("* * * * *", "Mars/Olympus_Mons", T0)


class TestTick:
    @pytest.mark.asyncio
    async def test_recurring_schedule_runs_and_advances(self, db, executor):
        delivery = RecordingDelivery()
        schedule_id = db.create_schedule(
            KIND_RECURRING, "daily brief", next_run_at=T0, cron_expr="* * * * *", recipient="u1"
        )

        ran = await _scheduler(db, executor, delivery).tick()

        assert ran == 1
        executor.execute.assert_awaited_once_with("daily brief", True)
        assert delivery.sent == [("u1", "task output")]
        schedule = db.get_schedule(schedule_id)
        assert schedule.last_run_at == T0
        assert schedule.next_run_at == T0 + timedelta(minutes=1)
        assert schedule.enabled is True

    @pytest.mark.asyncio
    async def test_recurring_schedule_passes_tools_flag(self, db, executor):
        db.create_schedule(KIND_RECURRING, "quiet", next_run_at=T0, cron_expr="* * * * *", tools_enabled=False)

        await _scheduler(db, executor, RecordingDelivery()).tick()

        executor.execute.assert_awaited_once_with("quiet", False)

    @pytest.mark.asyncio
    async def test_one_shot_waits_until_due_then_is_deleted(self, db, executor):
        delivery = RecordingDelivery()
        run_at = T0 + timedelta(seconds=60)
        schedule_id = db.create_schedule(KIND_ONE_SHOT, "stretch", next_run_at=run_at, run_at=run_at)

        assert await _scheduler(db, executor, delivery, now=T0).tick() == 0
        assert delivery.sent == []
        assert db.get_schedule(schedule_id) is not None

        assert await _scheduler(db, executor, delivery, now=run_at).tick() == 1
        assert delivery.sent == [(None, "⏰ Reminder: stretch")]
        assert db.get_schedule(schedule_id) is None
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_cron_is_disabled_after_first_run(self, db, executor):
        delivery = RecordingDelivery()
        schedule_id = db.create_schedule(KIND_RECURRING, "broken", next_run_at=T0, cron_expr="99 99 * * *")
        scheduler = _scheduler(db, executor, delivery)

        assert await scheduler.tick() == 1
        assert db.get_schedule(schedule_id).enabled is False
        assert await scheduler.tick(T0 + timedelta(days=1)) == 0
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_delivery_failure_still_advances_recurring(self, db, executor):
        schedule_id = db.create_schedule(KIND_RECURRING, "brief", next_run_at=T0, cron_expr="* * * * *")

        await _scheduler(db, executor, RecordingDelivery(fail=True)).tick()

        assert db.get_schedule(schedule_id).next_run_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_delivery_failure_still_deletes_one_shot(self, db, executor):
        schedule_id = db.create_schedule(KIND_ONE_SHOT, "ping", next_run_at=T0, run_at=T0)

        await _scheduler(db, executor, RecordingDelivery(fail=True)).tick()

        assert db.get_schedule(schedule_id) is None

    @pytest.mark.asyncio
    async def test_executor_crash_is_delivered_and_schedule_advances(self, db, executor):
        executor.execute.side_effect = RuntimeError("backend exploded")
        delivery = RecordingDelivery()
        schedule_id = db.create_schedule(KIND_RECURRING, "brief", next_run_at=T0, cron_expr="* * * * *")

        await _scheduler(db, executor, delivery).tick()

        assert delivery.sent == [(None, "Scheduled task failed: backend exploded")]
        assert db.get_schedule(schedule_id).last_run_at == T0

    @pytest.mark.asyncio
    async def test_due_schedules_run_sequentially_in_order(self, db):
        order: list[str] = []

        class SlowExecutor:
            async def execute(self, prompt, tools_enabled):  # noqa: ANN001, ANN201
                order.append(f"start-{prompt}")
                await asyncio.sleep(0.01)
                order.append(f"end-{prompt}")
                return prompt

        db.create_schedule(KIND_RECURRING, "a", next_run_at=T0 - timedelta(minutes=2), cron_expr="* * * * *")
        db.create_schedule(KIND_RECURRING, "b", next_run_at=T0 - timedelta(minutes=1), cron_expr="* * * * *")

        await _scheduler(db, SlowExecutor(), RecordingDelivery()).tick()

        assert order == ["start-a", "end-a", "start-b", "end-b"]

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, db):
        release = asyncio.Event()

        class BlockingExecutor:
            async def execute(self, prompt, tools_enabled):  # noqa: ANN001, ANN201
                await release.wait()
                return "done"

        db.create_schedule(KIND_RECURRING, "slow", next_run_at=T0, cron_expr="* * * * *")
        scheduler = _scheduler(db, BlockingExecutor(), RecordingDelivery())

        first = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        assert await scheduler.tick() == 0
        release.set()
        assert await first == 1


    @pytest.mark.asyncio
    async def test_next_run_is_anchored_after_a_slow_run(self, db):
        clock = {"now": T0}

        class SlowExecutor:
            async def execute(self, prompt, tools_enabled):  # noqa: ANN001, ANN201
                clock["now"] = T0 + timedelta(seconds=90)
                return "late"

        schedule_id = db.create_schedule(KIND_RECURRING, "slow", next_run_at=T0, cron_expr="* * * * *")
        scheduler = TaskScheduler(
            db=db, executor=SlowExecutor(), delivery=RecordingDelivery(), clock=lambda: clock["now"]
        )

        await scheduler.tick()

        schedule = db.get_schedule(schedule_id)
        assert schedule.last_run_at == T0
        assert schedule.next_run_at == T0 + timedelta(minutes=2)
        assert schedule.next_run_at > clock["now"]
        assert await scheduler.tick() == 0


class TestRecompute:
    def test_missed_runs_are_skipped_on_startup(self, db, executor):
        stale = T0 - timedelta(days=3)
        schedule_id = db.create_schedule(KIND_RECURRING, "brief", next_run_at=stale, cron_expr="0 9 * * *")

        _scheduler(db, executor, RecordingDelivery()).recompute_next_runs()

        next_run = db.get_schedule(schedule_id).next_run_at
        assert next_run > T0
        assert next_run == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_invalid_schedule_disabled_on_startup(self, db, executor):
        schedule_id = db.create_schedule(
            KIND_RECURRING, "bad tz", next_run_at=T0, cron_expr="* * * * *", timezone_name="Nowhere/City"
        )

        _scheduler(db, executor, RecordingDelivery()).recompute_next_runs()

        assert db.get_schedule(schedule_id).enabled is False

    def test_one_shots_are_left_alone(self, db, executor):
        run_at = T0 - timedelta(minutes=5)
        schedule_id = db.create_schedule(KIND_ONE_SHOT, "late", next_run_at=run_at, run_at=run_at)

        _scheduler(db, executor, RecordingDelivery()).recompute_next_runs()

        assert db.get_schedule(schedule_id).next_run_at == run_at


@pytest.mark.asyncio
async def test_run_forever_stops_when_asked(db, executor):
    scheduler = TaskScheduler(db=db, executor=executor, delivery=RecordingDelivery(), poll_interval_seconds=0.01)

    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert task.done()


def test_reminder_text_prefix():
    assert reminder_text("call mom") == "⏰ Reminder: call mom"
