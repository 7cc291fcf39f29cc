import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import TZ, FailingSink, FakeClock, FakeTimer, ScriptedLLM, resolver_reply
from relaybot.storage.json_store import StorageError
from relaybot.storage.reminder import ReminderStore
from relaybot.world.dispatcher import NotificationDispatcher
from relaybot.world.reminder import ReminderService
from relaybot.world.scheduler import (
    MAX_TIMER_DELAY,
    ArmStatus,
    AsyncioTimer,
    Stage,
    StageScheduler,
    render_stage_message,
)
from relaybot.world.time_resolver import TimeResolver


def local(*args):
    return datetime(*args, tzinfo=ZoneInfo(TZ))


@pytest.mark.asyncio
async def test_short_delay_fires_only_final_alert(store, scheduler, timer, clock, telegram_sink):
    start = clock()
    llm = ScriptedLLM(resolver_reply("drink water", start + timedelta(minutes=10)))
    service = ReminderService(store, TimeResolver(llm, TZ), scheduler, TZ, clock=clock)

    created = await service.create("drink water in 10 minutes", "in 10 minutes", "telegram:100")
    assert created.arm_result.status is ArmStatus.ARMED
    assert [s.stage for s in created.arm_result.stages] == [Stage.FINAL]

    await timer.advance(timedelta(minutes=10))
    assert telegram_sink.sent == [("telegram:100", "🔔 Reminder NOW: drink water")]
    assert store.reload()[0].active is False


@pytest.mark.asyncio
async def test_tomorrow_morning_arms_three_stages(store, scheduler, timer, clock, telegram_sink):
    llm = ScriptedLLM(resolver_reply("call mom", "2025-01-02T09:00:00"))
    service = ReminderService(store, TimeResolver(llm, TZ), scheduler, TZ, clock=clock)

    created = await service.create("call mom tomorrow at 9am", "tomorrow at 9am", "telegram:100")
    assert created.confirmation_text() == '🕒 Reminder set for 02 Jan 2025 at 09:00: "call mom"'
    assert timer.fire_times() == [local(2025, 1, 2, 8, 0), local(2025, 1, 2, 8, 30), local(2025, 1, 2, 9, 0)]

    await timer.advance(timedelta(hours=13))
    assert telegram_sink.texts == [
        "⏰ 1 hour reminder: call mom",
        "⏰ 30 minutes reminder: call mom",
        "🔔 Reminder NOW: call mom",
    ]


@pytest.mark.asyncio
async def test_far_future_reminder_is_armed_by_sweep(new_reminder, scheduler, sweep, timer, telegram_sink):
    reminder = new_reminder(timedelta(days=40))
    result = scheduler.arm(reminder)
    assert result.status is ArmStatus.DEFERRED
    assert timer.pending == []

    await timer.advance(timedelta(days=20))
    assert sweep.periodic().armed == 1
    assert timer.fire_times()[-1] == reminder.target_date_time

    await timer.advance(timedelta(days=20))
    assert telegram_sink.texts.count("🔔 Reminder NOW: stretch") == 1
    assert telegram_sink.texts[-1] == "🔔 Reminder NOW: stretch"


def test_delay_just_under_limit_is_armed(new_reminder, scheduler, timer):
    result = scheduler.arm(new_reminder(MAX_TIMER_DELAY - timedelta(seconds=1)))
    assert result.status is ArmStatus.ARMED
    assert len(timer.pending) == 3

    assert scheduler.arm(new_reminder(MAX_TIMER_DELAY + timedelta(seconds=1))).status is ArmStatus.DEFERRED
    assert len(timer.pending) == 3


@pytest.mark.asyncio
async def test_cancel_before_pre_alert_dispatches_nothing(store, new_reminder, scheduler, timer, telegram_sink):
    reminder = new_reminder(timedelta(hours=2))
    scheduler.arm(reminder)
    store.deactivate(reminder.id)

    await timer.advance(timedelta(hours=2))
    assert telegram_sink.sent == []
    assert timer.pending == []
    assert store.reload()[0].active is False


@pytest.mark.parametrize("delta, expected", [
    (timedelta(minutes=45), [Stage.THIRTY_MINUTES, Stage.FINAL]),
    (timedelta(minutes=60), [Stage.THIRTY_MINUTES, Stage.FINAL]),
    (timedelta(minutes=61), [Stage.ONE_HOUR, Stage.THIRTY_MINUTES, Stage.FINAL]),
    (timedelta(minutes=30), [Stage.FINAL]),
])
def test_pre_alerts_skipped_when_already_due(new_reminder, scheduler, delta, expected):
    result = scheduler.arm(new_reminder(delta))
    assert [s.stage for s in result.stages] == expected


def test_past_reminder_is_deactivated_and_not_armed(store, new_reminder, scheduler, timer):
    reminder = new_reminder(timedelta(minutes=-5))
    assert scheduler.arm(reminder).status is ArmStatus.STALE
    assert timer.pending == []
    assert store.reload()[0].active is False


def test_unresolved_and_inactive_are_not_armed(store, new_reminder, scheduler, timer):
    assert scheduler.arm(new_reminder(None)).status is ArmStatus.UNRESOLVED
    inactive = store.deactivate(new_reminder(timedelta(hours=1)).id)
    assert scheduler.arm(inactive).status is ArmStatus.INACTIVE
    assert timer.pending == []


@pytest.mark.asyncio
async def test_arming_twice_delivers_each_stage_once(new_reminder, scheduler, timer, telegram_sink):
    reminder = new_reminder(timedelta(hours=3))
    scheduler.arm(reminder)
    second = scheduler.arm(reminder)
    assert [s.stage for s in second.stages] == [Stage.FINAL]

    await timer.advance(timedelta(hours=3))
    assert telegram_sink.texts == [
        "⏰ 1 hour reminder: stretch",
        "⏰ 30 minutes reminder: stretch",
        "🔔 Reminder NOW: stretch",
    ]


@pytest.mark.asyncio
async def test_final_alert_deactivates_even_if_every_sink_fails(store, new_reminder, timer, clock):
    dispatcher = NotificationDispatcher([FailingSink("telegram", home="telegram:100")])
    scheduler = StageScheduler(store, dispatcher, timer=timer, clock=clock)
    scheduler.arm(new_reminder(timedelta(minutes=5)))

    await timer.advance(timedelta(minutes=5))
    assert store.reload()[0].active is False


@pytest.mark.asyncio
async def test_final_alert_sent_once_when_deactivation_fails(store, new_reminder, sweep, timer, telegram_sink, monkeypatch):
    new_reminder(timedelta(minutes=5))
    # 启动清扫与每日清扫各布防一次最终提醒
    sweep.startup()
    sweep.periodic()
    assert len(timer.pending) == 2

    def broken_deactivate(reminder_id):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "deactivate", broken_deactivate)
    await timer.advance(timedelta(minutes=5))
    assert telegram_sink.texts == ["🔔 Reminder NOW: stretch"]
    assert store.reload()[0].active is True


@pytest.mark.asyncio
async def test_delay_spans_daylight_saving_change(tmp_path, telegram_sink):
    zone = "America/New_York"
    # 2025-11-02 02:00 夏令时结束，当晚到次日早上实际经过 14 小时
    clock = FakeClock(datetime(2025, 11, 1, 20, 0, tzinfo=ZoneInfo(zone)))
    timer = FakeTimer(clock)
    store = ReminderStore(tmp_path / "reminders.json", clock=clock)
    scheduler = StageScheduler(store, NotificationDispatcher([telegram_sink]), timer=timer, clock=clock)
    llm = ScriptedLLM(resolver_reply("standup", "2025-11-02T09:00:00"))
    service = ReminderService(store, TimeResolver(llm, zone), scheduler, zone, clock=clock)

    created = await service.create("standup tomorrow at 9am", "tomorrow at 9am", "telegram:100")
    final = created.arm_result.stages[-1]
    assert final.stage is Stage.FINAL
    assert final.delay == timedelta(hours=14)
    assert timer.delays == [13 * 3600, 13.5 * 3600, 14 * 3600]

    await timer.advance(timedelta(hours=13, minutes=59))
    assert "🔔 Reminder NOW: standup" not in telegram_sink.texts
    await timer.advance(timedelta(minutes=1))
    assert telegram_sink.texts[-1] == "🔔 Reminder NOW: standup"
    assert clock().astimezone(timezone.utc) == datetime(2025, 11, 2, 14, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fire_ignores_removed_reminder(store, new_reminder, scheduler, timer, telegram_sink):
    reminder = new_reminder(timedelta(minutes=5))
    scheduler.arm(reminder)

    # 另一个进程删除了这条提醒
    store.remove(reminder.id)
    await timer.advance(timedelta(minutes=5))
    assert telegram_sink.sent == []


def test_render_stage_message():
    assert render_stage_message(Stage.ONE_HOUR, "x") == "⏰ 1 hour reminder: x"
    assert render_stage_message(Stage.FINAL, "x") == "🔔 Reminder NOW: x"


@pytest.mark.asyncio
async def test_asyncio_timer_runs_callback():
    timer = AsyncioTimer()
    fired = asyncio.Event()

    async def callback():
        fired.set()

    timer.call_later(0.01, callback)
    assert timer.pending_count == 1
    await asyncio.wait_for(fired.wait(), timeout=1)
    assert timer.pending_count == 0


@pytest.mark.asyncio
async def test_asyncio_timer_rejects_non_positive_delay():
    timer = AsyncioTimer()

    async def callback():
        pass

    with pytest.raises(ValueError):
        timer.call_later(0, callback)

    timer.call_later(60, callback)
    timer.cancel_all()
    assert timer.pending_count == 0
