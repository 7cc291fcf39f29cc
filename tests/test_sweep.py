import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from conftest import FakeClock
from relaybot.storage.json_store import JsonCollection
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import seconds_until_next
from relaybot.world.sweep import RecoverySweep, owned_by_transports


def test_startup_deactivates_past_due_in_one_write(store, new_reminder, sweep, timer, monkeypatch):
    past = [new_reminder(timedelta(minutes=-m)).id for m in (5, 10, 15)]
    future = new_reminder(timedelta(hours=2))

    saves = []
    original_save = JsonCollection.save
    monkeypatch.setattr(JsonCollection, "save", lambda self, data: saves.append(1) or original_save(self, data))

    report = sweep.startup()
    assert report.deactivated == 3
    assert report.armed == 1
    assert len(saves) == 1
    assert [r.id for r in store.list_active()] == [future.id]
    assert {r.id for r in store.reload() if not r.active} == set(past)
    assert len(timer.pending) == 3


def test_sweep_ignores_other_transports_and_unresolved(store, new_reminder, sweep, timer):
    new_reminder(timedelta(hours=1), conversation_id="qq:200")
    new_reminder(timedelta(minutes=-5), conversation_id="qq:200")
    new_reminder(None)

    report = sweep.startup()
    assert (report.armed, report.deferred, report.deactivated) == (0, 0, 0)
    assert timer.pending == []
    assert len(store.list_active()) == 3


def test_sweep_picks_up_reminders_written_by_another_process(tmp_path, store, scheduler, clock, timer):
    from relaybot.storage.reminder import ReminderStore

    sibling = ReminderStore(tmp_path / "reminders.json", clock=clock)
    sibling.create(
        task="from sibling",
        original_time_expression="in 2 hours",
        conversation_id="telegram:100",
        target_date_time=clock() + timedelta(hours=2),
    )

    sweep = RecoverySweep(store, scheduler, owned_by_transports(["telegram"]), clock=clock)
    assert sweep.periodic().armed == 1
    assert len(timer.pending) == 3


def test_repeated_sweeps_do_not_duplicate_pre_alerts(new_reminder, sweep, timer):
    new_reminder(timedelta(hours=3))
    sweep.startup()
    sweep.periodic()
    # 每次清扫都会重新布防最终提醒，提前提醒只布防一次
    assert len(timer.pending) == 4


def test_long_reminder_is_counted_as_deferred(new_reminder, sweep, timer):
    new_reminder(timedelta(days=30))
    report = sweep.startup()
    assert report.deferred == 1
    assert timer.pending == []


@pytest.mark.parametrize("now, hour, expected_hours", [
    # 夏令时结束: 墙上时间差 7 小时，实际 8 小时
    (datetime(2025, 11, 1, 20, 0, tzinfo=ZoneInfo("America/New_York")), 3, 8),
    # 夏令时开始: 墙上时间差 7 小时，实际 6 小时
    (datetime(2025, 3, 8, 20, 0, tzinfo=ZoneInfo("America/New_York")), 3, 6),
    (datetime(2025, 1, 1, 20, 0, tzinfo=ZoneInfo("Asia/Kolkata")), 0, 4),
    (datetime(2025, 1, 1, 0, 0, tzinfo=ZoneInfo("Asia/Kolkata")), 0, 24),
])
def test_seconds_until_next_counts_real_time(now, hour, expected_hours):
    assert seconds_until_next(now, hour) == expected_hours * 3600


def test_past_due_check_uses_real_time(tmp_path, scheduler, timer):
    zone = ZoneInfo("America/New_York")
    # 01:30 在夏令时结束当晚出现两次；fold=1 的第二次比 fold=0 的第一次晚一小时
    clock = FakeClock(datetime(2025, 11, 2, 1, 40, fold=1, tzinfo=zone))
    store = ReminderStore(tmp_path / "reminders.json", clock=clock)
    store.create(
        task="already due",
        original_time_expression="1:50",
        conversation_id="telegram:100",
        target_date_time=datetime(2025, 11, 2, 1, 50, fold=0, tzinfo=zone),
    )

    report = RecoverySweep(store, scheduler, owned_by_transports(["telegram"]), clock=clock).startup()
    assert report.deactivated == 1
    assert timer.pending == []


def test_owned_by_transports():
    owns = owned_by_transports(["telegram", "qq"])
    assert owns("telegram:1")
    assert owns("qq:group:2")
    assert not owns("whatsapp:3")
    assert not owns("plain")


@pytest.mark.asyncio
async def test_main_loop_stops_on_shutdown(sweep):
    shutdown_event = asyncio.Event()
    task = asyncio.create_task(sweep.main_loop(shutdown_event, hour=3))
    await asyncio.sleep(0)
    shutdown_event.set()
    await asyncio.wait_for(task, timeout=1)
