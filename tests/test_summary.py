import asyncio
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from conftest import TZ, RecordingSink
from relaybot.datamodel import ImportantUpdate, Memory, Priority, Reminder
from relaybot.world.dispatcher import NotificationDispatcher
from relaybot.world.summary import build_daily_summary, main_loop, priority_badge


def reminder(task, created_at, target=None, active=True, auto=False):
    return Reminder(
        id=task,
        task=task,
        created_at=created_at,
        original_time_expression="x",
        conversation_id="telegram:100",
        target_date_time=target,
        active=active,
        auto_created=auto,
    )


def test_summary_lists_every_section(clock):
    now = clock()
    yesterday = now - timedelta(days=1)
    reminders = [
        reminder("buy milk", now - timedelta(hours=2), target=now + timedelta(days=2), auto=True),
        reminder("dentist", yesterday, target=now + timedelta(hours=14)),
        reminder("far away", yesterday, target=now + timedelta(days=10)),
        reminder("cancelled", yesterday, target=now + timedelta(hours=1), active=False),
    ]
    memories = [Memory("m1", "locker code 4411", now - timedelta(hours=1), "telegram:100", auto_created=True)]
    updates = [
        ImportantUpdate("u1", "build is broken", now - timedelta(hours=3), "qq:5", priority=Priority.HIGH),
        ImportantUpdate("u2", "old news", yesterday, "qq:5"),
    ]

    text = build_daily_summary(reminders, memories, updates, now, TZ)
    assert text.splitlines()[0] == "🌆 Daily Summary - Wed Jan 01 2025"
    assert "⏰ New Reminders Created (1):\n1. buy milk (auto)" in text
    assert (
        "📅 Upcoming Reminders (Next 4 Days):\n"
        "1. dentist - 02 Jan 2025 at 10:00\n"
        "2. buy milk - 03 Jan 2025 at 20:00"
    ) in text
    assert "📰 New Updates Created (1):\n1. 🚨 build is broken" in text
    assert "📝 New Memories Created (1):\n1. locker code 4411 (auto)" in text
    assert "far away" not in text
    assert "cancelled" not in text
    assert "old news" not in text


def test_empty_summary(clock):
    text = build_daily_summary([], [], [], clock(), TZ)
    assert text.endswith("No new items created today and no upcoming reminders. Have a great evening! 🌙")


def test_summary_caps_updates(clock):
    now = clock()
    updates = [ImportantUpdate(str(i), f"update {i}", now, "qq:5") for i in range(7)]
    text = build_daily_summary([], [], updates, now, TZ)
    assert "📰 New Updates Created (7):" in text
    assert "5. 🟡 update 4" in text
    assert "update 5" not in text


def test_priority_badge():
    assert priority_badge(Priority.HIGH) == "🚨"
    assert priority_badge(Priority.MEDIUM) == "🟡"
    assert priority_badge(Priority.LOW) == "🟢"


@pytest.mark.asyncio
async def test_main_loop_sends_summary_at_hour(monkeypatch):
    sink = RecordingSink("telegram", home="telegram:100")
    shutdown_event = asyncio.Event()

    def collect():
        shutdown_event.set()
        return "🌆 Daily Summary - test"

    # 让等待时间极短，循环立刻进入发送分支
    monkeypatch.setattr("relaybot.world.summary.seconds_until_next", lambda now, hour: 0.01)
    await asyncio.wait_for(
        main_loop(shutdown_event, NotificationDispatcher([sink]), collect,
                  lambda: datetime(2025, 1, 1, 20, 59, tzinfo=ZoneInfo(TZ))),
        timeout=1,
    )
    assert sink.texts == ["🌆 Daily Summary - test"]
