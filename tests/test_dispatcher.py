from datetime import timedelta

import pytest

from conftest import FailingSink, RecordingSink
from relaybot.world.dispatcher import NotificationDispatcher


@pytest.mark.asyncio
async def test_failure_in_one_sink_does_not_block_others(new_reminder):
    failing = FailingSink("telegram", home="telegram:100")
    qq = RecordingSink("qq", home="qq:200")
    report = await NotificationDispatcher([failing, qq]).dispatch("hello", new_reminder(timedelta(hours=1)))

    assert qq.sent == [("qq:200", "hello")]
    assert report.delivered == ["qq"]
    assert "telegram is down" in report.failed["telegram"]
    assert report.any_delivered


@pytest.mark.asyncio
async def test_sink_without_home_delivers_only_owned_conversations(new_reminder):
    telegram = RecordingSink("telegram")
    qq = RecordingSink("qq")
    dispatcher = NotificationDispatcher([telegram, qq])

    report = await dispatcher.dispatch("ping", new_reminder(timedelta(hours=1), conversation_id="qq:group:300"))
    assert qq.sent == [("qq:group:300", "ping")]
    assert telegram.sent == []
    assert report.skipped == ["telegram"]


@pytest.mark.asyncio
async def test_dispatch_without_reminder_uses_home_only():
    telegram = RecordingSink("telegram", home="telegram:100")
    qq = RecordingSink("qq")
    dispatcher = NotificationDispatcher()
    dispatcher.register(telegram)
    dispatcher.register(qq)

    report = await dispatcher.dispatch("🌆 Daily Summary")
    assert telegram.texts == ["🌆 Daily Summary"]
    assert report.skipped == ["qq"]
    assert [s.name for s in dispatcher.sinks] == ["telegram", "qq"]


@pytest.mark.asyncio
async def test_no_sinks_reports_nothing_delivered():
    report = await NotificationDispatcher().dispatch("lonely")
    assert not report.any_delivered
    assert report.failed == {}


def test_owns_matches_prefix_only():
    sink = RecordingSink("qq")
    assert sink.owns("qq:1")
    assert sink.owns("qq:group:2")
    assert not sink.owns("qqx:1")
    assert not sink.owns("telegram:1")
