"""每日总结: 每天 DAILY_SUMMARY_HOUR 点发给主人"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Sequence

from relaybot.datamodel import ImportantUpdate, Memory, Priority, Reminder
from relaybot.logger import logger
from relaybot.utils import Clock, format_local_date_time, seconds_until_next, to_local, to_utc
from relaybot.world.dispatcher import NotificationDispatcher

__all__ = ["build_daily_summary", "priority_badge", "main_loop"]

UPCOMING_WINDOW = timedelta(days=4)
MAX_UPDATES_IN_SUMMARY = 5


def priority_badge(priority: Priority) -> str:
    return {Priority.HIGH: "🚨", Priority.MEDIUM: "🟡"}.get(priority, "🟢")


def build_daily_summary(
    reminders: Sequence[Reminder],
    memories: Sequence[Memory],
    updates: Sequence[ImportantUpdate],
    now: datetime,
    timezone: str,
) -> str:
    today = to_local(now, timezone).date()

    def _is_today(dt: datetime | None) -> bool:
        return dt is not None and to_local(dt, timezone).date() == today

    start = to_utc(now)
    created_today = [r for r in reminders if _is_today(r.created_at)]
    upcoming = sorted(
        (
            r for r in reminders
            if r.active and r.target_date_time is not None
            and start <= to_utc(r.target_date_time) <= start + UPCOMING_WINDOW
        ),
        key=lambda r: to_utc(r.target_date_time),
    )
    updates_today = [u for u in updates if _is_today(u.timestamp)]
    memories_today = [m for m in memories if _is_today(m.timestamp)]

    lines: List[str] = [f"🌆 Daily Summary - {today.strftime('%a %b %d %Y')}", ""]

    if created_today:
        lines.append(f"⏰ New Reminders Created ({len(created_today)}):")
        lines += [f"{i}. {r.task}{' (auto)' if r.auto_created else ''}" for i, r in enumerate(created_today, 1)]
        lines.append("")

    if upcoming:
        lines.append("📅 Upcoming Reminders (Next 4 Days):")
        lines += [
            f"{i}. {r.task} - {format_local_date_time(r.target_date_time, timezone)}"
            for i, r in enumerate(upcoming, 1)
        ]
        lines.append("")

    if updates_today:
        lines.append(f"📰 New Updates Created ({len(updates_today)}):")
        lines += [
            f"{i}. {priority_badge(u.priority)} {u.content}"
            for i, u in enumerate(updates_today[:MAX_UPDATES_IN_SUMMARY], 1)
        ]
        lines.append("")

    if memories_today:
        lines.append(f"📝 New Memories Created ({len(memories_today)}):")
        lines += [f"{i}. {m.content}{' (auto)' if m.auto_created else ''}" for i, m in enumerate(memories_today, 1)]
        lines.append("")

    if not (created_today or upcoming or updates_today or memories_today):
        lines.append("No new items created today and no upcoming reminders. Have a great evening! 🌙")

    return "\n".join(lines).rstrip()


async def main_loop(
    shutdown_event: asyncio.Event,
    dispatcher: NotificationDispatcher,
    collect: Callable[[], str],
    clock: Clock,
    hour: int = 21,
) -> None:
    """collect() 在发送前即时生成总结文本，clock 必须返回用户本地时间"""
    logger.info(f"每日总结循环已启动, 每天 {hour:02d}:00 发送")
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=seconds_until_next(clock(), hour))
            break
        except asyncio.TimeoutError:
            pass
        try:
            await dispatcher.dispatch(collect())
            logger.info("每日总结已发送")
        except Exception as e:
            logger.opt(exception=e).error(f"每日总结发送失败: {e}")
    logger.info("每日总结循环已停止")
