from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

__all__ = ["Clock", "now_utc", "now_local", "local_clock", "ensure_aware", "to_local",
           "format_local", "format_local_date_time", "to_utc", "elapsed", "shift",
           "seconds_until_next", "format_duration"]

Clock = Callable[[], datetime]


def now_utc() -> datetime:
    """获取当前 UTC 时间"""
    return datetime.now(timezone.utc)


def now_local(user_tz: str) -> datetime:
    """获取用户时区下带时区信息的当前时间"""
    return datetime.now(ZoneInfo(user_tz))


def local_clock(user_tz: str) -> Clock:
    """返回固定时区的时钟函数，供调度器与清扫器注入"""
    return lambda: now_local(user_tz)


def ensure_aware(dt: datetime, user_tz: str) -> datetime:
    """naive 时间按用户本地时区解释"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo(user_tz))
    return dt


def to_local(dt: datetime, user_tz: str) -> datetime:
    return ensure_aware(dt, user_tz).astimezone(ZoneInfo(user_tz))


def format_local(dt: datetime, user_tz: str) -> str:
    """格式: 'YYYY-MM-DD HH:MM'"""
    return to_local(dt, user_tz).strftime("%Y-%m-%d %H:%M")


def format_local_date_time(dt: datetime, user_tz: str) -> str:
    """面向用户的展示格式，例如 '02 Jan 2025 at 09:00'"""
    return to_local(dt, user_tz).strftime("%d %b %Y at %H:%M")


def to_utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc)


def elapsed(start: datetime, end: datetime) -> timedelta:
    """end - start 的真实时长。同一 ZoneInfo 的两个时间直接相减得到的是墙上时间差，跨夏令时会差一小时"""
    return to_utc(end) - to_utc(start)


def shift(dt: datetime, delta: timedelta) -> datetime:
    """按真实时长平移，结果保留 dt 原来的时区"""
    return (to_utc(dt) + delta).astimezone(dt.tzinfo)


def seconds_until_next(now: datetime, hour: int, minute: int = 0) -> float:
    """距下一次本地 hour:minute 的真实秒数，恰好到点时返回到次日同一时刻"""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if to_utc(target) <= to_utc(now):
        target += timedelta(days=1)
    return elapsed(now, target).total_seconds()


def format_duration(delta: timedelta) -> str:
    total_minutes = int(delta.total_seconds() // 60)
    days, rem = divmod(total_minutes, 60 * 24)
    hours, minutes = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
