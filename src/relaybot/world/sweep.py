"""恢复清扫

进程启动时和每天 SWEEP_HOUR 点各跑一次：重新读取存储，停用过期的提醒(一次写盘)，
其余交给 StageScheduler.arm()。arm() 可重复调用，已布防的提醒再布防一次也没有副作用，
所以这里不需要知道哪些提醒已经布防过。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from relaybot.datamodel import transport_of
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import Clock, now_utc, seconds_until_next, to_utc
from relaybot.world.scheduler import ArmStatus, StageScheduler

__all__ = ["SweepReport", "RecoverySweep", "owned_by_transports"]

OwnershipFilter = Callable[[str], bool]


def owned_by_transports(prefixes) -> OwnershipFilter:
    """按会话 ID 前缀划分同一份存储，两个前端进程各自只布防自己通道的提醒"""
    allowed = frozenset(prefixes)
    return lambda conversation_id: transport_of(conversation_id) in allowed


@dataclass
class SweepReport:
    armed: int = 0
    deferred: int = 0
    deactivated: int = 0


class RecoverySweep:
    def __init__(
        self,
        store: ReminderStore,
        scheduler: StageScheduler,
        owns: OwnershipFilter,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._owns = owns
        self._clock = clock or now_utc

    def _run(self, trigger: str) -> SweepReport:
        self._store.reload()
        now = to_utc(self._clock())
        candidates = self._store.list_active(
            lambda r: r.target_date_time is not None and self._owns(r.conversation_id)
        )

        past_due = [r for r in candidates if to_utc(r.target_date_time) <= now]
        report = SweepReport()
        if past_due:
            for reminder in past_due:
                logger.info(f"停用过期提醒: id={reminder.id}, task={reminder.task}, target={reminder.target_date_time.isoformat()}")
            report.deactivated = len(self._store.deactivate_many(r.id for r in past_due))
            for reminder in past_due:
                bus.emit(E.REMINDER_DEACTIVATED, reminder.id)

        for reminder in candidates:
            if to_utc(reminder.target_date_time) <= now:
                continue
            result = self._scheduler.arm(reminder)
            if result.status is ArmStatus.ARMED:
                report.armed += 1
            elif result.status is ArmStatus.DEFERRED:
                report.deferred += 1
            elif result.status is ArmStatus.STALE:
                report.deactivated += 1

        runtime_metrics.record_sweep()
        logger.info(
            f"{trigger}清扫完成: 候选 {len(candidates)} 条, 布防 {report.armed}, "
            f"延后 {report.deferred}, 停用 {report.deactivated}"
        )
        return report

    def startup(self) -> SweepReport:
        return self._run("启动")

    def periodic(self) -> SweepReport:
        return self._run("每日")

    async def main_loop(self, shutdown_event: asyncio.Event, hour: int = 0) -> None:
        """每天本地时间 hour 点执行一次 periodic()，直到 shutdown_event 被设置"""
        logger.info(f"提醒清扫循环已启动, 每天 {hour:02d}:00 执行")
        while not shutdown_event.is_set():
            wait_seconds = seconds_until_next(self._clock(), hour)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                self.periodic()
            except Exception as e:
                logger.opt(exception=e).error(f"每日清扫失败: {e}")
        logger.info("提醒清扫循环已停止")
