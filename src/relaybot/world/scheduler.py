"""分阶段提醒调度

一条提醒最多对应三个定时器：提前 1 小时、提前 30 分钟、到点。
定时器无法取消，也不会跨进程重启存活。取消一条提醒只是把它标记为
非激活，定时器照常触发，但触发时会按 id 重新从存储读取，发现已非激活就什么都不做。
最终提醒的"恰好一次"也依赖同一个检查：先停用并落盘，再投递，
重复布防产生的第二个定时器触发时只会看到 active=False。停用落盘失败时，
本进程内的已完成集合兜底，第二个定时器同样什么都不做。

所有延时都按真实时长(UTC)计算，跨夏令时切换的提醒不会早到或晚到一小时。

超过 MAX_TIMER_DELAY 的提醒暂不布防(DEFERRED)，由每日清扫在剩余时间
落入范围后再调用 arm()。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Protocol, Set, Tuple

from relaybot.datamodel import Reminder
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics
from relaybot.storage.json_store import StorageError
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import Clock, elapsed, format_duration, now_utc, shift
from relaybot.world.dispatcher import NotificationDispatcher

__all__ = [
    "MAX_TIMER_DELAY", "PRE_ALERT_OFFSETS", "Stage", "ArmStatus", "ArmedStage", "ArmResult",
    "TimerBackend", "AsyncioTimer", "StageScheduler", "render_stage_message",
]

# 宿主定时器单次延时的上限(2^31-1 毫秒，约 24.8 天)
MAX_TIMER_DELAY = timedelta(milliseconds=2**31 - 1)


class Stage(str, Enum):
    ONE_HOUR = "one_hour"
    THIRTY_MINUTES = "thirty_minutes"
    FINAL = "final"


_STAGE_OFFSETS: Dict[Stage, timedelta] = {
    Stage.ONE_HOUR: timedelta(minutes=60),
    Stage.THIRTY_MINUTES: timedelta(minutes=30),
}
PRE_ALERT_OFFSETS: Tuple[timedelta, ...] = tuple(_STAGE_OFFSETS.values())

_STAGE_TEMPLATES: Dict[Stage, str] = {
    Stage.ONE_HOUR: "⏰ 1 hour reminder: {task}",
    Stage.THIRTY_MINUTES: "⏰ 30 minutes reminder: {task}",
    Stage.FINAL: "🔔 Reminder NOW: {task}",
}


def render_stage_message(stage: Stage, task: str) -> str:
    return _STAGE_TEMPLATES[stage].format(task=task)


class ArmStatus(str, Enum):
    UNRESOLVED = "unresolved"  # 没有目标时间
    INACTIVE = "inactive"
    STALE = "stale"            # 已过期，被停用并落盘
    DEFERRED = "deferred"      # 超出定时器上限，等待清扫
    ARMED = "armed"


@dataclass
class ArmedStage:
    stage: Stage
    fire_at: datetime
    delay: timedelta


@dataclass
class ArmResult:
    status: ArmStatus
    stages: List[ArmedStage] = field(default_factory=list)

    @property
    def final_armed(self) -> bool:
        return any(s.stage is Stage.FINAL for s in self.stages)


TimerCallback = Callable[[], Awaitable[None]]


class TimerBackend(Protocol):
    def call_later(self, delay_seconds: float, callback: TimerCallback) -> None:
        ...


class AsyncioTimer:
    """基于 loop.call_later 的定时器，到点后把回调包装成 Task 运行"""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._handles: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def call_later(self, delay_seconds: float, callback: TimerCallback) -> None:
        if delay_seconds <= 0:
            raise ValueError(f"定时器延时必须为正数: {delay_seconds}")
        loop = self._loop or asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def _spawn() -> None:
            self._handles.discard(handle)
            task = loop.create_task(callback())
            self._tasks.add(task)
            task.add_done_callback(self._on_done)

        handle = loop.call_later(delay_seconds, _spawn)
        self._handles.add(handle)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error(f"定时器回调异常: {error}")

    @property
    def pending_count(self) -> int:
        return len(self._handles)

    def cancel_all(self) -> None:
        """进程退出时调用；重启后由清扫从磁盘重建定时器"""
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        for task in self._tasks:
            task.cancel()


class StageScheduler:
    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        timer: TimerBackend | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._timer = timer or AsyncioTimer()
        self._clock = clock or now_utc
        # 本进程内尚未触发的提前提醒，避免重复清扫叠加相同的定时器；不持久化
        self._pending: Set[Tuple[str, Stage, datetime]] = set()
        # 本进程内已投递过最终提醒的 id；停用落盘失败时靠它挡住重复布防的最终定时器
        self._completed: Set[str] = set()

    def arm(self, reminder: Reminder) -> ArmResult:
        if reminder.target_date_time is None:
            logger.debug(f"提醒没有目标时间, 不布防: id={reminder.id}")
            return ArmResult(ArmStatus.UNRESOLVED)
        if not reminder.active:
            logger.debug(f"提醒已非激活, 不布防: id={reminder.id}")
            return ArmResult(ArmStatus.INACTIVE)

        target = reminder.target_date_time
        delay = elapsed(self._clock(), target)
        if delay <= timedelta(0):
            logger.warning(f"提醒已过期, 停用: id={reminder.id}, task={reminder.task}, target={target.isoformat()}")
            self._store.deactivate(reminder.id)
            bus.emit(E.REMINDER_DEACTIVATED, reminder.id)
            return ArmResult(ArmStatus.STALE)

        if delay > MAX_TIMER_DELAY:
            logger.info(f"提醒超出定时器上限({format_duration(delay)}), 等待清扫布防: id={reminder.id}")
            return ArmResult(ArmStatus.DEFERRED)

        result = ArmResult(ArmStatus.ARMED)
        for stage, offset in _STAGE_OFFSETS.items():
            sub_delay = delay - offset
            if sub_delay <= timedelta(0):
                continue
            key = (reminder.id, stage, target)
            if key in self._pending:
                logger.debug(f"提前提醒已在等待中, 跳过: id={reminder.id}, stage={stage.value}")
                continue
            self._pending.add(key)
            self._schedule(reminder.id, stage, target, sub_delay)
            result.stages.append(ArmedStage(stage, shift(target, -offset), sub_delay))

        # 最终提醒不查重，重复布防由触发时的 active 检查兜底
        self._schedule(reminder.id, Stage.FINAL, target, delay)
        result.stages.append(ArmedStage(Stage.FINAL, target, delay))

        logger.info(
            f"提醒已布防: id={reminder.id}, task={reminder.task}, "
            f"stages={[s.stage.value for s in result.stages]}, in {format_duration(delay)}"
        )
        return result

    def _schedule(self, reminder_id: str, stage: Stage, target: datetime, delay: timedelta) -> None:
        async def _callback() -> None:
            await self._fire(reminder_id, stage, target)

        self._timer.call_later(delay.total_seconds(), _callback)

    async def _fire(self, reminder_id: str, stage: Stage, target: datetime) -> None:
        self._pending.discard((reminder_id, stage, target))

        self._store.reload()
        reminder = self._store.find_by_id(reminder_id)
        if reminder is None or not reminder.active or reminder_id in self._completed:
            logger.info(f"提醒已取消或已完成, 忽略定时器: id={reminder_id}, stage={stage.value}")
            return

        if stage is Stage.FINAL:
            self._completed.add(reminder_id)
            try:
                self._store.deactivate(reminder_id)
            except StorageError as e:
                # 投递不依赖落盘结果；重启后的清扫会把它当作过期提醒停用
                logger.error(f"最终提醒停用失败, 仍然投递: id={reminder_id}, error={e}")
            runtime_metrics.record_alert(final=True)
            bus.emit(E.REMINDER_COMPLETED, reminder)
        else:
            runtime_metrics.record_alert(final=False)
            bus.emit(E.REMINDER_STAGE_FIRED, reminder, stage)

        text = render_stage_message(stage, reminder.task)
        logger.info(f"提醒触发: id={reminder_id}, stage={stage.value}")
        await self._dispatcher.dispatch(text, reminder)
