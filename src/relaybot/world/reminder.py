"""
提醒创建流程: 时间解析 -> 落盘 -> 布防。
注意: 未能解析出时间的提醒同样会落盘(target_date_time 为空)，但不会布防，
用户会收到明确的失败提示。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from relaybot.datamodel import Priority, Reminder
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import Clock, format_local_date_time, now_utc
from relaybot.world.scheduler import ArmResult, ArmStatus, StageScheduler
from relaybot.world.time_resolver import TimeResolver

__all__ = ["CreatedReminder", "ReminderService"]


@dataclass
class CreatedReminder:
    reminder: Reminder
    arm_result: ArmResult
    timezone: str

    @property
    def scheduled(self) -> bool:
        return self.arm_result.status in (ArmStatus.ARMED, ArmStatus.DEFERRED)

    def confirmation_text(self) -> str:
        if self.reminder.target_date_time is None:
            return f'❌ Could not parse date/time from: "{self.reminder.original_time_expression}"'
        if self.arm_result.status is ArmStatus.STALE:
            return f'❌ That time has already passed: "{self.reminder.original_time_expression}"'
        when = format_local_date_time(self.reminder.target_date_time, self.timezone)
        return f'🕒 Reminder set for {when}: "{self.reminder.task}"'


class ReminderService:
    def __init__(
        self,
        store: ReminderStore,
        resolver: TimeResolver,
        scheduler: StageScheduler,
        timezone: str,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self._resolver = resolver
        self._scheduler = scheduler
        self._tz = timezone
        self._clock = clock or now_utc

    async def create(
        self,
        task: str,
        original_expression: str,
        conversation_id: str,
        priority: Priority = Priority.MEDIUM,
        auto_created: bool = False,
        label: Optional[str] = None,
    ) -> CreatedReminder:
        """存储写入失败时抛出 StorageError，此时不得向用户确认创建成功"""
        resolution = await self._resolver.resolve(original_expression, task, self._clock(), priority)
        reminder = self.store.create(
            task=resolution.cleaned_task,
            original_time_expression=original_expression,
            conversation_id=conversation_id,
            target_date_time=resolution.target_date_time,
            priority=resolution.priority,
            auto_created=auto_created,
            label=label,
        )
        arm_result = self._scheduler.arm(reminder)
        if arm_result.status is ArmStatus.UNRESOLVED:
            logger.warning(f"提醒未能解析出时间: id={reminder.id}, expression={original_expression!r}")
        bus.emit(E.REMINDER_CREATED, reminder)
        return CreatedReminder(reminder=reminder, arm_result=arm_result, timezone=self._tz)

    def list_active(self) -> List[Reminder]:
        """用于展示的激活提醒列表，先重新读取磁盘"""
        self.store.reload()
        return self.store.list_active()

    def cancel(self, reminder_id: str) -> Optional[Reminder]:
        """停用提醒。已布防的定时器仍会触发，但触发时会发现它已非激活"""
        reminder = self.store.deactivate(reminder_id)
        if reminder is not None:
            bus.emit(E.REMINDER_DEACTIVATED, reminder_id)
        return reminder
