"""提醒存储

reminders.json 是两个前端进程共享的唯一事实来源。所有修改操作都先从磁盘
重新读取，再按 id 定位记录(列表位置会移动，不可靠)，最后整体写回；写入
失败时抛出 StorageError，内存中的快照保持修改前的状态。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ulid import ULID

from relaybot.datamodel import Priority, Reminder
from relaybot.logger import logger
from relaybot.storage.json_store import JsonCollection
from relaybot.utils import Clock, now_utc

__all__ = ["ReminderStore"]

ReminderPredicate = Callable[[Reminder], bool]


class ReminderStore:
    def __init__(self, path, clock: Clock | None = None) -> None:
        self._collection = JsonCollection(path, default=[])
        self._clock = clock or now_utc
        self._reminders: List[Reminder] = []
        self._unparsed: List[Dict[str, Any]] = []  # 无法解析的记录原样保留，避免整体重写时丢失
        self.reload()

    @property
    def path(self):
        return self._collection.path

    # ---------- 读取 ----------
    def _read(self) -> tuple[List[Reminder], List[Dict[str, Any]]]:
        reminders: List[Reminder] = []
        unparsed: List[Dict[str, Any]] = []
        for item in self._collection.load():
            try:
                reminders.append(Reminder.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"跳过无法解析的提醒记录: {item!r}, error={e}")
                unparsed.append(item)
        return reminders, unparsed

    def reload(self) -> List[Reminder]:
        """从磁盘重新加载，另一个进程的修改在此之后可见"""
        self._reminders, self._unparsed = self._read()
        logger.trace(f"已从 {self.path} 加载 {len(self._reminders)} 条提醒")
        return list(self._reminders)

    def list_all(self) -> List[Reminder]:
        return list(self._reminders)

    def find_by_id(self, reminder_id: str) -> Optional[Reminder]:
        for reminder in self._reminders:
            if reminder.id == reminder_id:
                return reminder
        return None

    def list_active(self, predicate: ReminderPredicate | None = None) -> List[Reminder]:
        return [
            r for r in self._reminders
            if r.active and (predicate is None or predicate(r))
        ]

    # ---------- 修改 ----------
    def _mutate(self, change: Callable[[List[Reminder]], Any]) -> Any:
        reminders, unparsed = self._read()
        result = change(reminders)
        self._collection.save([r.to_dict() for r in reminders] + unparsed)
        self._reminders, self._unparsed = reminders, unparsed
        return result

    def _new_id(self, taken: set[str]) -> str:
        # ULID 的随机部分保证同一毫秒内创建的两条提醒也不会撞 id
        reminder_id = str(ULID())
        while reminder_id in taken:
            reminder_id = str(ULID())
        return reminder_id

    def create(
        self,
        *,
        task: str,
        original_time_expression: str,
        conversation_id: str,
        target_date_time: Optional[datetime] = None,
        priority: Priority = Priority.MEDIUM,
        auto_created: bool = False,
        label: Optional[str] = None,
    ) -> Reminder:
        """创建并立即持久化一条提醒"""
        def change(reminders: List[Reminder]) -> Reminder:
            reminder = Reminder(
                id=self._new_id({r.id for r in reminders}),
                task=task,
                created_at=self._clock(),
                original_time_expression=original_time_expression,
                conversation_id=conversation_id,
                target_date_time=target_date_time,
                active=True,
                priority=priority,
                auto_created=auto_created,
                label=label,
            )
            reminders.append(reminder)
            return reminder

        reminder = self._mutate(change)
        logger.info(
            f"创建提醒: id={reminder.id}, task={reminder.task}, "
            f"target={reminder.target_date_time}, conversation={reminder.conversation_id}"
        )
        return reminder

    def deactivate(self, reminder_id: str) -> Optional[Reminder]:
        """将提醒标记为非激活。返回修改后的记录；不存在时返回 None 且不写盘"""
        deactivated = self.deactivate_many([reminder_id])
        return deactivated[0] if deactivated else None

    def deactivate_many(self, reminder_ids: Iterable[str]) -> List[Reminder]:
        """批量停用，只写一次盘。已经停用的记录不计入返回值"""
        wanted = set(reminder_ids)
        if not wanted:
            return []

        def change(reminders: List[Reminder]) -> List[Reminder]:
            changed = []
            for reminder in reminders:
                if reminder.id in wanted and reminder.active:
                    reminder.active = False
                    changed.append(reminder)
            return changed

        changed = self._mutate(change)
        if changed:
            logger.info(f"停用提醒: {[r.id for r in changed]}")
        return changed

    def remove(self, reminder_id: str) -> bool:
        def change(reminders: List[Reminder]) -> bool:
            for idx, reminder in enumerate(reminders):
                if reminder.id == reminder_id:
                    del reminders[idx]
                    return True
            return False

        removed = self._mutate(change)
        if removed:
            logger.info(f"删除提醒: id={reminder_id}")
        else:
            logger.warning(f"要删除的提醒不存在: id={reminder_id}")
        return removed

    def clear_all(self) -> int:
        """删除所有提醒，返回其中仍处于激活状态的数量"""
        def change(reminders: List[Reminder]) -> int:
            active_count = sum(1 for r in reminders if r.active)
            reminders.clear()
            return active_count

        count = self._mutate(change)
        logger.info(f"已清空提醒, 其中激活状态的有 {count} 条")
        return count
