"""记忆、重要更新与聊天记录的存储

与提醒存储相同，每个集合是 DATA_DIR 下一个整体替换的 JSON 文件，
修改前都会重新读取磁盘，另一个前端进程写入的内容不会被覆盖掉。
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ulid import ULID

from relaybot.datamodel import ImportantUpdate, Memory, Priority
from relaybot.logger import logger
from relaybot.storage.json_store import JsonCollection
from relaybot.utils import Clock, now_utc

__all__ = ["MemoryStore", "UpdateStore", "ChatHistory"]


class MemoryStore:
    def __init__(self, path, clock: Clock | None = None) -> None:
        self._collection = JsonCollection(path, default=[])
        self._clock = clock or now_utc

    def list(self) -> List[Memory]:
        memories = []
        for item in self._collection.load():
            try:
                memories.append(Memory.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"跳过无法解析的记忆: {item!r}, error={e}")
        return memories

    def add(
        self,
        content: str,
        conversation_id: str,
        priority: Priority = Priority.MEDIUM,
        auto_created: bool = False,
    ) -> Memory:
        data = self._collection.load()
        memory = Memory(
            id=str(ULID()),
            content=content,
            timestamp=self._clock(),
            conversation_id=conversation_id,
            priority=priority,
            auto_created=auto_created,
        )
        data.append(memory.to_dict())
        self._collection.save(data)
        logger.info(f"保存记忆: id={memory.id}, auto={auto_created}")
        return memory

    def remove(self, memory_id: str) -> Optional[Memory]:
        data = self._collection.load()
        for idx, item in enumerate(data):
            if str(item.get("id")) == memory_id:
                removed = data.pop(idx)
                self._collection.save(data)
                logger.info(f"删除记忆: id={memory_id}")
                return Memory.from_dict(removed)
        return None

    def clear(self) -> int:
        count = len(self._collection.load())
        self._collection.save([])
        logger.info(f"已清空记忆 {count} 条")
        return count


class UpdateStore:
    def __init__(self, path, clock: Clock | None = None) -> None:
        self._collection = JsonCollection(path, default=[])
        self._clock = clock or now_utc

    def list(self) -> List[ImportantUpdate]:
        updates = []
        for item in self._collection.load():
            try:
                updates.append(ImportantUpdate.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"跳过无法解析的重要更新: {item!r}, error={e}")
        return updates

    def add(self, content: str, conversation_id: str, priority: Priority = Priority.MEDIUM) -> ImportantUpdate:
        data = self._collection.load()
        update = ImportantUpdate(
            id=str(ULID()),
            content=content,
            timestamp=self._clock(),
            conversation_id=conversation_id,
            priority=priority,
        )
        data.append(update.to_dict())
        self._collection.save(data)
        logger.info(f"保存重要更新: id={update.id}, priority={priority.value}")
        return update

    def mark_all_read(self) -> int:
        data = self._collection.load()
        unread = [item for item in data if not item.get("read")]
        if not unread:
            return 0
        for item in unread:
            item["read"] = True
        self._collection.save(data)
        return len(unread)

    def clear(self) -> int:
        count = len(self._collection.load())
        self._collection.save([])
        logger.info(f"已清空重要更新 {count} 条")
        return count


class ChatHistory:
    """按会话保存最近的对话，超出上限时丢弃最旧的条目"""

    def __init__(self, path, limit: int = 20, clock: Clock | None = None) -> None:
        self._collection = JsonCollection(path, default={})
        self._limit = limit
        self._clock = clock or now_utc

    def append(self, conversation_id: str, role: str, content: str) -> None:
        data = self._collection.load()
        entries = data.setdefault(conversation_id, [])
        entries.append({
            "role": role,
            "content": content,
            "timestamp": self._clock().isoformat(),
        })
        data[conversation_id] = entries[-self._limit:]
        self._collection.save(data)

    def recent(self, conversation_id: str, limit: int | None = None) -> List[Dict[str, Any]]:
        entries = self._collection.load().get(conversation_id, [])
        if limit is not None:
            return entries[-limit:]
        return entries
