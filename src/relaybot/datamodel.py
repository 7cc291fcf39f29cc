from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

__all__ = [
    "Priority", "Reminder",
    "Memory", "ImportantUpdate",
    "ChannelType", "IncomingMessage", "OutgoingMessage",
    "conversation_id_for", "transport_of", "raw_target_of",
]


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @classmethod
    def parse(cls, raw: Any, default: Optional["Priority"] = None) -> "Priority":
        """宽松解析优先级，无法识别时返回 default(默认 MEDIUM)"""
        if isinstance(raw, Priority):
            return raw
        try:
            return cls(str(raw).strip().upper())
        except ValueError:
            return default or cls.MEDIUM


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_str(raw: str | None) -> datetime | None:
    if raw is None or raw == "":
        return None
    return datetime.fromisoformat(raw)


# ----------------- Reminder 数据模型 ----------------
@dataclass
class Reminder:
    """提醒记录。持久化为 reminders.json 中的一项, 键名为 camelCase"""

    id: str
    task: str
    created_at: datetime
    original_time_expression: str
    conversation_id: str
    target_date_time: Optional[datetime] = None  # 带时区; None 表示未能解析
    active: bool = True
    priority: Priority = Priority.MEDIUM
    auto_created: bool = False
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "task": self.task,
            "createdAt": _dt_to_str(self.created_at),
            "originalTimeExpression": self.original_time_expression,
            "targetDateTime": _dt_to_str(self.target_date_time),
            "conversationId": self.conversation_id,
            "active": self.active,
            "priority": self.priority.value,
            "autoCreated": self.auto_created,
        }
        if self.label is not None:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reminder":
        return cls(
            id=str(data["id"]),
            task=data["task"],
            created_at=_dt_from_str(data["createdAt"]),
            original_time_expression=data.get("originalTimeExpression") or "",
            conversation_id=str(data["conversationId"]),
            target_date_time=_dt_from_str(data.get("targetDateTime")),
            active=bool(data.get("active", True)),
            priority=Priority.parse(data.get("priority")),
            auto_created=bool(data.get("autoCreated", False)),
            label=data.get("label"),
        )


# ----------------- 其它集合 ----------------
@dataclass
class Memory:
    id: str
    content: str
    timestamp: datetime
    conversation_id: str
    priority: Priority = Priority.MEDIUM
    auto_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "timestamp": _dt_to_str(self.timestamp),
            "conversationId": self.conversation_id,
            "priority": self.priority.value,
            "autoCreated": self.auto_created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        return cls(
            id=str(data["id"]),
            content=data["content"],
            timestamp=_dt_from_str(data["timestamp"]),
            conversation_id=str(data.get("conversationId", "")),
            priority=Priority.parse(data.get("priority")),
            auto_created=bool(data.get("autoCreated", False)),
        )


@dataclass
class ImportantUpdate:
    id: str
    content: str
    timestamp: datetime
    conversation_id: str
    priority: Priority = Priority.MEDIUM
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "timestamp": _dt_to_str(self.timestamp),
            "conversationId": self.conversation_id,
            "priority": self.priority.value,
            "read": self.read,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportantUpdate":
        return cls(
            id=str(data["id"]),
            content=data["content"],
            timestamp=_dt_from_str(data["timestamp"]),
            conversation_id=str(data.get("conversationId", "")),
            priority=Priority.parse(data.get("priority")),
            read=bool(data.get("read", False)),
        )


# ----------------- Channel 数据模型 ----------------
class ChannelType(str, Enum):
    TELEGRAM_BOT_POLLING = "telegram_bot_polling"
    QQ_NAPCAT_ONEBOT_V11 = "qq_napcat_onebot_v11"

    @property
    def prefix(self) -> str:
        """会话 ID 的命名空间前缀"""
        return _CHANNEL_PREFIXES[self]


_CHANNEL_PREFIXES = {
    ChannelType.TELEGRAM_BOT_POLLING: "telegram",
    ChannelType.QQ_NAPCAT_ONEBOT_V11: "qq",
}


def conversation_id_for(channel_type: ChannelType, raw_id: int | str) -> str:
    """例如 telegram:12345, qq:10001, qq:group:20002"""
    return f"{channel_type.prefix}:{raw_id}"


def transport_of(conversation_id: str) -> str:
    prefix, sep, _ = conversation_id.partition(":")
    return prefix if sep else ""


def raw_target_of(conversation_id: str) -> str:
    """去掉通道前缀后的平台内 ID"""
    _, sep, rest = conversation_id.partition(":")
    return rest if sep else conversation_id


@dataclass
class IncomingMessage:
    channel_type: ChannelType
    conversation_id: str
    content: str
    from_owner: bool = False
    sender_name: Optional[str] = None
    channel_context: Any = None  # 平台上下文对象
    metadata: Optional[Dict[str, Any]] = None  # 平台特定元数据
    timestamp: Optional[datetime] = None


@dataclass
class OutgoingMessage:
    channel_type: ChannelType
    conversation_id: str
    content: str
    metadata: Optional[Dict[str, Any]] = field(default=None)
