"""提醒投递

每个聊天通道注册一个 NotificationSink。投递时逐个 sink 发送，任何一个 sink
的异常都只记日志并写入报告，不影响其它 sink，也不影响提醒本身的状态。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from relaybot.datamodel import Reminder
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics

__all__ = ["NotificationSink", "DispatchReport", "NotificationDispatcher"]


class NotificationSink(ABC):
    name: str = "sink"
    prefix: str = ""

    @property
    def home_conversation_id(self) -> Optional[str]:
        """主人在该通道上的会话；配置后所有提醒都投递到这里"""
        return None

    def owns(self, conversation_id: str) -> bool:
        return conversation_id.startswith(f"{self.prefix}:")

    @abstractmethod
    async def send(self, conversation_id: str, text: str) -> None:
        """发送失败时抛出异常"""


@dataclass
class DispatchReport:
    delivered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)


class NotificationDispatcher:
    def __init__(self, sinks: Iterable[NotificationSink] = ()) -> None:
        self._sinks: List[NotificationSink] = list(sinks)

    def register(self, sink: NotificationSink) -> None:
        self._sinks.append(sink)
        logger.debug(f"注册投递通道: {sink.name}")

    @property
    def sinks(self) -> List[NotificationSink]:
        return list(self._sinks)

    @staticmethod
    def _target_for(sink: NotificationSink, reminder: Optional[Reminder]) -> Optional[str]:
        if sink.home_conversation_id:
            return sink.home_conversation_id
        if reminder is not None and sink.owns(reminder.conversation_id):
            return reminder.conversation_id
        return None

    async def dispatch(self, text: str, reminder: Optional[Reminder] = None) -> DispatchReport:
        report = DispatchReport()
        for sink in self._sinks:
            target = self._target_for(sink, reminder)
            if target is None:
                report.skipped.append(sink.name)
                continue
            try:
                await sink.send(target, text)
                report.delivered.append(sink.name)
                runtime_metrics.record_msg_out()
            except Exception as e:
                report.failed[sink.name] = str(e)
                runtime_metrics.record_dispatch_failure()
                logger.opt(exception=e).error(f"通过 {sink.name} 投递失败: target={target}, error={e}")

        if not report.delivered:
            logger.warning(f"没有任何通道成功投递: {text!r}, failed={report.failed}, skipped={report.skipped}")
        return report
