import asyncio
from typing import Iterable, Optional

from relaybot.core.classifier import MessageClassifier
from relaybot.core.commands import CommandHandler
from relaybot.datamodel import IncomingMessage, OutgoingMessage, Priority, transport_of
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics
from relaybot.storage.contacts import ContactBook
from relaybot.storage.memory import ChatHistory, MemoryStore, UpdateStore
from relaybot.world.dispatcher import NotificationDispatcher
from relaybot.world.reminder import ReminderService

__all__ = ["Orchestrator", "configure_orchestrator", "main_loop"]

_NEW_ITEM_EMOJI = {
    "REMINDER": "⏰",
    "MEMORY": "📝",
    "IMPORTANT": "📰",
}


class Orchestrator:
    """消息处理: 主人的命令交给 CommandHandler，其余消息走联系人规则与自动分类"""

    def __init__(
        self,
        commands: CommandHandler,
        classifier: MessageClassifier,
        reminders: ReminderService,
        memories: MemoryStore,
        updates: UpdateStore,
        contacts: ContactBook,
        history: ChatHistory,
        dispatcher: NotificationDispatcher,
        trigger_word: str = "!bot",
        trigger_transports: Iterable[str] = ("qq",),
    ) -> None:
        self.commands = commands
        self.classifier = classifier
        self.reminders = reminders
        self.memories = memories
        self.updates = updates
        self.contacts = contacts
        self.history = history
        self.dispatcher = dispatcher
        self.trigger_word = trigger_word
        self.trigger_transports = set(trigger_transports)

    def _command_text(self, msg: IncomingMessage) -> Optional[str]:
        """主人的消息是否是命令；需要触发词的通道上去掉触发词后返回，否则返回 None"""
        if not msg.from_owner:
            return None
        if transport_of(msg.conversation_id) not in self.trigger_transports:
            return msg.content
        if msg.content.startswith(self.trigger_word):
            return msg.content[len(self.trigger_word):].strip()
        return None

    def _reply(self, msg: IncomingMessage, text: str) -> None:
        bus.emit(E.IO_SEND_MESSAGE, OutgoingMessage(
            channel_type=msg.channel_type,
            conversation_id=msg.conversation_id,
            content=text,
            metadata=msg.metadata,
        ))

    async def _notify_owner(self, text: str) -> None:
        await self.dispatcher.dispatch(text)

    async def handle(self, msg: IncomingMessage) -> None:
        runtime_metrics.record_msg_in()
        logger.info(f"收到消息: conversation={msg.conversation_id}, owner={msg.from_owner}")
        try:
            self.history.append(msg.conversation_id, "user", msg.content)
            command = self._command_text(msg)
            if command is not None:
                for reply in await self.commands.handle(command, msg.conversation_id):
                    self._reply(msg, reply)
                return
            await self._auto_process(msg)
        except Exception as e:
            logger.opt(exception=e).error(f"处理消息失败: conversation={msg.conversation_id}, error={e}")
            if msg.from_owner:
                self._reply(msg, "❌ Sorry, something went wrong")

    async def _auto_process(self, msg: IncomingMessage) -> None:
        text = msg.content.strip()
        if not text:
            return

        decision = self.contacts.should_process(msg.conversation_id)
        if not decision.process:
            logger.debug(f"跳过被屏蔽的会话: {msg.conversation_id}, reason={decision.reason}")
            return

        outcome = self.contacts.apply_rules(text, decision)
        if not outcome.process_message:
            logger.debug(f"联系人规则跳过消息: {msg.conversation_id}, {outcome.modifications}")
            return

        label = decision.name or msg.sender_name or msg.conversation_id
        if outcome.notification_only:
            await self._notify_owner(f"📨 Message from {label}: {text}")
            return

        categorization = await self.classifier.categorize(text)
        if categorization is None:
            logger.debug(f"消息未被归类: {msg.conversation_id}")
            return

        category = outcome.force_category or categorization.type
        content = categorization.content
        if category == "REMINDER":
            created = await self.reminders.create(
                task=content,
                original_expression=categorization.datetime or text,
                conversation_id=msg.conversation_id,
                priority=categorization.priority,
                auto_created=True,
                label=label,
            )
            content = created.reminder.task
        elif category == "MEMORY":
            self.memories.add(content, msg.conversation_id, categorization.priority, auto_created=True)
        elif category == "IMPORTANT":
            self.updates.add(content, msg.conversation_id, categorization.priority)
        else:
            logger.info(f"类别 {category} 没有对应的处理, 仅通知主人")

        emoji = _NEW_ITEM_EMOJI.get(category, "📌")
        await self._notify_owner(f"{emoji} New {category.lower()}: {content} (from {label})")
        if categorization.priority is Priority.HIGH:
            await self._notify_owner(f"🚨 High Priority: {content} (from {label})")


_orchestrator: Orchestrator | None = None


def configure_orchestrator(orchestrator: Orchestrator) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def _require_orchestrator() -> Orchestrator:
    if _orchestrator is None:
        raise RuntimeError("Orchestrator 尚未配置，请先调用 configure_orchestrator()")
    return _orchestrator


@bus.on(E.IO_MESSAGE_RECEIVED)
async def handle_incoming_message(msg: IncomingMessage) -> None:
    await _require_orchestrator().handle(msg)


async def main_loop(shutdown_event: asyncio.Event) -> None:
    _require_orchestrator()
    logger.info("Orchestrator 主循环已启动")
    await shutdown_event.wait()
    logger.info("Orchestrator 已关闭")
