"""主人的文本命令

先匹配固定短语，再让 LLM 识别意图，都不命中时当作闲聊。
列表里的序号只是展示位置，执行修改前一律换算成记录 id。
"""

from __future__ import annotations

import re
from typing import Awaitable, Callable, Dict, List, Optional

from relaybot.config.prompts import CHAT_SYSTEM_PROMPT
from relaybot.core.classifier import CommandAction, MessageClassifier
from relaybot.datamodel import transport_of
from relaybot.llm.base import LLMClient, LLMUnavailableError, history_to_messages
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics
from relaybot.storage.contacts import ContactBook
from relaybot.storage.memory import ChatHistory, MemoryStore, UpdateStore
from relaybot.utils import format_local_date_time
from relaybot.world.reminder import ReminderService
from relaybot.world.summary import priority_badge

__all__ = ["CommandHandler", "extract_position"]

_ORDINALS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
}

_SHOW_REMINDERS = {"show reminders", "list reminders", "my reminders"}
_SHOW_MEMORIES = {"show memories", "list memories", "my memories"}
_SHOW_UPDATES = {"show updates", "list updates", "my updates", "show important updates"}
_REMIND_PREFIX = re.compile(r"^\s*remind me\s+(?:to\s+|about\s+|of\s+)?", re.IGNORECASE)
_SAVE_MEMORY_PREFIX = re.compile(r"save.*?to.*?memory(?:\s+that)?|save.*?memory.*?that", re.IGNORECASE)


def extract_position(text: str, count: int) -> Optional[int]:
    """从 "cancel reminder 2" / "delete the second memory" / "cancel the last reminder" 中取出 1 起的序号"""
    match = re.search(r"\b(\d+)\b", text)
    if match:
        return int(match.group(1))
    lowered = text.lower()
    if re.search(r"\blast\b", lowered):
        return count if count > 0 else None
    for word, number in _ORDINALS.items():
        if re.search(rf"\b{word}\b", lowered):
            return number
    return None


class CommandHandler:
    def __init__(
        self,
        reminders: ReminderService,
        memories: MemoryStore,
        updates: UpdateStore,
        contacts: ContactBook,
        history: ChatHistory,
        classifier: MessageClassifier,
        llm_client: LLMClient | None,
        timezone: str,
        user_name: str = "User",
    ) -> None:
        self.reminders = reminders
        self.memories = memories
        self.updates = updates
        self.contacts = contacts
        self.history = history
        self.classifier = classifier
        self._llm = llm_client
        self._tz = timezone
        self._user_name = user_name
        self._actions: Dict[CommandAction, Callable[[str, str], Awaitable[List[str]]]] = {
            CommandAction.SHOW_MEMORIES: self._show_memories,
            CommandAction.SHOW_REMINDERS: self._show_reminders,
            CommandAction.SAVE_MEMORY: self._save_memory,
            CommandAction.SET_REMINDER: self._set_reminder,
            CommandAction.DELETE_MEMORY: self._delete_memory,
            CommandAction.CANCEL_REMINDER: self._cancel_reminder,
            CommandAction.DELETE_ALL_MEMORIES: self._delete_all_memories,
            CommandAction.DELETE_ALL_REMINDERS: self._delete_all_reminders,
            CommandAction.SHOW_UPDATES: self._show_updates,
            CommandAction.DELETE_ALL_UPDATES: self._delete_all_updates,
            CommandAction.SHOW_BLOCKED: self._show_blocked,
            CommandAction.SHOW_PRIORITY: self._show_priority,
            CommandAction.BLOCK_CONTACT: self._usage("Use: \"block [chatId] [reason]\""),
            CommandAction.UNBLOCK_CONTACT: self._usage("Use: \"unblock [chatId]\""),
            CommandAction.ADD_PRIORITY: self._usage(
                "Use: \"add priority [chatId] [name] [keywords]\"\nExample: \"add priority 10001 Alice urgent,meeting\""
            ),
            CommandAction.REMOVE_PRIORITY: self._usage("Use: \"remove priority [chatId]\""),
        }

    async def handle(self, text: str, conversation_id: str) -> List[str]:
        command = text.strip()
        lowered = command.lower()

        if lowered in ("test", ""):
            return ["🤖 Bot is working!"]
        if lowered in ("status", "!dbg status"):
            return [self._status(conversation_id)]
        if lowered in _SHOW_REMINDERS:
            return await self._show_reminders(command, conversation_id)
        if lowered in _SHOW_MEMORIES or "what have i asked you to remember" in lowered:
            return await self._show_memories(command, conversation_id)
        if lowered in _SHOW_UPDATES:
            return await self._show_updates(command, conversation_id)
        if lowered in ("delete all reminders", "clear all reminders"):
            return await self._delete_all_reminders(command, conversation_id)
        if lowered in ("delete all memories", "clear all memories"):
            return await self._delete_all_memories(command, conversation_id)
        if lowered in ("delete all updates", "clear all updates"):
            return await self._delete_all_updates(command, conversation_id)
        if lowered in ("show blocked", "list blocked"):
            return await self._show_blocked(command, conversation_id)
        if lowered in ("show priority", "list priority"):
            return await self._show_priority(command, conversation_id)
        if lowered.startswith("block "):
            return self._block(command[len("block "):], conversation_id)
        if lowered.startswith("unblock "):
            return self._unblock(command[len("unblock "):], conversation_id)
        if lowered.startswith("add priority "):
            return self._add_priority(command[len("add priority "):], conversation_id)
        if lowered.startswith("remove priority "):
            return self._remove_priority(command[len("remove priority "):], conversation_id)
        if "cancel reminder" in lowered or "delete reminder" in lowered:
            return await self._cancel_reminder(command, conversation_id)
        if "delete memory" in lowered or "remove memory" in lowered:
            return await self._delete_memory(command, conversation_id)
        if "save" in lowered and "memory" in lowered:
            return await self._save_memory(command, conversation_id)
        if "remind" in lowered:
            return await self._set_reminder(command, conversation_id)

        action = await self.classifier.interpret_command(command)
        if action is not None:
            logger.debug(f"命令被识别为: {action.value}")
            return await self._actions[action](command, conversation_id)

        return [await self._chat(command, conversation_id)]

    # ---------- 提醒 ----------
    async def _show_reminders(self, command: str, conversation_id: str) -> List[str]:
        active = self.reminders.list_active()
        if not active:
            return ["⏰ No active reminders."]
        lines = []
        for i, r in enumerate(active, 1):
            when = format_local_date_time(r.target_date_time, self._tz) if r.target_date_time else "No date"
            auto = " (auto)" if r.auto_created else ""
            lines.append(f"{i}. {r.task} - {when}{auto}")
        return ["⏰ Your reminders:\n" + "\n".join(lines) + '\n\nTo cancel: "cancel reminder 1"']

    async def _set_reminder(self, command: str, conversation_id: str) -> List[str]:
        task = _REMIND_PREFIX.sub("", command).strip() or command
        created = await self.reminders.create(
            task=task,
            original_expression=command,
            conversation_id=conversation_id,
        )
        return [created.confirmation_text()]

    async def _cancel_reminder(self, command: str, conversation_id: str) -> List[str]:
        active = self.reminders.list_active()
        position = extract_position(command, len(active))
        if position is None:
            return ['❌ Use: "cancel reminder 1" (number from reminder list)']
        if not 1 <= position <= len(active):
            return ['❌ Invalid reminder number. Check "show reminders" first.']
        target = active[position - 1]
        if self.reminders.cancel(target.id) is None:
            return [f"❌ Reminder was already completed or cancelled: {target.task}"]
        return [f"✅ Cancelled reminder: {target.task}"]

    async def _delete_all_reminders(self, command: str, conversation_id: str) -> List[str]:
        count = self.reminders.store.clear_all()
        return ["⏰ No active reminders to delete." if count == 0 else f"✅ Cancelled all {count} reminders."]

    # ---------- 记忆 ----------
    async def _show_memories(self, command: str, conversation_id: str) -> List[str]:
        memories = self.memories.list()
        if not memories:
            return ["📝 No memories saved yet."]
        lines = [f"{i}. {m.content}{' (auto)' if m.auto_created else ''}" for i, m in enumerate(memories, 1)]
        return ["📝 Your memories:\n" + "\n".join(lines) + '\n\nTo delete: "delete memory 1"']

    async def _save_memory(self, command: str, conversation_id: str) -> List[str]:
        content = _SAVE_MEMORY_PREFIX.sub("", command, count=1).strip()
        if not content:
            return ["❌ Nothing to save. Use: save to memory that [your text]"]
        self.memories.add(content, conversation_id)
        return [f"✅ Saved to memory: {content}"]

    async def _delete_memory(self, command: str, conversation_id: str) -> List[str]:
        memories = self.memories.list()
        position = extract_position(command, len(memories))
        if position is None:
            return ['❌ Use: "delete memory 1" (number from memory list)']
        if not 1 <= position <= len(memories):
            return ['❌ Invalid memory number. Check "show memories" first.']
        removed = self.memories.remove(memories[position - 1].id)
        if removed is None:
            return ["❌ That memory no longer exists."]
        return [f"✅ Deleted memory: {removed.content}"]

    async def _delete_all_memories(self, command: str, conversation_id: str) -> List[str]:
        count = self.memories.clear()
        return ["📝 No memories to delete." if count == 0 else f"✅ Deleted all {count} memories."]

    # ---------- 重要更新 ----------
    async def _show_updates(self, command: str, conversation_id: str) -> List[str]:
        updates = self.updates.list()
        if not updates:
            return ["📰 No important updates."]
        lines = [
            f"{i}. {priority_badge(u.priority)} {u.content} ({format_local_date_time(u.timestamp, self._tz)})"
            for i, u in enumerate(updates, 1)
        ]
        self.updates.mark_all_read()
        return ["📰 Important updates:\n" + "\n".join(lines)]

    async def _delete_all_updates(self, command: str, conversation_id: str) -> List[str]:
        count = self.updates.clear()
        return ["📰 No updates to delete." if count == 0 else f"✅ Deleted all {count} updates."]

    # ---------- 联系人 ----------
    @staticmethod
    def _qualify(raw_id: str, conversation_id: str) -> str:
        """不带前缀的 ID 视为当前通道上的会话"""
        raw_id = raw_id.strip()
        if ":" in raw_id:
            return raw_id
        return f"{transport_of(conversation_id)}:{raw_id}"

    async def _show_blocked(self, command: str, conversation_id: str) -> List[str]:
        blocked = self.contacts.blocked()
        if not blocked:
            return ["🚫 No blocked contacts."]
        lines = [
            f"{i}. {c.get('name') or c.get('conversationId')} - {c.get('reason')}"
            for i, c in enumerate(blocked, 1)
        ]
        return ["🚫 Blocked contacts:\n" + "\n".join(lines)]

    async def _show_priority(self, command: str, conversation_id: str) -> List[str]:
        contacts = self.contacts.priority_contacts()
        if not contacts:
            return ["⭐ No priority contacts."]
        lines = [
            f"{i}. {c.get('name') or c.get('conversationId')} - {c.get('priority')} ({len(c.get('rules') or [])} rules)"
            for i, c in enumerate(contacts, 1)
        ]
        return ["⭐ Priority contacts:\n" + "\n".join(lines)]

    def _block(self, args: str, conversation_id: str) -> List[str]:
        raw_id, _, reason = args.strip().partition(" ")
        if not raw_id:
            return ['Use: "block [chatId] [reason]"']
        target = self._qualify(raw_id, conversation_id)
        self.contacts.block(target, reason=reason.strip() or "Manual block")
        return [f"🚫 Blocked {target}"]

    def _unblock(self, args: str, conversation_id: str) -> List[str]:
        target = self._qualify(args, conversation_id)
        if self.contacts.unblock(target) is None:
            return [f"❌ {target} is not blocked."]
        return [f"✅ Unblocked {target}"]

    def _add_priority(self, args: str, conversation_id: str) -> List[str]:
        tokens = args.split()
        if len(tokens) < 2:
            return ['Use: "add priority [chatId] [name] [keywords]"']
        target = self._qualify(tokens[0], conversation_id)
        if len(tokens) >= 3:
            name, keywords = " ".join(tokens[1:-1]), tokens[-1].split(",")
        else:
            name, keywords = tokens[1], []
        record = self.contacts.add_priority(target, name=name, keywords=keywords)
        kw = record["rules"][0]["keywords"] if record["rules"] else []
        suffix = f" (keywords: {', '.join(kw)})" if kw else ""
        return [f"⭐ Added priority contact {name} ({target}){suffix}"]

    def _remove_priority(self, args: str, conversation_id: str) -> List[str]:
        target = self._qualify(args, conversation_id)
        if self.contacts.remove_priority(target) is None:
            return [f"❌ {target} is not a priority contact."]
        return [f"✅ Removed priority contact {target}"]

    @staticmethod
    def _usage(text: str) -> Callable[[str, str], Awaitable[List[str]]]:
        async def _reply(command: str, conversation_id: str) -> List[str]:
            return [text]
        return _reply

    # ---------- 其它 ----------
    def _status(self, conversation_id: str) -> str:
        active = self.reminders.list_active()
        updates = self.updates.list()
        unread = sum(1 for u in updates if not u.read)
        m = runtime_metrics.snapshot()
        return (
            "📊 Bot Status:\n"
            f"• Memories: {len(self.memories.list())}\n"
            f"• Active reminders: {len(active)}\n"
            f"• Important updates: {len(updates)} ({unread} unread)\n"
            f"• Chat history: {len(self.history.recent(conversation_id))} messages\n"
            f"• LLM calls: {m['llm_call_count']} (errors {m['llm_error_count']}, avg {m['llm_avg_latency_ms']} ms)\n"
            f"• Alerts sent: {m['pre_alert_count']} pre, {m['final_alert_count']} final\n"
            f"• Dispatch failures: {m['dispatch_failure_count']}\n"
            f"• Sweeps: {m['sweep_count']}"
        )

    async def _chat(self, command: str, conversation_id: str) -> str:
        if self._llm is None:
            return f'Hello! I received: "{command}". Please configure an LLM API key for AI responses.'

        system = CHAT_SYSTEM_PROMPT.format(user_name=self._user_name)
        recent_memories = self.memories.list()[-5:]
        if recent_memories:
            system += "\n\nRelevant memories:\n" + "\n".join(f"- {m.content}" for m in recent_memories)

        messages = history_to_messages(self.history.recent(conversation_id))
        if not messages or messages[-1]["content"] != command:
            messages.append({"role": "user", "content": command})
        try:
            reply = await self._llm.chat(messages, system=system)
        except LLMUnavailableError as e:
            logger.warning(f"闲聊回复失败: {e}")
            return "❌ Sorry, I couldn't reach the language model right now."
        self.history.append(conversation_id, "assistant", reply)
        return reply
