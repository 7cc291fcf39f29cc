"""消息分类与命令意图识别

类别集合来自配置(MESSAGE_CATEGORIES)，调度核心不关心有哪些类别。
与时间解析一样，LLM 不可用或输出无法解析时返回 None，不抛异常。
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Dict, Optional, Sequence

from pydantic import BaseModel, ValidationError, field_validator

from relaybot.config.prompts import CATEGORIZE_PROMPT, CATEGORY_RULES, INTERPRET_COMMAND_PROMPT
from relaybot.datamodel import Priority
from relaybot.llm.base import LLMClient, LLMUnavailableError
from relaybot.logger import logger
from relaybot.world.time_resolver import strip_wrapping

__all__ = ["Categorization", "CommandAction", "MessageClassifier"]


class Categorization(BaseModel):
    type: str
    priority: Priority = Priority.MEDIUM
    content: str
    datetime: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v):
        return str(v).strip().upper()

    @field_validator("priority", mode="before")
    @classmethod
    def _lenient_priority(cls, v):
        return Priority.parse(v)

    @field_validator("datetime", mode="before")
    @classmethod
    def _normalize_null(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return None if v.lower() in ("", "null", "none") else v


class CommandAction(str, Enum):
    SHOW_MEMORIES = "SHOW_MEMORIES"
    SHOW_REMINDERS = "SHOW_REMINDERS"
    SAVE_MEMORY = "SAVE_MEMORY"
    SET_REMINDER = "SET_REMINDER"
    DELETE_MEMORY = "DELETE_MEMORY"
    CANCEL_REMINDER = "CANCEL_REMINDER"
    DELETE_ALL_MEMORIES = "DELETE_ALL_MEMORIES"
    DELETE_ALL_REMINDERS = "DELETE_ALL_REMINDERS"
    SHOW_UPDATES = "SHOW_UPDATES"
    DELETE_ALL_UPDATES = "DELETE_ALL_UPDATES"
    SHOW_BLOCKED = "SHOW_BLOCKED"
    SHOW_PRIORITY = "SHOW_PRIORITY"
    BLOCK_CONTACT = "BLOCK_CONTACT"
    UNBLOCK_CONTACT = "UNBLOCK_CONTACT"
    ADD_PRIORITY = "ADD_PRIORITY"
    REMOVE_PRIORITY = "REMOVE_PRIORITY"


_ACTION_DESCRIPTIONS: Dict[CommandAction, str] = {
    CommandAction.SHOW_MEMORIES: "if user wants to see/list/show their memories or asks what they've saved",
    CommandAction.SHOW_REMINDERS: "if user wants to see/list/show their reminders or scheduled tasks",
    CommandAction.SAVE_MEMORY: "if user wants to save something to memory",
    CommandAction.SET_REMINDER: "if user wants to set a reminder or be reminded of something",
    CommandAction.DELETE_MEMORY: "if user wants to delete/remove a memory",
    CommandAction.CANCEL_REMINDER: "if user wants to cancel/delete a reminder",
    CommandAction.DELETE_ALL_MEMORIES: "if user wants to delete/clear all memories",
    CommandAction.DELETE_ALL_REMINDERS: "if user wants to delete/clear all reminders",
    CommandAction.SHOW_UPDATES: "if user wants to see important updates",
    CommandAction.DELETE_ALL_UPDATES: "if user wants to clear all updates",
    CommandAction.SHOW_BLOCKED: "if user wants to see blocked contacts",
    CommandAction.SHOW_PRIORITY: "if user wants to see priority contacts",
    CommandAction.BLOCK_CONTACT: "if user wants to block a contact",
    CommandAction.UNBLOCK_CONTACT: "if user wants to unblock a contact",
    CommandAction.ADD_PRIORITY: "if user wants to add a priority contact",
    CommandAction.REMOVE_PRIORITY: "if user wants to remove a priority contact",
}


class MessageClassifier:
    def __init__(self, llm_client: LLMClient | None, categories: Sequence[str]) -> None:
        self._llm = llm_client
        self.categories = [c.upper() for c in categories]

    def _categorize_prompt(self, text: str) -> str:
        rules = "\n".join(
            CATEGORY_RULES.get(c, f"- {c}: messages that belong to {c.lower()}") for c in self.categories
        )
        return CATEGORIZE_PROMPT.format(
            type_choices="|".join([*self.categories, "NONE"]),
            category_rules=rules,
            message=text,
        )

    async def categorize(self, text: str) -> Optional[Categorization]:
        if self._llm is None:
            return None
        try:
            raw = await self._llm.generate_text(self._categorize_prompt(text))
        except LLMUnavailableError as e:
            logger.warning(f"消息分类调用失败: {e}")
            return None

        try:
            result = Categorization.model_validate(json.loads(strip_wrapping(raw)))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"消息分类返回无法解析的内容: {raw!r}, error={e}")
            return None

        if result.type == "NONE":
            return None
        if result.type not in self.categories:
            logger.warning(f"消息分类返回了未配置的类别: {result.type}")
            return None
        logger.debug(f"消息分类结果: type={result.type}, priority={result.priority.value}, content={result.content!r}")
        return result

    async def interpret_command(self, text: str) -> Optional[CommandAction]:
        if self._llm is None:
            return None
        actions = "\n".join(f'- "{a.value}" - {desc}' for a, desc in _ACTION_DESCRIPTIONS.items())
        try:
            raw = await self._llm.generate_text(INTERPRET_COMMAND_PROMPT.format(actions=actions, command=text))
        except LLMUnavailableError as e:
            logger.warning(f"命令意图识别调用失败: {e}")
            return None

        answer = raw.strip().strip('"').strip("`").strip().upper()
        if answer == "NONE":
            return None
        try:
            return CommandAction(answer)
        except ValueError:
            logger.debug(f"命令意图识别返回未知动作: {raw!r}")
            return None
