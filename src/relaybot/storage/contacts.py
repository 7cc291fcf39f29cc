"""联系人规则

屏蔽名单与重点联系人名单。主人自己的会话永远以 HIGH 优先级处理；
被屏蔽的会话直接丢弃；重点联系人可以附带关键字规则。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from relaybot.datamodel import Priority
from relaybot.logger import logger
from relaybot.storage.json_store import JsonCollection
from relaybot.utils import Clock, now_utc

__all__ = ["RuleType", "ContactDecision", "RuleOutcome", "ContactBook"]


class RuleType:
    IGNORE_KEYWORDS = "IGNORE_KEYWORDS"
    ONLY_KEYWORDS = "ONLY_KEYWORDS"
    AUTO_CATEGORIZE = "AUTO_CATEGORIZE"
    NOTIFICATION_ONLY = "NOTIFICATION_ONLY"


@dataclass
class ContactDecision:
    process: bool
    priority: Priority = Priority.MEDIUM
    rules: List[Dict[str, Any]] = field(default_factory=list)
    name: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class RuleOutcome:
    process_message: bool = True
    modifications: List[str] = field(default_factory=list)
    force_category: Optional[str] = None
    notification_only: bool = False


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(k.lower() in lowered for k in keywords if k)


class ContactBook:
    def __init__(self, blocked_path, priority_path, owner_conversation_ids: Iterable[str] = (),
                 clock: Clock | None = None) -> None:
        self._blocked = JsonCollection(blocked_path, default=[])
        self._priority = JsonCollection(priority_path, default=[])
        self._owners = set(owner_conversation_ids)
        self._clock = clock or now_utc

    # ---------- 查询 ----------
    def blocked(self) -> List[Dict[str, Any]]:
        return self._blocked.load()

    def priority_contacts(self) -> List[Dict[str, Any]]:
        return self._priority.load()

    def should_process(self, conversation_id: str) -> ContactDecision:
        if conversation_id in self._owners:
            return ContactDecision(process=True, priority=Priority.HIGH)

        for contact in self._blocked.load():
            if contact.get("conversationId") == conversation_id:
                return ContactDecision(
                    process=False,
                    name=contact.get("name") or None,
                    reason=contact.get("reason") or "Blocked contact",
                )

        for contact in self._priority.load():
            if contact.get("conversationId") == conversation_id:
                return ContactDecision(
                    process=True,
                    priority=Priority.parse(contact.get("priority"), default=Priority.HIGH),
                    rules=list(contact.get("rules") or []),
                    name=contact.get("name") or None,
                )

        return ContactDecision(process=True)

    @staticmethod
    def apply_rules(text: str, decision: ContactDecision) -> RuleOutcome:
        outcome = RuleOutcome()
        for rule in decision.rules:
            rule_type = rule.get("type")
            keywords = rule.get("keywords") or []
            if rule_type == RuleType.IGNORE_KEYWORDS:
                if keywords and _contains_any(text, keywords):
                    outcome.process_message = False
                    outcome.modifications.append(f"Ignored due to keyword: {', '.join(keywords)}")
            elif rule_type == RuleType.ONLY_KEYWORDS:
                if keywords and not _contains_any(text, keywords):
                    outcome.process_message = False
                    outcome.modifications.append(f"Only processing messages with: {', '.join(keywords)}")
            elif rule_type == RuleType.AUTO_CATEGORIZE:
                if rule.get("forceCategory"):
                    outcome.force_category = str(rule["forceCategory"]).upper()
                    outcome.modifications.append(f"Force category: {outcome.force_category}")
            elif rule_type == RuleType.NOTIFICATION_ONLY:
                outcome.notification_only = True
                outcome.modifications.append("Notification only - no auto-processing")
            else:
                logger.warning(f"未知的联系人规则类型: {rule_type}")
        return outcome

    # ---------- 修改 ----------
    def block(self, conversation_id: str, reason: str = "Manual block", name: str = "") -> None:
        data = self._blocked.load()
        record = next((c for c in data if c.get("conversationId") == conversation_id), None)
        if record is None:
            record = {"conversationId": conversation_id}
            data.append(record)
        record.update(name=name, reason=reason, blockedAt=self._clock().isoformat())
        self._blocked.save(data)
        logger.info(f"屏蔽联系人: {conversation_id}, reason={reason}")

    def unblock(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        data = self._blocked.load()
        for idx, contact in enumerate(data):
            if contact.get("conversationId") == conversation_id:
                removed = data.pop(idx)
                self._blocked.save(data)
                logger.info(f"解除屏蔽: {conversation_id}")
                return removed
        return None

    def add_priority(self, conversation_id: str, name: str = "", keywords: Iterable[str] = (),
                     priority: Priority = Priority.HIGH) -> Dict[str, Any]:
        rules = []
        keywords = [k.strip() for k in keywords if k.strip()]
        if keywords:
            rules.append({"type": RuleType.ONLY_KEYWORDS, "keywords": keywords})

        data = self._priority.load()
        record = next((c for c in data if c.get("conversationId") == conversation_id), None)
        if record is None:
            record = {"conversationId": conversation_id, "addedAt": self._clock().isoformat()}
            data.append(record)
        else:
            record["updatedAt"] = self._clock().isoformat()
        record.update(name=name, priority=priority.value, rules=rules)
        self._priority.save(data)
        logger.info(f"添加重点联系人: {conversation_id}, name={name}, keywords={keywords}")
        return record

    def remove_priority(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        data = self._priority.load()
        for idx, contact in enumerate(data):
            if contact.get("conversationId") == conversation_id:
                removed = data.pop(idx)
                self._priority.save(data)
                logger.info(f"移除重点联系人: {conversation_id}")
                return removed
        return None
