"""自然语言时间解析

把 "tomorrow at 9am" 之类的表达式交给 LLM 换算成绝对时间。LLM 的输出不可信：
可能带 markdown 代码块、换行，甚至根本不是 JSON。任何失败都退回到
"未解析"(target_date_time=None)，异常不会越过本模块。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from relaybot.config.prompts import TIME_RESOLUTION_PROMPT
from relaybot.datamodel import Priority
from relaybot.llm.base import LLMClient, LLMUnavailableError
from relaybot.logger import logger
from relaybot.utils import ensure_aware, format_local, to_utc

__all__ = ["Resolution", "TimeResolver", "strip_wrapping"]

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_wrapping(raw: str) -> str:
    """去掉 ```json 代码块与换行，尽量只留下 JSON 对象本身"""
    text = raw.strip()
    text = _FENCE_OPEN.sub("", text)
    text = _FENCE_CLOSE.sub("", text)
    text = text.replace("\r", "").replace("\n", " ").strip()
    if not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]
    return text


class _ResolverOutput(BaseModel):
    task: Optional[str] = None
    targetDateTime: Optional[str] = None
    priority: Optional[str] = None

    @field_validator("targetDateTime", mode="before")
    @classmethod
    def _normalize_null(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return None if v.lower() in ("", "null", "none") else v


@dataclass
class Resolution:
    cleaned_task: str
    target_date_time: Optional[datetime]
    priority: Priority

    @property
    def resolved(self) -> bool:
        return self.target_date_time is not None


class TimeResolver:
    def __init__(self, llm_client: LLMClient | None, timezone: str) -> None:
        self._llm = llm_client
        self._tz = timezone

    async def resolve(
        self,
        original_expression: str,
        task: str,
        reference_now: datetime,
        priority: Priority = Priority.MEDIUM,
    ) -> Resolution:
        fallback = Resolution(cleaned_task=task, target_date_time=None, priority=priority)
        if self._llm is None:
            logger.warning("LLM 未配置, 跳过时间解析")
            return fallback

        reference_now = ensure_aware(reference_now, self._tz)
        prompt = TIME_RESOLUTION_PROMPT.format(
            now_local=format_local(reference_now, self._tz),
            timezone=self._tz,
            task=task,
            expression=original_expression,
        )
        try:
            raw = await self._llm.generate_text(prompt)
        except LLMUnavailableError as e:
            logger.warning(f"时间解析调用失败, 按未解析处理: {e}")
            return fallback

        try:
            parsed = _ResolverOutput.model_validate(json.loads(strip_wrapping(raw)))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"时间解析返回无法解析的内容: {raw!r}, error={e}")
            return fallback

        cleaned_task = (parsed.task or "").strip() or task
        resolved_priority = Priority.parse(parsed.priority, default=priority) if parsed.priority else priority
        target = self._parse_target(parsed.targetDateTime)
        if target is not None and to_utc(target) <= to_utc(reference_now):
            logger.info(f"解析出的时间 {target.isoformat()} 不晚于当前时间, 按未解析处理")
            target = None

        logger.debug(f"时间解析结果: expression={original_expression!r}, task={cleaned_task!r}, target={target}")
        return Resolution(cleaned_task=cleaned_task, target_date_time=target, priority=resolved_priority)

    def _parse_target(self, raw: Optional[str]) -> Optional[datetime]:
        if raw is None:
            return None
        try:
            target = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"无法解析的时间字符串: {raw!r}")
            return None
        # 没有时区的时间按用户本地时区理解
        return ensure_aware(target, self._tz)
