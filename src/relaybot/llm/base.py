from abc import ABC, abstractmethod
from typing import Dict, List, Literal, Optional, TypedDict

__all__ = ["LLMClient", "LLMMessage", "LLMUnavailableError"]


class LLMUnavailableError(Exception):
    """分类能力不可用：未配置，或调用失败。不会越过时间解析与分类器的边界"""


class LLMMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMClient(ABC):
    @abstractmethod
    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        """单轮文本生成。失败时抛出 LLMUnavailableError"""

    @abstractmethod
    async def chat(self, history: List[LLMMessage], system: Optional[str] = None) -> str:
        """多轮对话回复。失败时抛出 LLMUnavailableError"""


def history_to_messages(entries: List[Dict[str, str]], limit: int = 10) -> List[LLMMessage]:
    """把 ChatHistory 中的条目转换为 LLMMessage，只保留最近 limit 条"""
    messages: List[LLMMessage] = []
    for entry in entries[-limit:]:
        role = "assistant" if entry.get("role") == "assistant" else "user"
        messages.append({"role": role, "content": entry.get("content", "")})
    return messages
