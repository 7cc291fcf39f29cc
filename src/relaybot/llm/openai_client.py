import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from relaybot.config.settings import LLM_MODEL, OPENAI_API_KEY, OPENAI_BASE_URL
from relaybot.llm.base import LLMClient, LLMMessage, LLMUnavailableError
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics


class OpenAIClient(LLMClient):
    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        base_url: str = OPENAI_BASE_URL,
        model: str = LLM_MODEL,
    ) -> None:
        if not api_key:
            raise LLMUnavailableError("OPENAI_API_KEY 未配置")
        self.base_url = base_url
        self.model = model
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url
        )

    async def _respond(self, input_items: List[Dict[str, Any]], system: Optional[str]) -> str:
        started = time.monotonic()
        logger.trace(f"LLM请求发起 BaseUrl:{self.base_url}; Model:{self.model}; Input:{input_items}")
        try:
            response = await self.client.responses.create(
                model=self.model,
                instructions=system or "",
                input=input_items,
            )
        except OpenAIError as e:
            runtime_metrics.record_llm_call((time.monotonic() - started) * 1000, error=True)
            logger.error(f"OpenAI 请求失败: {e}")
            raise LLMUnavailableError(str(e)) from e
        runtime_metrics.record_llm_call((time.monotonic() - started) * 1000)
        logger.trace(f"LLM请求收到响应: {response}")

        text = (response.output_text or "").strip()
        if not text:
            raise LLMUnavailableError("OpenAI 返回空文本")
        return text

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        return await self._respond([{"role": "user", "content": prompt}], system)

    async def chat(self, history: List[LLMMessage], system: Optional[str] = None) -> str:
        items = [{"role": m["role"], "content": m["content"]} for m in history if m["role"] != "system"]
        return await self._respond(items, system)
