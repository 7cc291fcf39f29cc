import asyncio
import time
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types

from relaybot.config.settings import GEMINI_API_KEY, GEMINI_BASE_URL, LLM_MODEL
from relaybot.llm.base import LLMClient, LLMMessage, LLMUnavailableError
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics


class GeminiClient(LLMClient):
    API_RETRY_DELAYS_SECONDS = [5.0, 15.0]

    def __init__(self, api_key: str = GEMINI_API_KEY, base_url: Optional[str] = GEMINI_BASE_URL,
                 model: str = LLM_MODEL) -> None:
        if not api_key:
            raise LLMUnavailableError("GEMINI_API_KEY 未配置")
        self.model = model
        self.client = genai.Client(api_key=api_key, http_options={"base_url": base_url} if base_url else None)

    @staticmethod
    def _text_message(role: str, text: str) -> Dict[str, Any]:
        return {
            "role": role,
            "parts": [{"text": text}],
        }

    @staticmethod
    def _is_retryable_error(error: Exception) -> bool:
        msg = str(error).lower()
        signals = [
            "429",
            "rate limit",
            "resource_exhausted",
            "temporarily unavailable",
            "timeout",
            "timed out",
            "503",
            "502",
            "504",
            "connection reset",
            "connection aborted",
        ]
        return any(s in msg for s in signals)

    @staticmethod
    def _extract_text(response: Any) -> str:
        text = getattr(response, "text", None)
        if isinstance(text, str) and text.strip():
            return text.strip()

        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return ""
        content = getattr(candidates[0], "content", None)
        parts = list(getattr(content, "parts", None) or [])
        text_parts = [p.text for p in parts if isinstance(getattr(p, "text", None), str) and p.text.strip()]
        return "\n".join(text_parts).strip()

    async def _generate_once(self, contents: List[Any], config: types.GenerateContentConfig) -> Any:
        return await asyncio.to_thread(
            self.client.models.generate_content,
            model=self.model,
            contents=contents,
            config=config,
        )

    async def _generate_with_retry(self, contents: List[Any], system: Optional[str]) -> str:
        config = types.GenerateContentConfig(system_instruction=system) if system else types.GenerateContentConfig()
        started = time.monotonic()
        for idx, delay in enumerate([0.0, *self.API_RETRY_DELAYS_SECONDS]):
            try:
                if delay > 0:
                    await asyncio.sleep(delay)
                logger.trace(f"Gemini请求发起 Model:{self.model}; Contents:{contents}")
                response = await self._generate_once(contents, config)
                logger.trace(f"Gemini请求收到响应: {response}")
                break
            except Exception as e:
                is_last = idx == len(self.API_RETRY_DELAYS_SECONDS)
                if is_last or not self._is_retryable_error(e):
                    runtime_metrics.record_llm_call((time.monotonic() - started) * 1000, error=True)
                    logger.error(f"Gemini 请求失败: {e}")
                    raise LLMUnavailableError(str(e)) from e
                logger.warning(
                    f"Gemini 请求暂时失败，准备重试: attempt={idx + 1}/{len(self.API_RETRY_DELAYS_SECONDS) + 1}, delay={self.API_RETRY_DELAYS_SECONDS[idx]}s, error={e}"
                )

        runtime_metrics.record_llm_call((time.monotonic() - started) * 1000)
        text = self._extract_text(response)
        if not text:
            logger.error("Gemini 返回空文本")
            raise LLMUnavailableError("Gemini 返回空文本")
        return text

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        return await self._generate_with_retry([self._text_message("user", prompt)], system)

    async def chat(self, history: List[LLMMessage], system: Optional[str] = None) -> str:
        contents = [
            self._text_message("model" if m["role"] == "assistant" else "user", m["content"])
            for m in history
            if m["role"] != "system"
        ]
        return await self._generate_with_retry(contents, system)
