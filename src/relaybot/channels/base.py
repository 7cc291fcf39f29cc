import asyncio
from typing import Awaitable, Callable

from relaybot.logger import logger

__all__ = ["ChannelSendError", "send_with_retry"]


class ChannelSendError(Exception):
    """通道发送失败(未连接、网络错误或平台返回错误)"""


async def send_with_retry(
    send: Callable[[], Awaitable[object]],
    describe: str,
    retry_delay_seconds: float,
) -> None:
    """发送失败后等待 retry_delay_seconds 重试一次，仍失败则抛出 ChannelSendError"""
    try:
        await send()
        return
    except Exception as e:
        logger.opt(exception=e).error(f"{describe} 失败: {e}, 即将重试")

    await asyncio.sleep(retry_delay_seconds)
    try:
        await send()
    except Exception as e:
        logger.opt(exception=e).error(f"[重试] {describe} 失败: {e}")
        raise ChannelSendError(f"{describe} 失败: {e}") from e
