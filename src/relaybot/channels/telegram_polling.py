import asyncio
import datetime

import telegram
from telegram.ext import ApplicationBuilder, ContextTypes, MessageHandler, filters

from relaybot.channels.base import ChannelSendError, send_with_retry
from relaybot.config.settings import PRIMARY_TELEGRAM_CHAT_ID, TELEGRAM_BOT_TOKEN
from relaybot.datamodel import ChannelType, IncomingMessage, OutgoingMessage, conversation_id_for, raw_target_of
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.world.dispatcher import NotificationSink

__all__ = ["TelegramSink", "main"]

SEND_RETRY_DELAY_SECONDS = 5.0

_bot_instance: telegram.Bot | None = None


async def _send_text(chat_id: int | str, text: str) -> None:
    bot = _bot_instance
    if bot is None:
        raise ChannelSendError("Telegram Bot 尚未启动")
    await send_with_retry(
        lambda: bot.send_message(chat_id=chat_id, text=text),
        f"向 Telegram chat {chat_id} 发送消息",
        SEND_RETRY_DELAY_SECONDS,
    )


class TelegramSink(NotificationSink):
    name = "telegram"
    prefix = ChannelType.TELEGRAM_BOT_POLLING.prefix

    def __init__(self, home_chat_id: int = PRIMARY_TELEGRAM_CHAT_ID) -> None:
        self._home_chat_id = home_chat_id

    @property
    def home_conversation_id(self) -> str | None:
        if not self._home_chat_id:
            return None
        return conversation_id_for(ChannelType.TELEGRAM_BOT_POLLING, self._home_chat_id)

    async def send(self, conversation_id: str, text: str) -> None:
        await _send_text(raw_target_of(conversation_id), text)


async def process_message(update: telegram.Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None or not update.message.text:
        return
    chat = update.effective_chat
    if chat is None or chat.type != telegram.constants.ChatType.PRIVATE:
        return

    logger.info(f"Telegram chat {chat.id} 消息内容: {update.message.text}")
    user = update.effective_user
    bus.emit(E.IO_MESSAGE_RECEIVED, IncomingMessage(
        channel_type=ChannelType.TELEGRAM_BOT_POLLING,
        conversation_id=conversation_id_for(ChannelType.TELEGRAM_BOT_POLLING, chat.id),
        content=update.message.text,
        from_owner=PRIMARY_TELEGRAM_CHAT_ID != 0 and chat.id == PRIMARY_TELEGRAM_CHAT_ID,
        sender_name=user.full_name if user is not None else None,
        channel_context=context,
        metadata={"channel_chat_id": chat.id},
        timestamp=update.message.date,
    ))


@bus.on(E.IO_SEND_MESSAGE)
async def send_outgoing_message(msg: OutgoingMessage) -> None:
    if msg.channel_type != ChannelType.TELEGRAM_BOT_POLLING:
        return
    logger.info(f"发送消息给 {msg.conversation_id}: {msg.content}")
    try:
        await _send_text(raw_target_of(msg.conversation_id), msg.content)
    except ChannelSendError as e:
        logger.error(f"回复消息最终发送失败: conversation={msg.conversation_id}, error={e}")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """处理 telegram 库中发生的错误"""
    logger.opt(exception=context.error).error(f"Telegram 错误: {context.error}")


def bot_error_callback(error: telegram.error.TelegramError) -> None:
    if isinstance(error, telegram.error.NetworkError):
        logger.warning(f"Telegram Bot 网络错误: {error}")
    else:
        logger.opt(exception=error).error(f"Telegram Bot 发生预期外的错误: {error}")


async def main(shutdown_event: asyncio.Event) -> None:
    global _bot_instance
    app = ApplicationBuilder().token(TELEGRAM_BOT_TOKEN).build()

    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, process_message))
    app.add_error_handler(error_handler)

    try:
        await app.initialize()
        _bot_instance = app.bot
        await app.updater.start_polling(
            poll_interval=0.5,
            timeout=datetime.timedelta(seconds=15),
            bootstrap_retries=-1,
            drop_pending_updates=False,  # 保留下线期间的消息
            error_callback=bot_error_callback,
        )
        await app.start()
        logger.info("Telegram Bot Polling 已启动")

        await shutdown_event.wait()
    finally:
        logger.info("关闭 Telegram Bot Polling...")
        _bot_instance = None
        if app.updater.running:
            await app.updater.stop()
        if app.running:
            await app.stop()
        await app.shutdown()
