from relaybot.logger import setup_logging, logger
from relaybot.config.settings import *
setup_logging(
    log_level=LOG_LEVEL,
    log_file=LOG_FILE,
    console_level="INFO",
)

import asyncio
import signal
import sys
from pathlib import Path
from typing import List

from relaybot.core.classifier import MessageClassifier
from relaybot.core.commands import CommandHandler
from relaybot.core.orchestrator import Orchestrator, configure_orchestrator
import relaybot.core.orchestrator as orchestrator
from relaybot.llm.base import LLMClient, LLMUnavailableError
from relaybot.storage.contacts import ContactBook
from relaybot.storage.memory import ChatHistory, MemoryStore, UpdateStore
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import local_clock
from relaybot.world.dispatcher import NotificationDispatcher, NotificationSink
from relaybot.world.reminder import ReminderService
from relaybot.world.scheduler import AsyncioTimer, StageScheduler
from relaybot.world.summary import build_daily_summary
import relaybot.world.summary as summary
from relaybot.world.sweep import RecoverySweep, owned_by_transports
from relaybot.world.time_resolver import TimeResolver

shutdown_event = asyncio.Event()


def signal_handler(sig, frame):
    """处理 SIGINT (Ctrl+C) / SIGTERM 信号"""
    logger.info("收到中断信号,正在依次关闭组件...")
    shutdown_event.set()


def _create_llm_client() -> LLMClient | None:
    """根据配置创建 LLM 客户端；未配置密钥时返回 None，时间解析与分类随之降级"""
    try:
        if LLM_PROVIDER == "openai":
            from relaybot.llm.openai_client import OpenAIClient

            return OpenAIClient()

        from relaybot.llm.gemini_client import GeminiClient

        return GeminiClient()
    except LLMUnavailableError as e:
        logger.warning(f"LLM 不可用: {e}")
        return None


def _create_sinks() -> List[NotificationSink]:
    sinks: List[NotificationSink] = []
    if ENABLE_TELEGRAM_BOT_POLLING:
        from relaybot.channels.telegram_polling import TelegramSink

        sinks.append(TelegramSink())
    if ENABLE_QQ_NAPCAT:
        from relaybot.channels.qq_onebot_ws import QQSink

        sinks.append(QQSink())
    return sinks


async def main() -> int:
    if not validate_settings():
        return 1

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    data_dir = Path(DATA_DIR)
    clock = local_clock(USER_TIMEZONE)
    llm_client = _create_llm_client()

    sinks = _create_sinks()
    dispatcher = NotificationDispatcher(sinks)
    store = ReminderStore(data_dir / "reminders.json", clock=clock)
    memories = MemoryStore(data_dir / "saved_memories.json", clock=clock)
    updates = UpdateStore(data_dir / "important_updates.json", clock=clock)
    history = ChatHistory(data_dir / "chat_history.json", limit=CHAT_HISTORY_LIMIT, clock=clock)
    contacts = ContactBook(
        data_dir / "blocked_contacts.json",
        data_dir / "priority_contacts.json",
        owner_conversation_ids=[s.home_conversation_id for s in sinks if s.home_conversation_id],
        clock=clock,
    )

    timer = AsyncioTimer()
    scheduler = StageScheduler(store, dispatcher, timer=timer, clock=clock)
    sweep = RecoverySweep(store, scheduler, owned_by_transports(s.prefix for s in sinks), clock=clock)
    reminders = ReminderService(store, TimeResolver(llm_client, USER_TIMEZONE), scheduler, USER_TIMEZONE, clock=clock)
    classifier = MessageClassifier(llm_client, MESSAGE_CATEGORIES)
    commands = CommandHandler(
        reminders, memories, updates, contacts, history, classifier, llm_client,
        timezone=USER_TIMEZONE, user_name=USER_NAME,
    )
    configure_orchestrator(Orchestrator(
        commands, classifier, reminders, memories, updates, contacts, history, dispatcher,
        trigger_word=COMMAND_TRIGGER_WORD,
        trigger_transports=["qq"],
    ))

    def collect_summary() -> str:
        return build_daily_summary(store.reload(), memories.list(), updates.list(), clock(), USER_TIMEZONE)

    sweep.startup()

    try:
        tasks = [
            orchestrator.main_loop(shutdown_event),
            sweep.main_loop(shutdown_event, hour=SWEEP_HOUR),
            summary.main_loop(shutdown_event, dispatcher, collect_summary, clock, hour=DAILY_SUMMARY_HOUR),
        ]

        if ENABLE_TELEGRAM_BOT_POLLING:
            from relaybot.channels.telegram_polling import main as telegram_main

            tasks.append(telegram_main(shutdown_event))
        else:
            logger.warning("Telegram Bot Polling 已禁用")

        if ENABLE_QQ_NAPCAT:
            from relaybot.channels.http_server import main_loop as http_main
            from relaybot.channels.qq_onebot_ws import main as qq_main

            tasks.append(qq_main(shutdown_event))
            tasks.append(http_main(shutdown_event))
        else:
            logger.warning("NapCatQQ 通道已禁用")

        await asyncio.gather(*tasks)
    finally:
        # 未触发的定时器直接丢弃，下次启动时由清扫从磁盘重建
        timer.cancel_all()
        logger.info("relaybot 已关闭")
    return 0


def run() -> None:
    logger.info("启动 relaybot...")
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
