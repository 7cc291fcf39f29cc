import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from relaybot.logger import logger

load_dotenv()

__all__ = [
    "USER_NAME", "USER_TIMEZONE", "DATA_DIR", "LOG_FILE", "LOG_LEVEL",
    "ENABLE_TELEGRAM_BOT_POLLING", "TELEGRAM_BOT_TOKEN", "PRIMARY_TELEGRAM_CHAT_ID",
    "ENABLE_QQ_NAPCAT", "QQ_NAPCAT_WS_PATH", "QQ_NAPCAT_WS_TOKEN", "QQ_NAPCAT_SEND_TIMEOUT_SECONDS",
    "PRIMARY_QQ_USER_ID", "QQ_NAPCAT_ENABLE_GROUP",
    "CHANNEL_HTTP_HOST", "CHANNEL_HTTP_PORT", "COMMAND_TRIGGER_WORD",
    "LLM_PROVIDER", "GEMINI_API_KEY", "GEMINI_BASE_URL", "OPENAI_API_KEY", "OPENAI_BASE_URL", "LLM_MODEL",
    "MESSAGE_CATEGORIES", "DAILY_SUMMARY_HOUR", "SWEEP_HOUR", "CHAT_HISTORY_LIMIT",
    "validate_settings",
]


def _parse_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on", "y")


def _parse_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{name} 非法: {raw}, 已回退到 {default}")
        return default


def _parse_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip().upper() for item in raw.split(",") if item.strip()]


# 用户个人信息
USER_NAME = os.getenv("USER_NAME", "User")
USER_TIMEZONE = os.getenv("USER_TIMEZONE", "Asia/Kolkata")

# 数据与日志
DATA_DIR = os.getenv("DATA_DIR", "data")
LOG_FILE = os.getenv("LOG_FILE", "logs/relaybot.log")
LOG_LEVEL = os.getenv("LOG_LEVEL", "TRACE").strip().upper()

# Telegram Bot
ENABLE_TELEGRAM_BOT_POLLING = _parse_bool("ENABLE_TELEGRAM_BOT_POLLING", True)
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
PRIMARY_TELEGRAM_CHAT_ID = _parse_int("PRIMARY_TELEGRAM_CHAT_ID", 0)

# QQ / NapCat
ENABLE_QQ_NAPCAT = _parse_bool("ENABLE_QQ_NAPCAT", False)
QQ_NAPCAT_WS_PATH = os.getenv("QQ_NAPCAT_WS_PATH", "/channels/qq/onebot/ws")
QQ_NAPCAT_WS_TOKEN = os.getenv("QQ_NAPCAT_WS_TOKEN", "")
PRIMARY_QQ_USER_ID = _parse_int("PRIMARY_QQ_USER_ID", 0)
QQ_NAPCAT_ENABLE_GROUP = _parse_bool("QQ_NAPCAT_ENABLE_GROUP", False)

try:
    QQ_NAPCAT_SEND_TIMEOUT_SECONDS = float(os.getenv("QQ_NAPCAT_SEND_TIMEOUT_SECONDS", "10"))
except ValueError:
    QQ_NAPCAT_SEND_TIMEOUT_SECONDS = 10.0
    logger.warning("QQ_NAPCAT_SEND_TIMEOUT_SECONDS 非法, 已回退到 10 秒")

# QQ 反向 WS 的宿主 HTTP 服务
CHANNEL_HTTP_HOST = os.getenv("CHANNEL_HTTP_HOST", "127.0.0.1")
CHANNEL_HTTP_PORT = _parse_int("CHANNEL_HTTP_PORT", 18080)

# 需要触发词的通道上(QQ)，主人的消息只有以触发词开头才会被当作命令
COMMAND_TRIGGER_WORD = os.getenv("COMMAND_TRIGGER_WORD", "!bot")

# LLM 设置
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "gemini").strip().lower()
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
LLM_MODEL = os.getenv("LLM_MODEL", "gemini-2.5-flash")

# 自动分类的类别集合，属于配置而非调度核心
MESSAGE_CATEGORIES = _parse_list("MESSAGE_CATEGORIES", "REMINDER,MEMORY,IMPORTANT")

# 定时任务(本地时间的小时)
DAILY_SUMMARY_HOUR = _parse_int("DAILY_SUMMARY_HOUR", 21)
SWEEP_HOUR = _parse_int("SWEEP_HOUR", 0)

CHAT_HISTORY_LIMIT = _parse_int("CHAT_HISTORY_LIMIT", 20)


def validate_settings() -> bool:
    """检查致命配置错误。缺少 LLM 密钥不算致命：分类能力视为不可用"""
    ok = True

    if not ENABLE_TELEGRAM_BOT_POLLING and not ENABLE_QQ_NAPCAT:
        logger.critical("Telegram 与 QQ 通道均未启用, 至少需要启用一个")
        ok = False

    if ENABLE_TELEGRAM_BOT_POLLING and TELEGRAM_BOT_TOKEN == "":
        logger.critical("已启用 Telegram Bot Polling, 但 TELEGRAM_BOT_TOKEN 未设置")
        ok = False

    if ENABLE_TELEGRAM_BOT_POLLING and PRIMARY_TELEGRAM_CHAT_ID == 0:
        logger.warning("未设置 PRIMARY_TELEGRAM_CHAT_ID, Telegram 将无法投递提醒")

    if ENABLE_QQ_NAPCAT and PRIMARY_QQ_USER_ID == 0:
        logger.warning("未设置 PRIMARY_QQ_USER_ID, QQ 将无法投递提醒")

    if LLM_PROVIDER not in ("openai", "gemini"):
        logger.critical(f"LLM_PROVIDER 非法: {LLM_PROVIDER}, 仅支持 openai 或 gemini")
        ok = False

    if LLM_PROVIDER == "gemini" and GEMINI_API_KEY == "":
        logger.warning("GEMINI_API_KEY 未设置, 时间解析与消息分类将不可用")

    if LLM_PROVIDER == "openai" and OPENAI_API_KEY == "":
        logger.warning("OPENAI_API_KEY 未设置, 时间解析与消息分类将不可用")

    try:
        ZoneInfo(USER_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.critical(f"USER_TIMEZONE 非法: {USER_TIMEZONE}")
        ok = False

    return ok
