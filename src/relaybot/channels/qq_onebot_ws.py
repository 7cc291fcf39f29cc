from __future__ import annotations

import asyncio
import datetime
import hmac
import json
import uuid
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from relaybot.channels.base import ChannelSendError, send_with_retry
from relaybot.config.settings import (
    PRIMARY_QQ_USER_ID,
    QQ_NAPCAT_ENABLE_GROUP,
    QQ_NAPCAT_SEND_TIMEOUT_SECONDS,
    QQ_NAPCAT_WS_PATH,
    QQ_NAPCAT_WS_TOKEN,
)
from relaybot.datamodel import ChannelType, IncomingMessage, OutgoingMessage, conversation_id_for, raw_target_of
from relaybot.events import E, bus
from relaybot.logger import logger
from relaybot.world.dispatcher import NotificationSink

__all__ = ["QQSink", "register_fastapi_routes", "main"]

SEND_RETRY_DELAY_SECONDS = 2.0
_GROUP_PREFIX = "group:"


class _NapCatSession:
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.send_lock = asyncio.Lock()

    async def send_json(self, payload: dict[str, Any]) -> None:
        async with self.send_lock:
            await self.websocket.send_text(json.dumps(payload, ensure_ascii=False))


_routes_registered = False
_active_session: _NapCatSession | None = None
_session_lock = asyncio.Lock()
_pending_echo: dict[str, asyncio.Future] = {}


def _extract_token(websocket: WebSocket) -> str:
    auth_header = websocket.headers.get("authorization", "").strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    if auth_header != "":
        return auth_header

    qs_token = websocket.query_params.get("access_token") or websocket.query_params.get("token")
    return (qs_token or "").strip()


def _is_authorized(websocket: WebSocket) -> bool:
    if QQ_NAPCAT_WS_TOKEN == "":
        return True
    return hmac.compare_digest(_extract_token(websocket), QQ_NAPCAT_WS_TOKEN)


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extract_text_content(message: Any, raw_message: Any) -> str:
    if isinstance(message, str):
        return message.strip()

    if isinstance(message, list):
        parts: list[str] = []
        for segment in message:
            if not isinstance(segment, dict) or segment.get("type") != "text":
                continue
            data = segment.get("data")
            if isinstance(data, dict) and "text" in data:
                parts.append(str(data["text"]))
        merged = "".join(parts).strip()
        if merged:
            return merged

    if raw_message is None:
        return ""
    return str(raw_message).strip()


def conversation_id_for_event(payload: dict[str, Any]) -> str | None:
    """私聊为 qq:<user_id>，群聊为 qq:group:<group_id>"""
    if payload.get("message_type") == "group":
        group_id = _to_int(payload.get("group_id"))
        if group_id is None:
            return None
        return conversation_id_for(ChannelType.QQ_NAPCAT_ONEBOT_V11, f"{_GROUP_PREFIX}{group_id}")
    user_id = _to_int(payload.get("user_id"))
    if user_id is None:
        return None
    return conversation_id_for(ChannelType.QQ_NAPCAT_ONEBOT_V11, user_id)


def _resolve_pending_response(payload: dict[str, Any]) -> None:
    echo = str(payload.get("echo", ""))
    if echo == "":
        return

    future = _pending_echo.get(echo)
    if future is None or future.done():
        return
    future.set_result(payload)


def _fail_all_pending(exc: Exception) -> None:
    for future in list(_pending_echo.values()):
        if not future.done():
            future.set_exception(exc)
    _pending_echo.clear()


async def _close_quietly(session: _NapCatSession, code: int, reason: str) -> None:
    try:
        await session.websocket.close(code=code, reason=reason)
    except RuntimeError as e:
        # 连接已经关闭时 starlette 抛 RuntimeError
        logger.debug(f"关闭 NapCat 会话时忽略异常: {e}")


async def _replace_active_session(session: _NapCatSession) -> None:
    global _active_session
    async with _session_lock:
        old = _active_session
        _active_session = session

    if old is not None:
        await _close_quietly(old, 1012, "replaced")


async def _detach_active_session(session: _NapCatSession) -> bool:
    global _active_session
    async with _session_lock:
        if _active_session is session:
            _active_session = None
            return True
    return False


async def _close_active_session(reason: str) -> None:
    global _active_session
    async with _session_lock:
        session = _active_session
        _active_session = None

    if session is not None:
        await _close_quietly(session, 1001, reason)


async def _send_action(action: str, params: dict[str, Any]) -> dict[str, Any]:
    session = _active_session
    if session is None:
        raise ChannelSendError("NapCat Reverse WS 未连接")

    echo = uuid.uuid4().hex
    future: asyncio.Future = asyncio.get_running_loop().create_future()
    _pending_echo[echo] = future

    try:
        await session.send_json({"action": action, "params": params, "echo": echo})
        response = await asyncio.wait_for(future, timeout=QQ_NAPCAT_SEND_TIMEOUT_SECONDS)
    finally:
        _pending_echo.pop(echo, None)

    if response.get("status") != "ok":
        raise ChannelSendError(f"OneBot API 调用失败: action={action}, response={response}")
    return response


async def _send_text(conversation_id: str, text: str) -> None:
    target = raw_target_of(conversation_id)
    if target.startswith(_GROUP_PREFIX):
        action, params = "send_group_msg", {"group_id": _to_int(target[len(_GROUP_PREFIX):]), "message": text}
    else:
        action, params = "send_private_msg", {"user_id": _to_int(target), "message": text}
    if None in params.values():
        raise ChannelSendError(f"无法识别的 QQ 会话: {conversation_id}")
    await send_with_retry(
        lambda: _send_action(action, params),
        f"向 QQ 会话 {conversation_id} 发送消息",
        SEND_RETRY_DELAY_SECONDS,
    )


class QQSink(NotificationSink):
    name = "qq"
    prefix = ChannelType.QQ_NAPCAT_ONEBOT_V11.prefix

    def __init__(self, home_user_id: int = PRIMARY_QQ_USER_ID) -> None:
        self._home_user_id = home_user_id

    @property
    def home_conversation_id(self) -> str | None:
        if not self._home_user_id:
            return None
        return conversation_id_for(ChannelType.QQ_NAPCAT_ONEBOT_V11, self._home_user_id)

    async def send(self, conversation_id: str, text: str) -> None:
        await _send_text(conversation_id, text)


async def _handle_message_event(payload: dict[str, Any]) -> None:
    message_type = str(payload.get("message_type", ""))
    if message_type not in ("private", "group"):
        return
    if message_type == "group" and not QQ_NAPCAT_ENABLE_GROUP:
        return

    qq_user_id = _to_int(payload.get("user_id"))
    if qq_user_id is None:
        return

    self_id = _to_int(payload.get("self_id"))
    if self_id is not None and qq_user_id == self_id:
        return

    content = _extract_text_content(payload.get("message"), payload.get("raw_message"))
    conversation_id = conversation_id_for_event(payload)
    if content == "" or conversation_id is None:
        return

    timestamp: datetime.datetime | None = None
    raw_ts = payload.get("time")
    if isinstance(raw_ts, (int, float)):
        timestamp = datetime.datetime.fromtimestamp(raw_ts, tz=datetime.timezone.utc)

    sender = payload.get("sender") if isinstance(payload.get("sender"), dict) else {}
    metadata: dict[str, Any] = {
        "qq_user_id": qq_user_id,
        "qq_message_type": message_type,
        "qq_message_id": payload.get("message_id"),
        "qq_self_id": self_id,
    }

    bus.emit(E.IO_MESSAGE_RECEIVED, IncomingMessage(
        channel_type=ChannelType.QQ_NAPCAT_ONEBOT_V11,
        conversation_id=conversation_id,
        content=content,
        from_owner=PRIMARY_QQ_USER_ID != 0 and qq_user_id == PRIMARY_QQ_USER_ID,
        sender_name=sender.get("card") or sender.get("nickname") or None,
        channel_context=None,
        metadata=metadata,
        timestamp=timestamp,
    ))


async def _handle_payload(payload: Any) -> None:
    if not isinstance(payload, dict):
        return

    if "echo" in payload:
        _resolve_pending_response(payload)
        return

    post_type = payload.get("post_type")
    if post_type == "message":
        await _handle_message_event(payload)
    elif post_type == "meta_event" and payload.get("meta_event_type") == "lifecycle":
        logger.info(f"NapCat 生命周期事件: {payload.get('sub_type', 'unknown')}, self_id={payload.get('self_id')}")


def register_fastapi_routes(app: FastAPI) -> None:
    global _routes_registered
    if _routes_registered:
        return

    @app.websocket(QQ_NAPCAT_WS_PATH)
    async def napcat_reverse_ws(websocket: WebSocket):
        if not _is_authorized(websocket):
            await websocket.close(code=1008, reason="unauthorized")
            logger.warning("NapCat Reverse WS 鉴权失败")
            return

        await websocket.accept()
        session = _NapCatSession(websocket)
        await _replace_active_session(session)
        logger.info(f"NapCat Reverse WS 已连接: path={QQ_NAPCAT_WS_PATH}")

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("收到无法解析的 NapCat 消息, 已忽略")
                    continue
                await _handle_payload(payload)
        except WebSocketDisconnect:
            logger.warning("NapCat Reverse WS 已断开")
        except Exception as e:
            logger.opt(exception=e).error(f"NapCat Reverse WS 处理异常: {e}")
        finally:
            if await _detach_active_session(session):
                _fail_all_pending(ChannelSendError("NapCat Reverse WS 连接已断开"))

    _routes_registered = True


@bus.on(E.IO_SEND_MESSAGE)
async def send_outgoing_message(msg: OutgoingMessage) -> None:
    if msg.channel_type != ChannelType.QQ_NAPCAT_ONEBOT_V11:
        return
    try:
        await _send_text(msg.conversation_id, msg.content)
    except ChannelSendError as e:
        logger.error(f"回复消息最终发送失败: conversation={msg.conversation_id}, error={e}")


async def main(shutdown_event: asyncio.Event) -> None:
    logger.info(f"QQ/NapCat OneBot 通道已启动，等待反向 WS 连接: {QQ_NAPCAT_WS_PATH}")
    await shutdown_event.wait()
    await _close_active_session("service_shutdown")
    _fail_all_pending(ChannelSendError("服务已关闭"))
    logger.info("QQ/NapCat OneBot 通道已关闭")
