"""事件总线模块，定义了事件总线类 Bus 及事件名集合 E

事件分为两种：
1. 普通事件：允许多个处理器注册;
2. 独占事件：仅允许一个处理器注册，重复注册会引发运行时错误。
"""

from __future__ import annotations
from pyee.asyncio import AsyncIOEventEmitter
from typing import Awaitable, Callable, Set, Union

from relaybot.logger import logger

Handler = Callable[..., Union[Awaitable[None], None]]


# 事件名集中定义
class E:
    IO_MESSAGE_RECEIVED = "io.message_received"
    IO_SEND_MESSAGE = "io.send_message"
    REMINDER_CREATED = "reminder.created"
    REMINDER_STAGE_FIRED = "reminder.stage_fired"
    REMINDER_COMPLETED = "reminder.completed"
    REMINDER_DEACTIVATED = "reminder.deactivated"


# 收到的消息只能由一个编排器处理，否则同一条消息会被分类两次
EXCLUSIVE_EVENTS = {E.IO_MESSAGE_RECEIVED}


class Bus(AsyncIOEventEmitter):
    def __init__(self) -> None:
        super().__init__()
        self._exclusive: Set[str] = set()

    def on(self, event: str, handler: Handler | None = None):
        """注册事件处理器，可作装饰器使用"""
        def decorator(handler: Handler) -> Handler:
            if event in EXCLUSIVE_EVENTS:
                if event in self._exclusive:
                    raise RuntimeError(f"独占事件的唯一处理器已注册: {event}")
                self._exclusive.add(event)

            logger.debug(f"注册事件处理器: {event} -> {getattr(handler, '__name__', handler)}")
            super(Bus, self).on(event, handler)
            return handler

        if handler is not None:
            return decorator(handler)
        return decorator

    def remove_all_listeners(self, event: str | None = None) -> None:
        super().remove_all_listeners(event)
        if event is None:
            self._exclusive.clear()
        else:
            self._exclusive.discard(event)


bus = Bus()


def _log_handler_error(error: Exception) -> None:
    logger.opt(exception=error).error(f"事件处理器异常: {error}")


bus.on("error", _log_handler_error)

__all__ = ["bus", "Bus", "E"]
