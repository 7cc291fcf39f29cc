from __future__ import annotations

import asyncio
import time
from typing import Any

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from relaybot.config.settings import CHANNEL_HTTP_HOST, CHANNEL_HTTP_PORT, ENABLE_QQ_NAPCAT
from relaybot.logger import logger
from relaybot.metrics import runtime_metrics

__all__ = ["create_app", "main_loop"]


def create_app() -> FastAPI:
    app = FastAPI(title="relaybot", version="0.1.0")
    if ENABLE_QQ_NAPCAT:
        from relaybot.channels.qq_onebot_ws import register_fastapi_routes as register_napcatqq_routes

        register_napcatqq_routes(app)
        logger.info("已挂载 NapCatQQ OneBot 反向 WS 路由")

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "metrics": runtime_metrics.snapshot(),
        }

    return app


async def _wait_shutdown_signal(shutdown_event: asyncio.Event, server: uvicorn.Server) -> None:
    await shutdown_event.wait()
    server.should_exit = True


async def main_loop(shutdown_event: asyncio.Event) -> None:
    config = uvicorn.Config(
        create_app(),
        host=CHANNEL_HTTP_HOST,
        port=CHANNEL_HTTP_PORT,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(config)
    # 嵌入到主进程时，统一由 main.py 处理系统信号。
    server.install_signal_handlers = lambda: None

    watcher = asyncio.create_task(_wait_shutdown_signal(shutdown_event, server))
    logger.info(f"通道 HTTP 服务准备启动: http://{CHANNEL_HTTP_HOST}:{CHANNEL_HTTP_PORT}")
    try:
        await server.serve()
    finally:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass
        logger.info("通道 HTTP 服务已关闭")
