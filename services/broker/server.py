"""MCP stdio entry point for the broker.

stdout carries the protocol, so logging goes to stderr.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any, Optional

import anyio
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from core.cancellation import CancellationToken
from core.config import get_config
from core.errors import normalize_error
from core.progress import ProgressUpdate
from core.utils import set_loop_policy
from services.broker.tools import BrokerTools

logger = logging.getLogger("BrokerServer")

LOG_LEVEL_ENV = "BROKER_LOG_LEVEL"


def configure_logging(level: Optional[str] = None) -> None:
    level_name = str(os.getenv(LOG_LEVEL_ENV) or level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _text_response(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _progress_sink(server: Server, tool: str) -> Any:
    """Bridge executor progress to MCP notifications when the client asked for them."""
    ctx = server.request_context
    progress_token = ctx.meta.progressToken if ctx.meta is not None else None
    if progress_token is None:
        return None

    async def _send(update: ProgressUpdate) -> None:
        await ctx.session.send_progress_notification(
            progress_token,
            update.progress,
            total=update.total,
            message=update.message,
            related_request_id=str(ctx.request_id),
        )

    logger.debug("Progress notifications enabled tool=%s request_id=%s", tool, ctx.request_id)
    return _send


async def dispatch(
    tools: BrokerTools,
    name: str,
    arguments: dict,
    *,
    progress: Any = None,
    request_id: Optional[str] = None,
) -> list[TextContent]:
    """Run one tool call; errors come back as ``{"error": {...}}`` payloads.

    If the handler task is cancelled (client cancellation or shutdown) the
    call's token fires first so executors tear down their sessions, then the
    cancellation propagates.
    """
    token = CancellationToken()
    call = asyncio.ensure_future(
        tools.call(name, arguments, cancellation=token, progress=progress, request_id=request_id)
    )
    try:
        result = await asyncio.shield(call)
    except asyncio.CancelledError:
        token.cancel("request cancelled by client")
        # mcp cancels through an anyio scope that re-raises at every await.
        with anyio.CancelScope(shield=True):
            await asyncio.wait({call})
        if not call.cancelled() and call.exception() is not None:
            logger.debug("Tool call ended after cancellation tool=%s: %r", name, call.exception())
        raise
    except Exception as exc:  # noqa: BLE001
        payload = normalize_error(exc, source=name)
        logger.warning(
            "Tool call failed tool=%s request_id=%s code=%s error=%s",
            name,
            request_id,
            payload["code"],
            exc,
        )
        return _text_response({"error": payload})
    return _text_response(result)


def build_server(tools: BrokerTools, *, name: str, version: str) -> Server:
    server = Server(name, version=version)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return BrokerTools.definitions()

    @server.call_tool()
    async def call_tool(tool_name: str, arguments: dict) -> list[TextContent]:
        ctx = server.request_context
        return await dispatch(
            tools,
            tool_name,
            arguments or {},
            progress=_progress_sink(server, tool_name),
            request_id=str(ctx.request_id),
        )

    return server


async def main() -> None:
    config = get_config()
    configure_logging(config.log_level)
    server = build_server(
        BrokerTools.from_config(),
        name=config.server_name,
        version=config.server_version,
    )
    logger.info(
        "Broker server starting name=%s ssh_profiles=%s database_profiles=%s local_test_mode=%s",
        config.server_name,
        sorted(config.ssh_profiles),
        sorted(config.database_profiles),
        config.local_test_mode,
    )
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


def run() -> None:
    set_loop_policy()
    asyncio.run(main())
