import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from apps.api.handshake import inject_gateway_token


log = logging.getLogger("clawbox_gateway")


async def pump_client_to_gateway(ws: WebSocket, upstream: Any, token: Optional[str]) -> None:
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Only text frames can carry the connect handshake.
            if message.get("text") is not None:
                await upstream.send(inject_gateway_token(message["text"], token))
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])
    finally:
        try:
            await upstream.close()
        except Exception:  # noqa: BLE001
            pass


async def pump_gateway_to_client(upstream: Any, ws: WebSocket) -> None:
    try:
        async for message in upstream:
            if isinstance(message, bytes):
                await ws.send_bytes(message)
            else:
                await ws.send_text(message)
    finally:
        if ws.client_state == WebSocketState.CONNECTED:
            try:
                await ws.close()
            except Exception:  # noqa: BLE001
                pass


async def bridge(ws: WebSocket, upstream: Any, token: Optional[str]) -> None:
    a = asyncio.create_task(pump_client_to_gateway(ws, upstream, token))
    b = asyncio.create_task(pump_gateway_to_client(upstream, ws))

    done, pending = await asyncio.wait({a, b}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    for task in done:
        try:
            task.result()
        except Exception as e:  # noqa: BLE001
            log.info("Gateway bridge closed: %s", str(e) or type(e).__name__)
