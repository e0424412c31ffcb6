import asyncio
import json
from typing import Any, Callable

from aiohttp import ClientWebSocketResponse, WSMessage, WSMsgType


async def _receive_before(ws: ClientWebSocketResponse, deadline: float) -> WSMessage:
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise asyncio.TimeoutError("Timed out waiting for websocket frame")
    return await ws.receive(timeout=remaining)


async def _app_frame(ws: ClientWebSocketResponse, msg: WSMessage) -> dict | None:
    """Return the JSON frame carried by ``msg``; answer and skip heartbeats."""

    if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
        raise AssertionError("WebSocket closed while waiting for a frame")
    if msg.type == WSMsgType.ERROR:
        raise AssertionError(f"WebSocket error while waiting for a frame: {ws.exception()}")
    if msg.type != WSMsgType.TEXT:
        return None
    payload = json.loads(msg.data)
    if isinstance(payload, dict) and payload.get("t") == "ping":
        await ws.send_json({"v": 1, "t": "pong", "id": payload.get("id")})
        return None
    return payload


async def recv_frame(
    ws: ClientWebSocketResponse,
    predicate: Callable[[Any], bool],
    *,
    timeout: float = 2.0,
) -> dict:
    """Read frames until one satisfies ``predicate`` and return it."""

    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        payload = await _app_frame(ws, await _receive_before(ws, deadline))
        if payload is not None and predicate(payload):
            return payload


def frame_type(expected: str) -> Callable[[Any], bool]:
    return lambda frame: isinstance(frame, dict) and frame.get("t") == expected


async def assert_no_frames(ws: ClientWebSocketResponse, *, timeout: float) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        try:
            msg = await _receive_before(ws, deadline)
        except asyncio.TimeoutError:
            return
        payload = await _app_frame(ws, msg)
        if payload is not None:
            raise AssertionError(f"Unexpected websocket frame: {payload}")
