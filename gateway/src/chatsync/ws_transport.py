from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import WSMsgType, web

from .config import ChatConfig
from .conversations import ConversationMetadata
from .directory import UserProfile
from .errors import AddressTaken, ChatError, InvalidMessage, InvalidTarget, NotFound, Unavailable
from .hub import EVENT_MESSAGE, EVENT_METADATA, EVENT_SNAPSHOT, SyncEvent
from .log import Message
from .resolver import KIND_BROADCAST, parse_key
from .service import ChatService, ConversationView, LiveConversationList, create_service
from .sessions import Session, SessionStore, SQLiteSessionStore

logger = logging.getLogger(__name__)

_HTTP_STATUS = {
    InvalidTarget: 400,
    InvalidMessage: 400,
    NotFound: 404,
    AddressTaken: 409,
    Unavailable: 503,
}


class Runtime:
    def __init__(self, *, service: ChatService, sessions: Any, config: ChatConfig) -> None:
        self.service = service
        self.sessions = sessions
        self.config = config

    # Session stores may hit the shared SQLite connection, so every call goes
    # through the service's worker-thread wrapper.

    async def create_session(self, user_id: str) -> Session:
        return await self.service.run_storage(self.sessions.create, user_id)

    async def lookup_session(self, session_token: str) -> Session | None:
        return await self.service.run_storage(self.sessions.get_by_session, session_token)

    async def resume_session(self, resume_token: str) -> Session | None:
        return await self.service.run_storage(self.sessions.consume_resume, resume_token)


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


def profile_to_wire(profile: UserProfile | None) -> dict[str, Any] | None:
    if profile is None:
        return None
    return {
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "contact_address": profile.contact_address,
        "avatar_ref": profile.avatar_ref,
    }


def metadata_to_wire(metadata: ConversationMetadata | None) -> dict[str, Any] | None:
    if metadata is None:
        return None
    return {
        "conv_key": metadata.conv_key,
        "kind": metadata.kind,
        "participant_ids": sorted(metadata.participant_ids),
        "last_message_preview": metadata.last_message_preview,
        "last_activity_ms": metadata.last_activity_ms,
        "created_at_ms": metadata.created_at_ms,
        "revision": metadata.revision,
    }


def message_to_wire(message: Message) -> dict[str, Any]:
    return {
        "msg_id": message.msg_id,
        "conv_key": message.conv_key,
        "seq": message.seq,
        "sender_id": message.sender_id,
        "text": message.text,
        "sent_at_ms": message.sent_at_ms,
    }


def event_to_frame(event: SyncEvent, request_id: str | None = None) -> dict[str, Any]:
    """Encode a sync event; ``request_id`` tags the snapshot answering ``conv.open``."""

    if event.type == EVENT_SNAPSHOT:
        body = {
            "conv_key": event.conv_key,
            "metadata": metadata_to_wire(event.metadata),
            "messages": [message_to_wire(m) for m in event.history],
        }
        return {"v": 1, "t": "conv.snapshot", "id": request_id, "body": body}
    if event.type == EVENT_MESSAGE and event.message is not None:
        return {"v": 1, "t": "conv.message", "body": message_to_wire(event.message)}
    if event.type == EVENT_METADATA:
        return {"v": 1, "t": "conv.metadata", "body": metadata_to_wire(event.metadata)}
    raise ValueError(f"unsupported event type: {event.type}")


def _json_error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _json_error("unauthorized", "invalid session_token", 401)


def _forbidden() -> web.Response:
    return _json_error("forbidden", "not a participant of this conversation", 403)


def _invalid_request(message: str) -> web.Response:
    return _json_error("invalid_request", message, 400)


def _chat_error(exc: ChatError) -> web.Response:
    return _json_error(exc.code, str(exc), _HTTP_STATUS.get(type(exc), 400))


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _can_access(conv_key: str, user_id: str) -> bool:
    kind, participants = parse_key(conv_key)
    return kind == KIND_BROADCAST or user_id in participants


async def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    return await runtime.lookup_session(session_token)


def _authenticated(
    handler: Callable[[web.Request, Session], Awaitable[web.Response]],
) -> Callable[[web.Request], Awaitable[web.Response]]:
    @functools.wraps(handler)
    async def wrapper(request: web.Request) -> web.Response:
        try:
            session = await _authenticate_request(request)
        except ChatError as exc:
            return _chat_error(exc)
        if session is None:
            return _unauthorized()
        return await handler(request, session)

    return wrapper


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


async def _start_session(runtime: Runtime, body: dict[str, Any]) -> tuple[Session, UserProfile | None]:
    """Open a session for an identity already verified by the identity provider."""

    user_id = body.get("user_id")
    auth_token = body.get("auth_token")
    if not isinstance(user_id, str) or not user_id or not auth_token:
        raise ValueError("user_id and auth_token required")
    contact_address = body.get("contact_address")
    display_name = body.get("display_name")
    avatar_ref = body.get("avatar_ref")
    if any(value is not None and not isinstance(value, str) for value in (contact_address, display_name, avatar_ref)):
        raise ValueError("contact_address, display_name and avatar_ref must be strings")
    if contact_address is not None:
        profile = await runtime.service.register_user(user_id, display_name, contact_address, avatar_ref)
    else:
        profile = await runtime.service.get_user(user_id)
    session = await runtime.create_session(user_id)
    logger.info("session started for %s", user_id)
    return session, profile


def _session_body(session: Session, profile: UserProfile | None) -> dict[str, Any]:
    return {
        "session_token": session.session_token,
        "resume_token": session.resume_token,
        "expires_at": session.expires_at_ms,
        "user": profile_to_wire(profile),
    }


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_session_start(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        session, profile = await _start_session(runtime, body)
    except ChatError as exc:
        return _chat_error(exc)
    except ValueError as exc:
        return _invalid_request(str(exc))
    return web.json_response(_session_body(session, profile))


@_authenticated
async def handle_users_list(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    try:
        users = await runtime.service.list_users(exclude_user_id=session.user_id)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"users": [profile_to_wire(u) for u in users]})


@_authenticated
async def handle_user_lookup(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    contact_address = body.get("contact_address")
    if not isinstance(contact_address, str) or not contact_address.strip():
        return _invalid_request("contact_address required")
    try:
        profile = await runtime.service.find_user_by_address(contact_address)
    except ChatError as exc:
        return _chat_error(exc)
    if profile is None:
        return _chat_error(NotFound("no user found with this contact address"))
    return web.json_response({"user": profile_to_wire(profile)})


@_authenticated
async def handle_profile_update(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    display_name = body.get("display_name")
    avatar_ref = body.get("avatar_ref")
    if any(value is not None and not isinstance(value, str) for value in (display_name, avatar_ref)):
        return _invalid_request("display_name and avatar_ref must be strings")
    try:
        profile = await runtime.service.update_profile(session.user_id, display_name, avatar_ref)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"user": profile_to_wire(profile)})


@_authenticated
async def handle_conversation_start(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    other_user_id = body.get("other_user_id")
    try:
        conv_key = await runtime.service.start_private_conversation(session.user_id, other_user_id)
        metadata = await runtime.service.get_conversation(conv_key)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"conv_key": conv_key, "metadata": metadata_to_wire(metadata)})


@_authenticated
async def handle_conversations_list(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    try:
        conversations = await runtime.service.list_conversations(session.user_id)
        partners = await runtime.service.conversation_partners(conversations, session.user_id)
    except ChatError as exc:
        return _chat_error(exc)
    items = []
    for metadata in conversations:
        item = metadata_to_wire(metadata)
        item["partner"] = profile_to_wire(partners.get(metadata.conv_key))
        items.append(item)
    return web.json_response({"conversations": items})


@_authenticated
async def handle_messages_list(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    conv_key = request.match_info["conv_key"]
    try:
        from_seq = int(request.query.get("from_seq", "1"))
        limit_raw = request.query.get("limit")
        limit = int(limit_raw) if limit_raw is not None else None
    except ValueError:
        return _invalid_request("from_seq and limit must be integers")
    if from_seq < 1:
        return _invalid_request("from_seq must be at least 1")
    try:
        if not _can_access(conv_key, session.user_id):
            return _forbidden()
        messages = await runtime.service.read_messages(conv_key, from_seq, limit)
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"conv_key": conv_key, "messages": [message_to_wire(m) for m in messages]})


@_authenticated
async def handle_message_send(request: web.Request, session: Session) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _read_json(request)
    if body is None:
        return _invalid_request("malformed json")
    conv_key = request.match_info["conv_key"]
    try:
        if not _can_access(conv_key, session.user_id):
            return _forbidden()
        message = await runtime.service.send_message(conv_key, session.user_id, body.get("text"))
    except ChatError as exc:
        return _chat_error(exc)
    return web.json_response({"message": message_to_wire(message)})


def create_app(
    config: ChatConfig | None = None,
    *,
    service: ChatService | None = None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    config = config or (service.config if service is not None else ChatConfig())
    owns_service = service is None
    if service is None:
        service = create_service(config)
    if service.backend is not None:
        sessions: Any = SQLiteSessionStore(service.backend, ttl_ms=config.session_ttl_ms)
    else:
        sessions = SessionStore(ttl_ms=config.session_ttl_ms)

    app = web.Application()
    app[RUNTIME_KEY] = Runtime(service=service, sessions=sessions, config=config)
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/session/start", handle_session_start)
    app.router.add_get("/v1/users", handle_users_list)
    app.router.add_post("/v1/users/lookup", handle_user_lookup)
    app.router.add_post("/v1/profile", handle_profile_update)
    app.router.add_post("/v1/conversations/start", handle_conversation_start)
    app.router.add_get("/v1/conversations", handle_conversations_list)
    app.router.add_get("/v1/conversations/{conv_key}/messages", handle_messages_list)
    app.router.add_post("/v1/conversations/{conv_key}/messages", handle_message_send)
    app.router.add_get("/v1/ws", websocket_handler)

    if owns_service:
        async def close_service(_: web.Application) -> None:
            await service.close()

        app.on_cleanup.append(close_service)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Optional[dict]] = asyncio.Queue(maxsize=1000)
    views: Dict[str, ConversationView] = {}
    listing: List[LiveConversationList] = []
    session: Session | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def conv_observer(request_id: str | None) -> Callable[[SyncEvent], None]:
        def _on_event(event: SyncEvent) -> None:
            enqueue(event_to_frame(event, request_id))

        return _on_event

    def inbox_observer() -> Callable[[LiveConversationList], None]:
        first = True

        def _on_change(current: LiveConversationList) -> None:
            nonlocal first
            frame_type = "inbox.snapshot" if first else "inbox.update"
            first = False
            enqueue(
                {
                    "v": 1,
                    "t": frame_type,
                    "body": {"conversations": [metadata_to_wire(m) for m in current]},
                }
            )

        return _on_change

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = loop.time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    async def handle_frame(user_id: str, frame_type: str, body: dict[str, Any], request_id: str | None) -> None:
        if frame_type == "ping":
            enqueue({"v": 1, "t": "pong", "id": request_id})
        elif frame_type == "pong":
            return
        elif frame_type == "conv.start":
            conv_key = await runtime.service.start_private_conversation(user_id, body.get("other_user_id"))
            metadata = await runtime.service.get_conversation(conv_key)
            enqueue(
                {
                    "v": 1,
                    "t": "conv.started",
                    "id": request_id,
                    "body": {"conv_key": conv_key, "metadata": metadata_to_wire(metadata)},
                }
            )
        elif frame_type == "conv.open":
            conv_key = body.get("conv_key")
            if not isinstance(conv_key, str) or not conv_key:
                enqueue(_error_frame("invalid_request", "conv_key required", request_id=request_id))
                return
            if not _can_access(conv_key, user_id):
                enqueue(_error_frame("forbidden", "not a participant of this conversation", request_id=request_id))
                return
            previous = views.pop(conv_key, None)
            if previous is not None:
                previous.close()
            views[conv_key] = await runtime.service.open_conversation(conv_key, conv_observer(request_id))
        elif frame_type == "conv.close":
            view = views.pop(body.get("conv_key"), None)
            if view is not None:
                runtime.service.close_conversation_view(view)
            enqueue({"v": 1, "t": "conv.closed", "id": request_id, "body": {"conv_key": body.get("conv_key")}})
        elif frame_type == "conv.send":
            conv_key = body.get("conv_key")
            if not isinstance(conv_key, str) or not conv_key:
                enqueue(_error_frame("invalid_request", "conv_key required", request_id=request_id))
                return
            if not _can_access(conv_key, user_id):
                enqueue(_error_frame("forbidden", "not a participant of this conversation", request_id=request_id))
                return
            message = await runtime.service.send_message(conv_key, user_id, body.get("text"))
            enqueue({"v": 1, "t": "conv.sent", "id": request_id, "body": message_to_wire(message)})
        elif frame_type == "inbox.watch":
            while listing:
                listing.pop().close()
            listing.append(await runtime.service.list_my_conversations(user_id, inbox_observer()))
        elif frame_type == "inbox.unwatch":
            while listing:
                listing.pop().close()
        else:
            enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws

        t = payload.get("t")
        body = payload.get("body")
        if not isinstance(body, dict):
            body = {}
        profile: UserProfile | None = None

        if t == "session.start":
            try:
                session, profile = await _start_session(runtime, body)
            except ChatError as exc:
                await ws.send_json(_error_frame(exc.code, str(exc), request_id=payload.get("id")))
                await ws.close()
                return ws
            except ValueError as exc:
                await ws.send_json(_error_frame("invalid_request", str(exc), request_id=payload.get("id")))
                await ws.close()
                return ws
        elif t == "session.resume":
            resume_token = body.get("resume_token")
            if not isinstance(resume_token, str) or not resume_token:
                await ws.send_json(_error_frame("invalid_request", "resume_token required", request_id=payload.get("id")))
                await ws.close()
                return ws
            try:
                session = await runtime.resume_session(resume_token)
                if session is not None:
                    profile = await runtime.service.get_user(session.user_id)
            except ChatError as exc:
                await ws.send_json(_error_frame(exc.code, str(exc), request_id=payload.get("id")))
                await ws.close()
                return ws
            if session is None:
                await ws.send_json(
                    _error_frame("resume_failed", "resume token invalid or expired", request_id=payload.get("id"))
                )
                await ws.close()
                return ws
        else:
            await ws.send_json(_error_frame("invalid_request", "first frame must start session", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        enqueue({"v": 1, "t": "session.ready", "id": payload.get("id"), "body": _session_body(session, profile)})

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version"))
                    continue

                request_id = frame.get("id")
                frame_body = frame.get("body")
                if not isinstance(frame_body, dict):
                    frame_body = {}
                try:
                    await handle_frame(session.user_id, frame.get("t"), frame_body, request_id)
                except ChatError as exc:
                    enqueue(_error_frame(exc.code, str(exc), request_id=request_id))
                except ValueError as exc:
                    enqueue(_error_frame("invalid_request", str(exc), request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for view in views.values():
            view.close()
        for current in listing:
            current.close()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
