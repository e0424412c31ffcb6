"""chatsync command line: run the gateway or replay frames through the core."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import Dict, Iterable, List, TextIO, Tuple

from aiohttp import web

from .config import ChatConfig, load_config_from_env
from .errors import ChatError
from .hub import SyncEvent
from .logs import setup_logging
from .service import ChatService, ConversationView, create_service
from .ws_transport import create_app, event_to_frame, message_to_wire, metadata_to_wire, profile_to_wire

logger = logging.getLogger(__name__)


async def _settle() -> None:
    # Live deliveries are scheduled callbacks; two loop turns flush the
    # snapshot release and anything it queued.
    for _ in range(2):
        await asyncio.sleep(0)


async def _apply_frame(
    service: ChatService,
    frame: dict,
    views: Dict[Tuple[str, str], ConversationView],
    output: TextIO,
) -> None:
    def emit(payload: dict) -> None:
        output.write(json.dumps(payload, sort_keys=True) + "\n")

    frame_type = frame.get("t")
    if frame_type == "user.register":
        profile = await service.register_user(
            frame["user_id"], frame.get("display_name"), frame["contact_address"], frame.get("avatar_ref")
        )
        emit({"t": "user.registered", "user": profile_to_wire(profile)})
    elif frame_type == "user.lookup":
        profile = await service.find_user_by_address(frame["contact_address"])
        if profile is None:
            emit({"t": "error", "code": "not_found", "contact_address": frame["contact_address"]})
        else:
            emit({"t": "user.found", "user": profile_to_wire(profile)})
    elif frame_type == "conv.start":
        conv_key = await service.start_private_conversation(frame["self_id"], frame["other_id"])
        metadata = await service.get_conversation(conv_key)
        emit({"t": "conv.started", "conv_key": conv_key, "metadata": metadata_to_wire(metadata)})
    elif frame_type == "conv.open":
        viewer = frame["viewer"]
        conv_key = frame["conv_key"]

        def observer(event: SyncEvent, viewer: str = viewer) -> None:
            payload = event_to_frame(event, frame.get("id"))
            payload["viewer"] = viewer
            emit(payload)

        previous = views.pop((viewer, conv_key), None)
        if previous is not None:
            previous.close()
        views[(viewer, conv_key)] = await service.open_conversation(conv_key, observer)
    elif frame_type == "conv.send":
        message = await service.send_message(frame["conv_key"], frame["sender_id"], frame["text"])
        emit({"t": "conv.sent", "message": message_to_wire(message)})
    elif frame_type == "conv.close":
        view = views.pop((frame["viewer"], frame["conv_key"]), None)
        if view is not None:
            service.close_conversation_view(view)
    else:
        raise ValueError(f"unsupported frame type: {frame_type}")


async def simulate_async(frames: Iterable[dict], output: TextIO, config: ChatConfig | None = None) -> None:
    """Process JSON frames through an in-memory service and emit events."""

    service = create_service(replace(config or ChatConfig(), db_path=None))
    views: Dict[Tuple[str, str], ConversationView] = {}
    try:
        for frame in frames:
            try:
                await _apply_frame(service, frame, views, output)
            except ChatError as exc:
                output.write(json.dumps({"t": "error", "code": exc.code, "message": str(exc)}, sort_keys=True) + "\n")
            await _settle()
    finally:
        await service.close()


def simulate(frames: Iterable[dict], output: TextIO, config: ChatConfig | None = None) -> None:
    asyncio.run(simulate_async(frames, output, config))


def _load_frames(handle: TextIO) -> List[dict]:
    """Read frames as one JSON array, one JSON object, or one object per line."""

    content = handle.read()
    if not content.strip():
        return []
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return [json.loads(line) for line in content.splitlines() if line.strip()]
    return parsed if isinstance(parsed, list) else [parsed]


def _run_simulation(args: argparse.Namespace, config: ChatConfig, output: TextIO) -> int:
    try:
        frames = _load_frames(args.file or sys.stdin)
    finally:
        if args.file is not None:
            args.file.close()
    simulate(frames, output, config)
    return 0


def _run_serve(args: argparse.Namespace, config: ChatConfig) -> int:
    if args.db is not None:
        config = replace(config, db_path=args.db)
    app = create_app(config, ping_interval_s=args.ping_interval)
    logger.info("serving chatsync on %s:%d (db=%s)", args.host, args.port, config.db_path or "memory")
    web.run_app(app, host=args.host, port=args.port, print=None)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chatsync", description="chatsync messaging gateway")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Overrides CHATSYNC_LOG_LEVEL",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    replay = commands.add_parser("simulate", help="Replay JSON frames through an in-memory core")
    replay.add_argument("-f", "--file", type=argparse.FileType("r"), default=None, help="Frames file (default: stdin)")

    serve = commands.add_parser("serve", help="Run the HTTP and WebSocket gateway")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)
    serve.add_argument("--ping-interval", type=int, default=30, help="Heartbeat interval in seconds")
    serve.add_argument("--db", default=None, help="SQLite file; overrides CHATSYNC_DB_PATH")
    return parser


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for the ``chatsync`` console script."""

    args = _build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    config = load_config_from_env()
    setup_logging(args.log_level or config.log_level)

    if args.command == "simulate":
        return _run_simulation(args, config, output or sys.stdout)
    return _run_serve(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
