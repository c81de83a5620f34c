from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from urllib.parse import parse_qs, urlparse

from .config import Settings
from .downloads import save_all, write_zip
from .models import is_valid_room_id
from .rtc import RtcConnector
from .sender import OutgoingFile
from .session import SessionController, SessionResult
from .signaling import SignalingClient

DEFAULT_SERVER = "ws://localhost:3001/ws"
DEFAULT_CLIENT_URL = "http://localhost:3000"


def room_from_link(link: str) -> str:
    """Accept either a bare room id or a link carrying ``?room=<id>``."""
    if is_valid_room_id(link):
        return link
    rooms = parse_qs(urlparse(link).query).get("room")
    if not rooms or not is_valid_room_id(rooms[0]):
        raise ValueError(f"no valid room id in {link!r}")
    return rooms[0]


def _report(result: SessionResult, as_json: bool, **extra) -> int:
    payload = {
        "role": result.role.value,
        "room": result.room_id,
        "status": result.status,
        "error": result.error,
        **extra,
    }
    if as_json:
        print(json.dumps(payload, indent=2))
    else:
        print(f"{result.role.value} {result.room_id}: {result.status}")
        for path in extra.get("saved", ()):
            print(f"saved {path}")
        if result.error:
            print(f"error: {result.error}", file=sys.stderr)
    return 1 if result.error else 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .main import create_app

    settings = Settings.from_env()
    settings = settings.model_copy(update={
        "host": args.host or settings.host,
        "port": args.port or settings.port,
    })
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                ws_max_size=settings.max_message_size, log_level=settings.log_level.lower())
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    try:
        files = [OutgoingFile.from_path(path) for path in args.files]
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    session = SessionController(
        SignalingClient(args.server),
        RtcConnector(),
        files=files,
        client_url=args.client_url,
    )
    print(f"Share this link: {session.link}")
    result = asyncio.run(session.run())
    return _report(result, args.json, files=len(files))


def cmd_receive(args: argparse.Namespace) -> int:
    try:
        room_id = room_from_link(args.link)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    session = SessionController(
        SignalingClient(args.server),
        RtcConnector(),
        room_id=room_id,
    )
    result = asyncio.run(session.run())

    saved = []
    if result.received:
        if args.zip:
            saved = [str(write_zip(result.received, args.out_zip))]
        else:
            saved = [str(path) for path in save_all(result.received, args.out)]
    return _report(result, args.json, saved=saved)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="floe", description="Direct peer-to-peer file transfer.")
    p.add_argument("--log-level", default="INFO")
    sub = p.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="run the coordination service")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.set_defaults(func=cmd_serve)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--server", default=DEFAULT_SERVER, help="coordination WebSocket URL")
        x.add_argument("--json", action="store_true")

    send = sub.add_parser("send", help="offer files and print a link")
    add_common(send)
    send.add_argument("files", nargs="+")
    send.add_argument("--client-url", default=DEFAULT_CLIENT_URL)
    send.set_defaults(func=cmd_send)

    receive = sub.add_parser("receive", help="receive files from a link")
    add_common(receive)
    receive.add_argument("link", help="link or room id")
    receive.add_argument("--out", default=".")
    receive.add_argument("--zip", action="store_true", help="save everything as one ZIP archive")
    receive.add_argument("--out-zip", help="archive path (default floe_transfer_<ms>.zip)")
    receive.set_defaults(func=cmd_receive)

    args = p.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper())
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
