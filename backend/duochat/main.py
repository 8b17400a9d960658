"""Command-line driver for a duochat session.

Usage:
    python -m duochat ROOM_ID [--user-id ID] [--settings PATH] [--secrets PATH]

Opens one room, logs timeline changes and relays each stdin line as a text
message. ``/quit`` or end of input closes the session. This is a thin driver
for exercising the engine, not a user interface.
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from duochat.config import SECRETS_FILE, SETTINGS_FILE, load_settings
from duochat.errors import ChatSessionError
from duochat.messages.schemas import Message, TextContent
from duochat.session import ChatSession

logger = logging.getLogger(__name__)

QUIT_COMMAND = "/quit"


def configure_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Connection-level chatter from the transport libraries
    for _noisy in ("httpx", "httpcore", "socketio", "engineio"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)

    configured_level = getattr(logging, level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="duochat", description="Two-party chat session driver")
    parser.add_argument("room_id", help="Room to open")
    parser.add_argument("--user-id", default=None, help="Existing user id (generated when omitted)")
    parser.add_argument("--settings", default=str(SETTINGS_FILE), help="Settings YAML file")
    parser.add_argument("--secrets", default=str(SECRETS_FILE), help="Secrets YAML file")
    return parser


def _describe(message: Message) -> str:
    if isinstance(message.content, TextContent):
        body = message.content.text
    else:
        body = f"<voice {message.content.duration:.1f}s {message.content.media_ref}>"
    return f"[{message.status.value}] {message.sender_id}: {body} ({message.id})"


async def run(args: argparse.Namespace) -> int:
    settings = load_settings(Path(args.settings), Path(args.secrets))
    configure_logging(settings.logging.level)

    async with ChatSession(settings, user_id=args.user_id) as session:
        session.add_error_listener(
            lambda error: logger.error(f"{error.kind.value}: {error.message}")
        )
        session.store.add_listener(lambda message: logger.info(_describe(message)))

        await session.start()
        room = await session.open_room(args.room_id)
        room.set_viewing(True)
        logger.info(f"Joined {room.room_name} as {room.user_id}; type {QUIT_COMMAND} to leave")

        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.rstrip("\n")
            if text.strip() == QUIT_COMMAND:
                break
            room.send_text(text)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        return asyncio.run(run(args))
    except ChatSessionError as error:
        logger.error(f"Session ended: {error.message}")
        return 1
    except KeyboardInterrupt:
        return 130
