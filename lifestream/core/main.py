"""
Console chat client.

Joins the conversation of one blood request and relays stdin lines as messages.

Usage:
    python -m lifestream.core.main --request-id 42 --token $LIFESTREAM_TOKEN --user-id 7 --role donor

Commands: /read marks every incoming message as read, /retry re-joins, /quit exits.
"""
import argparse
import asyncio
import logging
import os
import sys
from typing import Optional, Set

from lifestream.core.auth import ChatUser, TokenStore
from lifestream.core.chat.models import ChatSnapshot
from lifestream.core.chat.session import ConversationSession
from lifestream.core.config import get_socket_url, settings
from lifestream.core.realtime.manager import ConnectionManager
from lifestream.core.services.chat_api import ChatAPI

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="LifeStream console chat")
    parser.add_argument("--request-id", required=True, help="Blood request whose conversation to join")
    parser.add_argument("--token", default=os.getenv("LIFESTREAM_TOKEN"), help="Bearer token (default: $LIFESTREAM_TOKEN)")
    parser.add_argument("--user-id", default=os.getenv("LIFESTREAM_USER_ID"), help="Your user id")
    parser.add_argument("--role", default="donor", choices=["donor", "requester"])
    parser.add_argument("--name", default=None, help="Display name")
    return parser


class ConsolePrinter:
    """Prints messages as they enter the log, plus status and error changes."""

    def __init__(self, user_id: str) -> None:
        self._user_id = user_id
        self._seen: Set[str] = set()
        self._last: Optional[ChatSnapshot] = None

    def __call__(self, snapshot: ChatSnapshot) -> None:
        last = self._last
        self._last = snapshot
        if last is None or last.status != snapshot.status:
            print(f"[{snapshot.status.value}] {snapshot.conversation_id or ''}", flush=True)
        if snapshot.error is not None and (last is None or last.error != snapshot.error):
            print(f"! {snapshot.error.message}", flush=True)
        for message in snapshot.messages:
            if message.id in self._seen or message.local:
                continue
            self._seen.add(message.id)
            who = "you" if message.sender_id == self._user_id else (message.sender_name or message.sender_role)
            print(f"{message.timestamp:%H:%M} {who} > {message.text}", flush=True)


async def run(args: argparse.Namespace) -> int:
    if not args.token or not args.user_id:
        logger.error("A token and user id are required (--token/--user-id or LIFESTREAM_TOKEN/LIFESTREAM_USER_ID)")
        return 2

    auth = TokenStore(args.token, ChatUser(id=str(args.user_id), role=args.role, name=args.name))
    manager = ConnectionManager(auth)
    api = ChatAPI(auth)
    session = ConversationSession(manager, api, auth)
    loop = asyncio.get_running_loop()
    auth.on_logout(lambda: loop.create_task(manager.disconnect()))
    session.subscribe(ConsolePrinter(str(args.user_id)))

    logger.info("Connecting to %s", get_socket_url())
    await session.initialize(args.request_id)
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if line == "/quit":
                break
            if line == "/retry":
                await session.retry()
            elif line == "/read":
                unread = [m.id for m in session.snapshot.messages if not m.read and m.sender_id != str(args.user_id)]
                session.mark_read(unread)
            elif line:
                await session.send_message(line)
    finally:
        await session.close()
        await manager.disconnect()
        await api.aclose()
    return 0


def main() -> None:
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
