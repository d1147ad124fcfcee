"""
Echo Chat - Message Router
============================
Classifies each post-handshake frame as a broadcast or a whisper, delivers
it, and records it in the message log.

Grammar:
    !whisper <user> <message>     private message (also "!w", any case)
    <anything else>               public message

Wire formats (server -> client):
    "<timestamp>: <sender> said: <message>"
    "<timestamp>: <sender> privately said: <message>"
    "<user> is not online"

The timestamp keeps the "<date>, <time>" layout existing clients split on,
e.g. "19/10/2026, 09:04:05 pm".
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Callable

from chatserver.errors import PersistenceUnavailable
from chatserver.logger import ServerLogger
from chatserver.registry import SessionRegistry, deliver
from chatserver.session import Session
from chatserver.store import MessageLog, MessageRecord

WHISPER_PATTERN = re.compile(
    r"^!(?:whisper|w)\s+(?P<target>\S+)\s+(?P<body>.+)$",
    re.IGNORECASE | re.DOTALL,
)

TIMESTAMP_FORMAT = "%d/%m/%Y, %I:%M:%S %p"


def format_timestamp(moment: datetime) -> str:
    """Human-readable local timestamp, e.g. '19/10/2026, 09:04:05 pm'."""
    return moment.strftime(TIMESTAMP_FORMAT).lower()


def parse_whisper(line: str) -> tuple[str, str] | None:
    """
    Match a trimmed line against the whisper grammar.

    Returns:
        (target, body) for a whisper, None for a public message.
    """
    match = WHISPER_PATTERN.match(line)
    if match is None:
        return None
    return match.group("target"), match.group("body")


class MessageRouter:
    """
    Routes chat lines from authenticated sessions.

    Attributes:
        registry:    Live sessions (broadcast targets, whisper lookup).
        message_log: Audit log; write failures never block delivery.
        clock:       Returns the local time used in wire timestamps.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        message_log: MessageLog,
        logger: ServerLogger | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.registry = registry
        self.message_log = message_log
        self.logger = logger or ServerLogger(echo=False)
        self.clock = clock

    async def dispatch(self, session: Session, text: str) -> None:
        """
        Route one inbound frame. Empty lines are dropped silently.

        Raises:
            RuntimeError: If the session has not authenticated.
        """
        if not session.is_authenticated:
            raise RuntimeError(f"Refusing to route a frame from {session!r}")

        line = text.strip()
        if not line:
            return

        whisper = parse_whisper(line)
        if whisper is None:
            await self.broadcast(session, line)
        else:
            await self.whisper(session, *whisper)

    async def broadcast(self, sender: Session, body: str) -> int:
        """
        Deliver a public message to every session, sender included.

        Returns:
            Number of sessions reached.
        """
        frame = f"{format_timestamp(self.clock())}: {sender.username} said: {body}"
        delivered = await self.registry.broadcast(frame)
        self.logger.chat(f"{sender.username} -> all ({delivered} delivered): {body}")
        await self._record(MessageRecord(
            sender=sender.username,
            content=body,
            timestamp=datetime.now(timezone.utc).isoformat(),
            visibility="public",
        ))
        return delivered

    async def whisper(self, sender: Session, target_name: str, body: str) -> int:
        """
        Deliver a private message to the target and echo it to the sender.

        An offline target gets nothing; the sender gets a notice and nothing
        is recorded.

        Returns:
            Number of sessions reached (0 when the target is offline).
        """
        target = self.registry.find(target_name)
        if target is None:
            await deliver([sender], f"{target_name} is not online", self.logger)
            self.logger.chat(f"{sender.username} -> {target_name}: target not online")
            return 0

        frame = f"{format_timestamp(self.clock())}: {sender.username} privately said: {body}"
        recipients = [target] if target is sender else [target, sender]
        delivered = await deliver(recipients, frame, self.logger)
        self.logger.chat(f"{sender.username} -> {target.username} (private, {len(body)} chars)")
        await self._record(MessageRecord(
            sender=sender.username,
            content=body,
            timestamp=datetime.now(timezone.utc).isoformat(),
            visibility="private",
            target=target.username,
        ))
        return delivered

    async def _record(self, record: MessageRecord) -> None:
        """Append to the message log; a failure is logged and chat goes on."""
        try:
            await asyncio.to_thread(self.message_log.append, record)
        except PersistenceUnavailable as e:
            self.logger.warning(f"Message log write failed: {e}")
