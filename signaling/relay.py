"""Room-less signaling relay: echoes descriptions, floods ICE candidates."""

import json
import logging
from typing import Any, Protocol, Set, Tuple

from pydantic import BaseModel, ValidationError

from .messages import (
    CLIENT_MESSAGE_TYPES,
    AnswerCreatedMessage,
    AnswerMessage,
    ErrorMessage,
    IceCandidateMessage,
    OfferCreatedMessage,
    OfferMessage,
    client_message_adapter,
)

logger = logging.getLogger(__name__)


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


class RelayHub:
    """The set of open relay connections and the dispatch rules between them.

    Only the event loop touches the set; broadcasts iterate a snapshot so a
    peer joining or leaving mid-broadcast cannot disturb it.
    """

    def __init__(self) -> None:
        self._connections: Set[Any] = set()

    def add(self, conn: Connection) -> None:
        self._connections.add(conn)

    def remove(self, conn: Connection) -> None:
        self._connections.discard(conn)

    def snapshot(self) -> Tuple[Any, ...]:
        return tuple(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn: object) -> bool:
        return conn in self._connections

    async def send(self, conn: Connection, message: BaseModel) -> bool:
        try:
            await conn.send_text(message.model_dump_json())
            return True
        except Exception as e:
            logger.warning("Dropping connection after failed send: %s", e)
            self.remove(conn)
            return False

    async def broadcast(self, message: BaseModel, exclude: Any = None) -> int:
        """Send to every connection except ``exclude``; return deliveries."""
        delivered = 0
        for conn in self.snapshot():
            if conn is exclude:
                continue
            if await self.send(conn, message):
                delivered += 1
        return delivered

    async def dispatch(self, sender: Connection, raw: str) -> None:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring non-JSON relay message")
            await self.send(sender, ErrorMessage())
            return

        kind = data.get("type") if isinstance(data, dict) else None
        logger.debug("Received message type: %s", kind)
        if kind not in CLIENT_MESSAGE_TYPES:
            logger.info("Unknown message type: %s", kind)
            await self.send(sender, ErrorMessage(message="unknown message type"))
            return

        try:
            message = client_message_adapter.validate_python(data)
        except ValidationError as e:
            logger.warning("Invalid %s message: %d error(s)", kind, e.error_count())
            await self.send(sender, ErrorMessage())
            return

        if isinstance(message, OfferMessage):
            await self.send(sender, OfferCreatedMessage(offer=message.offer))
        elif isinstance(message, AnswerMessage):
            await self.send(sender, AnswerCreatedMessage(answer=message.answer))
        elif isinstance(message, IceCandidateMessage):
            delivered = await self.broadcast(message, exclude=sender)
            logger.debug("Relayed ICE candidate to %d peer(s)", delivered)
