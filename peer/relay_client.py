import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

import websockets
from pydantic import BaseModel, ValidationError

from signaling.messages import server_message_adapter

logger = logging.getLogger(__name__)


def relay_url_for(server: str) -> str:
    """Map ``http(s)://host`` to the relay endpoint ``ws(s)://host/ws``."""
    parsed = urlparse(server)
    scheme = "wss" if parsed.scheme == "https" else "ws"
    return f"{scheme}://{parsed.netloc}/ws"


class RelayClient:
    """A persistent connection to the signaling relay."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._ws = None

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url)
        logger.info("WebSocket open to %s", self.url)

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise ConnectionError("Relay not connected")
        await self._ws.send(message.model_dump_json())

    async def messages(self) -> AsyncIterator[BaseModel]:
        """Yield typed relay messages until the connection closes."""
        if self._ws is None:
            raise ConnectionError("Relay not connected")
        try:
            async for raw in self._ws:
                try:
                    yield server_message_adapter.validate_json(raw)
                except ValidationError as e:
                    logger.warning("Ignoring unexpected relay message: %s", e)
        except websockets.ConnectionClosed as e:
            logger.info("WebSocket closed: %s", e)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def __aenter__(self) -> "RelayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Optional[BaseException]) -> None:
        await self.close()
