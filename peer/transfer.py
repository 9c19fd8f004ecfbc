"""Chunked file transfer over an open, ordered and reliable data channel.

Framing: one JSON text frame ``{"type": "metadata", "name", "size",
"mimeType"}`` followed by binary frames of at most ``CHUNK_SIZE`` bytes that
add up to exactly ``size``. There is no end marker, acknowledgement or
checksum; the receiver completes by byte count.
"""

import asyncio
import logging
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from pydantic import ValidationError

from .errors import TransferError
from .models import FileMetadata, ReceivedFile

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16384
BUFFERED_AMOUNT_HIGH = 1024 * 1024

ProgressCallback = Callable[[float], Any]


def guess_mime_type(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


class FileSender:
    def __init__(
        self,
        channel,
        chunk_size: int = CHUNK_SIZE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.channel = channel
        self.chunk_size = chunk_size
        self.on_progress = on_progress
        self.offset = 0

    async def _drain(self) -> None:
        if self.channel.bufferedAmount <= BUFFERED_AMOUNT_HIGH:
            return
        low = asyncio.Event()
        self.channel.bufferedAmountLowThreshold = BUFFERED_AMOUNT_HIGH // 2

        def on_low():
            low.set()

        self.channel.on("bufferedamountlow", on_low)
        try:
            await low.wait()
        finally:
            self.channel.remove_listener("bufferedamountlow", on_low)

    async def send(self, path: Path, mime_type: Optional[str] = None) -> int:
        """Send ``path`` as metadata plus sequential chunks; return bytes sent."""
        size = path.stat().st_size
        metadata = FileMetadata(
            name=path.name, size=size, mime_type=mime_type or guess_mime_type(path)
        )
        self.channel.send(metadata.model_dump_json(by_alias=True))
        logger.info("Sending %s (%d bytes)", path.name, size)

        self.offset = 0
        with path.open("rb") as f:
            while self.offset < size:
                # The next slice is only read once the previous one was sent.
                chunk = await asyncio.to_thread(f.read, self.chunk_size)
                if not chunk:
                    raise TransferError(
                        f"{path.name} shrank to {self.offset} bytes while sending"
                    )
                self.channel.send(chunk)
                self.offset += len(chunk)
                if self.on_progress:
                    self.on_progress(self.offset / size * 100)
                await self._drain()
        logger.info("File sent: %s", path.name)
        return self.offset


class ReceiverState(str, Enum):
    AWAITING_METADATA = "awaiting-metadata"
    RECEIVING = "receiving"


class FileReceiver:
    """Reassembles files from channel messages.

    A text message always starts a new file; binary messages arriving before
    any metadata are dropped. ``on_complete`` fires once per file, when the
    received byte count equals the declared size.
    """

    def __init__(
        self,
        on_complete: Callable[[ReceivedFile], Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.on_complete = on_complete
        self.on_progress = on_progress
        self._reset()

    def _reset(self) -> None:
        self.state = ReceiverState.AWAITING_METADATA
        self.metadata: Optional[FileMetadata] = None
        self.received_size = 0
        self.chunks: List[bytes] = []

    def handle_message(self, message: Union[str, bytes]) -> Optional[ReceivedFile]:
        if isinstance(message, str):
            return self._handle_metadata(message)
        return self._handle_chunk(bytes(message))

    def _handle_metadata(self, message: str) -> Optional[ReceivedFile]:
        self._reset()
        try:
            self.metadata = FileMetadata.model_validate_json(message)
        except ValidationError:
            logger.warning("Ignoring malformed metadata message")
            return None
        self.state = ReceiverState.RECEIVING
        logger.info("Receiving %s (%d bytes)", self.metadata.name, self.metadata.size)
        if self.metadata.size == 0:
            return self._complete()
        return None

    def _handle_chunk(self, chunk: bytes) -> Optional[ReceivedFile]:
        if self.state is not ReceiverState.RECEIVING:
            logger.debug("Dropping %d byte chunk received before metadata", len(chunk))
            return None
        self.chunks.append(chunk)
        self.received_size += len(chunk)
        if self.on_progress:
            self.on_progress(self.received_size / self.metadata.size * 100)
        if self.received_size == self.metadata.size:
            return self._complete()
        if self.received_size > self.metadata.size:
            logger.error(
                "Received %d bytes for %s, more than the declared %d; discarding",
                self.received_size, self.metadata.name, self.metadata.size,
            )
            self._reset()
        return None

    def _complete(self) -> ReceivedFile:
        received = ReceivedFile(
            name=self.metadata.name,
            mime_type=self.metadata.mime_type,
            data=b"".join(self.chunks),
        )
        self._reset()
        logger.info("File received: %s", received.name)
        self.on_complete(received)
        return received
