import asyncio
import logging
from contextlib import suppress
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .handshake import GATHER_TIMEOUT, PeerHandshake, create_peer_connection
from .models import ReceivedFile, SharedToken
from .relay_client import RelayClient, relay_url_for
from .storage import save_received_file
from .transfer import FileReceiver, FileSender

logger = logging.getLogger(__name__)

ECHO_TIMEOUT = 10.0
OPEN_TIMEOUT = 300.0
LINGER_TIMEOUT = 30.0

TokenCallback = Callable[[SharedToken], Any]


async def _wait_until_flushed(channel) -> None:
    """Let queued chunks leave, then give the receiver time to hang up."""
    drained = asyncio.Event()
    closed = asyncio.Event()

    def on_low():
        drained.set()

    def on_close():
        closed.set()
        drained.set()

    channel.on("bufferedamountlow", on_low)
    channel.on("close", on_close)
    try:
        channel.bufferedAmountLowThreshold = 0
        if channel.bufferedAmount > 0 and channel.readyState == "open":
            await drained.wait()
        if channel.readyState != "closed":
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(closed.wait(), LINGER_TIMEOUT)
    finally:
        channel.remove_listener("bufferedamountlow", on_low)
        channel.remove_listener("close", on_close)


async def _stop(pump: asyncio.Task) -> None:
    pump.cancel()
    with suppress(asyncio.CancelledError):
        await pump


async def share_file(
    file_path: Path,
    server: str,
    answer_source: Callable[[], Awaitable[str]],
    on_token: Optional[TokenCallback] = None,
    relay_url: Optional[str] = None,
    gather_timeout: float = GATHER_TIMEOUT,
    connection_factory=create_peer_connection,
    on_progress=None,
) -> int:
    """Initiate a session, wait for the answer and send ``file_path``."""
    relay = RelayClient(relay_url or relay_url_for(server))
    await relay.connect()
    handshake = PeerHandshake(
        relay,
        server=server,
        connection_factory=connection_factory,
        gather_timeout=gather_timeout,
        on_token=on_token,
    )
    pump = asyncio.create_task(handshake.run(relay.messages()))
    try:
        await handshake.create_offer()
        await asyncio.wait_for(handshake.token_published.wait(), ECHO_TIMEOUT)
        await handshake.accept_answer(await answer_source())
        channel = await handshake.wait_until_open(OPEN_TIMEOUT)
        sent = await FileSender(channel, on_progress=on_progress).send(file_path)
        await _wait_until_flushed(channel)
        return sent
    finally:
        await _stop(pump)
        await handshake.close()
        await relay.close()


async def receive_file(
    offer_text: str,
    server: str,
    storage_dir: Path,
    on_token: Optional[TokenCallback] = None,
    relay_url: Optional[str] = None,
    gather_timeout: float = GATHER_TIMEOUT,
    connection_factory=create_peer_connection,
    on_progress=None,
) -> Path:
    """Answer an offer token and store the first file that arrives."""
    loop = asyncio.get_running_loop()
    completed: asyncio.Future = loop.create_future()

    def on_complete(received: ReceivedFile) -> None:
        if not completed.done():
            completed.set_result(received)

    receiver = FileReceiver(on_complete=on_complete, on_progress=on_progress)
    relay = RelayClient(relay_url or relay_url_for(server))
    await relay.connect()
    handshake = PeerHandshake(
        relay,
        server=server,
        connection_factory=connection_factory,
        gather_timeout=gather_timeout,
        on_token=on_token,
        on_message=receiver.handle_message,
    )
    pump = asyncio.create_task(handshake.run(relay.messages()))
    try:
        await handshake.accept_offer(offer_text)
        await handshake.wait_until_open(OPEN_TIMEOUT)
        # A channel closing mid-transfer leaves this waiting; there is no resume.
        received = await completed
        return save_received_file(storage_dir, received)
    finally:
        await _stop(pump)
        await handshake.close()
        await relay.close()
