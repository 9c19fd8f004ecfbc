"""Offer/answer/ICE negotiation of a single peer data channel.

The initiator path runs ``IDLE -> CREATING_OFFER -> OFFER_SENT ->
AWAITING_ANSWER -> CONNECTED``; the responder path runs ``IDLE ->
OFFER_RECEIVED -> CREATING_ANSWER -> ANSWER_SENT -> CONNECTED``. Session
descriptions travel out-of-band: the relay echoes them back and the peer
turns the echo into a one-time short link. ICE candidates discovered after
the description was sent are trickled through the relay individually.
"""

import asyncio
import inspect
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import SessionDescription as ParsedSdp, candidate_from_sdp, candidate_to_sdp
from pydantic import ValidationError

from signaling.messages import (
    AnswerCreatedMessage,
    AnswerMessage,
    ConnectedMessage,
    ErrorMessage,
    IceCandidate,
    IceCandidateMessage,
    OfferCreatedMessage,
    OfferMessage,
    SessionDescription,
)

from .api_client import DEFAULT_SERVER, publish_description, resolve_token
from .errors import HandshakeError
from .models import SharedToken

logger = logging.getLogger(__name__)

GATHER_TIMEOUT = 3.0
CHANNEL_LABEL = "fileTransfer"
DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class HandshakeState(str, Enum):
    IDLE = "idle"
    CREATING_OFFER = "creating-offer"
    OFFER_SENT = "offer-sent"
    AWAITING_ANSWER = "awaiting-answer"
    OFFER_RECEIVED = "offer-received"
    CREATING_ANSWER = "creating-answer"
    ANSWER_SENT = "answer-sent"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


S = HandshakeState
TRANSITIONS = {
    S.IDLE: {S.CREATING_OFFER, S.OFFER_RECEIVED, S.CLOSED},
    S.CREATING_OFFER: {S.OFFER_SENT, S.FAILED, S.CLOSED},
    S.OFFER_SENT: {S.AWAITING_ANSWER, S.FAILED, S.CLOSED},
    S.AWAITING_ANSWER: {S.CONNECTED, S.FAILED, S.CLOSED},
    S.OFFER_RECEIVED: {S.CREATING_ANSWER, S.FAILED, S.CLOSED},
    S.CREATING_ANSWER: {S.ANSWER_SENT, S.FAILED, S.CLOSED},
    S.ANSWER_SENT: {S.CONNECTED, S.FAILED, S.CLOSED},
    S.CONNECTED: {S.CLOSED},
    S.FAILED: {S.CLOSED},
    S.CLOSED: set(),
}


def create_peer_connection(
    ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
) -> RTCPeerConnection:
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
    return RTCPeerConnection(configuration=config)


def candidate_to_dict(candidate) -> Dict[str, Any]:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: IceCandidate):
    sdp = data.candidate
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = data.sdpMid
    candidate.sdpMLineIndex = data.sdpMLineIndex
    return candidate


def parse_description(text: str, expected: str) -> SessionDescription:
    """Parse token text, insisting on an ``offer`` or ``answer``."""
    try:
        description = SessionDescription.model_validate_json(text)
    except ValidationError:
        raise HandshakeError(f"Invalid {expected} token")
    if description.type != expected:
        raise HandshakeError(
            f"Invalid {expected} token: got an {description.type} instead"
        )
    return description


def local_candidates(sdp: str) -> List[IceCandidate]:
    """The ``a=candidate`` lines of a description, tagged with their m-line."""
    candidates = []
    for index, media in enumerate(ParsedSdp.parse(sdp).media):
        for candidate in media.ice_candidates:
            candidate.sdpMid = media.rtp.muxId
            candidate.sdpMLineIndex = index
            candidates.append(IceCandidate(**candidate_to_dict(candidate)))
    return candidates


async def wait_for_ice_gathering(
    gathering: asyncio.Future, timeout: float = GATHER_TIMEOUT
) -> bool:
    """Wait until ICE gathering completes or ``timeout`` elapses.

    ``gathering`` is the pending ``setLocalDescription`` call, which in aiortc
    only returns once every candidate is known. It keeps running after a
    timeout; the candidates it finds later reach the peer through trickle, so
    a timeout is not an error. Returns False on timeout.
    """
    done, _ = await asyncio.wait({gathering}, timeout=timeout)
    if gathering not in done:
        logger.info("ICE gathering still running after %ss, sending anyway", timeout)
        return False
    gathering.result()
    return True


@dataclass
class PeerSession:
    role: Role
    connection: Any
    channel: Any = None
    local_description: Optional[SessionDescription] = None
    remote_description: Optional[SessionDescription] = None


def _describe(description) -> SessionDescription:
    return SessionDescription(type=description.type, sdp=description.sdp)


class PeerHandshake:
    """Drives one peer connection from idle to an open data channel.

    ``relay`` needs an async ``send(message)``. ``on_token`` receives the
    ``SharedToken`` produced for every echoed offer or answer and may be a
    coroutine function. ``on_message`` is attached to the data channel as
    soon as it exists, so no early message is missed.
    """

    def __init__(
        self,
        relay,
        server: str = DEFAULT_SERVER,
        connection_factory: Callable[[], Any] = create_peer_connection,
        gather_timeout: float = GATHER_TIMEOUT,
        on_token: Optional[Callable[[SharedToken], Any]] = None,
        on_message: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self.relay = relay
        self.server = server
        self.gather_timeout = gather_timeout
        self.state = HandshakeState.IDLE
        self.session: Optional[PeerSession] = None
        self.shared_token: Optional[SharedToken] = None
        self.channel_open = asyncio.Event()
        self.token_published = asyncio.Event()
        self._connection_factory = connection_factory
        self._on_token = on_token
        self._on_message = on_message
        self._gathering: Optional[asyncio.Future] = None
        self._trickler: Optional[asyncio.Future] = None

    @property
    def role(self) -> Optional[Role]:
        return self.session.role if self.session else None

    @property
    def channel(self):
        return self.session.channel if self.session else None

    def _advance(self, new_state: HandshakeState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise HandshakeError(
                f"Cannot move from {self.state.value} to {new_state.value}"
            )
        logger.info("Handshake %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _fail(self, error: Exception) -> None:
        logger.error("Handshake failed in %s: %s", self.state.value, error)
        if HandshakeState.FAILED in TRANSITIONS[self.state]:
            self.state = HandshakeState.FAILED

    def _open_session(self, role: Role) -> PeerSession:
        pc = self._connection_factory()
        self.session = PeerSession(role=role, connection=pc)

        @pc.on("connectionstatechange")
        def on_connectionstatechange():
            logger.info("Peer connection state: %s", pc.connectionState)

        @pc.on("datachannel")
        def on_datachannel(channel):
            self._attach_channel(channel)

        return self.session

    def _attach_channel(self, channel) -> None:
        self.session.channel = channel

        @channel.on("open")
        def on_open():
            self._on_channel_open()

        @channel.on("close")
        def on_close():
            logger.info("Data channel closed")

        if self._on_message is not None:
            channel.on("message", self._on_message)

        if channel.readyState == "open":
            self._on_channel_open()

    def _on_channel_open(self) -> None:
        if self.channel_open.is_set():
            return
        logger.info("Data channel open")
        self.channel_open.set()
        if self.state is HandshakeState.ANSWER_SENT:
            self._advance(HandshakeState.CONNECTED)

    async def _set_local_description(self, pc, description) -> Tuple[SessionDescription, bool]:
        """Apply ``description`` locally, waiting at most ``gather_timeout``.

        Returns the description to send and whether it already carries every
        local candidate.
        """
        self._gathering = asyncio.ensure_future(pc.setLocalDescription(description))
        if await wait_for_ice_gathering(self._gathering, self.gather_timeout):
            return _describe(pc.localDescription), True
        return _describe(description), False

    def _trickle_later(self, pc, sent: SessionDescription) -> None:
        self._trickler = asyncio.ensure_future(self._trickle_late_candidates(pc, sent))

    async def _trickle_late_candidates(self, pc, sent: SessionDescription) -> None:
        try:
            await self._gathering
        except Exception as e:
            logger.error("ICE gathering failed: %s", e)
            return
        already_sent = {c.candidate for c in local_candidates(sent.sdp)}
        late = [
            c for c in local_candidates(pc.localDescription.sdp)
            if c.candidate not in already_sent
        ]
        logger.info("Trickling %d ICE candidate(s) found after the timeout", len(late))
        for candidate in late:
            await self._send_candidate(candidate)

    async def _send_candidate(self, candidate: IceCandidate) -> None:
        try:
            await self.relay.send(IceCandidateMessage(candidate=candidate))
        except Exception as e:
            logger.warning("Failed to trickle ICE candidate: %s", e)

    async def create_offer(self) -> SessionDescription:
        """Initiator: build the offer and hand it to the relay."""
        self._advance(HandshakeState.CREATING_OFFER)
        try:
            session = self._open_session(Role.INITIATOR)
            pc = session.connection
            self._attach_channel(pc.createDataChannel(CHANNEL_LABEL))
            offer, complete = await self._set_local_description(pc, await pc.createOffer())
            session.local_description = offer
            self._advance(HandshakeState.OFFER_SENT)
            await self.relay.send(OfferMessage(offer=offer))
        except HandshakeError:
            raise
        except Exception as e:
            self._fail(e)
            raise HandshakeError(f"Could not create offer: {e}") from e
        if not complete:
            self._trickle_later(pc, offer)
        return offer

    async def accept_offer(self, text: str) -> SessionDescription:
        """Responder: resolve an offer token and answer it through the relay."""
        if self.state is not HandshakeState.IDLE:
            raise HandshakeError("A session is already active")
        offer = parse_description(await resolve_token(text), "offer")
        self._advance(HandshakeState.OFFER_RECEIVED)
        self._advance(HandshakeState.CREATING_ANSWER)
        try:
            session = self._open_session(Role.RESPONDER)
            session.remote_description = offer
            pc = session.connection
            await pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.type))
            answer, complete = await self._set_local_description(pc, await pc.createAnswer())
            session.local_description = answer
            self._advance(HandshakeState.ANSWER_SENT)
            await self.relay.send(AnswerMessage(answer=answer))
        except HandshakeError:
            raise
        except Exception as e:
            self._fail(e)
            raise HandshakeError(f"Error processing token: {e}") from e
        if not complete:
            self._trickle_later(pc, answer)
        if self.channel_open.is_set():
            self._advance(HandshakeState.CONNECTED)
        return answer

    async def accept_answer(self, text: str) -> None:
        """Initiator: apply the responder's answer."""
        if self.state not in (HandshakeState.OFFER_SENT, HandshakeState.AWAITING_ANSWER):
            raise HandshakeError("Create an offer before accepting an answer")
        answer = parse_description(await resolve_token(text), "answer")
        if self.state is HandshakeState.OFFER_SENT:
            self._advance(HandshakeState.AWAITING_ANSWER)
        try:
            # aiortc records the local offer only once gathering is over.
            await self._gathering
            await self.session.connection.setRemoteDescription(
                RTCSessionDescription(sdp=answer.sdp, type=answer.type)
            )
        except Exception as e:
            self._fail(e)
            raise HandshakeError(f"Error connecting: {e}") from e
        self.session.remote_description = answer
        self._advance(HandshakeState.CONNECTED)

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        if self.session is None:
            logger.debug("Dropping ICE candidate: no active session")
            return
        if not candidate.candidate:
            return
        try:
            await self.session.connection.addIceCandidate(candidate_from_dict(candidate))
        except Exception as e:
            logger.error("Failed to add ICE candidate: %s", e)

    async def _publish(self, description: SessionDescription, role: Role) -> None:
        if self.role is not role:
            logger.info("Ignoring %s echo outside of a %s session", description.type, role.value)
            return
        token = await publish_description(description, self.server)
        self.shared_token = token
        if self._on_token is not None:
            result = self._on_token(token)
            if inspect.isawaitable(result):
                await result
        if self.state is HandshakeState.OFFER_SENT:
            self._advance(HandshakeState.AWAITING_ANSWER)
        self.token_published.set()

    async def handle_relay_message(self, message) -> None:
        if isinstance(message, ConnectedMessage):
            logger.info("Signaling server connected: %s", message.message)
        elif isinstance(message, OfferCreatedMessage):
            await self._publish(message.offer, Role.INITIATOR)
        elif isinstance(message, AnswerCreatedMessage):
            await self._publish(message.answer, Role.RESPONDER)
        elif isinstance(message, IceCandidateMessage):
            await self.add_remote_candidate(message.candidate)
        elif isinstance(message, ErrorMessage):
            logger.warning("Relay rejected our last message: %s", message.message)
        else:
            logger.info("Unhandled relay message: %r", message)

    async def run(self, messages: AsyncIterator) -> None:
        """Feed relay messages into the state machine until the stream ends."""
        async for message in messages:
            try:
                await self.handle_relay_message(message)
            except Exception as e:
                logger.error("Error handling relay message: %s", e)

    async def wait_until_open(self, timeout: Optional[float] = None):
        await asyncio.wait_for(self.channel_open.wait(), timeout)
        return self.session.channel

    async def close(self) -> None:
        if self.state is HandshakeState.CLOSED:
            return
        for task in (self._trickler, self._gathering):
            if task is not None and not task.done():
                task.cancel()
        if self._trickler is not None:
            with suppress(asyncio.CancelledError):
                await self._trickler
        session, self.session = self.session, None
        if session is not None:
            await session.connection.close()
        self._advance(HandshakeState.CLOSED)
