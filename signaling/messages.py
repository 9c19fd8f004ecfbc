"""Relay wire messages shared by the signaling server and the peers."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# --- Payloads ---
class SessionDescription(BaseModel):
    """An offer or answer as produced by a peer connection."""

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """Browser-style ICE candidate init dict; unknown keys pass through."""

    model_config = ConfigDict(extra="allow")

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


# --- Client -> relay ---
class OfferMessage(BaseModel):
    type: Literal["offer"] = "offer"
    offer: SessionDescription


class AnswerMessage(BaseModel):
    type: Literal["answer"] = "answer"
    answer: SessionDescription


class IceCandidateMessage(BaseModel):
    """Sent by a peer and relayed unchanged to every other peer."""

    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: IceCandidate


# --- Relay -> client ---
class ConnectedMessage(BaseModel):
    type: Literal["connected"] = "connected"
    message: str = "Connected to signaling server"


class OfferCreatedMessage(BaseModel):
    type: Literal["offer-created"] = "offer-created"
    offer: SessionDescription


class AnswerCreatedMessage(BaseModel):
    type: Literal["answer-created"] = "answer-created"
    answer: SessionDescription


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    message: str = "invalid message"


ClientMessage = Annotated[
    Union[OfferMessage, AnswerMessage, IceCandidateMessage],
    Field(discriminator="type"),
]

ServerMessage = Annotated[
    Union[
        ConnectedMessage,
        OfferCreatedMessage,
        AnswerCreatedMessage,
        IceCandidateMessage,
        ErrorMessage,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = frozenset({"offer", "answer", "ice-candidate"})

client_message_adapter = TypeAdapter(ClientMessage)
server_message_adapter = TypeAdapter(ServerMessage)
