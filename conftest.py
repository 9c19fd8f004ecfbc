import asyncio
import inspect

import pytest
from aiortc import RTCSessionDescription

from signaling.messages import SessionDescription


class FakeEmitter:
    """Just enough of pyee's EventEmitter for the handshake code."""

    def __init__(self):
        self._handlers = {}
        self.tasks = []

    def on(self, event, f=None):
        def register(fn):
            self._handlers.setdefault(event, []).append(fn)
            return fn

        return register(f) if f is not None else register

    def remove_listener(self, event, f):
        self._handlers.get(event, []).remove(f)

    def emit(self, event, *args):
        for fn in list(self._handlers.get(event, [])):
            result = fn(*args)
            if inspect.iscoroutine(result):
                self.tasks.append(asyncio.ensure_future(result))

    async def settle(self):
        while self.tasks:
            await self.tasks.pop(0)


class FakeChannel(FakeEmitter):
    def __init__(self, label="fileTransfer"):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent = []

    def send(self, data):
        self.sent.append(data)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def close(self):
        self.readyState = "closed"
        self.emit("close")


HOST_CANDIDATE = "candidate:1 1 udp 2130706431 192.168.1.5 54321 typ host"
SRFLX_CANDIDATE = "candidate:2 1 udp 1694498815 203.0.113.7 40000 typ srflx raddr 192.168.1.5 rport 54321"
BARE_SDP = (
    "v=0\r\n"
    "o=- {session} 1 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "m=application 9 UDP/DTLS/SCTP webrtc-datachannel\r\n"
    "a=mid:0\r\n"
)


class FakePeerConnection(FakeEmitter):
    """Behaves like aiortc's RTCPeerConnection where the handshake cares.

    ``setLocalDescription`` only returns once gathering is finished, and
    ``localDescription`` stays None until then and carries ``candidates``
    afterwards. With ``complete_gathering=False`` gathering hangs until
    ``finish_gathering()``. Channels open as soon as an answer is applied.
    """

    def __init__(self, complete_gathering=True, candidates=(HOST_CANDIDATE,)):
        super().__init__()
        self.complete_gathering = complete_gathering
        self.candidates = candidates
        self.iceGatheringState = "new"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.added_candidates = []
        self.channels = []
        self.closed = False
        self._gathered = None

    def createDataChannel(self, label):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp=BARE_SDP.format(session=1), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=BARE_SDP.format(session=2), type="answer")

    async def setLocalDescription(self, description):
        self.iceGatheringState = "gathering"
        self._gathered = asyncio.Event()
        if self.complete_gathering:
            self._gathered.set()
        await self._gathered.wait()
        self.iceGatheringState = "complete"
        self.emit("icegatheringstatechange")
        lines = "".join(f"a={c}\r\n" for c in self.candidates)
        self.localDescription = RTCSessionDescription(
            sdp=description.sdp + lines, type=description.type
        )

    def finish_gathering(self):
        self._gathered.set()

    async def setRemoteDescription(self, description):
        if description.type == "answer" and self.localDescription is None:
            raise RuntimeError("local offer not applied yet")
        self.remoteDescription = description
        if description.type == "answer":
            for channel in self.channels:
                channel.open()

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class FakeRelay:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)


OFFER_JSON = SessionDescription(type="offer", sdp="v=0\r\no=- offer\r\n").model_dump_json()
ANSWER_JSON = SessionDescription(type="answer", sdp="v=0\r\no=- answer\r\n").model_dump_json()


@pytest.fixture
def fake_pc():
    return FakePeerConnection()


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def fake_channel():
    return FakeChannel()
