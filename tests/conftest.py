import asyncio
import pytest
from pyee import EventEmitter

from peerlink.tools.config import ClientConfig
from peerlink.tools.errors import ErrorCode, ErrorReporter, PeerLinkError
from peerlink.controllers.webrtc_controller import PeerSessionTable
from peerlink.controllers.webrtc_controller.signaling import NegotiationCoordinator
from peerlink.use_cases.media import LocalMediaRegistry
from peerlink.use_cases.peer_messages import PeerMessageRouter


OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


def candidate(n):
    return {"type": "candidate", "label": 0, "id": "0", "candidate": f"candidate:{n} 1 udp 1 10.0.0.1 {5000 + n} typ host"}


class FakeTrack:

    def __init__(self, track_id, kind="audio"):
        self.id = track_id
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeDataChannel(EventEmitter):

    def __init__(self, label="dc", ready_state="connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.sent = []
        self.closed = False

    def send(self, message):
        self.sent.append(message)

    def close(self):
        self.closed = True
        self.readyState = "closed"

    def open(self):
        self.readyState = "open"
        self.emit("open")


class FakeTransport(EventEmitter):
    """Stands in for the aiortc adapter: same methods, same events."""

    def __init__(self, ice_servers):
        super().__init__()
        self.ice_servers = ice_servers
        self.local_description = None
        self.remote_description = None
        self.candidates = []
        self.streams = []
        self.data_channels = []
        self.offers_created = 0
        self.fail_remote_description = False
        self.closed = False

    async def create_offer(self):
        self.offers_created += 1
        return dict(OFFER)

    async def create_answer(self):
        return dict(ANSWER)

    async def set_local_description(self, description):
        self.local_description = description

    async def set_remote_description(self, description):
        if self.fail_remote_description:
            raise ValueError("bad description")
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        self.candidates.append(candidate)

    def create_data_channel(self, label):
        channel = FakeDataChannel(label)
        self.data_channels.append(channel)
        return channel

    def add_stream(self, tracks):
        self.streams.append(list(tracks))

    async def close(self):
        self.closed = True


class FakeSignalingChannel:
    """
    Records every outbound message and acknowledges it at once.

    replies maps a msgType to the acknowledgment to return, or to an
    exception the returned future fails with.
    """

    def __init__(self):
        self.connected = True
        self.sent = []
        self.replies = {}
        self.closed = False

    def send(self, channel, message):
        if not self.connected:
            raise PeerLinkError(ErrorCode.DEVELOPER_ERR, "not connected")
        self.sent.append((channel, message))
        future = asyncio.get_running_loop().create_future()
        reply = self.replies.get(message["msgType"], {"msgType": "ack", "msgData": None})
        if isinstance(reply, Exception):
            future.set_exception(reply)
        else:
            future.set_result(reply)
        return future

    def messages(self, msg_type=None, channel=None):
        return [
            message for sent_channel, message in self.sent
            if (msg_type is None or message["msgType"] == msg_type)
            and (channel is None or sent_channel == channel)
        ]

    async def close(self):
        self.closed = True


def record(emitter, event):
    """Collect the arguments of every emission of event."""
    calls = []
    emitter.on(event, lambda *args: calls.append(args))
    return calls


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def config():
    return ClientConfig(offer_delay=0, ice_servers=[], rooms={})


@pytest.fixture
def signaling():
    return FakeSignalingChannel()


@pytest.fixture
def transports():
    return []


@pytest.fixture
def transport_factory(transports):
    def factory(ice_servers):
        transport = FakeTransport(ice_servers)
        transports.append(transport)
        return transport
    return factory


@pytest.fixture
def reporter():
    reporter = ErrorReporter()
    reporter.reports = []
    reporter.set_listener(lambda code, text: reporter.reports.append((code, text)))
    return reporter


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def make_coordinator(config, reporter, events, transport_factory, signaling):
    def make(own_id="m", signaling_channel=None, factory=None):
        coordinator = NegotiationCoordinator(
            config,
            PeerSessionTable(),
            signaling_channel or signaling,
            reporter,
            PeerMessageRouter(),
            LocalMediaRegistry(),
            events,
            transport_factory=factory or transport_factory,
        )
        coordinator.own_id = own_id
        return coordinator
    return make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()
