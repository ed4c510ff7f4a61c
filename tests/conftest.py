"""Pytest configuration and shared fixtures."""

import asyncio
from unittest.mock import Mock

import pytest
from aiortc import RTCSessionDescription

from screenshare.config import Config, IceServerConfig
from screenshare.errors import MediaAcquisitionError
from screenshare.protocols import EndOfCandidates, EndpointRole, IceCandidate


OFFER_SDP = (
    "v=0\r\n"
    "o=- 3917421822 3917421822 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 97 98 99 100\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=sendonly\r\n"
    "a=mid:0\r\n"
    "a=rtpmap:97 VP8/90000\r\n"
    "a=rtcp-fb:97 nack\r\n"
    "a=rtpmap:98 rtx/90000\r\n"
    "a=fmtp:98 apt=97\r\n"
    "a=rtpmap:99 H264/90000\r\n"
    "a=rtcp-fb:99 nack\r\n"
    "a=fmtp:99 level-asymmetry-allowed=1;packetization-mode=1;profile-level-id=42001f\r\n"
    "a=rtpmap:100 rtx/90000\r\n"
    "a=fmtp:100 apt=99\r\n"
)

ANSWER_SDP = (
    "v=0\r\n"
    "o=- 3917421823 3917421823 IN IP4 0.0.0.0\r\n"
    "s=-\r\n"
    "t=0 0\r\n"
    "a=group:BUNDLE 0\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 99 100\r\n"
    "c=IN IP4 0.0.0.0\r\n"
    "a=recvonly\r\n"
    "a=mid:0\r\n"
    "a=rtpmap:99 H264/90000\r\n"
    "a=rtpmap:100 rtx/90000\r\n"
    "a=fmtp:100 apt=99\r\n"
)


def candidate(owner: EndpointRole, type: str, address: str = "203.0.113.7") -> IceCandidate:
    """Build a candidate event."""
    return IceCandidate(type=type, address=address, owner=owner, port=50000, sdp_mid="0")


class FakeEndpoint:
    """In-memory endpoint recording everything the session does to it."""

    def __init__(self, role, ice_servers, gathered=None):
        self.role = role
        self.ice_servers = ice_servers
        self.gathered = list(gathered or [])
        self.tracks = []
        self.added = []
        self.local_description = None
        self.remote_description = None
        self.close_calls = 0
        self.fail_on = None
        self.gates: dict[str, asyncio.Event] = {}
        self._candidate_callback = None
        self._resolution_callback = None

    async def _wait_gate(self, operation):
        gate = self.gates.get(operation)
        if gate is not None:
            await gate.wait()

    def _maybe_fail(self, operation):
        if self.fail_on == operation:
            raise RuntimeError(f"{operation} failed")

    async def add_track(self, track, encoding):
        self.tracks.append((track, encoding))

    async def create_offer(self):
        await self._wait_gate("create_offer")
        self._maybe_fail("create_offer")
        return RTCSessionDescription(sdp=OFFER_SDP, type="offer")

    async def create_answer(self):
        await self._wait_gate("create_answer")
        self._maybe_fail("create_answer")
        return RTCSessionDescription(sdp=ANSWER_SDP, type="answer")

    async def set_local_description(self, description):
        self._maybe_fail("set_local_description")
        self.local_description = description
        for event in self.gathered:
            await self.emit(event)

    async def set_remote_description(self, description):
        self._maybe_fail("set_remote_description")
        self.remote_description = description

    async def add_candidate(self, event):
        self._maybe_fail("add_candidate")
        self.added.append(event)

    def on_candidate(self, callback):
        self._candidate_callback = callback

    def on_resolution(self, callback):
        self._resolution_callback = callback

    async def emit(self, event):
        if self._candidate_callback:
            await self._candidate_callback(event)

    def report_resolution(self, width, height):
        if self._resolution_callback:
            self._resolution_callback(width, height)

    async def close(self):
        self.close_calls += 1

    @property
    def closed(self):
        return self.close_calls > 0


class FakeEndpointFactory:
    """Creates FakeEndpoints and remembers them by role."""

    def __init__(self, gathered=None, fail_on=None, gates=None):
        self.gathered = gathered or {}
        self.fail_on = fail_on or {}
        self.gates = gates or {}
        self.endpoints = {}

    def __call__(self, role, ice_servers):
        endpoint = FakeEndpoint(role, ice_servers, self.gathered.get(role))
        endpoint.fail_on = self.fail_on.get(role)
        endpoint.gates = self.gates.get(role, {})
        self.endpoints[role] = endpoint
        return endpoint

    @property
    def local(self):
        return self.endpoints[EndpointRole.LOCAL]

    @property
    def remote(self):
        return self.endpoints[EndpointRole.REMOTE]


class FakeCapture:
    """Capture source handing out a mock video track."""

    def __init__(self, error=None):
        self.error = error
        self.requests = []
        self.release_calls = 0
        self.track = None
        self.gate: asyncio.Event | None = None

    async def acquire(self, height, frame_rate):
        self.requests.append((height, frame_rate))
        if self.gate is not None:
            await self.gate.wait()
        if self.error:
            raise self.error
        self.track = Mock(kind="video")
        return self.track

    async def release(self):
        self.release_calls += 1
        self.track = None


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from screenshare.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def config():
    """Config with a TURN server and fast latency polling."""
    return Config(
        turn=IceServerConfig(url="turn:turn.example.com:3478", username="me", credential="qwerty"),
        latency_interval=0.01,
    )


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def denied_capture():
    return FakeCapture(error=MediaAcquisitionError("Permission denied"))


@pytest.fixture
def relay_gathering():
    """Both endpoints gather a relay candidate."""
    return {
        EndpointRole.LOCAL: [
            candidate(EndpointRole.LOCAL, "host", "192.168.1.10"),
            candidate(EndpointRole.LOCAL, "relay"),
            EndOfCandidates(owner=EndpointRole.LOCAL),
        ],
        EndpointRole.REMOTE: [
            candidate(EndpointRole.REMOTE, "relay", "203.0.113.8"),
            EndOfCandidates(owner=EndpointRole.REMOTE),
        ],
    }


@pytest.fixture
def no_relay_gathering():
    """Endpoints only gather host and server-reflexive candidates."""
    return {
        EndpointRole.LOCAL: [
            candidate(EndpointRole.LOCAL, "host", "192.168.1.10"),
            candidate(EndpointRole.LOCAL, "srflx", "198.51.100.4"),
            EndOfCandidates(owner=EndpointRole.LOCAL),
        ],
        EndpointRole.REMOTE: [
            candidate(EndpointRole.REMOTE, "host", "192.168.1.10"),
            EndOfCandidates(owner=EndpointRole.REMOTE),
        ],
    }


@pytest.fixture
def make_candidate():
    """Candidate event builder."""
    return candidate


@pytest.fixture
def make_endpoints():
    """FakeEndpointFactory class; call with per-role gathered events."""
    return FakeEndpointFactory
