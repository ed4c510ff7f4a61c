"""Protocols, enums and events shared by the session and its collaborators."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, Union

from aiortc import MediaStreamTrack, RTCSessionDescription


class SessionState(Enum):
    """State of a screen-sharing session."""

    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class EndpointRole(Enum):
    """Which side of the in-process connection an endpoint is."""

    LOCAL = "local"  # captures and sends
    REMOTE = "remote"  # receives

    @property
    def peer(self) -> "EndpointRole":
        """The opposite endpoint."""
        return EndpointRole.REMOTE if self is EndpointRole.LOCAL else EndpointRole.LOCAL


# ============================================================================
# Candidate events
# ============================================================================


@dataclass(frozen=True)
class IceCandidate:
    """A connectivity candidate discovered by an endpoint."""

    type: str  # host, srflx, prflx or relay
    address: str
    owner: EndpointRole
    port: int | None = None
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None
    raw: Any = None  # aiortc RTCIceCandidate, when backed by aiortc

    @property
    def is_relay(self) -> bool:
        return self.type == "relay"


@dataclass(frozen=True)
class EndOfCandidates:
    """Sentinel: the owner has finished gathering candidates.

    Always the last candidate event reported by an endpoint.
    """

    owner: EndpointRole


CandidateEvent = Union[IceCandidate, EndOfCandidates]

CandidateCallback = Callable[[CandidateEvent], Awaitable[None]]
ResolutionCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class EncodingParameters:
    """Sender-side video encoding constraint."""

    max_bitrate: int
    min_bitrate: int
    degradation_preference: str = "maintain-resolution"

    @classmethod
    def for_bitrate(cls, bitrate: int) -> "EncodingParameters":
        """Fixed target bitrate with a floor of a quarter of it."""
        return cls(max_bitrate=bitrate, min_bitrate=bitrate >> 2)


# ============================================================================
# Collaborators
# ============================================================================


class Endpoint(Protocol):
    """One side of the WebRTC connection."""

    role: EndpointRole

    async def add_track(self, track: MediaStreamTrack, encoding: EncodingParameters) -> None:
        ...

    async def create_offer(self) -> RTCSessionDescription:
        ...

    async def create_answer(self) -> RTCSessionDescription:
        ...

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        ...

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        ...

    async def add_candidate(self, event: CandidateEvent) -> None:
        ...

    def on_candidate(self, callback: CandidateCallback) -> None:
        ...

    def on_resolution(self, callback: ResolutionCallback) -> None:
        ...

    async def close(self) -> None:
        ...


class CaptureSource(Protocol):
    """Provider of the video stream to share."""

    async def acquire(self, height: int, frame_rate: int) -> MediaStreamTrack:
        """Returns a video track. Raises MediaAcquisitionError on failure."""
        ...

    async def release(self) -> None:
        ...


class LatencyProbe(Protocol):
    """Periodic latency measurement hook."""

    async def measure(self) -> float:
        """Returns latency in milliseconds."""
        ...
