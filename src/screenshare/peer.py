"""aiortc-backed connection endpoint."""

import asyncio
import logging
import time
from typing import Callable

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    sdp,
)
from aiortc.codecs import h264
from aiortc.mediastreams import MediaStreamError

from screenshare.config import IceServerConfig
from screenshare.errors import NegotiationError
from screenshare.protocols import (
    CandidateCallback,
    CandidateEvent,
    EncodingParameters,
    EndOfCandidates,
    EndpointRole,
    IceCandidate,
    ResolutionCallback,
)

logger = logging.getLogger(__name__)


class ConnectionTimer:
    """Track and log connection timing phases for debugging.

    Usage:
        timer = ConnectionTimer("local")
        timer.log_mark("local_desc_set")
        # ... do work ...
        timer.log_mark("first_frame")
        timer.log_summary()
    """

    def __init__(self, label: str = "connection"):
        self._label = label
        self._start = time.perf_counter()
        self._marks: list[tuple[str, float]] = []

    def mark(self, phase: str) -> float:
        """Record a timing mark and return elapsed ms since start."""
        elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._marks.append((phase, elapsed_ms))
        return elapsed_ms

    def log_mark(self, phase: str) -> None:
        """Record and log a timing mark."""
        elapsed_ms = self.mark(phase)
        logger.debug(f"[TIMING] {self._label}: {phase} @ {elapsed_ms:.1f}ms")

    def log_summary(self) -> None:
        """Log a summary of all timing marks."""
        if not self._marks:
            return
        summary = " | ".join(f"{phase}={ms:.0f}ms" for phase, ms in self._marks)
        total = self._marks[-1][1]
        logger.info(f"[TIMING] {self._label} summary: {summary} (total={total:.0f}ms)")


H264Bounds = tuple[int, int, int]


def h264_bounds() -> H264Bounds:
    """Current (default, min, max) H264 encoder bitrates."""
    return h264.DEFAULT_BITRATE, h264.MIN_BITRATE, h264.MAX_BITRATE


def restore_encoding(bounds: H264Bounds) -> None:
    h264.DEFAULT_BITRATE, h264.MIN_BITRATE, h264.MAX_BITRATE = bounds


def apply_encoding(encoding: EncodingParameters) -> H264Bounds:
    """Pin the H264 encoder bitrate.

    aiortc has no RTCRtpSender.setParameters(); the encoder clamps its target
    to module-level bounds instead, shared by every encoder in the process
    until restore_encoding() puts the returned previous bounds back. The
    encoder never rescales its input, so the resolution is always maintained.

    Returns:
        The bounds in effect before the call.
    """
    previous = h264_bounds()
    h264.DEFAULT_BITRATE = encoding.max_bitrate
    h264.MIN_BITRATE = encoding.min_bitrate
    h264.MAX_BITRATE = encoding.max_bitrate
    logger.info(
        f"H264 bitrate {encoding.min_bitrate // 1000}-{encoding.max_bitrate // 1000} kbps, "
        f"{encoding.degradation_preference}"
    )
    return previous


class PeerEndpoint:
    """One side of the in-process WebRTC connection.

    Candidates are not embedded in the descriptions handed to the other side:
    once the local description is committed, each gathered candidate is
    reported through the candidate callback, followed by EndOfCandidates, so
    the session decides which ones reach the peer.
    """

    def __init__(
        self,
        role: EndpointRole,
        ice_servers: list[IceServerConfig] | None = None,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ):
        """Initialize endpoint.

        Args:
            role: Which side this endpoint is.
            ice_servers: STUN/TURN servers.
            pc_factory: Factory to create RTCPeerConnection (for testing).
        """
        self.role = role
        self.ice_servers = ice_servers or []
        self._pc_factory = pc_factory or self._default_pc_factory
        self._pc: RTCPeerConnection | None = None
        self._closed = False
        self._saved_bounds: H264Bounds | None = None
        self._candidate_callback: CandidateCallback | None = None
        self._resolution_callback: ResolutionCallback | None = None
        self._consumers: set[asyncio.Task] = set()
        self._timer = ConnectionTimer(role.value)

    def _default_pc_factory(self, config: RTCConfiguration) -> RTCPeerConnection:
        """Create default RTCPeerConnection."""
        return RTCPeerConnection(configuration=config)

    @property
    def closed(self) -> bool:
        return self._closed

    def _configuration(self) -> RTCConfiguration:
        servers = [
            RTCIceServer(
                urls=[server.url],
                username=server.username or None,
                credential=server.credential or None,
            )
            for server in self.ice_servers
        ]
        return RTCConfiguration(iceServers=servers)

    def _ensure_pc(self) -> RTCPeerConnection:
        """Create the underlying RTCPeerConnection on first use."""
        if self._closed:
            raise NegotiationError(f"Endpoint {self.role.value} is closed")
        if self._pc is not None:
            return self._pc

        self._timer.log_mark("pc_create")
        self._pc = self._pc_factory(self._configuration())
        pc = self._pc
        timer = self._timer

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            timer.log_mark(f"conn_{pc.connectionState}")
            logger.info(f"[{self.role.value}] Connection state: {pc.connectionState}")

        @pc.on("icegatheringstatechange")
        async def on_ice_gathering_state_change():
            timer.log_mark(f"gather_{pc.iceGatheringState}")

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            logger.info(f"[{self.role.value}] Received {track.kind} track")
            if track.kind != "video":
                return
            task = asyncio.ensure_future(self._watch_resolution(track))
            self._consumers.add(task)
            task.add_done_callback(self._consumers.discard)

        return pc

    async def _watch_resolution(self, track: MediaStreamTrack) -> None:
        """Consume received frames and report resolution changes."""
        size: tuple[int, int] | None = None
        try:
            while True:
                frame = await track.recv()
                current = (frame.width, frame.height)
                if current == size:
                    continue
                if size is None:
                    self._timer.log_mark("first_frame")
                size = current
                if self._resolution_callback and not self._closed:
                    self._resolution_callback(*current)
        except MediaStreamError:
            logger.info(f"[{self.role.value}] Remote track ended")

    async def add_track(self, track: MediaStreamTrack, encoding: EncodingParameters) -> None:
        """Send a track, without receiving anything back."""
        pc = self._ensure_pc()
        pc.addTransceiver(track, direction="sendonly")
        if track.kind == "video":
            previous = apply_encoding(encoding)
            if self._saved_bounds is None:
                self._saved_bounds = previous

    async def create_offer(self) -> RTCSessionDescription:
        return await self._ensure_pc().createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        return await self._ensure_pc().createAnswer()

    async def set_local_description(self, description: RTCSessionDescription) -> None:
        """Commit the local description and report gathered candidates."""
        pc = self._ensure_pc()
        await pc.setLocalDescription(description)
        self._timer.log_mark("local_desc_set")
        await self._report_candidates(pc.localDescription.sdp)

    async def set_remote_description(self, description: RTCSessionDescription) -> None:
        await self._ensure_pc().setRemoteDescription(description)
        self._timer.log_mark("remote_desc_set")

    async def _report_candidates(self, local_sdp: str) -> None:
        parsed = sdp.SessionDescription.parse(local_sdp)
        for index, media in enumerate(parsed.media):
            for candidate in media.ice_candidates:
                candidate.sdpMid = media.rtp.muxId
                candidate.sdpMLineIndex = index
                await self._emit(
                    IceCandidate(
                        type=candidate.type,
                        address=candidate.ip,
                        owner=self.role,
                        port=candidate.port,
                        sdp_mid=candidate.sdpMid,
                        sdp_mline_index=index,
                        raw=candidate,
                    )
                )
        self._timer.log_mark("gathering_reported")
        await self._emit(EndOfCandidates(owner=self.role))

    async def _emit(self, event: CandidateEvent) -> None:
        if self._closed or self._candidate_callback is None:
            return
        await self._candidate_callback(event)

    async def add_candidate(self, event: CandidateEvent) -> None:
        """Add a candidate of the other endpoint, or its end-of-candidates."""
        if self._closed:
            return
        pc = self._ensure_pc()
        if isinstance(event, EndOfCandidates):
            await pc.addIceCandidate(None)
            return
        if event.raw is None:
            logger.warning(f"[{self.role.value}] Ignoring candidate without SDP data: {event}")
            return
        await pc.addIceCandidate(event.raw)

    def on_candidate(self, callback: CandidateCallback) -> None:
        """Register callback for gathered local candidates.

        Args:
            callback: Async function called with each candidate event.
        """
        self._candidate_callback = callback

    def on_resolution(self, callback: ResolutionCallback) -> None:
        """Register callback for received video resolution changes.

        Args:
            callback: Function called with (width, height).
        """
        self._resolution_callback = callback

    async def close(self) -> None:
        """Close the endpoint.

        This method is idempotent - calling it multiple times is safe.
        """
        if self._closed:
            return
        self._closed = True
        self._candidate_callback = None
        self._resolution_callback = None

        current = asyncio.current_task()
        consumers = [task for task in self._consumers if task is not current]
        for task in consumers:
            task.cancel()
        if consumers:
            await asyncio.gather(*consumers, return_exceptions=True)

        if self._pc is not None:
            await self._pc.close()
            self._pc = None
        if self._saved_bounds is not None:
            restore_encoding(self._saved_bounds)
            self._saved_bounds = None
        self._timer.log_summary()
        logger.info(f"[{self.role.value}] Endpoint closed")
