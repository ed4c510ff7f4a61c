"""Screen-sharing session.

Drives the offer/answer exchange between the local (sending) and remote
(receiving) endpoints, both living in this process, and relays their
connectivity candidates under a relay-only admission policy.

State machine:

    IDLE -> OFFERING -> ANSWERING -> CONNECTING -> CONNECTED
      any non-terminal state -> FAILED
      any state -> IDLE (stop)
"""

import asyncio
import logging
from functools import partial
from typing import Callable

from aiortc import RTCSessionDescription

from screenshare.capture import ScreenCapture
from screenshare.config import Config, IceServerConfig, validate_config
from screenshare.errors import (
    MediaAcquisitionError,
    NegotiationError,
    RelayUnreachableError,
    SessionStateError,
    ShareError,
)
from screenshare.latency import LatencyPoller, ZeroLatencyProbe
from screenshare.peer import PeerEndpoint
from screenshare.protocols import (
    CandidateEvent,
    CaptureSource,
    EncodingParameters,
    EndOfCandidates,
    Endpoint,
    EndpointRole,
    LatencyProbe,
    SessionState,
)
from screenshare.sdp_filter import POLICIES, CodecPolicy, apply_policy

logger = logging.getLogger(__name__)

EndpointFactory = Callable[[EndpointRole, list[IceServerConfig]], Endpoint]

VALID_TRANSITIONS = {
    SessionState.IDLE: {SessionState.OFFERING},
    SessionState.OFFERING: {SessionState.ANSWERING, SessionState.FAILED, SessionState.IDLE},
    SessionState.ANSWERING: {SessionState.CONNECTING, SessionState.FAILED, SessionState.IDLE},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.FAILED, SessionState.IDLE},
    SessionState.CONNECTED: {SessionState.FAILED, SessionState.IDLE},
    SessionState.FAILED: {SessionState.OFFERING, SessionState.IDLE},
}

ACTIVE_STATES = {
    SessionState.OFFERING,
    SessionState.ANSWERING,
    SessionState.CONNECTING,
    SessionState.CONNECTED,
}

RELAY_UNREACHABLE_MESSAGE = (
    "Failed to gather relay candidates, STUN/TURN is misconfigured or down"
)


class ShareSession:
    """A screen-sharing session between two in-process endpoints."""

    def __init__(
        self,
        config: Config,
        capture: CaptureSource | None = None,
        endpoint_factory: EndpointFactory | None = None,
        policy: CodecPolicy | None = None,
        latency_probe: LatencyProbe | None = None,
    ):
        """Initialize session.

        Args:
            config: Session configuration.
            capture: Capture source (defaults to the configured display).
            endpoint_factory: Creates an endpoint for a role (for testing).
            policy: Codec policy applied to the offer (defaults to config.policy).
            latency_probe: Latency measurement hook.
        """
        self.config = config
        self._capture = capture or ScreenCapture(config.capture.display, config.capture.format)
        self._endpoint_factory = endpoint_factory or PeerEndpoint
        self.policy = policy or POLICIES.get(config.policy)
        self._latency_probe = latency_probe or ZeroLatencyProbe()

        self._state = SessionState.IDLE
        self._failure: ShareError | None = None
        self._generation = 0
        self._local: Endpoint | None = None
        self._remote: Endpoint | None = None
        self._poller: LatencyPoller | None = None
        self._relay_admitted = False
        self._pending: list[tuple[Endpoint, CandidateEvent]] = []
        self._finished = asyncio.Event()

        self.latency_ms: float | None = None
        self.resolution: tuple[int, int] | None = None

        self._state_callbacks: list[Callable[[SessionState], None]] = []
        self._latency_callback: Callable[[float], None] | None = None

    @property
    def state(self) -> SessionState:
        """Current session state."""
        return self._state

    @property
    def failure(self) -> ShareError | None:
        """Cause of the last failure, if any."""
        return self._failure

    @property
    def relay_admitted(self) -> bool:
        """Whether a relay candidate has been passed to a peer."""
        return self._relay_admitted

    def on_state_change(self, callback: Callable[[SessionState], None]) -> None:
        """Register callback for state changes."""
        self._state_callbacks.append(callback)

    def on_latency(self, callback: Callable[[float], None]) -> None:
        """Register callback for latency measurements (milliseconds)."""
        self._latency_callback = callback

    async def wait_finished(self) -> ShareError | None:
        """Wait until the session fails or is stopped.

        Returns:
            The failure, or None if the session was stopped.
        """
        await self._finished.wait()
        return self._failure

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise SessionStateError(
                f"Invalid transition: {self._state.value} -> {new_state.value}"
            )
        logger.info(f"Session state: {self._state.value} -> {new_state.value}")
        self._state = new_state
        for callback in self._state_callbacks:
            callback(new_state)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state in ACTIVE_STATES

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start sharing.

        Returns once both descriptions are committed and candidate exchange
        has begun. Relay failures after that point are reported through
        `failure` and `wait_finished()`.

        Raises:
            SessionStateError: If the session is already running.
            ConfigurationError: If the TURN server is not configured.
            MediaAcquisitionError: If the screen cannot be captured.
            NegotiationError: If the offer/answer exchange fails.
        """
        if self._state not in (SessionState.IDLE, SessionState.FAILED):
            raise SessionStateError(f"Cannot start in state {self._state.value}")
        validate_config(self.config)

        self._generation += 1
        generation = self._generation
        self._failure = None
        self._finished.clear()
        self._relay_admitted = False
        self._pending = []
        self.latency_ms = None
        self.resolution = None
        self._transition(SessionState.OFFERING)

        capture = self.config.capture
        try:
            track = await self._capture.acquire(capture.height, capture.frame_rate)
        except MediaAcquisitionError as e:
            if self._is_current(generation):
                await self._fail(e)
            raise
        if not self._is_current(generation):
            await self._capture.release()
            return

        try:
            await self._negotiate(generation, track)
        except Exception as e:
            if not self._is_current(generation):
                logger.debug(f"Ignoring error from stopped session: {e}")
                return
            if isinstance(e, ShareError):
                await self._fail(e)
                raise
            error = NegotiationError(f"Negotiation failed: {e}")
            await self._fail(error)
            raise error from e

    async def _negotiate(self, generation: int, track) -> None:
        ice_servers = self.config.ice_servers()
        local = self._local = self._endpoint_factory(EndpointRole.LOCAL, ice_servers)
        remote = self._remote = self._endpoint_factory(EndpointRole.REMOTE, ice_servers)
        local.on_candidate(partial(self._on_candidate, local))
        remote.on_candidate(partial(self._on_candidate, remote))
        remote.on_resolution(partial(self._on_resolution, remote))

        await local.add_track(track, EncodingParameters.for_bitrate(self.config.capture.bitrate))

        offer = await local.create_offer()
        if not self._is_current(generation):
            return
        offer = RTCSessionDescription(sdp=apply_policy(offer.sdp, self.policy), type=offer.type)
        await local.set_local_description(offer)
        if not self._is_current(generation):
            return
        self._transition(SessionState.ANSWERING)

        await remote.set_remote_description(offer)
        if not self._is_current(generation):
            return
        answer = await remote.create_answer()
        if not self._is_current(generation):
            return
        await remote.set_local_description(answer)
        if not self._is_current(generation):
            return
        await local.set_remote_description(answer)
        if not self._is_current(generation):
            return
        self._transition(SessionState.CONNECTING)

        self._poller = LatencyPoller(
            self._latency_probe, self._on_latency, self.config.latency_interval
        )
        self._poller.start()
        await self._flush_pending(generation)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def _owns(self, endpoint: Endpoint) -> bool:
        return endpoint is self._local or endpoint is self._remote

    async def _on_candidate(self, source: Endpoint, event: CandidateEvent) -> None:
        if not self._owns(source):
            return
        if self._state in (SessionState.OFFERING, SessionState.ANSWERING):
            # The peer has no remote description yet.
            self._pending.append((source, event))
            return
        if self._state in (SessionState.CONNECTING, SessionState.CONNECTED):
            await self._admit(source, event)

    async def _flush_pending(self, generation: int) -> None:
        pending, self._pending = self._pending, []
        for source, event in pending:
            if not self._is_current(generation) or not self._owns(source):
                return
            await self._admit(source, event)

    async def _admit(self, source: Endpoint, event: CandidateEvent) -> None:
        """Pass relay candidates and end-of-candidates to the other endpoint."""
        destination = self._remote if source is self._local else self._local
        tag = f"ICE {source.role.value} -> {destination.role.value}"
        generation = self._generation

        if isinstance(event, EndOfCandidates):
            logger.info(f"[{tag}] done gathering candidates")
            if not await self._forward(destination, event, generation):
                return
            if not self._relay_admitted:
                await self._fail(RelayUnreachableError(RELAY_UNREACHABLE_MESSAGE))
            return

        if not event.is_relay:
            logger.debug(f"[{tag}] suppressed {event.type} / {event.address}")
            return

        self._relay_admitted = True
        logger.info(f"[{tag}] {event.type} / {event.address}")
        await self._forward(destination, event, generation)

    async def _forward(self, destination: Endpoint, event: CandidateEvent, generation: int) -> bool:
        try:
            await destination.add_candidate(event)
        except Exception as e:
            if self._is_current(generation):
                await self._fail(NegotiationError(f"Adding candidate failed: {e}"))
            return False
        return self._is_current(generation)

    # ------------------------------------------------------------------
    # Stream and measurement events
    # ------------------------------------------------------------------

    def _on_resolution(self, source: Endpoint, width: int, height: int) -> None:
        if not self._owns(source):
            return
        self.resolution = (width, height)
        logger.info(f"Resolution changed: {width}x{height}")
        if self._state is SessionState.CONNECTING:
            self._transition(SessionState.CONNECTED)

    def _on_latency(self, latency_ms: float) -> None:
        self.latency_ms = latency_ms
        logger.debug(f"Latency: {latency_ms:.0f}ms")
        if self._latency_callback:
            self._latency_callback(latency_ms)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _fail(self, error: ShareError) -> None:
        if self._state not in ACTIVE_STATES:
            return
        logger.error(f"Session failed: {error}")
        self._failure = error
        self._transition(SessionState.FAILED)
        await self._teardown()
        self._finished.set()

    async def _teardown(self) -> None:
        """Release everything the session holds. Idempotent."""
        self._generation += 1
        local, remote, poller = self._local, self._remote, self._poller
        self._local = self._remote = self._poller = None
        self._pending = []
        self._relay_admitted = False

        if poller is not None:
            await poller.stop()
        for endpoint in (local, remote):
            if endpoint is None:
                continue
            try:
                await endpoint.close()
            except Exception as e:
                logger.warning(f"Error closing {endpoint.role.value} endpoint: {e}")
        await self._capture.release()

    async def stop(self) -> None:
        """Stop sharing and return to IDLE.

        This method is idempotent - calling it multiple times is safe.
        """
        await self._teardown()
        if self._state is not SessionState.IDLE:
            self._transition(SessionState.IDLE)
        self._finished.set()
