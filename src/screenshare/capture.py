"""Screen capture source.

Opens the display through FFmpeg (x11grab, avfoundation or gdigrab) and
hands out a video track scaled down to the requested height.
"""

import logging
from typing import Callable

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import VideoFrame
from av.error import FFmpegError

from screenshare.errors import MediaAcquisitionError

logger = logging.getLogger(__name__)


class ScaledVideoTrack(MediaStreamTrack):
    """Video track that scales frames down to an ideal height.

    Frames at or below the ideal height pass through untouched. The width
    follows the source aspect ratio, rounded to an even number for the
    encoder.
    """

    kind = "video"

    def __init__(self, source: MediaStreamTrack, height: int):
        super().__init__()
        self._source = source
        self._height = height

    @property
    def height(self) -> int:
        return self._height

    async def recv(self) -> VideoFrame:
        frame = await self._source.recv()
        if frame.height <= self._height:
            return frame

        width = max(2, round(frame.width * self._height / frame.height / 2) * 2)
        scaled = frame.reformat(width=width, height=self._height)
        scaled.pts = frame.pts
        scaled.time_base = frame.time_base
        return scaled

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class ScreenCapture:
    """Capture source backed by aiortc's MediaPlayer."""

    def __init__(
        self,
        display: str,
        format: str,
        player_factory: Callable[..., MediaPlayer] | None = None,
    ):
        """Initialize capture source.

        Args:
            display: FFmpeg input (":0.0", "desktop", "1:none", ...).
            format: FFmpeg input format ("x11grab", "gdigrab", "avfoundation").
            player_factory: Factory to create MediaPlayer (for testing).
        """
        self._display = display
        self._format = format
        self._player_factory = player_factory or MediaPlayer
        self._track: ScaledVideoTrack | None = None

    @property
    def track(self) -> ScaledVideoTrack | None:
        return self._track

    async def acquire(self, height: int, frame_rate: int) -> MediaStreamTrack:
        """Open the display.

        Args:
            height: Ideal frame height in pixels.
            frame_rate: Ideal frame rate.

        Returns:
            Video track of the display.

        Raises:
            MediaAcquisitionError: If the display cannot be opened or has no video.
        """
        options = {"framerate": str(frame_rate)}
        try:
            player = self._player_factory(self._display, format=self._format, options=options)
        except (FFmpegError, OSError) as e:
            raise MediaAcquisitionError(
                f"Cannot open display {self._display!r} ({self._format}): {e}"
            ) from e

        if player.video is None:
            if player.audio is not None:
                player.audio.stop()
            raise MediaAcquisitionError(f"Display {self._display!r} provides no video")

        self._track = ScaledVideoTrack(player.video, height)
        logger.info(
            f"Capturing {self._display} via {self._format} "
            f"(height <= {height} pix, {frame_rate} fps)"
        )
        return self._track

    async def release(self) -> None:
        """Stop capturing. Safe to call more than once."""
        if self._track is None:
            return
        self._track.stop()
        self._track = None
        logger.info("Capture released")
