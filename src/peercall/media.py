"""Local media capture.

Opens the microphone and camera through aiortc's MediaPlayer (ffmpeg
devices), wraps each source in a switchable track so audio/video can be
muted without renegotiating, and fans the sources out through a MediaRelay
so the peer connection and the caption audio forwarder can both consume
them.
"""

import logging
from collections.abc import Callable
from typing import Any

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from src.peercall.config import MediaConfig
from src.peercall.errors import PermissionDenied

logger = logging.getLogger(__name__)

PlayerFactory = Callable[..., Any]


def silence_like(frame: AudioFrame) -> AudioFrame:
    """Silent audio frame with the same format, layout and timing."""
    samples = np.zeros_like(frame.to_ndarray())
    blank = AudioFrame.from_ndarray(samples, format=frame.format.name, layout=frame.layout.name)
    blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


def black_like(frame: VideoFrame) -> VideoFrame:
    """Black video frame with the same geometry and timing."""
    pixels = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
    blank = VideoFrame.from_ndarray(pixels, format="rgb24")
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Relays a source track, substituting blank frames while disabled.

    Attributes:
        enabled: When False, audio becomes silence and video becomes black.
    """

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = True
        self._source = source

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            return silence_like(frame)
        if isinstance(frame, VideoFrame):
            return black_like(frame)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class PcmEncoder:
    """Converts audio frames to mono 16-bit PCM bytes at a fixed rate."""

    def __init__(self, sample_rate: int = 16000) -> None:
        self.sample_rate = sample_rate
        self._resampler = av.AudioResampler(format="s16", layout="mono", rate=sample_rate)

    def encode(self, frame: AudioFrame) -> bytes:
        return b"".join(
            out.to_ndarray().astype(np.int16).tobytes() for out in self._resampler.resample(frame)
        )


class LocalMedia:
    """Owns the local capture devices for one call.

    acquire() opens devices and returns tracks for the peer connection;
    release() stops everything and is safe to call any number of times.
    """

    def __init__(
        self, config: MediaConfig, player_factory: PlayerFactory | None = None
    ) -> None:
        """Initialize local media.

        Args:
            config: Capture configuration
            player_factory: MediaPlayer-compatible factory (defaults to aiortc's)
        """
        self._config = config
        self._player_factory = player_factory or MediaPlayer
        self._relay = MediaRelay()
        self._players: list[Any] = []
        self._audio: SwitchableTrack | None = None
        self._video: SwitchableTrack | None = None
        self._subscriptions: list[MediaStreamTrack] = []
        self._tracks: list[MediaStreamTrack] = []
        self._acquired = False

    @property
    def is_acquired(self) -> bool:
        return self._acquired

    @property
    def audio_enabled(self) -> bool:
        return self._audio is not None and self._audio.enabled

    @property
    def video_enabled(self) -> bool:
        return self._video is not None and self._video.enabled

    def acquire(self) -> list[MediaStreamTrack]:
        """Open the configured capture devices.

        Returns:
            Tracks to attach to the peer connection

        Raises:
            PermissionDenied: If a requested device cannot be opened
        """
        if self._acquired:
            return list(self._tracks)

        try:
            if self._config.audio:
                player = self._open(self._config.audio_device, self._config.audio_format, {})
                if player.audio is None:
                    raise PermissionDenied(
                        f"No audio stream on device '{self._config.audio_device}'"
                    )
                self._audio = SwitchableTrack(player.audio)

            if self._config.video:
                options = {
                    "video_size": self._config.video_size,
                    "framerate": str(self._config.framerate),
                }
                player = self._open(self._config.video_device, self._config.video_format, options)
                if player.video is None:
                    raise PermissionDenied(
                        f"No video stream on device '{self._config.video_device}'"
                    )
                self._video = SwitchableTrack(player.video)
        except PermissionDenied:
            self.release()
            raise

        self._acquired = True
        logger.info(
            "Local media acquired",
            extra={"audio": self._audio is not None, "video": self._video is not None},
        )
        self._tracks = self._subscribe_tracks()
        return list(self._tracks)

    def _open(self, device: str, fmt: str, options: dict[str, str]) -> Any:
        try:
            player = self._player_factory(device, format=fmt, options=options)
        except (OSError, FFmpegError) as e:
            logger.error(
                "Failed to open capture device",
                extra={"device": device, "format": fmt, "error": str(e)},
            )
            raise PermissionDenied(f"Cannot open capture device '{device}': {e}") from e
        self._players.append(player)
        return player

    def _subscribe_tracks(self) -> list[MediaStreamTrack]:
        """Relay subscriptions of the local tracks, one per kind."""
        tracks = []
        for source in (self._audio, self._video):
            if source is not None:
                subscription = self._relay.subscribe(source)
                self._subscriptions.append(subscription)
                tracks.append(subscription)
        return tracks

    def subscribe_audio(self) -> MediaStreamTrack | None:
        """Additional consumer of the local audio (e.g. caption forwarding)."""
        if self._audio is None:
            return None
        subscription = self._relay.subscribe(self._audio)
        self._subscriptions.append(subscription)
        return subscription

    def set_audio_enabled(self, enabled: bool) -> None:
        if self._audio is None:
            logger.debug("No local audio to toggle")
            return
        self._audio.enabled = enabled
        logger.info("Local audio toggled", extra={"enabled": enabled})

    def set_video_enabled(self, enabled: bool) -> None:
        if self._video is None:
            logger.debug("No local video to toggle")
            return
        self._video.enabled = enabled
        logger.info("Local video toggled", extra={"enabled": enabled})

    def release(self) -> None:
        """Stop every track and device. Idempotent."""
        if not self._players and self._audio is None and self._video is None:
            return

        for track in self._subscriptions:
            track.stop()
        for source in (self._audio, self._video):
            if source is not None:
                source.stop()

        self._subscriptions.clear()
        self._tracks.clear()
        self._players.clear()
        self._audio = None
        self._video = None
        self._acquired = False
        logger.info("Local media released")
