"""Local capture streams.

``MediaAcquisition`` owns whatever it captured until ``cleanup()`` releases it.
Results that land after a cleanup or a profile change are stopped on arrival.
"""

from __future__ import annotations

import asyncio
import errno
import functools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from peerline.core.config import settings
from peerline.core.errors import MediaError, MediaErrorKind
from peerline.core.telemetry import log_event


@dataclass(frozen=True)
class MediaProfile:
    audio: bool = False
    video: bool = False

    @property
    def any(self) -> bool:
        return self.audio or self.video


class MutableAudioTrack(MediaStreamTrack):
    """Pass-through audio track that emits silence while disabled."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.enabled = True

    async def recv(self):  # type: ignore[override]
        frame = await self._source.recv()
        if self.enabled or not isinstance(frame, av.AudioFrame):
            return frame
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()


@dataclass
class LocalMediaStream:
    tracks: List[Any] = field(default_factory=list)
    stopped: bool = False

    @property
    def audio_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "audio"]

    @property
    def video_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "video"]

    def set_audio_enabled(self, enabled: bool) -> None:
        for track in self.audio_tracks:
            track.enabled = enabled

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()


CaptureFactory = Callable[[MediaProfile], Awaitable[LocalMediaStream]]


def classify_media_error(exc: BaseException) -> MediaError:
    if isinstance(exc, MediaError):
        return exc
    if isinstance(exc, PermissionError):
        kind = MediaErrorKind.PERMISSION_DENIED
    elif isinstance(exc, FileNotFoundError):
        kind = MediaErrorKind.NO_DEVICE
    elif isinstance(exc, (InterruptedError, TimeoutError)):
        kind = MediaErrorKind.ABORTED
    elif isinstance(exc, OSError) and exc.errno == errno.EBUSY:
        kind = MediaErrorKind.DEVICE_BUSY
    elif isinstance(exc, OSError) and exc.errno in (errno.ENODEV, errno.ENXIO):
        kind = MediaErrorKind.NO_DEVICE
    elif isinstance(exc, OSError) and exc.errno in (errno.EACCES, errno.EPERM):
        kind = MediaErrorKind.PERMISSION_DENIED
    elif isinstance(exc, ValueError) and getattr(exc, "errno", None) == errno.EINVAL:
        # PyAV rejected a device option (size, rate, channel layout)
        kind = MediaErrorKind.CONSTRAINTS_UNSATISFIABLE
    elif isinstance(exc, (ValueError, NotImplementedError, ImportError)):
        # unknown input format or backend not compiled in
        kind = MediaErrorKind.UNSUPPORTED
    else:
        kind = MediaErrorKind.OTHER
    return MediaError(kind)


def _open_players(profile: MediaProfile) -> LocalMediaStream:
    tracks: List[Any] = []
    try:
        if profile.audio:
            player = MediaPlayer(settings.AUDIO_DEVICE, format=settings.AUDIO_FORMAT)
            if player.audio is None:
                raise MediaError(MediaErrorKind.NO_DEVICE)
            tracks.append(MutableAudioTrack(player.audio))
        if profile.video:
            player = MediaPlayer(
                settings.VIDEO_DEVICE,
                format=settings.VIDEO_FORMAT,
                options={"video_size": settings.VIDEO_SIZE},
            )
            if player.video is None:
                raise MediaError(MediaErrorKind.NO_DEVICE)
            tracks.append(player.video)
    except BaseException:
        for track in tracks:
            track.stop()
        raise
    return LocalMediaStream(tracks=tracks)


async def open_capture_stream(profile: MediaProfile) -> LocalMediaStream:
    return await asyncio.to_thread(_open_players, profile)


class MediaAcquisition:
    def __init__(self, capture: Optional[CaptureFactory] = None) -> None:
        self._capture = capture or open_capture_stream
        self._profile = MediaProfile()
        self._stream: Optional[LocalMediaStream] = None
        self._pending: Optional[asyncio.Task] = None
        self._generation = 0
        self._acquired: List[LocalMediaStream] = []
        self._audio_enabled = True
        self.error: Optional[MediaError] = None

    @property
    def stream(self) -> Optional[LocalMediaStream]:
        return self._stream

    @property
    def acquiring(self) -> bool:
        return self._pending is not None

    @property
    def profile(self) -> MediaProfile:
        return self._profile

    async def acquire(self, *, audio: bool, video: bool) -> Optional[LocalMediaStream]:
        profile = MediaProfile(audio=audio, video=video)
        if not profile.any:
            self._release()
            self._profile = profile
            self.error = None
            return None

        if profile == self._profile:
            if self._stream is not None:
                return self._stream
            if self._pending is not None:
                return await self._wait(self._pending, self._generation)

        self._release()
        self._profile = profile
        self.error = None
        generation = self._generation
        task = asyncio.ensure_future(self._capture(profile))
        task.add_done_callback(functools.partial(self._on_capture_done, generation, profile))
        self._pending = task
        log_event("media", "acquire_start", details={"audio": audio, "video": video})
        return await self._wait(task, generation)

    async def _wait(self, task: asyncio.Task, generation: int) -> Optional[LocalMediaStream]:
        try:
            stream = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise MediaError(MediaErrorKind.ABORTED)
            raise
        except Exception as exc:
            raise classify_media_error(exc) from exc
        if generation != self._generation:
            return None
        return stream

    def _on_capture_done(self, generation: int, profile: MediaProfile, task: asyncio.Task) -> None:
        if task is self._pending:
            self._pending = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            error = classify_media_error(exc)
            log_event(
                "media",
                "acquire_failed",
                status="warning",
                details={"kind": error.media_kind.value, "error": type(exc).__name__},
            )
            if generation == self._generation:
                self.error = error
            return

        stream = task.result()
        self._acquired.append(stream)
        if generation != self._generation:
            stream.stop()
            log_event("media", "late_stream_discarded", details={"tracks": len(stream.tracks)})
            return
        self._stream = stream
        stream.set_audio_enabled(self._audio_enabled)
        log_event(
            "media",
            "acquire_done",
            details={"audio": profile.audio, "video": profile.video, "tracks": len(stream.tracks)},
        )

    def set_audio_enabled(self, enabled: bool) -> None:
        self._audio_enabled = enabled
        if self._stream is not None:
            self._stream.set_audio_enabled(enabled)

    def _release(self) -> None:
        self._generation += 1
        self._pending = None
        if self._stream is not None:
            self._stream.stop()
            self._stream = None

    def cleanup(self) -> None:
        self._release()
        for stream in self._acquired:
            stream.stop()
        self._acquired.clear()
        self._profile = MediaProfile()
        self._audio_enabled = True
        self.error = None
        log_event("media", "cleanup")
