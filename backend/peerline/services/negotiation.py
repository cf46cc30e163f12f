from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from peerline.core.config import settings
from peerline.core.errors import NegotiationError
from peerline.core.telemetry import log_event, timed_step
from peerline.services.media import LocalMediaStream


@dataclass
class RemoteMediaStream:
    """All inbound tracks of one peer connection, merged into one handle."""

    tracks: List[Any] = field(default_factory=list)

    def add_track(self, track: Any) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    @property
    def audio_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "audio"]

    @property
    def video_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "video"]


RemoteStreamCallback = Callable[[RemoteMediaStream], Union[None, Awaitable[None]]]


def create_peer_connection(ice_servers: Optional[List[str]] = None) -> RTCPeerConnection:
    urls = list(ice_servers if ice_servers is not None else settings.ICE_SERVERS)
    configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])
    return RTCPeerConnection(configuration=configuration)


class NegotiationEngine:
    """Produce and apply session descriptors for one peer connection.

    Store-based signaling carries no incremental candidates, so every local
    descriptor is only handed out after address gathering finished or the
    gathering timeout elapsed, whichever comes first.
    """

    def __init__(
        self,
        *,
        call_id: Optional[str] = None,
        peer_connection: Any = None,
        gathering_timeout: Optional[float] = None,
        on_remote_stream: Optional[RemoteStreamCallback] = None,
    ) -> None:
        self.call_id = call_id
        self._pc = peer_connection if peer_connection is not None else create_peer_connection()
        self._gathering_timeout = (
            gathering_timeout if gathering_timeout is not None else settings.ICE_GATHERING_TIMEOUT_SECONDS
        )
        self._on_remote_stream = on_remote_stream
        self._remote_stream = RemoteMediaStream()
        self._remote_announced = False
        self._gathering_tasks: List[asyncio.Task] = []
        self._close_task: Optional[asyncio.Task] = None
        self._closed = False

        self._pc.on("track", self._handle_track)
        self._pc.on("iceconnectionstatechange", self._log_ice_state)
        self._pc.on("connectionstatechange", self._log_connection_state)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_stream(self) -> Optional[RemoteMediaStream]:
        return self._remote_stream if self._remote_announced else None

    def _log_ice_state(self) -> None:
        log_event("negotiation", "ice_state", call_id=self.call_id, details={"state": self._pc.iceConnectionState})

    def _log_connection_state(self) -> None:
        log_event("negotiation", "connection_state", call_id=self.call_id, details={"state": self._pc.connectionState})

    def _handle_track(self, track: Any) -> None:
        self._remote_stream.add_track(track)
        log_event("negotiation", "remote_track", call_id=self.call_id, details={"kind": track.kind})
        if self._remote_announced:
            return
        self._remote_announced = True
        if self._on_remote_stream is None:
            return
        result = self._on_remote_stream(self._remote_stream)
        if asyncio.iscoroutine(result):
            asyncio.ensure_future(result)

    def attach_stream(self, stream: Optional[LocalMediaStream]) -> None:
        if stream is None:
            return
        for track in stream.tracks:
            self._pc.addTrack(track)

    def _ensure_open(self) -> None:
        if self._closed:
            raise NegotiationError("Connection was closed before negotiation finished.")

    async def _set_local_and_gather(self, description: Any) -> str:
        """Apply the local description, waiting at most the gathering timeout."""
        task = asyncio.ensure_future(self._pc.setLocalDescription(description))
        self._gathering_tasks.append(task)
        done, _ = await asyncio.wait({task}, timeout=self._gathering_timeout)
        if task in done:
            if task in self._gathering_tasks:
                self._gathering_tasks.remove(task)
            if task.cancelled():
                raise NegotiationError("Connection was closed before negotiation finished.")
            exc = task.exception()
            if exc is not None:
                raise NegotiationError("Local session description was rejected.") from exc
        else:
            # Keep gathering in the background; close() cancels it.
            task.add_done_callback(self._finish_late_gathering)
            log_event(
                "negotiation",
                "gathering_timeout",
                status="warning",
                call_id=self.call_id,
                details={"timeout_s": self._gathering_timeout},
            )
        local = self._pc.localDescription
        return local.sdp if local is not None else description.sdp

    def _finish_late_gathering(self, task: asyncio.Task) -> None:
        if task in self._gathering_tasks:
            self._gathering_tasks.remove(task)
        if task.cancelled():
            return
        exc = task.exception()
        log_event(
            "negotiation",
            "late_gathering_done",
            status="warning" if exc else "ok",
            call_id=self.call_id,
            details={"error": f"{type(exc).__name__}: {exc}"} if exc else None,
        )

    async def create_offer(self) -> str:
        self._ensure_open()
        with timed_step("negotiation", "create_offer", call_id=self.call_id):
            try:
                offer = await self._pc.createOffer()
            except Exception as exc:
                raise NegotiationError("Could not create a call offer.") from exc
            return await self._set_local_and_gather(offer)

    async def create_answer(self, offer_sdp: str) -> str:
        self._ensure_open()
        if not offer_sdp:
            raise NegotiationError("No offer available in call session.")
        with timed_step("negotiation", "create_answer", call_id=self.call_id):
            try:
                await self._pc.setRemoteDescription(RTCSessionDescription(sdp=offer_sdp, type="offer"))
            except Exception as exc:
                raise NegotiationError("The caller's offer could not be applied.") from exc
            try:
                answer = await self._pc.createAnswer()
            except Exception as exc:
                raise NegotiationError("Could not create a call answer.") from exc
            return await self._set_local_and_gather(answer)

    async def set_remote_answer(self, answer_sdp: str) -> bool:
        """Apply the callee's answer; returns False when it was not applicable."""
        if self._closed or self._pc.signalingState != "have-local-offer":
            log_event(
                "negotiation",
                "remote_answer_ignored",
                call_id=self.call_id,
                details={"signaling_state": "closed" if self._closed else self._pc.signalingState},
            )
            return False
        with timed_step("negotiation", "set_remote_answer", call_id=self.call_id):
            try:
                await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
            except Exception as exc:
                raise NegotiationError("The callee's answer could not be applied.") from exc
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for task in self._gathering_tasks:
            task.cancel()
        self._gathering_tasks.clear()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._pc.close())
        else:
            self._close_task = loop.create_task(self._pc.close())
        log_event("negotiation", "close", call_id=self.call_id)

    async def wait_closed(self) -> None:
        if self._close_task is not None:
            await self._close_task
