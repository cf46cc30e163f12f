from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Union

from peerline.core.config import settings
from peerline.core.errors import (
    CallSetupError,
    IdentityRequired,
    InvalidTransition,
    CallNotFound,
    MediaError,
    NegotiationError,
    NoIncomingCall,
    PeerlineError,
    SignalingFetchError,
    StoreInconsistency,
)
from peerline.core.telemetry import forget_call, log_event, timed_step
from peerline.models.schemas import (
    TERMINAL_STATUSES,
    CallKind,
    CallSnapshot,
    CallStateView,
    CallStatus,
    ClientEvent,
    DiagnosticError,
    IncomingCallPrompt,
)
from peerline.services.call_controller import CallSessionController, LocalCallView
from peerline.services.media import MediaAcquisition
from peerline.services.negotiation import NegotiationEngine, RemoteMediaStream
from peerline.services.pollers import IncomingCallWatcher, SignalingPoller
from peerline.services.session_store import CallSessionStore
from peerline.services.ws_manager import ConnectionManager


CLIENT_TOPIC = "client"

DirectoryLookup = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]
EngineFactory = Callable[..., NegotiationEngine]


@dataclass
class RemoteEvent:
    """One observation from a poller, queued for serialized handling."""

    kind: str
    call_id: str
    snapshot: Optional[CallSnapshot] = None
    error: Optional[PeerlineError] = None
    reason: Optional[str] = None


class CallOrchestrator:
    """Reconcile local call commands with the polled session store.

    User commands mutate the controller synchronously. Everything the pollers
    observe is queued as a ``RemoteEvent`` and handled one at a time, and events
    for a call id that is no longer the active one are dropped.
    """

    def __init__(
        self,
        store: CallSessionStore,
        *,
        self_id: Optional[str] = None,
        controller: Optional[CallSessionController] = None,
        media: Optional[MediaAcquisition] = None,
        ws_manager: Optional[ConnectionManager] = None,
        directory: Optional[DirectoryLookup] = None,
        engine_factory: Optional[EngineFactory] = None,
        poll_interval: Optional[float] = None,
        incoming_interval: Optional[float] = None,
        max_fetch_failures: Optional[int] = None,
    ) -> None:
        self._store = store
        self._self_id = self_id if self_id is not None else settings.LOCAL_IDENTITY
        self._controller = controller or CallSessionController()
        self._media = media or MediaAcquisition()
        self._ws = ws_manager
        self._directory = directory
        self._engine_factory = engine_factory or NegotiationEngine

        self._events: "asyncio.Queue[RemoteEvent]" = asyncio.Queue()
        self._poller = SignalingPoller(
            store,
            interval=poll_interval,
            max_failures=max_fetch_failures,
            on_status=lambda snapshot: self._enqueue(RemoteEvent("status", snapshot.id, snapshot=snapshot)),
            on_answer=lambda snapshot: self._enqueue(RemoteEvent("answer", snapshot.id, snapshot=snapshot)),
            on_missing=lambda call_id: self._enqueue(RemoteEvent("missing", call_id)),
            on_error=lambda error: self._enqueue(RemoteEvent("fetch_error", self._poller.call_id, error=error)),
        )
        self._watcher = IncomingCallWatcher(
            store,
            self_id=self._self_id,
            interval=incoming_interval,
            max_failures=max_fetch_failures,
            on_incoming=lambda snapshot: self._enqueue(RemoteEvent("incoming", snapshot.id, snapshot=snapshot)),
            on_dismissed=lambda call_id, reason: self._enqueue(RemoteEvent("incoming_dismissed", call_id, reason=reason)),
            on_error=lambda error: self._enqueue(RemoteEvent("incoming_error", "", error=error)),
        )

        self._diagnostic: Optional[DiagnosticError] = None
        self._has_remote_media = False
        self._outbound_ran: Set[int] = set()
        self._outbound_tasks: Dict[int, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._names: Dict[str, str] = {}
        self.notices: Deque[Dict[str, Any]] = deque(maxlen=50)

        self._controller.subscribe(self._on_view_changed)

    # ------------------------------------------------------------------ #
    #  Observable state                                                    #
    # ------------------------------------------------------------------ #

    @property
    def controller(self) -> CallSessionController:
        return self._controller

    @property
    def media(self) -> MediaAcquisition:
        return self._media

    @property
    def poller(self) -> SignalingPoller:
        return self._poller

    @property
    def watcher(self) -> IncomingCallWatcher:
        return self._watcher

    @property
    def self_id(self) -> str:
        return self._self_id

    @property
    def remote_stream(self) -> Optional[RemoteMediaStream]:
        engine = self._controller.negotiation
        return engine.remote_stream if engine is not None else None

    def state(self) -> CallStateView:
        view = self._controller.view
        if view is None:
            return CallStateView()
        poll_error = self._poller.error
        return CallStateView(
            has_active_call=True,
            status=view.status,
            direction=view.direction,
            minimized=view.minimized,
            muted=view.muted,
            diagnostic_error=self._diagnostic,
            call_id=view.id or None,
            call_id_assigned=bool(view.id),
            kind=view.kind,
            peer_id=view.peer_id,
            peer_name=view.peer_name,
            acquiring=self._media.acquiring,
            signaling_error=poll_error.detail if poll_error else None,
            media_error=self._media.error.detail if self._media.error else None,
            has_remote_media=self._has_remote_media,
        )

    async def incoming_prompt(self) -> Optional[IncomingCallPrompt]:
        current = self._watcher.current
        if current is None:
            return None
        return await self._prompt_for(current)

    async def _prompt_for(self, snapshot: CallSnapshot) -> IncomingCallPrompt:
        return IncomingCallPrompt(
            call_id=snapshot.id,
            caller_id=snapshot.caller,
            caller_name=await self._resolve_name(snapshot.caller),
            kind=snapshot.kind,
        )

    async def _resolve_name(self, identity: str) -> str:
        if identity in self._names:
            return self._names[identity]
        name: Optional[str] = None
        if self._directory is not None:
            try:
                result = self._directory(identity)
                name = await result if asyncio.iscoroutine(result) else result
            except Exception as exc:
                log_event(
                    "orchestrator",
                    "directory_lookup_failed",
                    status="warning",
                    peer_id=identity,
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
        if name:
            self._names[identity] = name
        return name or identity

    # ------------------------------------------------------------------ #
    #  Lifecycle                                                           #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.ensure_future(self._dispatch_loop())
        self._watcher.start()
        log_event("orchestrator", "start", peer_id=self._self_id or None)

    async def shutdown(self) -> None:
        self._watcher.stop()
        self._end_local(push_remote=True, reason="shutdown")
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            self._dispatch_task = None
        await self.flush()
        log_event("orchestrator", "shutdown", peer_id=self._self_id or None)

    def set_identity(self, self_id: str) -> None:
        self._self_id = self_id
        self._watcher.set_identity(self_id)
        if self._dispatch_task is not None:
            self._watcher.start()

    async def flush(self) -> None:
        """Wait for in-flight call setup and best-effort store writes."""
        while True:
            pending = [task for task in (*self._outbound_tasks.values(), *self._background) if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Awaitable[Any]) -> Optional[asyncio.Task]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            coro.close()  # type: ignore[attr-defined]
            return None
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ------------------------------------------------------------------ #
    #  Publishing to the presentation layer                                #
    # ------------------------------------------------------------------ #

    async def _publish(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._ws is None:
            return
        event = ClientEvent(type=event_type, data=data)  # type: ignore[arg-type]
        await self._ws.broadcast(CLIENT_TOPIC, event.model_dump(mode="json"))

    def _notice(self, level: str, message: str, *, call_id: Optional[str] = None) -> None:
        notice = {"level": level, "message": message, "call_id": call_id}
        self.notices.append(notice)
        self._spawn(self._publish("notice", notice))

    def _on_view_changed(self, _view: Optional[LocalCallView]) -> None:
        self._publish_state()

    def _publish_state(self) -> None:
        if self._ws is None:
            return
        self._spawn(self._publish("call_state", self.state().model_dump(mode="json")))

    # ------------------------------------------------------------------ #
    #  Local commands                                                      #
    # ------------------------------------------------------------------ #

    def _superseded(self, generation: int) -> bool:
        return generation != self._controller.generation

    def _end_local(self, *, push_remote: bool, reason: str) -> None:
        view = self._controller.view
        self._poller.stop()
        self._poller.set_call_id(None)
        self._media.cleanup()
        self._diagnostic = None
        self._has_remote_media = False
        if view is None:
            return
        self._controller.end()
        log_event(
            "orchestrator",
            "call_closed",
            call_id=view.id or None,
            peer_id=view.peer_id,
            details={"reason": reason, "call_status": view.status, "direction": view.direction},
        )
        if push_remote and view.id and view.status not in TERMINAL_STATUSES:
            self._spawn(self._push_status(view.id, "ended"))
        if view.id:
            forget_call(view.id)

    async def _push_status(self, call_id: str, status: CallStatus) -> bool:
        try:
            await self._store.update_status(call_id, status)
        except PeerlineError as exc:
            log_event(
                "orchestrator",
                "push_status_failed",
                status="warning",
                call_id=call_id,
                details={"call_status": status, "error": exc.detail, "kind": exc.kind},
            )
            return False
        return True

    def start_call(self, peer_id: str, kind: CallKind, *, peer_name: Optional[str] = None) -> CallStateView:
        if not self._self_id:
            raise IdentityRequired()
        self._end_local(push_remote=True, reason="superseded")
        self._controller.start(peer_id, kind, peer_name=peer_name)
        self.ensure_outbound()
        return self.state()

    def ensure_outbound(self) -> Optional[asyncio.Task]:
        """Run outbound setup for the active call unless it already ran."""
        view = self._controller.view
        generation = self._controller.generation
        if view is None or view.direction != "outgoing" or view.id or generation in self._outbound_ran:
            return None
        self._outbound_ran.add(generation)
        task = asyncio.ensure_future(self._run_outbound(generation, view))
        self._outbound_tasks[generation] = task
        task.add_done_callback(lambda _task, key=generation: self._outbound_tasks.pop(key, None))
        return task

    async def _run_outbound(self, generation: int, view: LocalCallView) -> None:
        call_id: Optional[str] = None
        try:
            with timed_step("orchestrator", "outbound_setup", peer_id=view.peer_id, details={"kind": view.kind}):
                stream = await self._media.acquire(audio=True, video=view.kind == "video")
                if self._superseded(generation):
                    return
                self._media.set_audio_enabled(not view.muted)

                engine = self._engine_factory(on_remote_stream=self._on_remote_stream)
                if not self._controller.attach_negotiation(engine, generation=generation):
                    return
                engine.attach_stream(stream)
                offer = await engine.create_offer()
                if self._superseded(generation):
                    return

                snapshot = await self._store.create_call(self._self_id, view.peer_id, view.kind, offer)
                call_id = snapshot.id
                if self._superseded(generation):
                    # hung up while registering
                    await self._push_status(call_id, "ended")
                    return
                engine.call_id = call_id
                self._controller.update_id(call_id)
                self._poller.set_call_id(call_id)
                self._poller.start()
        except (MediaError, NegotiationError) as exc:
            self._fail_attempt(generation, exc, call_id=call_id)
            return
        except PeerlineError as exc:
            # registration itself failed; nothing exists remotely
            self._fail_attempt(generation, exc, call_id=call_id)
            return
        except Exception as exc:
            log_event(
                "orchestrator",
                "outbound_setup_crashed",
                status="error",
                call_id=call_id,
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            self._fail_attempt(generation, CallSetupError(), call_id=call_id)
            return

        if await self._push_status(call_id, "ringing"):
            current = self._controller.view
            if not self._superseded(generation) and current is not None and current.status == "initiated":
                self._controller.update_status("ringing")
        elif not self._superseded(generation):
            self._notice("warning", "Failed to update call status", call_id=call_id)

    def _fail_attempt(self, generation: int, exc: PeerlineError, *, call_id: Optional[str] = None) -> None:
        log_event(
            "orchestrator",
            "call_attempt_failed",
            status="error",
            call_id=call_id,
            details={"kind": exc.kind, "error": exc.detail},
        )
        if self._superseded(generation):
            if call_id:
                self._spawn(self._push_status(call_id, "ended"))
            return
        self._diagnostic = DiagnosticError(**exc.as_diagnostic())
        self._poller.stop()
        if call_id:
            self._spawn(self._push_status(call_id, "ended"))
        self._publish_state()

    def _on_remote_stream(self, stream: RemoteMediaStream) -> None:
        engine = self._controller.negotiation
        if engine is None or engine.remote_stream is not stream:
            return
        self._has_remote_media = True
        log_event("orchestrator", "remote_media", call_id=engine.call_id, details={"tracks": len(stream.tracks)})
        self._publish_state()

    async def accept_incoming(self, call_id: Optional[str] = None) -> CallStateView:
        prompt = self._watcher.get(call_id) if call_id else self._watcher.current
        if prompt is None:
            raise NoIncomingCall()

        caller_name = await self._resolve_name(prompt.caller)
        self._end_local(push_remote=True, reason="superseded")
        engine = self._engine_factory(call_id=prompt.id, on_remote_stream=self._on_remote_stream)
        # The view exists before any network step so end/start can supersede it.
        generation = self._controller.receive(
            prompt.caller, prompt.kind, prompt.id, peer_name=caller_name, negotiation=engine
        )
        try:
            with timed_step("orchestrator", "accept_incoming", call_id=prompt.id, peer_id=prompt.caller):
                stream = await self._media.acquire(audio=True, video=prompt.kind == "video")
                if self._superseded(generation):
                    return await self._abandon_accept(prompt)
                engine.attach_stream(stream)
                answer = await engine.create_answer(prompt.offer or "")
                if self._superseded(generation):
                    return await self._abandon_accept(prompt)
                await self._store.submit_answer(prompt.id, answer)
                if self._superseded(generation):
                    return await self._abandon_accept(prompt)
                await self._store.update_status(prompt.id, "inProgress")
        except Exception as exc:
            if self._superseded(generation):
                return await self._abandon_accept(prompt)
            self._end_local(push_remote=False, reason="accept_failed")
            if isinstance(exc, PeerlineError):
                self._notice("error", f"Failed to accept call: {exc.detail}", call_id=prompt.id)
                if isinstance(exc, (InvalidTransition, CallNotFound)):
                    self._watcher.dismiss(prompt.id)
                    await self._publish("incoming_dismissed", {"call_id": prompt.id, "reason": "unavailable"})
            raise
        if self._superseded(generation):
            return await self._abandon_accept(prompt)

        self._watcher.dismiss(prompt.id)
        self._controller.update_status("inProgress")
        self._media.set_audio_enabled(True)
        self._poller.set_call_id(prompt.id)
        self._poller.start()
        await self._publish("incoming_dismissed", {"call_id": prompt.id, "reason": "accepted"})
        self._notice("info", "Call connected", call_id=prompt.id)
        return self.state()

    async def _abandon_accept(self, prompt: CallSnapshot) -> CallStateView:
        """Drop an accept the user ended or replaced while it was in flight.

        ``_end_local`` already closed the engine, released media and pushed
        ``ended``; whatever the user started since then is left alone.
        """
        log_event("orchestrator", "accept_superseded", call_id=prompt.id, peer_id=prompt.caller)
        self._watcher.dismiss(prompt.id)
        await self._publish("incoming_dismissed", {"call_id": prompt.id, "reason": "superseded"})
        return self.state()

    async def decline_incoming(self, call_id: Optional[str] = None) -> bool:
        prompt = self._watcher.get(call_id) if call_id else self._watcher.current
        if prompt is None:
            raise NoIncomingCall()

        self._watcher.dismiss(prompt.id)
        await self._publish("incoming_dismissed", {"call_id": prompt.id, "reason": "declined"})
        try:
            with timed_step("orchestrator", "decline_incoming", call_id=prompt.id, peer_id=prompt.caller):
                await self._store.update_status(prompt.id, "missed")
        except PeerlineError as exc:
            self._notice("error", f"Failed to decline call: {exc.detail}", call_id=prompt.id)
            return False
        self._notice("info", "Call declined", call_id=prompt.id)
        return True

    def end_call(self) -> CallStateView:
        self._end_local(push_remote=True, reason="local_hangup")
        return self.state()

    def minimize(self) -> CallStateView:
        self._controller.minimize()
        return self.state()

    def restore(self) -> CallStateView:
        self._controller.restore()
        return self.state()

    def toggle_mute(self) -> CallStateView:
        muted = self._controller.toggle_mute()
        if muted is not None:
            self._media.set_audio_enabled(not muted)
        return self.state()

    def set_muted(self, muted: bool) -> CallStateView:
        if self._controller.is_active:
            self._controller.set_muted(muted)
            self._media.set_audio_enabled(not muted)
        return self.state()

    # ------------------------------------------------------------------ #
    #  Remote events                                                       #
    # ------------------------------------------------------------------ #

    def _enqueue(self, event: RemoteEvent) -> None:
        self._events.put_nowait(event)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            await self._handle_safely(event)

    async def process_pending(self) -> int:
        """Handle every queued remote event; returns how many were handled."""
        handled = 0
        while not self._events.empty():
            event = self._events.get_nowait()
            await self._handle_safely(event)
            handled += 1
        return handled

    async def _handle_safely(self, event: RemoteEvent) -> None:
        try:
            await self._handle(event)
        except Exception as exc:
            log_event(
                "orchestrator",
                "remote_event_failed",
                status="error",
                call_id=event.call_id or None,
                details={"event": event.kind, "error": f"{type(exc).__name__}: {exc}"},
            )

    async def _handle(self, event: RemoteEvent) -> None:
        if event.kind == "incoming":
            if event.snapshot is not None and self._watcher.get(event.call_id) is not None:
                prompt = await self._prompt_for(event.snapshot)
                await self._publish("incoming_call", prompt.model_dump(mode="json"))
            return
        if event.kind == "incoming_dismissed":
            await self._publish("incoming_dismissed", {"call_id": event.call_id, "reason": event.reason})
            return
        if event.kind == "incoming_error":
            if isinstance(event.error, SignalingFetchError):
                self._notice("error", event.error.detail)
            return

        view = self._controller.view
        if view is None or not view.id or view.id != event.call_id:
            log_event("orchestrator", "stale_remote_event", call_id=event.call_id or None, details={"event": event.kind})
            return

        if event.kind == "fetch_error":
            self._publish_state()
            return
        if event.kind == "missing":
            error = StoreInconsistency()
            log_event("orchestrator", "store_inconsistency", status="warning", call_id=view.id)
            self._end_local(push_remote=False, reason="session_missing")
            self._notice("warning", error.detail, call_id=view.id)
            return

        snapshot = event.snapshot
        if snapshot is None:
            return
        if snapshot.status in TERMINAL_STATUSES:
            self._end_local(push_remote=False, reason=f"remote_{snapshot.status}")
            message = "Call was declined" if snapshot.status == "missed" else "Call ended"
            self._notice("info", message, call_id=view.id)
            return
        if self._diagnostic is not None:
            # failed attempt stays as-is until the user ends it
            return
        if snapshot.answer:
            await self._apply_answer(snapshot.answer)
            if self._diagnostic is not None:
                return
        if event.kind == "status":
            current = self._controller.view
            if current is None or current.id != snapshot.id:
                return
            if snapshot.status == "inProgress" and current.status != "inProgress":
                self._controller.update_status("inProgress")
            elif snapshot.status == "ringing" and current.status == "initiated":
                self._controller.update_status("ringing")

    async def _apply_answer(self, answer: str) -> None:
        engine = self._controller.negotiation
        if engine is None or engine.signaling_state != "have-local-offer":
            return
        generation = self._controller.generation
        try:
            applied = await engine.set_remote_answer(answer)
        except NegotiationError as exc:
            self._fail_attempt(generation, exc, call_id=engine.call_id)
            return
        if applied and not self._superseded(generation):
            self._controller.update_status("inProgress")
