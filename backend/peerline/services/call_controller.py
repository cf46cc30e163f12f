from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional, Union

from peerline.core.telemetry import log_event
from peerline.models.schemas import CallDirection, CallKind, CallStatus


@dataclass
class LocalCallView:
    id: str
    kind: CallKind
    peer_id: str
    peer_name: str
    direction: CallDirection
    status: CallStatus
    minimized: bool = False
    muted: bool = False


@dataclass(frozen=True)
class Idle:
    pass


@dataclass
class Active:
    view: LocalCallView
    negotiation: Any = None


IDLE = Idle()
CallState = Union[Idle, Active]
StateListener = Callable[[Optional[LocalCallView]], None]


class CallSessionController:
    """Single local view of the active call.

    The state is either ``Idle`` or ``Active(view)``; ``start`` and ``receive``
    tear the previous session down before anything new exists, and the
    negotiation handle lives on the ``Active`` state so only this controller
    closes it. Every command applies synchronously.
    """

    def __init__(self) -> None:
        self._state: CallState = IDLE
        self._generation = 0
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def is_active(self) -> bool:
        return isinstance(self._state, Active)

    @property
    def view(self) -> Optional[LocalCallView]:
        if isinstance(self._state, Active):
            return replace(self._state.view)
        return None

    @property
    def negotiation(self) -> Any:
        if isinstance(self._state, Active):
            return self._state.negotiation
        return None

    @property
    def generation(self) -> int:
        """Bumped on every start/receive/end; lets callers detect a superseded call."""
        return self._generation

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        view = self.view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception as exc:
                log_event(
                    "controller",
                    "listener_error",
                    status="error",
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )

    def _teardown(self, reason: str) -> None:
        state = self._state
        self._state = IDLE
        if not isinstance(state, Active):
            return
        if state.negotiation is not None:
            try:
                state.negotiation.close()
            except Exception as exc:
                log_event(
                    "controller",
                    "negotiation_close_failed",
                    status="warning",
                    call_id=state.view.id or None,
                    details={"error": f"{type(exc).__name__}: {exc}"},
                )
        log_event(
            "controller",
            "teardown",
            call_id=state.view.id or None,
            peer_id=state.view.peer_id,
            details={"reason": reason, "call_status": state.view.status},
        )

    def start(self, peer_id: str, kind: CallKind, *, peer_name: Optional[str] = None) -> int:
        self._teardown("superseded")
        self._generation += 1
        self._state = Active(
            LocalCallView(
                id="",
                kind=kind,
                peer_id=peer_id,
                peer_name=peer_name or peer_id,
                direction="outgoing",
                status="initiated",
            )
        )
        log_event("controller", "start", peer_id=peer_id, details={"kind": kind})
        self._notify()
        return self._generation

    def receive(
        self,
        peer_id: str,
        kind: CallKind,
        call_id: str,
        *,
        peer_name: Optional[str] = None,
        negotiation: Any = None,
    ) -> int:
        self._teardown("superseded")
        self._generation += 1
        self._state = Active(
            LocalCallView(
                id=call_id,
                kind=kind,
                peer_id=peer_id,
                peer_name=peer_name or peer_id,
                direction="incoming",
                status="ringing",
            ),
            negotiation=negotiation,
        )
        log_event("controller", "receive", call_id=call_id, peer_id=peer_id, details={"kind": kind})
        self._notify()
        return self._generation

    def attach_negotiation(self, negotiation: Any, *, generation: Optional[int] = None) -> bool:
        """Hand a negotiation handle to the active call.

        A handle offered to an idle or superseded call is closed immediately.
        """
        state = self._state
        if not isinstance(state, Active) or (generation is not None and generation != self._generation):
            negotiation.close()
            return False
        if state.negotiation is not None and state.negotiation is not negotiation:
            state.negotiation.close()
        state.negotiation = negotiation
        return True

    def end(self) -> None:
        try:
            self._teardown("ended")
        finally:
            self._state = IDLE
            self._generation += 1
            self._notify()

    def minimize(self) -> None:
        self._set_flag("minimized", True)

    def restore(self) -> None:
        self._set_flag("minimized", False)

    def toggle_mute(self) -> Optional[bool]:
        if not isinstance(self._state, Active):
            return None
        self._set_flag("muted", not self._state.view.muted)
        return self._state.view.muted

    def set_muted(self, muted: bool) -> None:
        self._set_flag("muted", muted)

    def update_status(self, status: CallStatus) -> None:
        self._set_flag("status", status)

    def update_id(self, call_id: str) -> None:
        self._set_flag("id", call_id)

    def _set_flag(self, name: str, value: Any) -> None:
        state = self._state
        if not isinstance(state, Active):
            return
        if getattr(state.view, name) == value:
            return
        setattr(state.view, name, value)
        self._notify()
