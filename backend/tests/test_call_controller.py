from __future__ import annotations

import pytest

from peerline.services.call_controller import IDLE, Active, CallSessionController

pytestmark = pytest.mark.unit


class ClosingHandle:
    def __init__(self) -> None:
        self.closed = 0

    def close(self) -> None:
        self.closed += 1


def test_start_creates_outgoing_initiated_view_without_id() -> None:
    controller = CallSessionController()

    controller.start("bob", "video", peer_name="Bob")

    view = controller.view
    assert isinstance(controller.state, Active)
    assert view.id == ""
    assert view.direction == "outgoing"
    assert view.status == "initiated"
    assert view.kind == "video"
    assert view.peer_name == "Bob"
    assert view.minimized is False
    assert view.muted is False


def test_receive_while_active_tears_down_previous_session_first() -> None:
    controller = CallSessionController()
    first = ClosingHandle()
    seen = []
    controller.start("bob", "voice")
    controller.attach_negotiation(first)
    controller.subscribe(lambda view: seen.append((view.id, first.closed) if view else None))

    controller.receive("carol", "voice", "call-2")

    assert first.closed == 1
    assert seen == [("call-2", 1)]
    assert controller.view.peer_id == "carol"
    assert controller.view.direction == "incoming"
    assert controller.view.status == "ringing"


def test_repeated_start_and_receive_keep_a_single_view() -> None:
    controller = CallSessionController()
    handles = []
    for index in range(5):
        if index % 2:
            handle = ClosingHandle()
            controller.receive(f"peer{index}", "voice", f"call-{index}", negotiation=handle)
        else:
            controller.start(f"peer{index}", "video")
            handle = ClosingHandle()
            controller.attach_negotiation(handle)
        handles.append(handle)

    assert controller.view.peer_id == "peer4"
    assert [handle.closed for handle in handles] == [1, 1, 1, 1, 0]


def test_end_is_idempotent_and_never_raises() -> None:
    controller = CallSessionController()

    class Exploding:
        def close(self) -> None:
            raise RuntimeError("already gone")

    controller.receive("bob", "voice", "call-1", negotiation=Exploding())
    controller.end()
    controller.end()

    assert controller.state is IDLE
    assert controller.view is None


def test_commands_are_noops_while_idle() -> None:
    controller = CallSessionController()
    notified = []
    controller.subscribe(notified.append)

    controller.minimize()
    controller.restore()
    controller.update_status("inProgress")
    assert controller.toggle_mute() is None

    assert notified == []
    assert controller.state is IDLE


def test_flags_update_and_notify_only_on_change() -> None:
    controller = CallSessionController()
    controller.start("bob", "voice")
    notified = []
    controller.subscribe(notified.append)

    controller.minimize()
    controller.minimize()
    assert controller.toggle_mute() is True
    assert controller.toggle_mute() is False
    controller.restore()

    assert len(notified) == 4
    assert controller.view.minimized is False
    assert controller.view.muted is False


def test_attach_negotiation_to_superseded_call_closes_handle() -> None:
    controller = CallSessionController()
    generation = controller.start("bob", "voice")
    controller.start("carol", "voice")
    stale = ClosingHandle()

    assert controller.attach_negotiation(stale, generation=generation) is False
    assert stale.closed == 1
    assert controller.negotiation is None


def test_view_is_a_copy() -> None:
    controller = CallSessionController()
    controller.start("bob", "voice")

    view = controller.view
    view.status = "ended"

    assert controller.view.status == "initiated"
