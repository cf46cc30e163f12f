from __future__ import annotations

import json
import logging

import pytest

from peerline.core import telemetry
from peerline.core.config import settings
from peerline.core.telemetry import forget_call, get_metric_events, log_event, timed_step

pytestmark = pytest.mark.unit


def _console_lines(caplog, marker: str) -> list[str]:
    return [record.getMessage() for record in caplog.records if marker in record.getMessage()]


def test_log_event_appends_flat_entry_under_data_root(data_root) -> None:
    log_event(
        "store",
        "update_status",
        call_id="call-1",
        peer_id="bob",
        details={"call_status": "ringing", "call_id": "other", "status": "bogus"},
    )

    lines = (data_root / "telemetry_events.jsonl").read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])

    assert entry["component"] == "store"
    assert entry["action"] == "update_status"
    assert entry["status"] == "ok"
    assert entry["call_id"] == "call-1"
    assert entry["peer_id"] == "bob"
    assert entry["call_status"] == "ringing"


def test_recent_events_filter_before_limit() -> None:
    log_event("signaling_poller", "session_missing", status="warning", call_id="call-old")
    for _ in range(5):
        log_event("signaling_poller", "poll_tick", call_id="call-new")

    old = get_metric_events(limit=2, call_id="call-old")
    newest = get_metric_events(limit=2, component="signaling_poller")

    assert [event["action"] for event in old] == ["session_missing"]
    assert len(newest) == 2
    assert all(event["call_id"] == "call-new" for event in newest)


def test_timed_step_records_error_and_reraises() -> None:
    with pytest.raises(RuntimeError):
        with timed_step("negotiation", "create_offer", call_id="call-2", details={"kind": "video"}):
            raise RuntimeError("descriptor rejected")

    [event] = get_metric_events(call_id="call-2")

    assert event["status"] == "error"
    assert event["error"] == "RuntimeError: descriptor rejected"
    assert event["kind"] == "video"
    assert event["duration_ms"] >= 0


def test_poll_ticks_are_sampled_per_call(monkeypatch, caplog) -> None:
    monkeypatch.setattr(settings, "LOG_NOISY_EVENTS_EVERY_N", 3)
    caplog.set_level(logging.INFO, logger="peerline")
    forget_call("tick-a")
    forget_call("tick-b")

    for _ in range(4):
        log_event("signaling_poller", "poll_tick", call_id="tick-a")
    log_event("signaling_poller", "poll_tick", call_id="tick-b")
    log_event("signaling_poller", "poll_tick", status="warning", call_id="tick-a")

    assert len(_console_lines(caplog, "call=tick-a")) == 3
    assert len(_console_lines(caplog, "call=tick-b")) == 1
    assert len(get_metric_events(call_id="tick-a")) == 5


def test_console_line_leads_with_the_call(caplog) -> None:
    caplog.set_level(logging.INFO, logger="peerline")

    log_event(
        "negotiation",
        "gathering_timeout",
        status="warning",
        call_id="5f0c1d2e-aaaa-bbbb-cccc-0123456789ab",
        peer_id="carol",
        details={"timeout_s": 3.0},
    )

    [line] = _console_lines(caplog, "negotiation.gathering_timeout")

    assert line.startswith("call=5f0c1d2e peer=carol negotiation.gathering_timeout WARNING")
    assert "timeout_s=3.0" in line


def test_forget_call_resets_sampling(monkeypatch) -> None:
    monkeypatch.setattr(settings, "LOG_NOISY_EVENTS_EVERY_N", 10)
    forget_call("tick-c")
    log_event("signaling_poller", "poll_tick", call_id="tick-c")

    forget_call("tick-c")

    assert ("signaling_poller", "poll_tick", "tick-c") not in telemetry._TICK_COUNTS
