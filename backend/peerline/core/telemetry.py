"""Call telemetry: a JSONL event log under ``DATA_ROOT`` plus a console line.

Every entry is flat: ``timestamp``, ``component``, ``action``, ``status``,
``call_id``, ``peer_id``, optional ``duration_ms`` and ``error``, and the
caller's detail keys. Poll ticks repeat every couple of seconds for the whole
life of a call, so their console lines are sampled per call; the JSONL log
always keeps every entry.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from peerline.core.config import settings


_LOGGER = logging.getLogger("peerline")
_LOCK = threading.Lock()
_TICK_COUNTS: Dict[Tuple[str, str, str], int] = {}
_RESERVED_KEYS = ("timestamp", "component", "action", "status", "call_id", "peer_id", "duration_ms")


def _metric_file() -> Path:
    settings.DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return settings.DATA_ROOT / "telemetry_events.jsonl"


def _log_file() -> Path:
    return settings.DATA_ROOT / "service.log"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _short_id(value: str) -> str:
    return value if len(value) <= 8 else value[:8]


def _should_emit_console_log(component: str, action: str, status: str, call_id: Optional[str]) -> bool:
    """Sample noisy actions per call: the first tick of a call, then every Nth."""
    if status != "ok" or action not in settings.LOG_NOISY_ACTIONS:
        return True
    every = settings.LOG_NOISY_EVENTS_EVERY_N
    if every <= 0:
        return False
    key = (component, action, call_id or "")
    with _LOCK:
        count = _TICK_COUNTS.get(key, 0) + 1
        _TICK_COUNTS[key] = count
    return count == 1 or count % every == 0


def forget_call(call_id: str) -> None:
    """Drop the tick counters of a finished call."""
    with _LOCK:
        for key in [key for key in _TICK_COUNTS if key[2] == call_id]:
            del _TICK_COUNTS[key]


def _render_console_entry(entry: Dict[str, Any]) -> str:
    call_id = entry.get("call_id")
    peer_id = entry.get("peer_id")
    head = f"call={_short_id(call_id)}" if call_id else "call=-"
    if peer_id:
        head += f" peer={peer_id}"

    parts = [head, f"{entry['component']}.{entry['action']}"]
    if entry.get("status") != "ok":
        parts.append(str(entry.get("status")).upper())
    if entry.get("duration_ms") is not None:
        parts.append(f"{entry['duration_ms']:.0f}ms")
    if entry.get("error"):
        parts.append(f"error={entry['error']}")
    for key in sorted(entry):
        if key in _RESERVED_KEYS or key == "error" or entry[key] is None:
            continue
        parts.append(f"{key}={entry[key]}")
    return " ".join(parts)


def configure_logging() -> None:
    if getattr(_LOGGER, "_peerline_configured", False):
        return

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    _LOGGER.setLevel(log_level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        "%Y-%m-%dT%H:%M:%S%z",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    stream_handler.setLevel(log_level)
    _LOGGER.addHandler(stream_handler)

    log_path = _log_file()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(log_level)
    _LOGGER.addHandler(file_handler)

    _LOGGER._peerline_configured = True  # type: ignore[attr-defined]


def _append_jsonl(entry: Dict[str, Any]) -> None:
    with _LOCK:
        with open(_metric_file(), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str))
            f.write("\n")


def get_metric_events(
    limit: int = 100,
    *,
    component: Optional[str] = None,
    action: Optional[str] = None,
    call_id: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Return the newest ``limit`` entries matching every given filter, oldest first."""
    path = _metric_file()
    if not path.exists():
        return []
    matches: deque = deque(maxlen=max(0, limit))
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError:
                continue
            if component and event.get("component") != component:
                continue
            if action and event.get("action") != action:
                continue
            if call_id and event.get("call_id") != call_id:
                continue
            matches.append(event)
    return list(matches)


def log_event(
    component: str,
    action: str,
    *,
    status: str = "ok",
    duration_ms: Optional[float] = None,
    call_id: Optional[str] = None,
    peer_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    # detail keys never shadow the fields the log is filtered on
    entry: Dict[str, Any] = {key: value for key, value in (details or {}).items() if key not in _RESERVED_KEYS}
    entry.update(
        timestamp=_timestamp(),
        component=component,
        action=action,
        status=status,
        call_id=call_id,
        peer_id=peer_id,
    )
    if duration_ms is not None:
        entry["duration_ms"] = round(duration_ms, 3)

    _append_jsonl(entry)
    if not _should_emit_console_log(component, action, status, call_id):
        return
    msg = _render_console_entry(entry)
    if status == "error":
        _LOGGER.error(msg)
    elif status == "warning":
        _LOGGER.warning(msg)
    else:
        _LOGGER.info(msg)


@contextmanager
def timed_step(
    component: str,
    action: str,
    *,
    call_id: Optional[str] = None,
    peer_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Log one entry for the wrapped step with its duration; errors are logged and re-raised."""
    started = time.perf_counter()
    status = "ok"
    extra = dict(details or {})
    try:
        yield
    except Exception as exc:
        status = "error"
        extra["error"] = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        log_event(
            component,
            action,
            status=status,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            call_id=call_id,
            peer_id=peer_id,
            details=extra,
        )
