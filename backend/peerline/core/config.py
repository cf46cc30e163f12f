from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH)
else:  # fallback when launched from inside backend/
    load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _data_root() -> Path:
    return Path(os.getenv("PEERLINE_DATA_ROOT") or os.getenv("DATA_ROOT") or "data")


class Settings:
    DATA_ROOT = _data_root()

    APP_HOST = os.getenv("HOST", "0.0.0.0")
    APP_PORT = int(os.getenv("PORT", "3001"))

    ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.getenv("ALLOWED_ORIGINS", "*").split(",")
        if origin.strip()
    ]

    # Local identity; the incoming-call watcher stays idle while this is empty.
    LOCAL_IDENTITY = os.getenv("LOCAL_IDENTITY", "").strip()
    LOCAL_DISPLAY_NAME = os.getenv("LOCAL_DISPLAY_NAME", "").strip()

    # Signaling cadence
    SIGNALING_POLL_INTERVAL_SECONDS = _env_float("SIGNALING_POLL_INTERVAL_SECONDS", 2.0)
    INCOMING_POLL_INTERVAL_SECONDS = _env_float("INCOMING_POLL_INTERVAL_SECONDS", 2.0)
    SIGNALING_MAX_FETCH_FAILURES = _env_int("SIGNALING_MAX_FETCH_FAILURES", 3)
    if SIGNALING_MAX_FETCH_FAILURES < 1:
        SIGNALING_MAX_FETCH_FAILURES = 1

    # Peer transport
    ICE_GATHERING_TIMEOUT_SECONDS = _env_float("ICE_GATHERING_TIMEOUT_SECONDS", 3.0)
    ICE_SERVERS = tuple(
        url.strip()
        for url in os.getenv(
            "ICE_SERVERS",
            "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302",
        ).split(",")
        if url.strip()
    )

    # Capture devices (PyAV input formats)
    AUDIO_DEVICE = os.getenv("AUDIO_DEVICE", "default")
    AUDIO_FORMAT = os.getenv("AUDIO_FORMAT", "pulse")
    VIDEO_DEVICE = os.getenv("VIDEO_DEVICE", "/dev/video0")
    VIDEO_FORMAT = os.getenv("VIDEO_FORMAT", "v4l2")
    VIDEO_SIZE = os.getenv("VIDEO_SIZE", "640x480")

    # Remote session store over HTTP (another peerline instance hosting /api/calls)
    STORE_BASE_URL = os.getenv("PEERLINE_STORE_URL", "").strip()
    STORE_TIMEOUT_SECONDS = _env_float("PEERLINE_STORE_TIMEOUT_SECONDS", 3.0)

    # Supabase-backed session store
    SUPABASE_URL = os.getenv("SUPABASE_URL", "").strip()
    SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
    SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "").strip()
    SUPABASE_CALLS_TABLE = os.getenv("SUPABASE_CALLS_TABLE", "call_sessions").strip() or "call_sessions"

    # Logging controls
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    if LOG_LEVEL not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
        LOG_LEVEL = "INFO"
    try:
        LOG_NOISY_EVENTS_EVERY_N = int(os.getenv("LOG_NOISY_EVENTS_EVERY_N", "30"))
    except ValueError:
        LOG_NOISY_EVENTS_EVERY_N = 30
    if LOG_NOISY_EVENTS_EVERY_N < 0:
        LOG_NOISY_EVENTS_EVERY_N = 0
    LOG_NOISY_ACTIONS = tuple(
        action.strip()
        for action in os.getenv(
            "LOG_NOISY_ACTIONS",
            "poll_tick,incoming_poll_tick,fetch_session,list_pending",
        ).split(",")
        if action.strip()
    )
    if not LOG_NOISY_ACTIONS:
        LOG_NOISY_ACTIONS = ("poll_tick", "incoming_poll_tick", "fetch_session", "list_pending")

    LOG_SKIP_REQUEST_PATHS = tuple(
        path.strip()
        for path in os.getenv("LOG_SKIP_REQUEST_PATHS", "/health").split(",")
        if path.strip()
    )


settings = Settings()
