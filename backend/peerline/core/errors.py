"""Error taxonomy for call setup, signaling, and capture.

Every error carries a ``kind`` assigned where the failure happens and a
human-readable ``detail`` that is safe to show to the user.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class PeerlineError(Exception):
    status_code: int = 500
    kind: str = "error"
    default_detail: str = "Call error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail

    def as_diagnostic(self) -> Dict[str, str]:
        return {"kind": self.kind, "message": self.detail}


class MediaErrorKind(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NO_DEVICE = "no-device"
    DEVICE_BUSY = "device-busy"
    UNSUPPORTED = "unsupported"
    CONSTRAINTS_UNSATISFIABLE = "constraints-unsatisfiable"
    ABORTED = "aborted"
    OTHER = "other"


MEDIA_ERROR_MESSAGES: Dict[MediaErrorKind, str] = {
    MediaErrorKind.PERMISSION_DENIED: "Permission denied. Please allow access to your camera and microphone.",
    MediaErrorKind.NO_DEVICE: "No camera or microphone found. Please connect a device and try again.",
    MediaErrorKind.DEVICE_BUSY: "Could not access media device. It may be in use by another application.",
    MediaErrorKind.UNSUPPORTED: "This system does not support the requested media devices.",
    MediaErrorKind.CONSTRAINTS_UNSATISFIABLE: "Could not satisfy media constraints. Please try again.",
    MediaErrorKind.ABORTED: "Media acquisition was aborted.",
    MediaErrorKind.OTHER: "Failed to access media devices.",
}


class MediaError(PeerlineError):
    status_code = 422
    kind = "media"

    def __init__(self, media_kind: MediaErrorKind) -> None:
        super().__init__(MEDIA_ERROR_MESSAGES[media_kind])
        self.media_kind = media_kind

    def as_diagnostic(self) -> Dict[str, str]:
        return {"kind": f"media:{self.media_kind.value}", "message": self.detail}


class NegotiationError(PeerlineError):
    """Descriptor or state failure; terminal for the current call attempt."""

    status_code = 502
    kind = "negotiation"
    default_detail = "Could not negotiate the call connection."


class SignalingFetchError(PeerlineError):
    status_code = 503
    kind = "signaling-fetch"
    default_detail = "Failed to fetch call session"


class SignalingSubmitError(PeerlineError):
    status_code = 503
    kind = "signaling-submit"
    default_detail = "Failed to update call session"


class StoreInconsistency(PeerlineError):
    status_code = 409
    kind = "store-inconsistency"
    default_detail = "Call session is no longer available"


class CallNotFound(PeerlineError):
    status_code = 404
    kind = "not-found"
    default_detail = "Call session not found"


class InvalidTransition(PeerlineError):
    status_code = 409
    kind = "invalid-transition"
    default_detail = "Call session cannot make that transition"


class NoIncomingCall(PeerlineError):
    status_code = 409
    kind = "no-incoming-call"
    default_detail = "There is no incoming call to answer"


class IdentityRequired(PeerlineError):
    status_code = 400
    kind = "identity-required"
    default_detail = "A local identity is required to place calls"


class CallSetupError(PeerlineError):
    """Unclassified failure while placing a call."""

    status_code = 500
    kind = "call-setup"
    default_detail = "Could not set up the call."
