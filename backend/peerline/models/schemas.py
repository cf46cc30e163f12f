from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


CallKind = Literal["voice", "video"]
CallStatus = Literal["initiated", "ringing", "inProgress", "ended", "missed"]
CallDirection = Literal["outgoing", "incoming"]

TERMINAL_STATUSES = frozenset({"ended", "missed"})
PENDING_STATUSES = frozenset({"initiated", "ringing"})

# Forward order of the session status machine; "missed" sits beside "ended".
STATUS_RANK: Dict[str, int] = {
    "initiated": 0,
    "ringing": 1,
    "inProgress": 2,
    "ended": 3,
    "missed": 3,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_transition(current: str, new: str) -> bool:
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new == "missed":
        return current in PENDING_STATUSES
    return STATUS_RANK[new] > STATUS_RANK[current]


class CallSnapshot(BaseModel):
    id: str
    kind: CallKind
    status: CallStatus
    caller: str
    callee: str
    offer: Optional[str] = None
    answer: Optional[str] = None
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class CreateCallRequest(BaseModel):
    caller_id: str
    callee_id: str
    kind: CallKind
    offer: str


class StatusUpdateRequest(BaseModel):
    status: CallStatus


class AnswerSubmitRequest(BaseModel):
    answer: str


class StartCallRequest(BaseModel):
    peer_id: str
    peer_name: Optional[str] = None
    kind: CallKind = "voice"


class MuteRequest(BaseModel):
    muted: bool


class DiagnosticError(BaseModel):
    kind: str
    message: str


class CallStateView(BaseModel):
    """Observable call state handed to the presentation layer."""

    has_active_call: bool = False
    status: Optional[CallStatus] = None
    direction: Optional[CallDirection] = None
    minimized: bool = False
    muted: bool = False
    diagnostic_error: Optional[DiagnosticError] = None
    call_id: Optional[str] = None
    call_id_assigned: bool = False
    kind: Optional[CallKind] = None
    peer_id: Optional[str] = None
    peer_name: Optional[str] = None
    acquiring: bool = False
    signaling_error: Optional[str] = None
    media_error: Optional[str] = None
    has_remote_media: bool = False


class IncomingCallPrompt(BaseModel):
    call_id: str
    caller_id: str
    caller_name: str
    kind: CallKind


class ClientEvent(BaseModel):
    type: Literal["call_state", "incoming_call", "incoming_dismissed", "notice"]
    data: Dict[str, Any]
    timestamp: datetime = Field(default_factory=utcnow)


class ActionResponse(BaseModel):
    ok: bool
    message: str
    call_id: Optional[str] = None
