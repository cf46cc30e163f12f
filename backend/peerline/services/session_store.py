from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from uuid import uuid4

from peerline.core.errors import CallNotFound, InvalidTransition
from peerline.core.telemetry import log_event
from peerline.models.schemas import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    CallKind,
    CallSnapshot,
    CallStatus,
    is_valid_transition,
    utcnow,
)


class CallSessionStore(ABC):
    """Remote record of call sessions used as the signaling channel."""

    @abstractmethod
    async def create_call(self, caller_id: str, callee_id: str, kind: CallKind, offer: str) -> CallSnapshot:
        ...

    @abstractmethod
    async def fetch_session(self, call_id: str) -> Optional[CallSnapshot]:
        ...

    @abstractmethod
    async def update_status(self, call_id: str, status: CallStatus) -> CallSnapshot:
        ...

    @abstractmethod
    async def submit_answer(self, call_id: str, answer: str) -> CallSnapshot:
        ...

    @abstractmethod
    async def list_pending_inbound_calls(self, self_id: str) -> List[CallSnapshot]:
        ...


class InMemoryCallStore(CallSessionStore):
    def __init__(self) -> None:
        self._sessions: Dict[str, CallSnapshot] = {}
        self._lock = asyncio.Lock()

    async def create_call(self, caller_id: str, callee_id: str, kind: CallKind, offer: str) -> CallSnapshot:
        call_id = str(uuid4())
        session = CallSnapshot(
            id=call_id,
            kind=kind,
            status="initiated",
            caller=caller_id,
            callee=callee_id,
            offer=offer,
        )
        async with self._lock:
            self._sessions[call_id] = session
        log_event("store", "create_call", call_id=call_id, peer_id=callee_id, details={"kind": kind})
        return session.model_copy()

    async def fetch_session(self, call_id: str) -> Optional[CallSnapshot]:
        session = self._sessions.get(call_id)
        return session.model_copy() if session else None

    async def update_status(self, call_id: str, status: CallStatus) -> CallSnapshot:
        async with self._lock:
            session = self._sessions.get(call_id)
            if not session:
                raise CallNotFound()
            if session.status == status:
                return session.model_copy()
            if not is_valid_transition(session.status, status):
                log_event(
                    "store",
                    "update_status_rejected",
                    status="warning",
                    call_id=call_id,
                    details={"from": session.status, "to": status},
                )
                raise InvalidTransition(f"Cannot move call from {session.status} to {status}")
            previous = session.status
            session.status = status
            if status in TERMINAL_STATUSES:
                session.end_time = utcnow()
            snapshot = session.model_copy()
        log_event("store", "update_status", call_id=call_id, details={"from": previous, "to": status})
        return snapshot

    async def submit_answer(self, call_id: str, answer: str) -> CallSnapshot:
        async with self._lock:
            session = self._sessions.get(call_id)
            if not session:
                raise CallNotFound()
            if session.answer == answer:
                return session.model_copy()
            if session.answer is not None:
                raise InvalidTransition("Call already has an answer")
            if session.status in TERMINAL_STATUSES:
                raise InvalidTransition(f"Cannot answer a call that is {session.status}")
            session.answer = answer
            snapshot = session.model_copy()
        log_event("store", "submit_answer", call_id=call_id, details={"answer_chars": len(answer)})
        return snapshot

    async def list_pending_inbound_calls(self, self_id: str) -> List[CallSnapshot]:
        return [
            session.model_copy()
            for session in self._sessions.values()
            if session.callee == self_id and session.status in PENDING_STATUSES
        ]
