from __future__ import annotations

from typing import List

from fastapi import APIRouter, HTTPException

from peerline.core.errors import PeerlineError
from peerline.core.telemetry import timed_step
from peerline.models.schemas import AnswerSubmitRequest, CallSnapshot, CreateCallRequest, StatusUpdateRequest
from peerline.services.session_store import CallSessionStore


def get_routes(store: CallSessionStore):
    router = APIRouter(tags=["calls"])

    @router.post("/api/calls", response_model=CallSnapshot)
    async def create_call(request: CreateCallRequest):
        with timed_step("api", "create_call", peer_id=request.caller_id, details={"callee": request.callee_id}):
            try:
                return await store.create_call(request.caller_id, request.callee_id, request.kind, request.offer)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    @router.get("/api/calls/{call_id}", response_model=CallSnapshot)
    async def get_call(call_id: str):
        with timed_step("api", "fetch_session", call_id=call_id):
            try:
                snapshot = await store.fetch_session(call_id)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)
            if snapshot is None:
                raise HTTPException(status_code=404, detail="Call session not found")
            return snapshot

    @router.post("/api/calls/{call_id}/status", response_model=CallSnapshot)
    async def update_status(call_id: str, request: StatusUpdateRequest):
        with timed_step("api", "update_status", call_id=call_id, details={"call_status": request.status}):
            try:
                return await store.update_status(call_id, request.status)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    @router.post("/api/calls/{call_id}/answer", response_model=CallSnapshot)
    async def submit_answer(call_id: str, request: AnswerSubmitRequest):
        with timed_step("api", "submit_answer", call_id=call_id):
            try:
                return await store.submit_answer(call_id, request.answer)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    @router.get("/api/identities/{self_id}/calls/pending", response_model=List[CallSnapshot])
    async def list_pending(self_id: str):
        with timed_step("api", "list_pending", peer_id=self_id):
            try:
                return await store.list_pending_inbound_calls(self_id)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    return router
