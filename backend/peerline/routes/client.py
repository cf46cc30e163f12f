from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException

from peerline.core.errors import PeerlineError
from peerline.core.telemetry import timed_step
from peerline.models.schemas import ActionResponse, CallStateView, IncomingCallPrompt, MuteRequest, StartCallRequest
from peerline.services.orchestrator import CallOrchestrator


def get_routes(orchestrator: CallOrchestrator):
    router = APIRouter(prefix="/api/client", tags=["client"])

    @router.get("/state", response_model=CallStateView)
    async def get_state():
        with timed_step("client", "get_state"):
            return orchestrator.state()

    @router.get("/incoming", response_model=Optional[IncomingCallPrompt])
    async def get_incoming():
        with timed_step("client", "get_incoming"):
            return await orchestrator.incoming_prompt()

    @router.post("/start", response_model=CallStateView)
    async def start_call(request: StartCallRequest):
        with timed_step("client", "start", peer_id=request.peer_id, details={"kind": request.kind}):
            try:
                return orchestrator.start_call(request.peer_id, request.kind, peer_name=request.peer_name)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    @router.post("/accept", response_model=CallStateView)
    async def accept_call(call_id: Optional[str] = None):
        with timed_step("client", "accept", call_id=call_id):
            try:
                return await orchestrator.accept_incoming(call_id)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    @router.post("/decline", response_model=ActionResponse)
    async def decline_call(call_id: Optional[str] = None):
        with timed_step("client", "decline", call_id=call_id):
            try:
                prompt = orchestrator.watcher.get(call_id) if call_id else orchestrator.watcher.current
                recorded = await orchestrator.decline_incoming(call_id)
            except PeerlineError as exc:
                raise HTTPException(status_code=exc.status_code, detail=exc.detail)
            return ActionResponse(
                ok=recorded,
                message="Call declined" if recorded else "Call dismissed; the caller was not notified",
                call_id=prompt.id if prompt else call_id,
            )

    @router.post("/end", response_model=CallStateView)
    async def end_call():
        with timed_step("client", "end"):
            return orchestrator.end_call()

    @router.post("/minimize", response_model=CallStateView)
    async def minimize():
        with timed_step("client", "minimize"):
            return orchestrator.minimize()

    @router.post("/restore", response_model=CallStateView)
    async def restore():
        with timed_step("client", "restore"):
            return orchestrator.restore()

    @router.post("/mute/toggle", response_model=CallStateView)
    async def toggle_mute():
        with timed_step("client", "toggle_mute"):
            return orchestrator.toggle_mute()

    @router.post("/mute", response_model=CallStateView)
    async def set_muted(request: MuteRequest):
        with timed_step("client", "set_muted", details={"muted": request.muted}):
            return orchestrator.set_muted(request.muted)

    return router
