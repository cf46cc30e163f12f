from __future__ import annotations

from typing import Optional

from fastapi import APIRouter

from peerline.core.telemetry import get_metric_events, timed_step


def get_routes():
    router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])

    @router.get("/recent")
    async def recent_events(
        limit: int = 200,
        component: Optional[str] = None,
        action: Optional[str] = None,
        call_id: Optional[str] = None,
    ):
        with timed_step(
            "telemetry",
            "recent_events",
            details={"limit": limit, "filters": {"component": component, "action": action, "call_id": call_id}},
        ):
            events = get_metric_events(limit=limit, component=component, action=action, call_id=call_id)
            return {"count": len(events), "events": events}

    return router
