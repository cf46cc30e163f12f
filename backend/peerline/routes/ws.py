from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from peerline.core.telemetry import log_event, timed_step
from peerline.models.schemas import ClientEvent
from peerline.services.orchestrator import CLIENT_TOPIC, CallOrchestrator
from peerline.services.ws_manager import ConnectionManager


def get_routes(connection_manager: ConnectionManager, orchestrator: CallOrchestrator):
    router = APIRouter(tags=["websocket"])

    @router.websocket("/ws/client")
    async def client_feed(websocket: WebSocket):
        with timed_step("ws", "connect", details={"topic": CLIENT_TOPIC}):
            await connection_manager.connect(CLIENT_TOPIC, websocket)
            # new subscribers start from the current state
            snapshot = ClientEvent(type="call_state", data=orchestrator.state().model_dump(mode="json"))
            await websocket.send_json(snapshot.model_dump(mode="json"))
            prompt = await orchestrator.incoming_prompt()
            if prompt is not None:
                event = ClientEvent(type="incoming_call", data=prompt.model_dump(mode="json"))
                await websocket.send_json(event.model_dump(mode="json"))

        messages_received = 0
        try:
            while True:
                await websocket.receive_text()
                messages_received += 1
        except WebSocketDisconnect:
            log_event("ws", "consume_end", details={"messages_received": messages_received})
            connection_manager.disconnect(CLIENT_TOPIC, websocket)
        except Exception as exc:
            log_event(
                "ws",
                "consume_error",
                status="error",
                details={"error": f"{type(exc).__name__}: {exc}", "messages_received": messages_received},
            )
            connection_manager.disconnect(CLIENT_TOPIC, websocket)
            raise

    return router
