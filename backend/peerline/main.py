from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from peerline.core.config import settings
from peerline.core.telemetry import configure_logging, log_event, timed_step
from peerline.services.orchestrator import CallOrchestrator, DirectoryLookup
from peerline.services.session_store import CallSessionStore, InMemoryCallStore
from peerline.services.store_client import HttpCallStore
from peerline.services.supabase_store import SupabaseCallStore
from peerline.services.ws_manager import ConnectionManager
from peerline.routes import calls as call_routes
from peerline.routes import client as client_routes
from peerline.routes import telemetry as telemetry_routes
from peerline.routes import ws as ws_routes


ALLOWED_ORIGINS_TYPE = List[str]


def _select_store() -> CallSessionStore:
    if settings.SUPABASE_URL and (settings.SUPABASE_SERVICE_ROLE_KEY or settings.SUPABASE_ANON_KEY):
        return SupabaseCallStore()
    if settings.STORE_BASE_URL:
        return HttpCallStore(base_url=settings.STORE_BASE_URL)
    return InMemoryCallStore()


def create_app(
    *,
    store: Optional[CallSessionStore] = None,
    orchestrator: Optional[CallOrchestrator] = None,
    ws_manager: Optional[ConnectionManager] = None,
    directory: Optional[DirectoryLookup] = None,
    self_id: Optional[str] = None,
    data_root: str | Path | None = None,
    allowed_origins: Optional[ALLOWED_ORIGINS_TYPE] = None,
    start_background: bool = True,
) -> FastAPI:
    """Create the FastAPI app with injectable dependencies.

    Tests pass an in-memory store, a prepared orchestrator or a temporary data
    root; ``start_background=False`` keeps the pollers from running on startup.
    """

    if data_root is not None:
        settings.DATA_ROOT = Path(data_root)

    configure_logging()

    local_store = store or _select_store()
    local_ws_manager = ws_manager or ConnectionManager()
    local_orchestrator = orchestrator
    if local_orchestrator is None:
        local_orchestrator = CallOrchestrator(
            local_store,
            self_id=self_id,
            ws_manager=local_ws_manager,
            directory=directory,
        )

    app = FastAPI(title="peerline")
    app.state.store = local_store
    app.state.ws_manager = local_ws_manager
    app.state.orchestrator = local_orchestrator

    app.include_router(call_routes.get_routes(local_store))
    app.include_router(client_routes.get_routes(local_orchestrator))
    app.include_router(ws_routes.get_routes(local_ws_manager, local_orchestrator))
    app.include_router(telemetry_routes.get_routes())

    cors_origins = list(allowed_origins or settings.ALLOWED_ORIGINS)
    if not cors_origins:
        cors_origins = ["*"]

    allow_credentials = True
    allow_origin_regex = None

    # Wildcard origins cannot be combined with credentials.
    if len(cors_origins) == 1 and cors_origins[0] == "*":
        allow_credentials = False
    else:
        has_local_host = any("localhost" in origin or "127.0.0.1" in origin for origin in cors_origins)
        if has_local_host:
            allow_origin_regex = r"https?://(?:localhost|127\.0\.0\.1):[0-9]+"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_request_timing(request: Request, call_next):
        request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
        request.state.request_id = request_id
        start = time.perf_counter()
        route = request.scope.get("route")
        route_path = getattr(route, "path", None)
        action = f"{request.method} {route_path or request.url.path}"
        should_skip_request_log = request.url.path in settings.LOG_SKIP_REQUEST_PATHS
        details = {
            "request_id": request_id,
            "route": route_path or str(request.url.path),
            "method": request.method,
            "client_ip": request.client.host if request.client else None,
        }
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            details["status_code"] = 500
            details["error"] = f"{type(exc).__name__}: {exc}"
            log_event("http", action, status="error", duration_ms=elapsed_ms, details=details)
            raise
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        details["status_code"] = response.status_code
        details["response_content_type"] = (
            response.headers.get("content-type") if isinstance(response, Response) else None
        )
        if not should_skip_request_log or details["status_code"] >= 400:
            log_event("http", action, status="ok", duration_ms=elapsed_ms, details=details)
        return response

    @app.get("/health")
    async def health() -> dict:
        with timed_step("http", "healthcheck"):
            return {"status": "ok"}

    @app.on_event("startup")
    async def startup() -> None:
        log_event(
            "system",
            "startup",
            details={
                "store": type(local_store).__name__,
                "local_identity": local_orchestrator.self_id or "(not set)",
                "signaling_poll_interval_s": settings.SIGNALING_POLL_INTERVAL_SECONDS,
                "incoming_poll_interval_s": settings.INCOMING_POLL_INTERVAL_SECONDS,
                "max_fetch_failures": settings.SIGNALING_MAX_FETCH_FAILURES,
                "ice_gathering_timeout_s": settings.ICE_GATHERING_TIMEOUT_SECONDS,
                "ice_servers": list(settings.ICE_SERVERS),
                "log_level": settings.LOG_LEVEL,
            },
        )
        if start_background:
            local_orchestrator.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await local_orchestrator.shutdown()

    return app


app = create_app()
