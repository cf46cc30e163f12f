from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from peerline.core.config import settings
from peerline.core.errors import InvalidTransition, SignalingFetchError, SignalingSubmitError
from peerline.core.telemetry import log_event, timed_step
from peerline.models.schemas import CallKind, CallSnapshot, CallStatus
from peerline.services.session_store import CallSessionStore


class HttpCallStore(CallSessionStore):
    """Client for a session store exposed over HTTP at ``/api/calls``."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or settings.STORE_BASE_URL).rstrip("/")
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.STORE_TIMEOUT_SECONDS
        self._transport = transport
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        )

    async def _submit(self, action: str, path: str, payload: Dict[str, Any], *, call_id: Optional[str] = None) -> CallSnapshot:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
        except httpx.HTTPError as exc:
            log_event(
                "store_client",
                action,
                status="warning",
                call_id=call_id,
                details={"error": f"{type(exc).__name__}: {exc}"},
            )
            raise SignalingSubmitError() from exc

        if response.status_code == 409:
            raise InvalidTransition(self._detail(response) or None)
        if response.status_code >= 400:
            log_event(
                "store_client",
                action,
                status="warning",
                call_id=call_id,
                details={"status_code": response.status_code},
            )
            raise SignalingSubmitError()
        try:
            return CallSnapshot.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            log_event(
                "store_client",
                action,
                status="warning",
                call_id=call_id,
                details={"error": "undecodable response", "content_type": response.headers.get("content-type")},
            )
            raise SignalingSubmitError() from exc

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return ""
        if isinstance(body, dict):
            return str(body.get("detail") or "")
        return ""

    async def create_call(self, caller_id: str, callee_id: str, kind: CallKind, offer: str) -> CallSnapshot:
        with timed_step("store_client", "create_call", peer_id=callee_id):
            return await self._submit(
                "create_call",
                "/api/calls",
                {"caller_id": caller_id, "callee_id": callee_id, "kind": kind, "offer": offer},
            )

    async def fetch_session(self, call_id: str) -> Optional[CallSnapshot]:
        try:
            async with self._client() as client:
                response = await client.get(f"/api/calls/{quote(call_id, safe='')}")
        except httpx.HTTPError as exc:
            raise SignalingFetchError(f"Failed to fetch call session: {type(exc).__name__}") from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise SignalingFetchError(f"Failed to fetch call session (HTTP {response.status_code})")
        try:
            return CallSnapshot.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SignalingFetchError("Failed to fetch call session: undecodable response") from exc

    async def update_status(self, call_id: str, status: CallStatus) -> CallSnapshot:
        with timed_step("store_client", "update_status", call_id=call_id, details={"call_status": status}):
            return await self._submit(
                "update_status",
                f"/api/calls/{quote(call_id, safe='')}/status",
                {"status": status},
                call_id=call_id,
            )

    async def submit_answer(self, call_id: str, answer: str) -> CallSnapshot:
        with timed_step("store_client", "submit_answer", call_id=call_id):
            return await self._submit(
                "submit_answer",
                f"/api/calls/{quote(call_id, safe='')}/answer",
                {"answer": answer},
                call_id=call_id,
            )

    async def list_pending_inbound_calls(self, self_id: str) -> List[CallSnapshot]:
        try:
            async with self._client() as client:
                response = await client.get(f"/api/identities/{quote(self_id, safe='')}/calls/pending")
            response.raise_for_status()
            rows = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SignalingFetchError("Failed to check for incoming calls") from exc

        if not isinstance(rows, list):
            return []
        try:
            return [CallSnapshot.model_validate(row) for row in rows if isinstance(row, dict)]
        except ValidationError as exc:
            raise SignalingFetchError("Failed to check for incoming calls") from exc
