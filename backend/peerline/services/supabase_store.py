from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional
from uuid import uuid4

from peerline.core.config import settings
from peerline.core.errors import CallNotFound, InvalidTransition, SignalingFetchError, SignalingSubmitError
from peerline.core.telemetry import log_event, timed_step
from peerline.models.schemas import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    CallKind,
    CallSnapshot,
    CallStatus,
    is_valid_transition,
    utcnow,
)
from peerline.services.session_store import CallSessionStore


class SupabaseCallStore(CallSessionStore):
    """Supabase-backed call session table.

    Status writes are guarded with an ``eq(status)`` filter on the value that was
    read, so two parties racing on the same row cannot move it backwards.
    """

    def __init__(self, client: Any = None, *, table: Optional[str] = None) -> None:
        if client is None:
            from supabase import create_client

            # Use service_role key (bypasses RLS) if available, else anon key
            key = settings.SUPABASE_SERVICE_ROLE_KEY or settings.SUPABASE_ANON_KEY
            client = create_client(settings.SUPABASE_URL, key)
        self._client = client
        self._table = table or settings.SUPABASE_CALLS_TABLE

    def _rows(self) -> Any:
        return self._client.table(self._table)

    @staticmethod
    def _decode_row(row: Dict[str, Any]) -> CallSnapshot:
        return CallSnapshot(
            id=str(row.get("id")),
            kind=row.get("kind") or "voice",
            status=row.get("status") or "initiated",
            caller=row.get("caller") or "",
            callee=row.get("callee") or "",
            offer=row.get("offer"),
            answer=row.get("answer"),
            start_time=row.get("start_time") or utcnow(),
            end_time=row.get("end_time"),
        )

    def _get_row(self, call_id: str) -> Optional[Dict[str, Any]]:
        result = self._rows().select("*").eq("id", call_id).limit(1).execute()
        rows = result.data or []
        return rows[0] if rows else None

    async def create_call(self, caller_id: str, callee_id: str, kind: CallKind, offer: str) -> CallSnapshot:
        row = {
            "id": str(uuid4()),
            "kind": kind,
            "status": "initiated",
            "caller": caller_id,
            "callee": callee_id,
            "offer": offer,
            "start_time": utcnow().isoformat(),
        }
        with timed_step("supabase", "create_call", call_id=row["id"], peer_id=callee_id):
            try:
                await asyncio.to_thread(lambda: self._rows().insert(row).execute())
            except Exception as exc:
                raise SignalingSubmitError() from exc
        return self._decode_row(row)

    async def fetch_session(self, call_id: str) -> Optional[CallSnapshot]:
        try:
            row = await asyncio.to_thread(self._get_row, call_id)
        except Exception as exc:
            raise SignalingFetchError() from exc
        return self._decode_row(row) if row else None

    def _update_status_sync(self, call_id: str, status: CallStatus) -> CallSnapshot:
        row = self._get_row(call_id)
        if not row:
            raise CallNotFound()
        current = row.get("status") or "initiated"
        if current == status:
            return self._decode_row(row)
        if not is_valid_transition(current, status):
            raise InvalidTransition(f"Cannot move call from {current} to {status}")

        update: Dict[str, Any] = {"status": status}
        if status in TERMINAL_STATUSES:
            update["end_time"] = utcnow().isoformat()
        result = self._rows().update(update).eq("id", call_id).eq("status", current).execute()
        updated = result.data or []
        if updated:
            return self._decode_row(updated[0])

        # Lost the race; accept only if the winner wrote the same status.
        latest = self._get_row(call_id)
        if latest and latest.get("status") == status:
            return self._decode_row(latest)
        raise InvalidTransition(f"Call moved to {latest.get('status') if latest else 'absent'} concurrently")

    async def update_status(self, call_id: str, status: CallStatus) -> CallSnapshot:
        with timed_step("supabase", "update_status", call_id=call_id, details={"call_status": status}):
            try:
                return await asyncio.to_thread(self._update_status_sync, call_id, status)
            except (CallNotFound, InvalidTransition):
                raise
            except Exception as exc:
                raise SignalingSubmitError() from exc

    def _submit_answer_sync(self, call_id: str, answer: str) -> CallSnapshot:
        row = self._get_row(call_id)
        if not row:
            raise CallNotFound()
        if row.get("answer") == answer:
            return self._decode_row(row)
        if row.get("answer") is not None:
            raise InvalidTransition("Call already has an answer")
        if row.get("status") in TERMINAL_STATUSES:
            raise InvalidTransition(f"Cannot answer a call that is {row.get('status')}")
        result = self._rows().update({"answer": answer}).eq("id", call_id).is_("answer", "null").execute()
        updated = result.data or []
        if updated:
            return self._decode_row(updated[0])
        latest = self._get_row(call_id)
        if latest and latest.get("answer") == answer:
            return self._decode_row(latest)
        raise InvalidTransition("Call already has an answer")

    async def submit_answer(self, call_id: str, answer: str) -> CallSnapshot:
        with timed_step("supabase", "submit_answer", call_id=call_id):
            try:
                return await asyncio.to_thread(self._submit_answer_sync, call_id, answer)
            except (CallNotFound, InvalidTransition):
                raise
            except Exception as exc:
                raise SignalingSubmitError() from exc

    async def list_pending_inbound_calls(self, self_id: str) -> List[CallSnapshot]:
        def _query() -> List[Dict[str, Any]]:
            result = (
                self._rows()
                .select("*")
                .eq("callee", self_id)
                .in_("status", sorted(PENDING_STATUSES))
                .order("start_time", desc=False)
                .execute()
            )
            return result.data or []

        try:
            rows = await asyncio.to_thread(_query)
        except Exception as exc:
            log_event("supabase", "list_pending", status="warning", peer_id=self_id, details={"error": str(exc)})
            raise SignalingFetchError("Failed to check for incoming calls") from exc
        return [self._decode_row(row) for row in rows if isinstance(row, dict)]
