from __future__ import annotations

import asyncio

import pytest

from peerline.core.errors import CallNotFound, InvalidTransition, SignalingFetchError, SignalingSubmitError
from peerline.services.supabase_store import SupabaseCallStore
from tests.fakes.fake_clients import FakeSupabaseClient

pytestmark = pytest.mark.unit


def _store():
    client = FakeSupabaseClient()
    return client, SupabaseCallStore(client, table="call_sessions")


def test_supabase_store_call_lifecycle() -> None:
    async def scenario():
        client, store = _store()
        created = await store.create_call("alice", "bob", "video", "offer-1")
        await store.update_status(created.id, "ringing")
        pending = await store.list_pending_inbound_calls("bob")
        await store.submit_answer(created.id, "answer-1")
        ended = await store.update_status(created.id, "ended")
        after = await store.list_pending_inbound_calls("bob")
        return client, created, pending, ended, after

    client, created, pending, ended, after = asyncio.run(scenario())

    assert created.status == "initiated"
    assert [call.id for call in pending] == [created.id]
    assert ended.status == "ended"
    assert ended.answer == "answer-1"
    assert ended.end_time is not None
    assert after == []
    assert len(client.tables["call_sessions"].rows) == 1


def test_supabase_store_rejects_backwards_and_unknown() -> None:
    async def scenario():
        _, store = _store()
        created = await store.create_call("alice", "bob", "voice", "offer-1")
        await store.update_status(created.id, "missed")
        with pytest.raises(InvalidTransition):
            await store.update_status(created.id, "inProgress")
        with pytest.raises(InvalidTransition):
            await store.submit_answer(created.id, "answer-1")
        with pytest.raises(CallNotFound):
            await store.update_status("missing", "ended")
        return await store.fetch_session("missing")

    assert asyncio.run(scenario()) is None


def test_supabase_store_maps_backend_failures() -> None:
    async def scenario():
        client, store = _store()
        created = await store.create_call("alice", "bob", "voice", "offer-1")
        client.tables["call_sessions"].fail = True
        errors = []
        for call in (
            store.fetch_session(created.id),
            store.list_pending_inbound_calls("bob"),
            store.update_status(created.id, "ringing"),
        ):
            try:
                await call
            except Exception as exc:
                errors.append(type(exc))
        return errors

    assert asyncio.run(scenario()) == [SignalingFetchError, SignalingFetchError, SignalingSubmitError]
