from __future__ import annotations

import asyncio

import httpx
import pytest

from peerline.core.errors import InvalidTransition, SignalingFetchError, SignalingSubmitError
from peerline.main import create_app
from peerline.services.session_store import InMemoryCallStore
from peerline.services.store_client import HttpCallStore

pytestmark = pytest.mark.unit


def _remote_store(data_root):
    backing = InMemoryCallStore()
    remote_app = create_app(store=backing, data_root=data_root, start_background=False)
    transport = httpx.ASGITransport(app=remote_app)
    return backing, HttpCallStore(base_url="http://store.test", transport=transport)


def test_http_store_round_trips_the_call_lifecycle(data_root) -> None:
    async def scenario():
        backing, store = _remote_store(data_root)
        created = await store.create_call("alice", "bob", "video", "offer-1")
        await store.update_status(created.id, "ringing")
        pending = await store.list_pending_inbound_calls("bob")
        answered = await store.submit_answer(created.id, "answer-1")
        fetched = await store.fetch_session(created.id)
        local = await backing.fetch_session(created.id)
        return created, pending, answered, fetched, local

    created, pending, answered, fetched, local = asyncio.run(scenario())

    assert created.status == "initiated"
    assert [call.id for call in pending] == [created.id]
    assert answered.answer == "answer-1"
    assert fetched.status == "ringing"
    assert local.answer == "answer-1"


def test_http_store_absent_session_is_none(data_root) -> None:
    _, store = _remote_store(data_root)

    assert asyncio.run(store.fetch_session("missing")) is None


def test_http_store_maps_conflicts_to_invalid_transition(data_root) -> None:
    async def scenario():
        _, store = _remote_store(data_root)
        created = await store.create_call("alice", "bob", "voice", "offer-1")
        await store.update_status(created.id, "ended")
        await store.update_status(created.id, "ringing")

    with pytest.raises(InvalidTransition) as exc_info:
        asyncio.run(scenario())

    assert "ended" in exc_info.value.detail


def _failing_transport(status_code: int) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, json={"detail": "unavailable"}))


def test_http_store_fetch_failure_raises_fetch_error() -> None:
    store = HttpCallStore(base_url="http://store.test", transport=_failing_transport(503))

    with pytest.raises(SignalingFetchError):
        asyncio.run(store.fetch_session("call-1"))
    with pytest.raises(SignalingFetchError):
        asyncio.run(store.list_pending_inbound_calls("bob"))


def test_http_store_submit_failure_raises_submit_error() -> None:
    store = HttpCallStore(base_url="http://store.test", transport=_failing_transport(500))

    with pytest.raises(SignalingSubmitError):
        asyncio.run(store.update_status("call-1", "ringing"))


def test_http_store_network_error_raises_submit_error() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = HttpCallStore(base_url="http://store.test", transport=httpx.MockTransport(_refuse))

    with pytest.raises(SignalingSubmitError):
        asyncio.run(store.create_call("alice", "bob", "voice", "offer-1"))


def _proxy_page_transport() -> httpx.MockTransport:
    return httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>proxy error</html>", headers={"content-type": "text/html"})
    )


def test_http_store_undecodable_write_response_raises_submit_error() -> None:
    store = HttpCallStore(base_url="http://store.test", transport=_proxy_page_transport())

    with pytest.raises(SignalingSubmitError):
        asyncio.run(store.create_call("alice", "bob", "voice", "offer-1"))
    with pytest.raises(SignalingSubmitError):
        asyncio.run(store.submit_answer("call-1", "answer-1"))


def test_http_store_undecodable_read_response_raises_fetch_error() -> None:
    store = HttpCallStore(base_url="http://store.test", transport=_proxy_page_transport())

    with pytest.raises(SignalingFetchError):
        asyncio.run(store.fetch_session("call-1"))
    with pytest.raises(SignalingFetchError):
        asyncio.run(store.list_pending_inbound_calls("bob"))


def test_http_store_wrong_shape_raises_typed_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    store = HttpCallStore(base_url="http://store.test", transport=transport)

    with pytest.raises(SignalingSubmitError):
        asyncio.run(store.update_status("call-1", "ringing"))
    with pytest.raises(SignalingFetchError):
        asyncio.run(store.fetch_session("call-1"))
