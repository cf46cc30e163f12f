from __future__ import annotations

import asyncio

import pytest

from peerline.services.pollers import IncomingCallWatcher
from peerline.services.session_store import InMemoryCallStore
from tests.fakes.fake_clients import FlakyStore

pytestmark = pytest.mark.unit


def _watcher(store, self_id="bob", **kwargs):
    surfaced = []
    dismissed = []
    errors = []
    watcher = IncomingCallWatcher(
        store,
        self_id=self_id,
        interval=0.01,
        on_incoming=lambda snapshot: surfaced.append(snapshot.id),
        on_dismissed=lambda call_id, reason: dismissed.append((call_id, reason)),
        on_error=errors.append,
        **kwargs,
    )
    return watcher, surfaced, dismissed, errors


def test_each_call_surfaces_exactly_once() -> None:
    async def scenario():
        store = InMemoryCallStore()
        call = await store.create_call("alice", "bob", "video", "offer-1")
        watcher, surfaced, _, _ = _watcher(store)
        for _ in range(5):
            await watcher.poll_once()
        await store.update_status(call.id, "ringing")
        for _ in range(5):
            await watcher.poll_once()
        return call, watcher, surfaced

    call, watcher, surfaced = asyncio.run(scenario())

    assert surfaced == [call.id]
    assert watcher.current.id == call.id
    assert watcher.current.status == "ringing"


def test_calls_for_other_identities_are_ignored() -> None:
    async def scenario():
        store = InMemoryCallStore()
        await store.create_call("alice", "carol", "voice", "offer-1")
        watcher, surfaced, _, _ = _watcher(store)
        await watcher.poll_once()
        return surfaced

    assert asyncio.run(scenario()) == []


def test_prompt_dismissed_when_caller_hangs_up_and_never_resurfaces() -> None:
    async def scenario():
        store = InMemoryCallStore()
        call = await store.create_call("alice", "bob", "voice", "offer-1")
        watcher, surfaced, dismissed, _ = _watcher(store)
        await watcher.poll_once()
        await store.update_status(call.id, "ended")
        await watcher.poll_once()
        await watcher.poll_once()
        return call, watcher, surfaced, dismissed

    call, watcher, surfaced, dismissed = asyncio.run(scenario())

    assert surfaced == [call.id]
    assert dismissed == [(call.id, "withdrawn")]
    assert watcher.current is None
    assert watcher.has_seen(call.id)


def test_user_dismissal_is_permanent() -> None:
    async def scenario():
        store = InMemoryCallStore()
        call = await store.create_call("alice", "bob", "voice", "offer-1")
        watcher, surfaced, dismissed, _ = _watcher(store)
        await watcher.poll_once()
        watcher.dismiss(call.id)
        await watcher.poll_once()
        return call, watcher, surfaced, dismissed

    call, watcher, surfaced, dismissed = asyncio.run(scenario())

    assert surfaced == [call.id]
    assert dismissed == []
    assert watcher.current is None


def test_multiple_pending_calls_queue_in_arrival_order() -> None:
    async def scenario():
        store = InMemoryCallStore()
        first = await store.create_call("alice", "bob", "voice", "offer-1")
        second = await store.create_call("carol", "bob", "voice", "offer-2")
        watcher, surfaced, _, _ = _watcher(store)
        await watcher.poll_once()
        head = watcher.current.id
        watcher.dismiss(first.id)
        return first, second, head, watcher, surfaced

    first, second, head, watcher, surfaced = asyncio.run(scenario())

    assert surfaced == [first.id, second.id]
    assert head == first.id
    assert watcher.current.id == second.id


def test_list_failures_surface_error_after_threshold() -> None:
    async def scenario():
        store = FlakyStore(fail_reads=2)
        watcher, _, _, errors = _watcher(store, max_failures=2)
        await watcher.poll_once()
        await watcher.poll_once()
        await watcher.poll_once()
        return errors

    errors = asyncio.run(scenario())

    assert errors[0].detail == "Failed to check for incoming calls"
    assert errors[1] is None


def test_idle_without_identity() -> None:
    async def scenario():
        store = FlakyStore()
        watcher, _, _, _ = _watcher(store, self_id="")
        watcher.start()
        await watcher.poll_once()
        return watcher, store

    watcher, store = asyncio.run(scenario())

    assert watcher.running is False
    assert store.reads == 0
