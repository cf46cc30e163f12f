from __future__ import annotations

import asyncio

import pytest

from peerline.core.errors import NegotiationError
from peerline.services.media import LocalMediaStream
from peerline.services.negotiation import NegotiationEngine
from tests.fakes.fake_clients import FakePeerConnection, FakeTrack

pytestmark = pytest.mark.unit


def test_create_offer_waits_for_gathering_and_attaches_tracks() -> None:
    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=1.0)
        engine.attach_stream(LocalMediaStream(tracks=[FakeTrack("audio"), FakeTrack("video")]))
        offer = await engine.create_offer()
        return pc, engine, offer

    pc, engine, offer = asyncio.run(scenario())

    assert offer == f"offer-{pc.label}+candidates"
    assert [track.kind for track in pc.tracks] == ["audio", "video"]
    assert engine.signaling_state == "have-local-offer"


def test_create_offer_returns_partial_descriptor_when_gathering_is_slow() -> None:
    async def scenario():
        pc = FakePeerConnection(local_delay=5.0)
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.05)
        loop = asyncio.get_running_loop()
        started = loop.time()
        offer = await engine.create_offer()
        elapsed = loop.time() - started
        engine.close()
        await engine.wait_closed()
        return pc, offer, elapsed

    pc, offer, elapsed = asyncio.run(scenario())

    assert offer == f"offer-{pc.label}"
    assert elapsed < 1.0
    assert pc.closed is True


def test_create_answer_requires_an_offer() -> None:
    async def scenario():
        engine = NegotiationEngine(peer_connection=FakePeerConnection(), gathering_timeout=0.5)
        await engine.create_answer("")

    with pytest.raises(NegotiationError) as exc_info:
        asyncio.run(scenario())

    assert exc_info.value.detail == "No offer available in call session."


def test_create_answer_applies_remote_offer() -> None:
    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.5)
        answer = await engine.create_answer("offer-remote")
        return pc, answer

    pc, answer = asyncio.run(scenario())

    assert pc.remote_descriptions[0].type == "offer"
    assert pc.remote_descriptions[0].sdp == "offer-remote"
    assert answer == f"answer-{pc.label}+candidates"
    assert pc.signalingState == "stable"


def test_set_remote_answer_is_idempotent() -> None:
    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.5)
        await engine.create_offer()
        first = await engine.set_remote_answer("answer-remote")
        second = await engine.set_remote_answer("answer-remote")
        return pc, first, second

    pc, first, second = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert len(pc.remote_descriptions) == 1
    assert pc.signalingState == "stable"


def test_set_remote_answer_before_offer_is_ignored() -> None:
    async def scenario():
        engine = NegotiationEngine(peer_connection=FakePeerConnection(), gathering_timeout=0.5)
        return await engine.set_remote_answer("answer-remote")

    assert asyncio.run(scenario()) is False


def test_rejected_remote_answer_raises_negotiation_error() -> None:
    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.5)
        await engine.create_offer()
        pc.fail_remote = True
        await engine.set_remote_answer("garbage")

    with pytest.raises(NegotiationError):
        asyncio.run(scenario())


def test_remote_tracks_merge_into_one_stream_announced_once() -> None:
    announced = []

    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.5, on_remote_stream=announced.append)
        assert engine.remote_stream is None
        pc.emit("track", FakeTrack("audio"))
        pc.emit("track", FakeTrack("video"))
        return engine

    engine = asyncio.run(scenario())

    assert len(announced) == 1
    assert announced[0] is engine.remote_stream
    assert [track.kind for track in engine.remote_stream.tracks] == ["audio", "video"]


def test_operations_after_close_fail() -> None:
    async def scenario():
        pc = FakePeerConnection()
        engine = NegotiationEngine(peer_connection=pc, gathering_timeout=0.5)
        engine.close()
        engine.close()
        await engine.wait_closed()
        assert pc.closed is True
        await engine.create_offer()

    with pytest.raises(NegotiationError):
        asyncio.run(scenario())
