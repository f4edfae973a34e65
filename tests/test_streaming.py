import asyncio
from typing import Any, Dict, List, Optional

from src.vision.domain.chunks import GroundingUpdate, StreamDone, StreamFailed, TextDelta
from src.vision.domain.errors import PersistenceError
from src.vision.services.streaming import (
    DisconnectPolicy,
    StreamOutcome,
    StreamSession,
    StreamState,
    encode_event,
    sse_stream,
)
from tests.fakes import SlowGateway


async def _chunks(*items):
    for item in items:
        yield item


class Recorder:
    def __init__(self, extras: Optional[Dict[str, Any]] = None) -> None:
        self.finalized: List[StreamOutcome] = []
        self.failed: List[StreamOutcome] = []
        self.partial: List[StreamOutcome] = []
        self.cleaned = 0
        self.extras = extras or {}

    async def finalize(self, outcome: StreamOutcome) -> Dict[str, Any]:
        self.finalized.append(outcome)
        return self.extras

    async def on_failure(self, outcome: StreamOutcome) -> None:
        self.failed.append(outcome)

    async def save_partial(self, outcome: StreamOutcome) -> None:
        self.partial.append(outcome)

    async def cleanup(self) -> None:
        self.cleaned += 1

    def session(self, chunks, policy=DisconnectPolicy.CANCEL) -> StreamSession:
        return StreamSession(
            chunks=chunks,
            finalize=self.finalize,
            on_failure=self.on_failure,
            save_partial=self.save_partial,
            cleanup=self.cleanup,
            policy=policy,
            name="test",
        )


async def _drain(session: StreamSession) -> list:
    return [event async for event in session.events()]


def test_deltas_concatenate_to_persisted_text():
    rec = Recorder(extras={"id": "abc"})

    async def run():
        session = rec.session(_chunks(TextDelta("Hel"), TextDelta(""), TextDelta("lo"), StreamDone(5)))
        return session, await _drain(session)

    session, events = asyncio.run(run())
    deltas = [e["text"] for e in events if isinstance(e, dict) and "done" not in e]
    assert "".join(deltas) == rec.finalized[0].text == "Hello"
    assert events[-2] == {"done": True, "text": "Hello", "reportedCost": 5, "id": "abc"}
    assert events[-1] == "[DONE]"
    assert session.state is StreamState.CLOSED
    assert session.outcome == "ok"
    assert rec.cleaned == 1


def test_latest_grounding_is_emitted_once_before_terminal_event():
    rec = Recorder()

    async def run():
        session = rec.session(
            _chunks(
                GroundingUpdate({"searchResults": [{"url": "a"}]}),
                TextDelta("x"),
                GroundingUpdate({"searchResults": [{"url": "b"}]}),
                StreamDone(2),
            )
        )
        return await _drain(session)

    events = asyncio.run(run())
    grounding = [e for e in events if isinstance(e, dict) and "groundingMetadata" in e]
    assert grounding == [{"groundingMetadata": {"searchResults": [{"url": "b"}]}}]
    assert events.index(grounding[0]) == len(events) - 3
    assert rec.finalized[0].grounding == {"searchResults": [{"url": "b"}]}


def test_upstream_failure_emits_single_error_without_done_marker():
    rec = Recorder()

    async def run():
        session = rec.session(_chunks(TextDelta("par"), StreamFailed("quota exceeded", "provider", 3)))
        return session, await _drain(session)

    session, events = asyncio.run(run())
    assert events == [{"text": "par"}, {"error": "quota exceeded", "kind": "provider"}]
    assert "[DONE]" not in events
    assert session.state is StreamState.CLOSED
    assert rec.finalized == []
    assert rec.failed[0].cost == 3
    assert rec.cleaned == 1


def test_finalize_failure_reports_persistence_kind():
    async def broken(outcome):
        raise PersistenceError("disk full")

    async def run():
        session = StreamSession(chunks=_chunks(TextDelta("hi"), StreamDone(1)), finalize=broken)
        return session, await _drain(session)

    session, events = asyncio.run(run())
    assert events[-1] == {"error": "disk full", "kind": "persistence"}
    assert not any(e == "[DONE]" or (isinstance(e, dict) and e.get("done")) for e in events)
    assert session.outcome == "persist_failed"


def test_stream_without_terminal_chunk_is_malformed():
    rec = Recorder()

    async def run():
        return await _drain(rec.session(_chunks(TextDelta("a"))))

    events = asyncio.run(run())
    assert events[-1]["kind"] == "malformed"
    assert len(rec.failed) == 1


def test_relay_crash_becomes_internal_error_event():
    async def exploding():
        yield TextDelta("a")
        raise RuntimeError("boom")

    async def run():
        session = Recorder().session(exploding())
        return session, await _drain(session)

    session, events = asyncio.run(run())
    assert events[-1]["kind"] == "internal"
    assert session.state is StreamState.CLOSED


def _disconnect_after_first(policy: DisconnectPolicy, release: bool):
    gateway = SlowGateway()
    rec = Recorder()

    async def run():
        session = rec.session(gateway.stream("p", [], "m"), policy=policy)
        events = session.events()
        first = await events.__anext__()
        await events.aclose()
        assert not session.client_connected
        if release:
            gateway.release.set()
        await asyncio.wait_for(session.wait_closed(), timeout=1.0)
        return session, first

    session, first = asyncio.run(run())
    assert first == {"text": "first "}
    return gateway, rec, session


def test_cancel_policy_stops_upstream_and_cleans_up():
    gateway, rec, session = _disconnect_after_first(DisconnectPolicy.CANCEL, release=False)
    assert session.state is StreamState.CLOSED
    assert session.outcome == "cancelled"
    assert gateway.stream_closed == [True]
    assert rec.cleaned == 1
    assert rec.finalized == [] and rec.partial == []


def test_continue_policy_finishes_and_persists_without_client():
    gateway, rec, session = _disconnect_after_first(DisconnectPolicy.CONTINUE, release=True)
    assert session.outcome == "ok_detached"
    assert rec.finalized[0].text == "first second"
    assert rec.finalized[0].cost == 7
    assert rec.cleaned == 1


def test_save_partial_policy_persists_relayed_text():
    gateway, rec, session = _disconnect_after_first(DisconnectPolicy.SAVE_PARTIAL, release=False)
    assert session.outcome == "partial_saved"
    assert [p.text for p in rec.partial] == ["first "]
    assert rec.finalized == []
    assert gateway.stream_closed == [True]


def test_sse_encoding():
    assert encode_event({"text": "héllo"}) == 'data: {"text": "héllo"}\n\n'
    assert encode_event("[DONE]") == "data: [DONE]\n\n"

    async def run():
        session = Recorder().session(_chunks(TextDelta("a"), StreamDone(0)))
        return [frame async for frame in sse_stream(session)]

    frames = asyncio.run(run())
    assert frames[0] == 'data: {"text": "a"}\n\n'
    assert frames[-1] == "data: [DONE]\n\n"


def test_abort_before_first_read_releases_session():
    rec = Recorder()
    opened = []

    async def chunks():
        opened.append(True)
        yield StreamDone(1)

    async def run():
        session = rec.session(chunks())
        await session.abort()
        await session.abort()
        return session

    session = asyncio.run(run())
    assert session.state is StreamState.CLOSED
    assert session.outcome == "abandoned"
    assert rec.cleaned == 1
    assert opened == []
    assert rec.finalized == [] and rec.partial == []


def test_abort_after_normal_completion_is_a_no_op():
    rec = Recorder()

    async def run():
        session = rec.session(_chunks(TextDelta("a"), StreamDone(2)))
        await _drain(session)
        await session.abort()
        return session

    session = asyncio.run(run())
    assert session.outcome == "ok"
    assert rec.cleaned == 1
