import asyncio
import base64

import pytest
from starlette.requests import ClientDisconnect

from src.vision.domain.chunks import StreamDone, TextDelta
from src.vision.domain.errors import FileNotReadyError, PipelineStepError, ProviderError
from src.vision.domain.models import (
    ChatSessionRecord,
    ChatStreamRequest,
    EditImageRequest,
    GenerateImageRequest,
    ResearchRequest,
)
from src.vision.infrastructure.storage import new_id, utcnow
from src.vision.security.auth import new_user
from src.vision.services.gateway import UnavailableGateway
from src.vision.services.ledger import UsageLedger
from src.vision.services.model_router import ModelRouter
from src.vision.services.orchestrator import Orchestrator, clean_title, decode_image
from src.vision.services.streaming import StreamState, sse_response
from src.vision.services.uploads import AudioPayload
from tests.fakes import FailingUsageStorage, PNG_BYTES, image_response, provider_error, text_response

PLAN = "FACTS:\n- Lava is hot\n- Ash travels far\n\nIMAGE_PROMPT:\nA cutaway volcano poster"


@pytest.fixture
def orch(storage, gateway, settings):
    return Orchestrator(storage, gateway, UsageLedger(storage), settings, router=ModelRouter(env={}))


def _usage(storage, user):
    return asyncio.run(storage.list_usage(user.user_id))


# ---------------------------------------------------------------------------
# Research and infographic
# ---------------------------------------------------------------------------
def test_research_fallback_is_a_usable_prompt(orch, gateway, storage, user):
    gateway.queue(provider_error(cost=4))
    result = asyncio.run(orch.research(user, ResearchRequest(topic="Volcanoes")))

    assert result.used_fallback
    assert "Volcanoes" in result.image_prompt
    assert result.facts == []
    assert [(r.feature, r.delta) for r in _usage(storage, user)] == [("research", -4)]


def test_research_parses_plan_and_deduplicates_sources(orch, gateway, user):
    grounding = {
        "searchResults": [
            {"title": "Volcano", "url": "https://a.example"},
            {"title": "Volcano again", "url": "https://a.example"},
            {"url": "https://b.example"},
        ]
    }
    gateway.queue(text_response(PLAN, cost=6, grounding=grounding))
    result = asyncio.run(orch.research(user, ResearchRequest(topic="Volcanoes")))

    assert not result.used_fallback
    assert result.image_prompt == "A cutaway volcano poster"
    assert result.facts == ["Lava is hot", "Ash travels far"]
    assert [(s.title, s.url) for s in result.search_results] == [
        ("Volcano", "https://a.example"),
        ("https://b.example", "https://b.example"),
    ]
    assert gateway.invoke_calls[0]["options"].search_enabled


def test_infographic_uses_fallback_prompt_and_charges_sum(orch, gateway, storage, user):
    gateway.queue(text_response("no labelled sections at all", cost=3), image_response(cost=20))
    req = ResearchRequest(topic="Tides", complexityLevel="College", language="French")
    result = asyncio.run(orch.infographic(user, req))

    image_prompt = gateway.invoke_calls[1]["prompt"]
    assert "Tides" in image_prompt and "French" in image_prompt
    assert result.reported_cost == 23
    assert result.image_data_reference.startswith("data:image/png;base64,")
    assert [(r.feature, r.delta) for r in _usage(storage, user)] == [("infographic", -23)]

    saved = asyncio.run(storage.list_images(user.user_id))
    assert saved[0].level == "College"
    assert saved[0].cost == 23


def test_infographic_generate_failure_keeps_research_charge(orch, gateway, storage, user):
    gateway.queue(text_response(PLAN, cost=5), provider_error("image blocked", cost=2))

    with pytest.raises(PipelineStepError) as info:
        asyncio.run(orch.infographic(user, ResearchRequest(topic="Volcanoes")))

    assert info.value.step == "generate"
    assert info.value.charged == 7
    assert info.value.message == "image blocked"
    assert [(r.feature, r.delta) for r in _usage(storage, user)] == [("infographic", -7)]
    assert asyncio.run(storage.list_images(user.user_id)) == []


def test_infographic_step_error_survives_billing_failure(gateway, settings):
    failing = FailingUsageStorage()
    record = asyncio.run(new_user("dana", "secret123", settings, is_approved=True))
    user = asyncio.run(failing.create_user(record))
    orch = Orchestrator(failing, gateway, UsageLedger(failing), settings, router=ModelRouter(env={}))
    gateway.queue(text_response(PLAN, cost=5), provider_error("image blocked", cost=2))

    with pytest.raises(PipelineStepError) as info:
        asyncio.run(orch.infographic(user, ResearchRequest(topic="Volcanoes")))

    assert info.value.step == "generate"
    assert info.value.charged == 7


def test_unavailable_gateway_short_circuits(storage, settings, user):
    orch = Orchestrator(storage, UnavailableGateway(), UsageLedger(storage), settings, router=ModelRouter(env={}))
    with pytest.raises(ProviderError) as info:
        asyncio.run(orch.infographic(user, ResearchRequest(topic="x")))
    assert info.value.kind == "unavailable"
    assert _usage(storage, user) == []


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------
def test_edit_strips_data_uri_prefix(orch, gateway, storage, user):
    gateway.queue(image_response(cost=9))
    encoded = base64.b64encode(PNG_BYTES).decode()
    result = asyncio.run(
        orch.edit_image(user, EditImageRequest(image=f"data:image/webp;base64,{encoded}", instruction="add a hat"))
    )

    call = gateway.invoke_calls[0]
    assert call["attachments"][0].mime_type == "image/webp"
    assert call["attachments"][0].data == PNG_BYTES
    assert call["model"] == "gemini-3-pro-image-preview"
    assert result.reported_cost == 9
    assert _usage(storage, user)[0].feature == "image-edit"


def test_reference_images_route_to_compose_model(orch, gateway, user):
    gateway.queue(image_response())
    encoded = base64.b64encode(PNG_BYTES).decode()
    asyncio.run(orch.generate_image(user, GenerateImageRequest(prompt="combine", referenceImages=[encoded])))

    call = gateway.invoke_calls[0]
    assert call["model"] == "gemini-2.5-flash-image"
    assert call["attachments"][0].mime_type == "image/png"
    assert call["options"].image_output


def test_invalid_image_payload_is_rejected_before_any_call(orch, gateway, user):
    with pytest.raises(ValueError):
        asyncio.run(orch.edit_image(user, EditImageRequest(image="not base64!!", instruction="x")))
    assert gateway.calls == 0


def test_failed_image_call_charges_reported_cost_only(orch, gateway, storage, user):
    gateway.queue(provider_error(cost=0, kind="network"))
    with pytest.raises(ProviderError):
        asyncio.run(orch.generate_image(user, GenerateImageRequest(prompt="cat")))
    assert _usage(storage, user) == []


def test_decode_image_without_prefix_uses_default_mime():
    mime, data = decode_image(base64.b64encode(b"raw").decode(), default_mime="image/jpeg")
    assert mime == "image/jpeg"
    assert data == b"raw"


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
def test_title_falls_back_to_message_prefix(orch, gateway, storage, user):
    gateway.queue(provider_error())
    text = "How do I plant tomatoes on a balcony?"
    result = asyncio.run(orch.generate_title(user, text))
    assert result.title == text[:20]
    assert _usage(storage, user) == []


def test_clean_title_limits_words_and_strips_quotes():
    assert clean_title('"Planting Tomatoes On Small Urban Balconies"', "x") == "Planting Tomatoes On Small Urban"
    assert clean_title("   ", "fallback source text that is long") == "fallback source text"


def test_chat_stream_persists_both_turns(orch, gateway, storage, user):
    gateway.script(TextDelta("Hi "), TextDelta("there"), StreamDone(11))
    now = utcnow()
    session = ChatSessionRecord(session_id=new_id(), user_id=user.user_id, title="t", created_at=now, updated_at=now)
    asyncio.run(storage.create_chat_session(session))

    async def run():
        relay = await orch.chat_stream(user, ChatStreamRequest(newMessage="Hello", sessionId=session.session_id))
        return [e async for e in relay.events()]

    events = asyncio.run(run())
    done = events[-2]
    assert done["text"] == "Hi there"
    assert done["sessionId"] == session.session_id
    assert done["model"] == "gemini-3-flash-preview"

    messages = asyncio.run(storage.list_chat_messages(session.session_id))
    assert [(m.role, m.content) for m in messages] == [("user", "Hello"), ("assistant", "Hi there")]
    assert [(r.feature, r.delta) for r in _usage(storage, user)] == [("chat", -11)]


def test_chat_stream_validation(orch, gateway, user):
    with pytest.raises(ValueError):
        asyncio.run(orch.chat_stream(user, ChatStreamRequest(newMessage="hi", modelSelector="gpt-9")))

    encoded = base64.b64encode(PNG_BYTES).decode()
    two = [{"mimeType": "image/png", "data": encoded}] * 2
    with pytest.raises(ValueError):
        asyncio.run(orch.chat_stream(user, ChatStreamRequest(newMessage="hi", attachments=two)))

    with pytest.raises(KeyError):
        asyncio.run(orch.chat_stream(user, ChatStreamRequest(newMessage="hi", sessionId="missing")))
    assert gateway.stream_calls == []


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------
def _transcribe(orch, user):
    async def run():
        relay = await orch.open_transcription(user, [AudioPayload("memo.mp3", "audio/mpeg", b"id3")])
        return [e async for e in relay.events()]

    return asyncio.run(run())


def test_transcription_saves_record_and_releases_files(orch, gateway, storage, user):
    gateway.script(TextDelta("#ai #notes\n\n"), TextDelta("Hello world."), StreamDone(12))
    events = _transcribe(orch, user)

    done = events[-2]
    assert done["keywords"] == "#ai #notes"
    assert done["content"] == "Hello world."
    record = asyncio.run(storage.get_transcript(user.user_id, done["id"]))
    assert record.original_content == "Hello world."
    assert gateway.stream_calls[0]["attachments"][0].file_uri == "https://files.example/1"
    assert gateway.deleted == ["files/1"]
    assert [(r.feature, r.delta) for r in _usage(storage, user)] == [("transcription", -12)]


def test_transcription_timeout_cleans_up_without_streaming(orch, gateway, user):
    gateway.upload_state = "PROCESSING"
    with pytest.raises(FileNotReadyError):
        asyncio.run(orch.open_transcription(user, [AudioPayload("memo.mp3", "audio/mpeg", b"id3")]))
    assert gateway.deleted == ["files/1"]
    assert gateway.stream_calls == []


def test_transcription_released_when_client_leaves_before_first_byte(orch, gateway, user):
    async def send(message):
        raise OSError("connection reset")

    async def receive():
        return {"type": "http.disconnect"}

    async def run():
        relay = await orch.open_transcription(user, [AudioPayload("memo.mp3", "audio/mpeg", b"id3")])
        staged = list(relay.cleanup.__self__.local_paths)
        scope = {"type": "http", "asgi": {"version": "3.0", "spec_version": "2.4"}}
        with pytest.raises((OSError, ClientDisconnect)):
            await sse_response(relay)(scope, receive, send)
        return relay, staged

    relay, staged = asyncio.run(run())
    assert relay.state is StreamState.CLOSED
    assert gateway.deleted == ["files/1"]
    assert staged and not any(p.exists() for p in staged)
    assert gateway.stream_closed == []


def test_refine_always_starts_from_original(orch, gateway, storage, user):
    gateway.script(TextDelta("#a\n\nraw words here"), StreamDone(1))
    transcript_id = _transcribe(orch, user)[-2]["id"]

    gateway.queue(text_response("## Notes\n- words", cost=4), text_response("Formal words.", cost=5))
    first = asyncio.run(orch.refine_transcript(user, transcript_id, "organize"))
    second = asyncio.run(orch.refine_transcript(user, transcript_id, "formalize"))

    assert first.refined_text == "## Notes\n- words"
    assert second.reported_cost == 5
    assert "raw words here" in gateway.invoke_calls[1]["prompt"]
    assert "## Notes" not in gateway.invoke_calls[1]["prompt"]

    record = asyncio.run(storage.get_transcript(user.user_id, transcript_id))
    assert record.content == "Formal words."
    assert record.original_content == "raw words here"
    assert record.refinement == "formalize"
    assert record.cost == 10


def test_refine_empty_result_is_malformed(orch, gateway, storage, user):
    gateway.script(TextDelta("body"), StreamDone(0))
    transcript_id = _transcribe(orch, user)[-2]["id"]
    gateway.queue(text_response("   ", cost=2))

    with pytest.raises(ProviderError) as info:
        asyncio.run(orch.refine_transcript(user, transcript_id, "organize"))
    assert info.value.kind == "malformed"
    assert _usage(storage, user)[0].delta == -2


def test_refine_missing_transcript(orch, user):
    with pytest.raises(KeyError):
        asyncio.run(orch.refine_transcript(user, "nope", "organize"))
