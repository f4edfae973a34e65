from __future__ import annotations

"""Operation pipelines: single-step image calls, research-then-generate,
streamed chat, and upload-then-transcribe-then-refine.

Each pipeline persists its artifact and then debits the ledger with the cost
the provider reported. Completed steps are never rolled back when a later
step fails.
"""

import base64
import binascii
import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..config import Settings
from ..domain.chunks import Attachment, ChatHistoryTurn, InvokeOptions, ProviderResponse
from ..domain.errors import BillingError, PersistenceError, PipelineStepError, ProviderError
from ..domain.models import (
    AnalyzeImageRequest,
    AnalyzeImageResponse,
    ChatMessageRecord,
    ChatStreamRequest,
    EditImageRequest,
    GenerateImageRequest,
    ImageArtifact,
    ImageResponse,
    InfographicResponse,
    RefineResponse,
    ResearchRequest,
    ResearchResponse,
    SearchResult,
    TitleResponse,
    TranscriptRecord,
    UserRecord,
)
from ..infrastructure.storage import Storage, new_id, utcnow
from . import prompts
from .gateway import UNAVAILABLE_MESSAGE, ProviderGateway
from .ledger import UsageLedger
from .model_router import ModelRouter, UnknownModelError
from .streaming import DisconnectPolicy, StreamOutcome, StreamSession
from .text_sections import parse_research_plan, split_keyword_header
from .uploads import AudioPayload, TransientUploads, wait_until_ready

logger = logging.getLogger("vision.pipeline")

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)
TITLE_MAX_WORDS = 5
TITLE_FALLBACK_CHARS = 20
IMAGE_CATEGORIES = ("person", "object")


def decode_image(value: str, default_mime: str = "image/png") -> Tuple[str, bytes]:
    """Split an optional ``data:<mime>;base64,`` prefix off and decode the payload."""
    match = _DATA_URI.match(value.strip())
    mime = match.group("mime") if match else default_mime
    payload = value.strip()[match.end():] if match else value.strip()
    try:
        return mime, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image data is not valid base64") from exc


def data_reference(response: ProviderResponse) -> str:
    encoded = base64.b64encode(response.image_data or b"").decode("ascii")
    return f"data:{response.image_mime_type};base64,{encoded}"


def clean_title(raw: str, source: str) -> str:
    title = (raw or "").strip().replace('"', "").strip()
    words = title.split()
    if not words:
        return source.strip()[:TITLE_FALLBACK_CHARS]
    return " ".join(words[:TITLE_MAX_WORDS])


def image_category(raw: str) -> str:
    """First recognised category word in the reply, otherwise ``other``."""
    for word in re.findall(r"[a-z]+", (raw or "").lower()):
        if word in IMAGE_CATEGORIES:
            return word
    return "other"


def _search_results(grounding: Optional[Dict[str, Any]]) -> List[SearchResult]:
    seen: Dict[str, SearchResult] = {}
    for item in (grounding or {}).get("searchResults", []) or []:
        url = item.get("url")
        if url and url not in seen:
            seen[url] = SearchResult(title=item.get("title") or url, url=url)
    return list(seen.values())


class Orchestrator:
    def __init__(
        self,
        storage: Storage,
        gateway: ProviderGateway,
        ledger: UsageLedger,
        settings: Settings,
        router: Optional[ModelRouter] = None,
    ) -> None:
        self.storage = storage
        self.gateway = gateway
        self.ledger = ledger
        self.settings = settings
        self.router = router or ModelRouter()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_gateway(self) -> None:
        if not self.gateway.available:
            raise ProviderError(UNAVAILABLE_MESSAGE, kind="unavailable")

    def _model(self, purpose: str) -> str:
        return self.router.select(purpose).model

    async def _charge_failure(self, user_id: str, feature: str, cost: int) -> None:
        # Only usage the provider itself reported is charged for a failed call
        if cost > 0:
            await self.ledger.debit(user_id, feature, cost)

    async def _invoke_image(
        self,
        user: UserRecord,
        feature: str,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        aspect_ratio: Optional[str],
    ) -> ProviderResponse:
        try:
            return await self.gateway.invoke(
                prompt, attachments, model, InvokeOptions(image_output=True, aspect_ratio=aspect_ratio)
            )
        except ProviderError as exc:
            await self._charge_failure(user.user_id, feature, exc.cost_incurred)
            raise

    async def _save_image(self, user: UserRecord, prompt: str, response: ProviderResponse, cost: int, **meta: Any) -> ImageArtifact:
        artifact = ImageArtifact(
            image_id=new_id(),
            user_id=user.user_id,
            prompt=prompt,
            data_ref=data_reference(response),
            cost=cost,
            created_at=utcnow(),
            **meta,
        )
        return await self.storage.save_image(artifact)

    # ------------------------------------------------------------------
    # Research and images
    # ------------------------------------------------------------------
    async def _research(self, req: ResearchRequest) -> ResearchResponse:
        """Research step without billing; degrades to a synthesized prompt."""
        fallback = prompts.default_image_prompt(req.topic, req.level, req.style, req.language, req.aspect_ratio)
        try:
            response = await self.gateway.invoke(
                prompts.research_prompt(req.topic, req.level, req.style, req.language, req.aspect_ratio),
                [],
                self._model("research"),
                InvokeOptions(search_enabled=True),
            )
        except ProviderError as exc:
            if exc.kind == "unavailable":
                raise
            logger.warning("research_fallback", extra={"reason": "provider_error", "error": exc.message})
            return ResearchResponse(
                image_prompt=fallback,
                facts=[],
                search_results=[],
                reported_cost=exc.cost_incurred,
                used_fallback=True,
            )
        plan = parse_research_plan(response.text)
        if not plan.has_prompt:
            logger.warning("research_fallback", extra={"reason": "missing_image_prompt"})
        return ResearchResponse(
            image_prompt=plan.image_prompt if plan.has_prompt else fallback,
            facts=plan.facts,
            search_results=_search_results(response.grounding),
            reported_cost=response.cost,
            used_fallback=not plan.has_prompt,
        )

    async def research(self, user: UserRecord, req: ResearchRequest) -> ResearchResponse:
        self._require_gateway()
        result = await self._research(req)
        await self.ledger.debit(user.user_id, "research", result.reported_cost)
        return result

    async def generate_image(self, user: UserRecord, req: GenerateImageRequest) -> ImageResponse:
        self._require_gateway()
        references = [Attachment(mime, data) for mime, data in (decode_image(r) for r in req.reference_images)]
        model = self._model("compose" if references else "image")
        response = await self._invoke_image(user, "image-generation", req.prompt, references, model, req.aspect_ratio)
        artifact = await self._save_image(user, req.prompt, response, response.cost)
        await self.ledger.debit(user.user_id, "image-generation", response.cost)
        return ImageResponse(image_id=artifact.image_id, image_data_reference=artifact.data_ref, reported_cost=response.cost)

    async def edit_image(self, user: UserRecord, req: EditImageRequest) -> ImageResponse:
        self._require_gateway()
        mime, data = decode_image(req.image, default_mime="image/jpeg")
        response = await self._invoke_image(
            user, "image-edit", req.instruction, [Attachment(mime, data)], self._model("edit"), None
        )
        artifact = await self._save_image(user, req.instruction, response, response.cost)
        await self.ledger.debit(user.user_id, "image-edit", response.cost)
        return ImageResponse(image_id=artifact.image_id, image_data_reference=artifact.data_ref, reported_cost=response.cost)

    async def analyze_image(self, user: UserRecord, req: AnalyzeImageRequest) -> AnalyzeImageResponse:
        self._require_gateway()
        mime, data = decode_image(req.image, default_mime="image/jpeg")
        try:
            response = await self.gateway.invoke(
                prompts.ANALYZE_IMAGE_PROMPT, [Attachment(mime, data)], self._model("analyze")
            )
        except ProviderError as exc:
            await self._charge_failure(user.user_id, "image-analysis", exc.cost_incurred)
            raise
        category = image_category(response.text)
        logger.info("image_classified", extra={"category": category, "cost": response.cost})
        await self.ledger.debit(user.user_id, "image-analysis", response.cost)
        return AnalyzeImageResponse(category=category, reported_cost=response.cost)

    async def infographic(self, user: UserRecord, req: ResearchRequest) -> InfographicResponse:
        """Research then generate; both costs land in one debit."""
        self._require_gateway()
        plan = await self._research(req)
        try:
            response = await self.gateway.invoke(
                plan.image_prompt,
                [],
                self._model("image"),
                InvokeOptions(image_output=True, aspect_ratio=req.aspect_ratio),
            )
        except ProviderError as exc:
            charged = plan.reported_cost + exc.cost_incurred
            logger.warning("pipeline_step_failed", extra={"pipeline": "infographic", "step": "generate", "charged": charged})
            try:
                await self.ledger.debit(user.user_id, "infographic", charged)
            except BillingError as billing:
                # ledger_apply_failed is already logged by the ledger
                logger.error("pipeline_charge_failed", extra={"pipeline": "infographic", "amount": billing.amount})
            raise PipelineStepError("generate", exc, charged=charged) from exc

        total = plan.reported_cost + response.cost
        artifact = await self._save_image(
            user,
            plan.image_prompt,
            response,
            total,
            level=req.level,
            style=req.style,
            language=req.language,
            facts=plan.facts,
        )
        await self.ledger.debit(user.user_id, "infographic", total)
        return InfographicResponse(
            image_id=artifact.image_id,
            image_data_reference=artifact.data_ref,
            image_prompt=plan.image_prompt,
            facts=plan.facts,
            search_results=plan.search_results,
            reported_cost=total,
        )

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def chat_stream(self, user: UserRecord, req: ChatStreamRequest) -> StreamSession:
        try:
            model = self.router.select_chat(req.model_selector).model
        except UnknownModelError as exc:
            raise ValueError(str(exc)) from exc
        limit = self.settings.chat_attachment_limits.get(user.role, 1)
        if len(req.attachments) > limit:
            raise ValueError(f"At most {limit} attachment(s) allowed for role {user.role}")
        attachments = []
        for att in req.attachments:
            _, data = decode_image(att.data, default_mime=att.mime_type)
            attachments.append(Attachment(att.mime_type, data))

        session_id = req.session_id
        if session_id is not None:
            if await self.storage.get_chat_session(user.user_id, session_id) is None:
                raise KeyError("Session not found")
        system_instruction = prompts.CHAT_SYSTEM_INSTRUCTION
        if req.assistant_id is not None:
            assistant = await self.storage.get_assistant(user.user_id, req.assistant_id)
            if assistant is None:
                raise KeyError("Assistant not found")
            system_instruction = f"{system_instruction}\n{prompts.assistant_instruction(assistant)}"
        self._require_gateway()
        if session_id is not None:
            await self.storage.add_chat_message(
                ChatMessageRecord(
                    message_id=new_id(),
                    session_id=session_id,
                    role="user",
                    content=req.new_message,
                    created_at=utcnow(),
                    metadata={"attachments": len(attachments)} if attachments else None,
                )
            )

        options = InvokeOptions(
            system_instruction=system_instruction,
            history=[ChatHistoryTurn(t.role, t.content) for t in req.history],
            search_enabled=req.search_enabled,
        )
        chunks = self.gateway.stream(req.new_message, attachments, model, options)

        async def finalize(outcome: StreamOutcome) -> Dict[str, Any]:
            extras: Dict[str, Any] = {"model": model}
            if session_id is not None:
                message = ChatMessageRecord(
                    message_id=new_id(),
                    session_id=session_id,
                    role="assistant",
                    content=outcome.text,
                    created_at=utcnow(),
                    metadata=outcome.grounding,
                )
                try:
                    await self.storage.add_chat_message(message)
                except KeyError as exc:
                    raise PersistenceError("Chat session no longer exists") from exc
                extras.update({"sessionId": session_id, "messageId": message.message_id})
            await self.ledger.debit(user.user_id, "chat", outcome.cost)
            return extras

        async def on_failure(outcome: StreamOutcome) -> None:
            await self._charge_failure(user.user_id, "chat", outcome.cost)

        return StreamSession(
            chunks=chunks,
            finalize=finalize,
            on_failure=on_failure,
            policy=DisconnectPolicy.CONTINUE,
            name="chat",
        )

    async def generate_title(self, user: UserRecord, text: str) -> TitleResponse:
        self._require_gateway()
        try:
            response = await self.gateway.invoke(prompts.title_prompt(text), [], self._model("title"))
        except ProviderError as exc:
            if exc.kind == "unavailable":
                raise
            logger.warning("title_fallback", extra={"error": exc.message})
            await self._charge_failure(user.user_id, "chat-title", exc.cost_incurred)
            return TitleResponse(title=clean_title("", text), reported_cost=exc.cost_incurred)
        await self.ledger.debit(user.user_id, "chat-title", response.cost)
        return TitleResponse(title=clean_title(response.text, text), reported_cost=response.cost)

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------
    def _transcript(self, user: UserRecord, text: str, cost: int, partial: bool) -> TranscriptRecord:
        keywords, body = split_keyword_header(text)
        now = utcnow()
        title = f"Transcript {now:%Y-%m-%d %H:%M}"
        if partial:
            title += " (partial)"
        return TranscriptRecord(
            transcript_id=new_id(),
            user_id=user.user_id,
            title=title,
            keywords=keywords,
            content=body,
            original_content=body,
            partial=partial,
            cost=cost,
            created_at=now,
            updated_at=now,
        )

    async def open_transcription(self, user: UserRecord, payloads: Sequence[AudioPayload]) -> StreamSession:
        """Stage, register and await the audio, then hand back an unstarted relay.

        Staged files are released when the relay closes, or here if anything
        fails before the relay exists.
        """
        if not payloads:
            raise ValueError("No audio files uploaded")
        self._require_gateway()
        uploads = TransientUploads(self.gateway)
        try:
            ready = []
            for payload in payloads:
                remote = await uploads.register(payload)
                ready.append(
                    await wait_until_ready(
                        self.gateway,
                        remote,
                        interval=self.settings.file_poll_interval,
                        attempts=self.settings.file_poll_attempts,
                    )
                )
        except BaseException:
            await uploads.aclose()
            raise

        attachments = [Attachment(f.mime_type, file_uri=f.uri) for f in ready]
        chunks = self.gateway.stream(prompts.TRANSCRIBE_PROMPT, attachments, self._model("transcribe"))

        async def finalize(outcome: StreamOutcome) -> Dict[str, Any]:
            record = await self.storage.save_transcript(self._transcript(user, outcome.text, outcome.cost, False))
            await self.ledger.debit(user.user_id, "transcription", outcome.cost)
            return {
                "id": record.transcript_id,
                "title": record.title,
                "keywords": record.keywords,
                "content": record.content,
            }

        async def save_partial(outcome: StreamOutcome) -> None:
            record = await self.storage.save_transcript(self._transcript(user, outcome.text, 0, True))
            logger.info("transcript_partial_saved", extra={"transcript_id": record.transcript_id, "chars": len(outcome.text)})

        async def on_failure(outcome: StreamOutcome) -> None:
            await self._charge_failure(user.user_id, "transcription", outcome.cost)

        return StreamSession(
            chunks=chunks,
            finalize=finalize,
            on_failure=on_failure,
            save_partial=save_partial,
            cleanup=uploads.aclose,
            policy=DisconnectPolicy.SAVE_PARTIAL,
            name="transcription",
        )

    async def refine_transcript(self, user: UserRecord, transcript_id: str, kind: str) -> RefineResponse:
        record = await self.storage.get_transcript(user.user_id, transcript_id)
        if record is None:
            raise KeyError("Transcript not found")
        self._require_gateway()
        prompt = prompts.refine_prompt(kind, record.original_content)
        try:
            response = await self.gateway.invoke(prompt, [], self._model("refine"))
        except ProviderError as exc:
            await self._charge_failure(user.user_id, "transcript-refine", exc.cost_incurred)
            raise
        refined = response.text.strip()
        if not refined:
            await self._charge_failure(user.user_id, "transcript-refine", response.cost)
            raise ProviderError("The provider returned an empty refinement", kind="malformed", cost_incurred=response.cost)
        await self.storage.update_transcript(
            user.user_id, transcript_id, {"content": refined, "refinement": kind, "cost": record.cost + response.cost}
        )
        await self.ledger.debit(user.user_id, "transcript-refine", response.cost)
        return RefineResponse(refined_text=refined, reported_cost=response.cost)
