from __future__ import annotations

"""Provider gateway: the only module that talks to the Gemini SDK.

``invoke`` returns a complete ``ProviderResponse``; ``stream`` returns a lazy,
non-restartable sequence of ``Chunk`` values that always ends with exactly one
``StreamDone`` or ``StreamFailed``. SDK and transport exceptions never escape
``stream``; ``invoke`` raises ``ProviderError``.
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence
import logging

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..config import Settings
from ..domain.chunks import (
    Attachment,
    Chunk,
    GroundingUpdate,
    InvokeOptions,
    ProviderResponse,
    RemoteFile,
    StreamDone,
    StreamFailed,
    TextDelta,
)
from ..domain.errors import ProviderError

llm_logger = logging.getLogger("vision.llm")

UNAVAILABLE_MESSAGE = "AI service is not available."


class ProviderGateway(Protocol):
    available: bool

    async def invoke(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> ProviderResponse: ...

    def stream(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> AsyncIterator[Chunk]: ...

    async def upload_file(self, path: str, mime_type: str) -> RemoteFile: ...

    async def get_file(self, name: str) -> RemoteFile: ...

    async def delete_file(self, name: str) -> None: ...


def search_results_from(grounding: Any) -> List[Dict[str, str]]:
    """Flatten grounding chunks into ``[{title, url}]``, first occurrence per url wins."""
    seen: Dict[str, Dict[str, str]] = {}
    for chunk in getattr(grounding, "grounding_chunks", None) or []:
        web = getattr(chunk, "web", None)
        uri = getattr(web, "uri", None)
        title = getattr(web, "title", None)
        if uri and title and uri not in seen:
            seen[uri] = {"title": title, "url": uri}
    return list(seen.values())


def _usage_tokens(response: Any) -> int:
    usage = getattr(response, "usage_metadata", None)
    return int(getattr(usage, "total_token_count", 0) or 0)


def _first_candidate(response: Any) -> Any:
    candidates = getattr(response, "candidates", None) or []
    return candidates[0] if candidates else None


def _parts(candidate: Any) -> List[Any]:
    content = getattr(candidate, "content", None)
    return list(getattr(content, "parts", None) or [])


def _state_name(state: Any) -> str:
    if state is None:
        return "STATE_UNSPECIFIED"
    return str(getattr(state, "name", None) or state).upper()


def _to_remote(file: Any) -> RemoteFile:
    return RemoteFile(
        name=file.name,
        uri=getattr(file, "uri", None) or "",
        mime_type=getattr(file, "mime_type", None) or "",
        state=_state_name(getattr(file, "state", None)),
    )


class GeminiGateway:
    available = True

    def __init__(self, client: genai.Client) -> None:
        self._client = client

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------
    @staticmethod
    def _part(att: Attachment) -> types.Part:
        if att.file_uri:
            return types.Part.from_uri(file_uri=att.file_uri, mime_type=att.mime_type)
        return types.Part.from_bytes(data=att.data or b"", mime_type=att.mime_type)

    def _contents(self, prompt: str, attachments: Sequence[Attachment], options: InvokeOptions) -> List[types.Content]:
        contents: List[types.Content] = []
        for turn in options.history:
            role = "model" if turn.role == "assistant" else "user"
            contents.append(types.Content(role=role, parts=[types.Part.from_text(text=turn.content)]))
        parts = [types.Part.from_text(text=prompt)] + [self._part(a) for a in attachments]
        contents.append(types.Content(role="user", parts=parts))
        return contents

    @staticmethod
    def _config(options: InvokeOptions) -> types.GenerateContentConfig:
        kwargs: Dict[str, Any] = {}
        if options.system_instruction:
            kwargs["system_instruction"] = options.system_instruction
        if options.search_enabled:
            kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        if options.image_output:
            kwargs["response_modalities"] = ["IMAGE"]
            if options.aspect_ratio:
                kwargs["image_config"] = types.ImageConfig(aspect_ratio=options.aspect_ratio)
        return types.GenerateContentConfig(**kwargs)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------
    async def invoke(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> ProviderResponse:
        options = options or InvokeOptions()
        llm_logger.debug("llm_invoke", extra={"model": model, "prompt_chars": len(prompt), "attachments": len(attachments)})
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=self._contents(prompt, attachments, options),
                config=self._config(options),
            )
        except genai_errors.APIError as exc:
            llm_logger.warning("llm_provider_error", extra={"model": model, "code": exc.code, "error": exc.message})
            raise ProviderError(exc.message or str(exc), kind="provider") from exc
        except httpx.HTTPError as exc:
            llm_logger.warning("llm_network_error", extra={"model": model, "error": str(exc)})
            raise ProviderError(f"Network error talking to the AI provider: {exc}", kind="network") from exc

        cost = _usage_tokens(response)
        candidate = _first_candidate(response)
        out = ProviderResponse(cost=cost)
        texts: List[str] = []
        for part in _parts(candidate):
            if getattr(part, "thought", None):
                continue
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data and out.image_data is None:
                out.image_data = inline.data
                out.image_mime_type = inline.mime_type or "image/png"
            elif getattr(part, "text", None):
                texts.append(part.text)
        out.text = "".join(texts)
        grounding = getattr(candidate, "grounding_metadata", None)
        if grounding is not None:
            out.grounding = {"searchResults": search_results_from(grounding)}
        if options.image_output and out.image_data is None:
            raise ProviderError("The provider returned no image", kind="malformed", cost_incurred=cost)
        llm_logger.info("llm_invoke_done", extra={"model": model, "cost": cost})
        return out

    async def stream(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> AsyncIterator[Chunk]:
        options = options or InvokeOptions()
        cost = 0
        llm_logger.debug("llm_stream_open", extra={"model": model, "prompt_chars": len(prompt)})
        try:
            upstream = await self._client.aio.models.generate_content_stream(
                model=model,
                contents=self._contents(prompt, attachments, options),
                config=self._config(options),
            )
            async for chunk in upstream:
                cost = _usage_tokens(chunk) or cost
                candidate = _first_candidate(chunk)
                text = "".join(
                    p.text for p in _parts(candidate) if getattr(p, "text", None) and not getattr(p, "thought", None)
                )
                if text:
                    yield TextDelta(text)
                grounding = getattr(candidate, "grounding_metadata", None)
                if grounding is not None:
                    yield GroundingUpdate({"searchResults": search_results_from(grounding)})
        except genai_errors.APIError as exc:
            llm_logger.warning("llm_stream_provider_error", extra={"model": model, "code": exc.code, "error": exc.message})
            yield StreamFailed(exc.message or str(exc), kind="provider", cost_incurred=cost)
            return
        except httpx.HTTPError as exc:
            llm_logger.warning("llm_stream_network_error", extra={"model": model, "error": str(exc)})
            yield StreamFailed(f"Network error talking to the AI provider: {exc}", kind="network", cost_incurred=cost)
            return
        llm_logger.info("llm_stream_done", extra={"model": model, "cost": cost})
        yield StreamDone(final_cost=cost)

    # ------------------------------------------------------------------
    # Bulk files
    # ------------------------------------------------------------------
    async def upload_file(self, path: str, mime_type: str) -> RemoteFile:
        try:
            file = await self._client.aio.files.upload(file=path, config=types.UploadFileConfig(mime_type=mime_type))
        except genai_errors.APIError as exc:
            raise ProviderError(exc.message or str(exc), kind="provider") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"File upload failed: {exc}", kind="network") from exc
        llm_logger.info("llm_file_uploaded", extra={"file": file.name, "mime_type": mime_type})
        return _to_remote(file)

    async def get_file(self, name: str) -> RemoteFile:
        try:
            file = await self._client.aio.files.get(name=name)
        except genai_errors.APIError as exc:
            raise ProviderError(exc.message or str(exc), kind="provider") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"File status check failed: {exc}", kind="network") from exc
        return _to_remote(file)

    async def delete_file(self, name: str) -> None:
        try:
            await self._client.aio.files.delete(name=name)
        except genai_errors.APIError as exc:
            raise ProviderError(exc.message or str(exc), kind="provider") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"File delete failed: {exc}", kind="network") from exc


class UnavailableGateway:
    """Stands in when no API key is configured; every call reports ``unavailable``."""

    available = False

    async def invoke(self, prompt, attachments, model, options=None) -> ProviderResponse:
        raise ProviderError(UNAVAILABLE_MESSAGE, kind="unavailable")

    async def stream(self, prompt, attachments, model, options=None) -> AsyncIterator[Chunk]:
        yield StreamFailed(UNAVAILABLE_MESSAGE, kind="unavailable")

    async def upload_file(self, path: str, mime_type: str) -> RemoteFile:
        raise ProviderError(UNAVAILABLE_MESSAGE, kind="unavailable")

    async def get_file(self, name: str) -> RemoteFile:
        raise ProviderError(UNAVAILABLE_MESSAGE, kind="unavailable")

    async def delete_file(self, name: str) -> None:
        raise ProviderError(UNAVAILABLE_MESSAGE, kind="unavailable")


def build_gateway(settings: Settings) -> ProviderGateway:
    if not settings.gemini_api_key:
        llm_logger.warning("gateway_unavailable", extra={"reason": "GEMINI_API_KEY not set"})
        return UnavailableGateway()
    return GeminiGateway(genai.Client(api_key=settings.gemini_api_key))
