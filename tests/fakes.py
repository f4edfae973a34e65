from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from src.vision.domain.chunks import (
    Attachment,
    Chunk,
    InvokeOptions,
    ProviderResponse,
    RemoteFile,
    StreamDone,
    TextDelta,
)
from src.vision.domain.errors import PersistenceError, ProviderError
from src.vision.infrastructure.storage import InMemoryStorage

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def text_response(text: str, cost: int = 10, grounding: Optional[Dict[str, Any]] = None) -> ProviderResponse:
    return ProviderResponse(text=text, cost=cost, grounding=grounding)


def image_response(cost: int = 20) -> ProviderResponse:
    return ProviderResponse(image_data=PNG_BYTES, image_mime_type="image/png", cost=cost)


class FakeGateway:
    """Scripted gateway: queued invoke results and per-call chunk scripts."""

    available = True

    def __init__(self) -> None:
        self.invoke_results: List[Union[ProviderResponse, Exception]] = []
        self.stream_scripts: List[List[Chunk]] = []
        self.chunk_delay: float = 0.0
        self.invoke_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.stream_closed: List[bool] = []
        self.upload_state = "ACTIVE"
        self.poll_states: List[str] = []
        self.uploaded: List[RemoteFile] = []
        self.deleted: List[str] = []

    # ------------------------------------------------------------------
    def queue(self, *results: Union[ProviderResponse, Exception]) -> "FakeGateway":
        self.invoke_results.extend(results)
        return self

    def script(self, *chunks: Chunk) -> "FakeGateway":
        self.stream_scripts.append(list(chunks))
        return self

    @property
    def calls(self) -> int:
        return len(self.invoke_calls) + len(self.stream_calls) + len(self.uploaded)

    # ------------------------------------------------------------------
    async def invoke(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> ProviderResponse:
        self.invoke_calls.append({"prompt": prompt, "attachments": list(attachments), "model": model, "options": options})
        if not self.invoke_results:
            raise AssertionError("unexpected invoke call")
        result = self.invoke_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def stream(
        self,
        prompt: str,
        attachments: Sequence[Attachment],
        model: str,
        options: Optional[InvokeOptions] = None,
    ) -> AsyncIterator[Chunk]:
        self.stream_calls.append({"prompt": prompt, "attachments": list(attachments), "model": model, "options": options})
        script = self.stream_scripts.pop(0) if self.stream_scripts else [TextDelta("ok"), StreamDone(1)]
        index = len(self.stream_closed)
        self.stream_closed.append(False)
        try:
            for chunk in script:
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                yield chunk
        finally:
            self.stream_closed[index] = True

    async def upload_file(self, path: str, mime_type: str) -> RemoteFile:
        remote = RemoteFile(
            name=f"files/{len(self.uploaded) + 1}",
            uri=f"https://files.example/{len(self.uploaded) + 1}",
            mime_type=mime_type,
            state=self.upload_state,
        )
        self.uploaded.append(remote)
        return remote

    async def get_file(self, name: str) -> RemoteFile:
        state = self.poll_states.pop(0) if self.poll_states else self.upload_state
        return RemoteFile(name=name, uri=f"https://files.example/{name}", mime_type="audio/mpeg", state=state)

    async def delete_file(self, name: str) -> None:
        self.deleted.append(name)


class SlowGateway(FakeGateway):
    """Streams until released, so a test can drop the client mid-stream."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def stream(self, prompt, attachments, model, options=None) -> AsyncIterator[Chunk]:
        self.stream_calls.append({"prompt": prompt, "model": model})
        index = len(self.stream_closed)
        self.stream_closed.append(False)
        try:
            yield TextDelta("first ")
            self.started.set()
            await self.release.wait()
            yield TextDelta("second")
            yield StreamDone(7)
        finally:
            self.stream_closed[index] = True


class FailingUsageStorage(InMemoryStorage):
    """In-memory storage whose ledger writes fail."""

    async def apply_usage(self, user_id, feature, delta):
        raise PersistenceError("ledger offline")


def provider_error(message: str = "quota exceeded", cost: int = 0, kind: str = "provider") -> ProviderError:
    return ProviderError(message, kind=kind, cost_incurred=cost)


def parse_sse(body: str) -> List[Any]:
    """Decode a text/event-stream body into payloads; ``[DONE]`` stays a string."""
    events: List[Any] = []
    for frame in body.split("\n\n"):
        if not frame.startswith("data: "):
            continue
        data = frame[len("data: "):]
        events.append(data if data == "[DONE]" else json.loads(data))
    return events
