from __future__ import annotations

"""Stream relay: turns a gateway ``Chunk`` sequence into client events.

A ``StreamSession`` pulls chunks in a background pump task, accumulates text,
and pushes event payloads onto a queue that the transport drains. The SSE
adapter at the bottom of this module is the only part that knows the wire
format.

State machine::

    OPEN -> RECEIVING -> CLOSING_OK | CLOSING_ERROR -> CLOSED
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ..domain.chunks import Chunk, GroundingUpdate, StreamDone, StreamFailed, TextDelta
from ..domain.errors import VisionError
from ..observability.metrics import record_stream

logger = logging.getLogger("vision.stream")

DONE_MARKER = "[DONE]"
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no", "Connection": "keep-alive"}

# Sessions whose client left but whose upstream keeps running
_BACKGROUND: Set["asyncio.Task[None]"] = set()
_CLOSE = object()


class StreamState(str, Enum):
    OPEN = "open"
    RECEIVING = "receiving"
    CLOSING_OK = "closing_ok"
    CLOSING_ERROR = "closing_error"
    CLOSED = "closed"


class DisconnectPolicy(str, Enum):
    # stop the upstream call
    CANCEL = "cancel"
    # let the upstream call finish and persist without a client
    CONTINUE = "continue"
    # stop the upstream call and persist the text relayed so far
    SAVE_PARTIAL = "save_partial"


@dataclass
class StreamOutcome:
    text: str
    grounding: Optional[Dict[str, Any]] = None
    cost: int = 0
    error: Optional[str] = None


Finalizer = Callable[[StreamOutcome], Awaitable[Dict[str, Any]]]
OutcomeHook = Callable[[StreamOutcome], Awaitable[None]]
Cleanup = Callable[[], Awaitable[None]]
Event = Union[Dict[str, Any], str]


@dataclass
class StreamSession:
    """One in-flight relay between a gateway stream and one client connection."""

    chunks: AsyncIterator[Chunk]
    finalize: Finalizer
    on_failure: Optional[OutcomeHook] = None
    save_partial: Optional[OutcomeHook] = None
    cleanup: Optional[Cleanup] = None
    policy: DisconnectPolicy = DisconnectPolicy.CANCEL
    name: str = "stream"

    state: StreamState = field(default=StreamState.OPEN, init=False)
    client_connected: bool = field(default=True, init=False)
    outcome: Optional[str] = field(default=None, init=False)
    _buffer: List[str] = field(default_factory=list, init=False)
    _grounding: Optional[Dict[str, Any]] = field(default=None, init=False)
    _queue: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue, init=False)
    _task: Optional["asyncio.Task[None]"] = field(default=None, init=False)
    _closed: asyncio.Event = field(default_factory=asyncio.Event, init=False)

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    @property
    def grounding(self) -> Optional[Dict[str, Any]]:
        return self._grounding

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name=f"relay:{self.name}")

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def client_gone(self) -> None:
        """Called by the transport when the client connection is lost."""
        if not self.client_connected:
            return
        self.client_connected = False
        task = self._task
        if task is None or task.done():
            return
        logger.info("stream_client_disconnected", extra={"stream": self.name, "policy": self.policy.value})
        if self.policy is DisconnectPolicy.CONTINUE:
            _BACKGROUND.add(task)
            task.add_done_callback(_BACKGROUND.discard)
        else:
            task.cancel()

    async def abort(self) -> None:
        """Release the session when the transport is done with it.

        A relay that was never drained still owes its cleanup; a running one is
        treated as a disconnect and handled by its policy.
        """
        if self._closed.is_set():
            return
        if self._task is not None:
            self.client_gone()
            return
        self.client_connected = False
        self.outcome = "abandoned"
        logger.info("stream_abandoned", extra={"stream": self.name})
        aclose = getattr(self.chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        await self._close()

    async def events(self) -> AsyncIterator[Event]:
        """Drain event payloads in the order they were produced."""
        self.start()
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    break
                yield item
        finally:
            if not self._closed.is_set():
                self.client_gone()

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------
    def _emit(self, event: Event) -> None:
        # Writes after a disconnect are dropped
        if self.client_connected:
            self._queue.put_nowait(event)

    async def _pump(self) -> None:
        try:
            self.state = StreamState.RECEIVING
            async for chunk in self.chunks:
                if isinstance(chunk, TextDelta):
                    if chunk.text:
                        self._buffer.append(chunk.text)
                        self._emit({"text": chunk.text})
                elif isinstance(chunk, GroundingUpdate):
                    self._grounding = chunk.metadata
                elif isinstance(chunk, StreamFailed):
                    await self._fail(chunk.message, chunk.kind, chunk.cost_incurred)
                    return
                elif isinstance(chunk, StreamDone):
                    await self._complete(chunk.final_cost)
                    return
            await self._fail("The provider stream ended without a result", "malformed", 0)
        except asyncio.CancelledError:
            self.outcome = self.outcome or "cancelled"
            if self.policy is DisconnectPolicy.SAVE_PARTIAL and self.save_partial is not None:
                await self._save_partial()
            raise
        except Exception as exc:
            logger.exception("stream_relay_crashed", extra={"stream": self.name})
            await self._fail(f"Stream relay failed: {exc}", "internal", 0)
        finally:
            await self._close()

    async def _complete(self, cost: int) -> None:
        self.state = StreamState.CLOSING_OK
        if self._grounding:
            self._emit({"groundingMetadata": self._grounding})
        outcome = StreamOutcome(text=self.text, grounding=self._grounding, cost=cost)
        try:
            extras = await self.finalize(outcome)
        except VisionError as exc:
            self.state = StreamState.CLOSING_ERROR
            self.outcome = "persist_failed"
            logger.error("stream_finalize_failed", extra={"stream": self.name, "error": str(exc)})
            self._emit({"error": getattr(exc, "message", None) or str(exc), "kind": "persistence"})
            return
        self.outcome = "ok" if self.client_connected else "ok_detached"
        self._emit({"done": True, "text": outcome.text, "reportedCost": cost, **(extras or {})})
        self._emit(DONE_MARKER)

    async def _fail(self, message: str, kind: str, cost_incurred: int) -> None:
        self.state = StreamState.CLOSING_ERROR
        self.outcome = "error"
        logger.warning("stream_upstream_error", extra={"stream": self.name, "kind": kind, "error": message})
        if self.on_failure is not None:
            outcome = StreamOutcome(text=self.text, grounding=self._grounding, cost=cost_incurred, error=message)
            try:
                await self.on_failure(outcome)
            except VisionError as exc:
                logger.error("stream_failure_hook_failed", extra={"stream": self.name, "error": str(exc)})
        self._emit({"error": message, "kind": kind})

    async def _save_partial(self) -> None:
        if not self.text:
            return
        try:
            await self.save_partial(StreamOutcome(text=self.text, grounding=self._grounding))
            self.outcome = "partial_saved"
        except VisionError as exc:
            logger.error("stream_partial_save_failed", extra={"stream": self.name, "error": str(exc)})

    async def _close(self) -> None:
        try:
            if self.cleanup is not None:
                await self.cleanup()
        except Exception:
            logger.exception("stream_cleanup_failed", extra={"stream": self.name})
        finally:
            self.state = StreamState.CLOSED
            record_stream(self.outcome or "unknown")
            self._queue.put_nowait(_CLOSE)
            self._closed.set()


# ----------------------------------------------------------------------
# SSE transport
# ----------------------------------------------------------------------
def encode_event(event: Event) -> str:
    if event == DONE_MARKER:
        return f"data: {DONE_MARKER}\n\n"
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def sse_stream(session: StreamSession) -> AsyncIterator[str]:
    events = session.events()
    try:
        async for event in events:
            yield encode_event(event)
    finally:
        await events.aclose()


class SSEResponse(StreamingResponse):
    """Event-stream response that releases its session however the send ends."""

    def __init__(self, session: StreamSession) -> None:
        super().__init__(sse_stream(session), media_type="text/event-stream", headers=SSE_HEADERS)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.session.abort()


def sse_response(session: StreamSession) -> StreamingResponse:
    return SSEResponse(session)
