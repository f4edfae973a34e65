from __future__ import annotations

"""Transient audio staging and provider file registration.

``TransientUploads`` owns a temp directory and the provider-side file
registrations made for one request; ``aclose()`` releases both and is safe
to call on every exit path.
"""

import asyncio
import logging
import tempfile
from contextlib import AsyncExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from ..domain.chunks import RemoteFile
from ..domain.errors import FileNotReadyError, ProviderError
from .gateway import ProviderGateway

logger = logging.getLogger("vision.uploads")

READY = "ACTIVE"
FAILED = "FAILED"


@dataclass(frozen=True)
class AudioPayload:
    filename: str
    mime_type: str
    data: bytes


def _safe_name(index: int, filename: str) -> str:
    name = Path(filename or "audio").name.replace(" ", "_") or "audio"
    return f"{index:02d}-{name}"


class TransientUploads:
    def __init__(self, gateway: ProviderGateway) -> None:
        self._gateway = gateway
        self._stack = AsyncExitStack()
        self._dir: Optional[Path] = None
        self.files: List[RemoteFile] = []
        self.local_paths: List[Path] = []

    async def __aenter__(self) -> "TransientUploads":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _workdir(self) -> Path:
        if self._dir is None:
            self._dir = Path(self._stack.enter_context(tempfile.TemporaryDirectory(prefix="vision-audio-")))
        return self._dir

    async def register(self, payload: AudioPayload) -> RemoteFile:
        path = self._workdir() / _safe_name(len(self.local_paths), payload.filename)
        await asyncio.to_thread(path.write_bytes, payload.data)
        self.local_paths.append(path)
        remote = await self._gateway.upload_file(str(path), payload.mime_type)
        self._stack.push_async_callback(self._forget, remote.name)
        self.files.append(remote)
        return remote

    async def _forget(self, name: str) -> None:
        try:
            await self._gateway.delete_file(name)
        except ProviderError as exc:
            # remote files expire on their own; a failed delete only costs quota
            logger.warning("remote_file_delete_failed", extra={"file": name, "error": exc.message})

    async def aclose(self) -> None:
        await self._stack.aclose()


async def wait_until_ready(
    gateway: ProviderGateway,
    file: RemoteFile,
    *,
    interval: float,
    attempts: int,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RemoteFile:
    """Poll a registered file until the provider reports it usable.

    At most ``attempts`` state checks are made, ``interval`` seconds apart.
    A ``FAILED`` state raises ``ProviderError``; running out of checks raises
    ``FileNotReadyError``.
    """
    attempts = max(1, attempts)
    current = file
    for attempt in range(1, attempts + 1):
        if current.state == READY:
            return current
        if current.state == FAILED:
            raise ProviderError(f"File processing failed: {file.name}", kind="provider")
        if attempt == attempts:
            break
        await sleep(interval)
        current = await gateway.get_file(file.name)
    logger.warning("file_not_ready", extra={"file": file.name, "attempts": attempts, "state": current.state})
    raise FileNotReadyError(file.name, attempts, interval * (attempts - 1))
