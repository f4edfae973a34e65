from __future__ import annotations

"""Values exchanged with the provider gateway.

A streamed call yields ``Chunk`` items: any number of ``TextDelta`` and
``GroundingUpdate`` values, then exactly one terminal ``StreamDone`` or
``StreamFailed``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class Attachment:
    mime_type: str
    data: Optional[bytes] = None
    file_uri: Optional[str] = None


@dataclass(frozen=True)
class ChatHistoryTurn:
    role: str
    content: str


@dataclass
class InvokeOptions:
    system_instruction: Optional[str] = None
    history: List[ChatHistoryTurn] = field(default_factory=list)
    search_enabled: bool = False
    image_output: bool = False
    aspect_ratio: Optional[str] = None


@dataclass
class ProviderResponse:
    text: str = ""
    image_data: Optional[bytes] = None
    image_mime_type: str = "image/png"
    grounding: Optional[Dict[str, Any]] = None
    cost: int = 0


@dataclass(frozen=True)
class RemoteFile:
    name: str
    uri: str
    mime_type: str
    state: str


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class GroundingUpdate:
    metadata: Dict[str, Any]


@dataclass(frozen=True)
class StreamFailed:
    message: str
    kind: str = "provider"
    cost_incurred: int = 0


@dataclass(frozen=True)
class StreamDone:
    final_cost: int = 0


Chunk = Union[TextDelta, GroundingUpdate, StreamFailed, StreamDone]
