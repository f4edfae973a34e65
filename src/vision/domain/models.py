from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["standard", "elevated", "admin"]
RefinementKind = Literal["organize", "formalize"]
ImageCategory = Literal["person", "object", "other"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------
class UserRecord(BaseModel):
    user_id: str
    username: str
    password_hash: str
    display_name: str
    role: Role = "standard"
    is_approved: bool = False
    expires_at: Optional[datetime] = None
    tokens: int = 0
    created_at: datetime
    contact_email: Optional[str] = None
    mobile: Optional[str] = None


class UserProfile(BaseModel):
    user_id: str
    username: str
    display_name: str
    role: Role
    is_approved: bool
    expires_at: Optional[datetime] = None
    tokens: int
    created_at: datetime
    contact_email: Optional[str] = None
    mobile: Optional[str] = None

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserProfile":
        return cls(**record.model_dump(exclude={"password_hash"}))


class UsageRecord(BaseModel):
    """One immutable ledger row; negative ``delta`` is a debit."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    user_id: str
    feature: str
    delta: int
    created_at: datetime
    username: Optional[str] = None


class ImageArtifact(BaseModel):
    image_id: str
    user_id: str
    prompt: str
    data_ref: str
    level: Optional[str] = None
    style: Optional[str] = None
    language: Optional[str] = None
    facts: List[str] = Field(default_factory=list)
    cost: int = 0
    created_at: datetime


class TranscriptRecord(BaseModel):
    transcript_id: str
    user_id: str
    title: str
    keywords: str = ""
    content: str
    original_content: str
    refinement: Optional[RefinementKind] = None
    partial: bool = False
    cost: int = 0
    created_at: datetime
    updated_at: datetime


class ChatSessionRecord(BaseModel):
    session_id: str
    user_id: str
    title: str
    created_at: datetime
    updated_at: datetime


class ChatMessageRecord(BaseModel):
    message_id: str
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime
    metadata: Optional[dict] = None


class AssistantRecord(BaseModel):
    """A user-defined persona layered onto chat."""

    assistant_id: str
    user_id: str
    name: str
    role: str
    personality: Optional[str] = None
    tone: Optional[str] = None
    task: str
    steps: str
    format: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------
class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=6)
    display_name: Optional[str] = None
    contact_email: Optional[str] = None
    mobile: Optional[str] = None


class LoginRequest(BaseModel):
    username: str
    password: str


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1)
    contact_email: Optional[str] = None
    mobile: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserProfile


class SearchResult(BaseModel):
    title: str
    url: str


class ResearchRequest(_CamelModel):
    topic: str = Field(min_length=1)
    level: str = Field(default="General", alias="complexityLevel")
    style: str = Field(default="Default", alias="visualStyle")
    language: str = "English"
    aspect_ratio: str = Field(default="16:9", alias="aspectRatio")


class ResearchResponse(_CamelModel):
    image_prompt: str = Field(alias="imagePrompt")
    facts: List[str]
    search_results: List[SearchResult] = Field(alias="searchResults")
    reported_cost: int = Field(alias="reportedCost")
    used_fallback: bool = Field(default=False, alias="usedFallback")


class GenerateImageRequest(_CamelModel):
    prompt: str = Field(min_length=1)
    aspect_ratio: str = Field(default="1:1", alias="aspectRatio")
    reference_images: List[str] = Field(default_factory=list, alias="referenceImages")


class EditImageRequest(_CamelModel):
    image: str = Field(min_length=1)
    instruction: str = Field(min_length=1)


class ImageResponse(_CamelModel):
    image_id: str = Field(alias="imageId")
    image_data_reference: str = Field(alias="imageDataReference")
    reported_cost: int = Field(alias="reportedCost")


class InfographicResponse(_CamelModel):
    image_id: str = Field(alias="imageId")
    image_data_reference: str = Field(alias="imageDataReference")
    image_prompt: str = Field(alias="imagePrompt")
    facts: List[str]
    search_results: List[SearchResult] = Field(alias="searchResults")
    reported_cost: int = Field(alias="reportedCost")


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatAttachment(_CamelModel):
    mime_type: str = Field(alias="mimeType")
    data: str


class ChatStreamRequest(_CamelModel):
    history: List[ChatTurn] = Field(default_factory=list)
    new_message: str = Field(min_length=1, alias="newMessage")
    model_selector: str = Field(default="light", alias="modelSelector")
    search_enabled: bool = Field(default=False, alias="searchEnabled")
    attachments: List[ChatAttachment] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    assistant_id: Optional[str] = Field(default=None, alias="assistantId")


class AssistantRequest(BaseModel):
    """Create and update body; an update replaces every field."""

    name: str = Field(min_length=1, max_length=100)
    role: str = Field(min_length=1)
    personality: Optional[str] = None
    tone: Optional[str] = None
    task: str = Field(min_length=1)
    steps: str = Field(min_length=1)
    format: Optional[str] = None


class AnalyzeImageRequest(BaseModel):
    image: str = Field(min_length=1)


class AnalyzeImageResponse(_CamelModel):
    category: ImageCategory
    reported_cost: int = Field(alias="reportedCost")


class TitleRequest(BaseModel):
    text: str = Field(min_length=1)


class TitleResponse(_CamelModel):
    title: str
    reported_cost: int = Field(alias="reportedCost")


class ChatSessionCreate(BaseModel):
    title: Optional[str] = None


class ChatSessionUpdate(BaseModel):
    title: str = Field(min_length=1)


class RefineRequest(_CamelModel):
    kind: RefinementKind = Field(alias="refinementKind")


class RefineResponse(_CamelModel):
    refined_text: str = Field(alias="refinedText")
    reported_cost: int = Field(alias="reportedCost")


class UsageLogRequest(_CamelModel):
    feature: str = Field(min_length=1, alias="featureTag")
    token_count: int = Field(default=0, ge=0, alias="tokenCount")


class UsageLogResponse(_CamelModel):
    new_balance: int = Field(alias="newBalance")


class AdminUserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    password: str = Field(min_length=6)
    display_name: Optional[str] = None
    role: Role = "standard"


class AdminUserUpdate(BaseModel):
    display_name: Optional[str] = None
    role: Optional[Role] = None
    is_approved: Optional[bool] = None
    expires_at: Optional[datetime] = None
    contact_email: Optional[str] = None
    mobile: Optional[str] = None


class TokenAdjustment(BaseModel):
    amount: int
    feature: str = "admin-adjustment"


class BalanceResponse(_CamelModel):
    new_balance: int = Field(alias="newBalance")


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    components: Dict[str, str]
