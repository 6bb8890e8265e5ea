"""
Pydantic schemas shared by the reconciliation engine and the HTTP layer.

This module contains:
- Canonical message / conversation models produced by the engine
- Row models for the two assistant log tables
- Provider (Evolution API) record models
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums
# =============================================================================

class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MediaKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    OTHER = "other"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class MessageSource(str, Enum):
    """Which of the three inputs a canonical message was built from."""
    PROVIDER = "provider"
    GENERATION_LOG = "generation_log"
    OUTGOING_LOG = "outgoing_log"


class LogRole(str, Enum):
    ASSISTANT = "assistant"
    HUMAN = "human"
    TOOL = "tool"


# Media kinds the provider can return binary content for
FETCHABLE_MEDIA_KINDS = frozenset({
    MediaKind.IMAGE,
    MediaKind.AUDIO,
    MediaKind.VIDEO,
    MediaKind.DOCUMENT,
    MediaKind.STICKER,
})


# =============================================================================
# Engine Models
# =============================================================================

class EngineOptions(BaseModel):
    """
    Tunable thresholds for one reconciliation run.

    The numeric thresholds are heuristics; they are configuration, not
    contracts.
    """
    model_config = ConfigDict(frozen=True)

    instance_name: str = "elite-shahd"
    provider_window_limit: int = Field(default=1000, ge=1)
    fingerprint_length: int = Field(default=100, ge=1)
    dedup_tolerance_ms: int = Field(default=60_000, ge=0)
    cache_ttl_seconds: int = Field(default=300, ge=0)
    backfill_batch_size: int = Field(default=5, ge=1)
    locale: str = "ar"
    outgoing_sender_label: str = "Clinic"
    restrict_to_logged_contacts: bool = False


class CanonicalMessage(BaseModel):
    """One message in a contact's merged timeline."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Source-scoped unique identifier")
    source_message_key: str = Field(
        default="",
        description="Provider key used to fetch media (empty for log-only messages)"
    )
    contact_key: str = Field(..., description="Canonical phone number")
    sender_label: str = Field(default="", description="Best-effort sender display name")
    direction: Direction
    text: str = ""
    media_kind: MediaKind = MediaKind.TEXT
    media_locator: Optional[str] = None
    timestamp_ms: int = Field(..., description="Epoch milliseconds")
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    is_automated: bool = False
    source: MessageSource = MessageSource.PROVIDER


class Conversation(BaseModel):
    """Per-contact summary derived from a merged timeline."""
    model_config = ConfigDict(frozen=True)

    contact_key: str
    display_name: str
    messages: list[CanonicalMessage]
    last_message: CanonicalMessage
    unread_count: int = Field(..., ge=0)


class GenerationLogRow(BaseModel):
    """A row of the automation pipeline's chat history."""
    model_config = ConfigDict(frozen=True)

    id: str
    contact_key: str
    role: LogRole
    text: str = ""
    created_at: datetime
    tool_name: Optional[str] = Field(default=None, description="Tool that produced a tool row")
    tool_calls: tuple[str, ...] = Field(default=(), description="Tools an assistant row invoked")


class OutgoingLogRow(BaseModel):
    """A row of the outgoing message log."""
    model_config = ConfigDict(frozen=True)

    id: str
    text: str = ""
    created_at: datetime
    resolved: bool = False
    direction: Direction = Direction.OUTGOING
    contact_key: str = ""
    is_bot_question: bool = False
    question_type: Optional[str] = None
    resolved_at: Optional[datetime] = None


# =============================================================================
# Provider (Evolution API) Models
# =============================================================================

class ProviderMessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    from_me: bool = Field(default=False, alias="fromMe")
    remote_jid: str = Field(..., min_length=1, alias="remoteJid")
    # Real number for contacts addressed by an "@lid" identifier
    remote_jid_alt: Optional[str] = Field(default=None, alias="remoteJidAlt")
    sender_pn: Optional[str] = Field(default=None, alias="senderPn")

    @property
    def alternate_jid(self) -> Optional[str]:
        return self.remote_jid_alt or self.sender_pn


class ProviderStatusUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str = ""


class ProviderMessage(BaseModel):
    """
    Message record as returned by the provider's findMessages endpoint.

    Only the fields the engine reads are modelled; `message` stays a raw
    dict and is parsed by the normalizer.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    key: ProviderMessageKey
    push_name: Optional[str] = Field(default=None, alias="pushName")
    message_type: Optional[str] = Field(default=None, alias="messageType")
    message: Optional[dict[str, Any]] = None
    message_timestamp: Optional[int] = Field(default=None, alias="messageTimestamp")
    message_updates: Optional[list[ProviderStatusUpdate]] = Field(
        default=None,
        alias="MessageUpdate"
    )


class MessagePage(BaseModel):
    records: list[ProviderMessage] = Field(default_factory=list)
    total: int = Field(default=0, ge=0)
    pages: int = Field(default=0, ge=0)


class MediaPayload(BaseModel):
    base64: str
    mimetype: str = "application/octet-stream"


class InstanceStats(BaseModel):
    total_messages: int = 0
    total_contacts: int = 0
    total_chats: int = 0
    connection_status: str = "unknown"
    profile_name: str = ""
    phone_number: str = ""


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ConversationsListResponse(BaseModel):
    """
    Response model for GET /conversations.

    Contains:
    - data: conversations, most recent first
    - total: number of conversations returned
    - degraded_sources: sources that failed and contributed nothing
    """
    data: list[Conversation] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    degraded_sources: list[str] = Field(default_factory=list)


class MediaResponse(BaseModel):
    message_key: str
    media_kind: MediaKind
    base64: str
    mimetype: str


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    Conversation totals come from the reconciled view; `instance` is the
    provider's own counters and is null when the provider is unreachable.
    """
    total_conversations: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    incoming_messages: int = Field(..., ge=0)
    outgoing_messages: int = Field(..., ge=0)
    automated_messages: int = Field(..., ge=0)
    human_messages: int = Field(..., ge=0)
    unread_conversations: int = Field(..., ge=0)
    instance_name: str
    instance: Optional[InstanceStats] = None


# =============================================================================
# Assistant Performance Models
# =============================================================================

class Language(str, Enum):
    ARABIC = "arabic"
    ENGLISH = "english"
    MIXED = "mixed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FindingExample(BaseModel):
    contact_key: str
    message: str = ""
    context: str = ""


class Finding(BaseModel):
    """A problem or strength detected across assistant sessions."""
    id: str
    category: str
    severity: Optional[Severity] = Field(None, description="Set for problems only")
    count: int = Field(..., ge=0)
    examples: list[FindingExample] = Field(default_factory=list)


class StaffIntervention(BaseModel):
    contact_key: str
    timestamp: datetime
    staff_message: str
    context: list[str] = Field(default_factory=list)


class AIPerformanceReport(BaseModel):
    """
    Response model for GET /stats/ai.

    Computed over the generation log (one session per contact) and the
    outgoing log. Rates are percentages rounded to one decimal.
    """
    total_conversations: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    total_ai_messages: int = Field(..., ge=0)
    total_patient_messages: int = Field(..., ge=0)
    total_tool_calls: int = Field(..., ge=0)

    resolved_by_ai: int = Field(..., ge=0)
    resolved_by_staff: int = Field(..., ge=0)
    unresolved: int = Field(..., ge=0)
    resolution_rate: float = Field(..., ge=0, le=100)

    avg_response_time_seconds: Optional[float] = Field(None, description="Null when no reply follows a patient turn")
    avg_messages_per_conversation: float
    avg_ai_messages_per_conversation: float

    bookings_completed: int = Field(..., ge=0)
    bookings_attempted: int = Field(..., ge=0)
    booking_success_rate: float = Field(..., ge=0, le=100)

    tool_usage: dict[str, int] = Field(default_factory=dict)

    problems: list[Finding] = Field(default_factory=list)
    strengths: list[Finding] = Field(default_factory=list)

    staff_interventions: list[StaffIntervention] = Field(default_factory=list)
    staff_intervention_rate: float = Field(..., ge=0, le=100)

    busiest_hours: dict[int, int] = Field(default_factory=dict, description="Local hour of day -> log rows")
    avg_conversation_duration_minutes: int = Field(..., ge=0)

    arabic_conversations: int = Field(..., ge=0)
    english_conversations: int = Field(..., ge=0)
    mixed_conversations: int = Field(..., ge=0)

    degraded_sources: list[str] = Field(default_factory=list)
