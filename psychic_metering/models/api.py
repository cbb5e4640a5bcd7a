"""
API Models - Pydantic models for request/response validation.

Wire format is camelCase (the chat frontend contract); Python attributes are
snake_case. All models accept either spelling on input.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AdvisorType(str, Enum):
    """Advisor persona type."""

    ASTROLOGY = "Astrology"
    LOVE = "Love"
    NUMEROLOGY = "Numerology"
    TAROT = "Tarot"


class SessionStatus(str, Enum):
    """Session status reported to clients."""

    NEW = "new"
    FREE = "free"
    PAID = "paid"
    STOPPED = "stopped"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class BillingMode(str, Enum):
    """Who pays for the chat right now."""

    TRIAL = "trial"
    PAID = "paid"
    NONE = "none"


class CamelModel(BaseModel):
    """Base model serializing to camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Session Models
# ============================================================================


class SessionStatusResponse(CamelModel):
    """GET /v1/sessions/{advisor_id}/status response."""

    available: bool
    is_free: bool = False
    remaining_free_time: int = 0
    paid_timer: int = 0
    credits: int = 0
    status: SessionStatus
    free_session_used: bool = False
    show_feedback_modal: bool = False


class AvailabilityResponse(CamelModel):
    """POST /v1/sessions/{advisor_id}/availability response."""

    available: bool
    is_free: bool = False
    mode: BillingMode
    message: str | None = None
    remaining_time: int | None = None
    credits: int = 0
    credits_charged: int = 0


class SessionSummaryItem(CamelModel):
    """Per-advisor totals for the user's live sessions."""

    advisor_id: UUID
    advisor_name: str
    total_sessions: int
    total_credits_used: int


class SessionSummaryResponse(CamelModel):
    """GET /v1/sessions/summary response."""

    data: list[SessionSummaryItem] = Field(default_factory=list)


# ============================================================================
# Chat Models
# ============================================================================


class ChatRequest(CamelModel):
    """POST /v1/chat/{advisor_id} request body."""

    message: str = Field(..., min_length=1, max_length=4000)


class ChatMessageItem(CamelModel):
    """Single message in a conversation."""

    id: UUID
    sender: Literal["user", "ai"]
    text: str
    created_at: str  # ISO 8601 timestamp


class TimerMetadata(CamelModel):
    """Timer state attached to a successful chat reply."""

    is_free_period: bool
    remaining_free_time: int
    credits_deducted: int


class ChatResponse(CamelModel):
    """POST /v1/chat/{advisor_id} response."""

    success: bool
    reply: str
    messages: list[ChatMessageItem] = Field(default_factory=list)
    credit_required: bool = False
    meta: TimerMetadata | None = None


class ChatHistoryResponse(CamelModel):
    """GET /v1/chat/{advisor_id}/history response."""

    messages: list[ChatMessageItem] = Field(default_factory=list)


# ============================================================================
# Wallet Models
# ============================================================================


class WalletResponse(CamelModel):
    """GET /v1/wallet response."""

    user_id: UUID
    credits: int


class TopUpRequest(CamelModel):
    """POST /v1/wallet/topups request body (payment service only)."""

    user_id: UUID
    credits: int = Field(..., gt=0)
    payment_id: str | None = Field(None, max_length=255)


# ============================================================================
# Feedback Models
# ============================================================================


class FeedbackRequest(CamelModel):
    """POST /v1/feedback/{advisor_id} request body."""

    rating: int = Field(..., ge=1, le=5)


class FeedbackItem(CamelModel):
    """One stored rating."""

    id: UUID
    user_id: UUID
    user_name: str
    rating: int
    created_at: str  # ISO 8601 timestamp


class FeedbackSummary(CamelModel):
    """Ratings with their average, rounded to two decimals."""

    feedback: list[FeedbackItem] = Field(default_factory=list)
    average_rating: float = 0.0
    feedback_count: int = 0


class AdvisorFeedbackResponse(CamelModel):
    """GET /v1/feedback/advisors/{advisor_id} response."""

    advisor_id: UUID = Field(..., alias="psychicId")
    overall: FeedbackSummary
    user: FeedbackSummary


# ============================================================================
# ============================================================================
# Real-time Event Models
# ============================================================================


class SessionUpdateEvent(CamelModel):
    """`sessionUpdate` Socket.IO event payload. Always carries full state."""

    user_id: UUID
    advisor_id: UUID = Field(..., serialization_alias="psychicId")
    is_free: bool
    remaining_free_time: int
    paid_timer: int
    credits: int
    status: SessionStatus
    show_feedback_modal: bool
    free_session_used: bool


class CreditsUpdateEvent(CamelModel):
    """`creditsUpdate` Socket.IO event payload."""

    user_id: UUID
    credits: int


class FeedbackSubmittedEvent(CamelModel):
    """`feedbackSubmitted` Socket.IO event payload."""

    user_id: UUID
    advisor_id: UUID = Field(..., serialization_alias="psychicId")
    rating: int
    created_at: str


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
