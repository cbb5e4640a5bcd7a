"""
Domain Models - Internal business logic models using dataclasses.

Immutable snapshots handed between the metering engine, the sweeps and the
chat orchestrator.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from psychic_metering.models.api import AdvisorType, BillingMode


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable chat session state at a point in time."""

    session_id: UUID
    user_id: UUID
    advisor_id: UUID
    trial_started_at: datetime
    trial_ends_at: datetime
    remaining_trial_seconds: int
    trial_consumed: bool
    last_charged_at: datetime
    paid_mode: bool
    paid_started_at: datetime | None
    initial_credits: int | None
    archived: bool

    @property
    def has_paid_window(self) -> bool:
        """True when a paid window is open on this session."""
        return self.paid_mode and self.paid_started_at is not None


@dataclass(frozen=True)
class AvailabilityResult:
    """
    Outcome of one availability check.

    `session` is the snapshot the decision was computed from, so the chat
    response metadata can be derived without reading the session again.
    """

    available: bool
    mode: BillingMode
    user_id: UUID
    advisor_id: UUID
    credits: int
    free_trial_used: bool
    session: SessionSnapshot | None = None
    message: str | None = None
    remaining_paid_seconds: int | None = None
    credits_charged: int = 0

    def __post_init__(self) -> None:
        """Validate result consistency."""
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")
        if self.credits_charged < 0:
            raise ValueError(f"Credits charged cannot be negative: {self.credits_charged}")
        if self.available and self.mode == BillingMode.NONE:
            raise ValueError("An available result must have a billing mode")

    @property
    def is_free(self) -> bool:
        """True when the chat is covered by the free trial."""
        return self.available and self.mode == BillingMode.TRIAL


@dataclass(frozen=True)
class WalletData:
    """Immutable wallet snapshot."""

    user_id: UUID
    credits: int

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")


@dataclass(frozen=True)
class AdvisorData:
    """Immutable advisor persona."""

    advisor_id: UUID
    name: str
    advisor_type: AdvisorType


@dataclass(frozen=True)
class ConversationTurn:
    """One stored message, as fed to the reply generator."""

    sender: str
    text: str
