"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations. Mutual exclusion on wallets and
sessions is done with row locks (SELECT ... FOR UPDATE), so there are no
lock flag columns.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Owned by the identity service. This service only reads it and flips the
    one-time free trial flag.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(String(255), nullable=False)

    # Global at-most-once free trial authority
    free_trial_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    free_trial_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, free_trial_used={self.free_trial_used})>"


class Advisor(Base):
    """ORM model for advisors table (AI psychic personas)."""

    __tablename__ = "advisors"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    advisor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "advisor_type IN ('Astrology', 'Love', 'Numerology', 'Tarot')",
            name="ck_advisor_type",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Advisor(id={self.id}, name={self.name}, type={self.advisor_type})>"


class Wallet(Base):
    """
    ORM model for wallets table.

    One wallet per user, created lazily with zero credits.
    """

    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_wallet_credits_non_negative"),
        Index("uq_wallets_user_id", "user_id", unique=True),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Wallet(user_id={self.user_id}, credits={self.credits})>"


class ChatSession(Base):
    """
    ORM model for chat_sessions table.

    Lifecycle state of a chat between one user and one advisor. At most one
    non-archived row exists per (user, advisor); archived rows are history.
    """

    __tablename__ = "chat_sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    advisor_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("advisors.id", ondelete="RESTRICT"), nullable=False
    )

    # Free trial window
    trial_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    trial_ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    remaining_trial_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    trial_consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Paid window
    last_charged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    initial_credits: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("remaining_trial_seconds >= 0", name="ck_remaining_trial_non_negative"),
        CheckConstraint(
            "initial_credits IS NULL OR initial_credits >= 0",
            name="ck_initial_credits_non_negative",
        ),
        CheckConstraint(
            "NOT paid_mode OR paid_started_at IS NOT NULL",
            name="ck_paid_mode_has_start",
        ),
        Index(
            "uq_chat_sessions_live_pair",
            "user_id",
            "advisor_id",
            unique=True,
            postgresql_where=(archived.is_(False)),
        ),
        Index(
            "idx_chat_sessions_paid_sweep",
            "paid_mode",
            postgresql_where=(archived.is_(False)),
        ),
        Index(
            "idx_chat_sessions_trial_sweep",
            "trial_consumed",
            postgresql_where=(archived.is_(False)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ChatSession(id={self.id}, user_id={self.user_id}, advisor_id={self.advisor_id}, "
            f"paid_mode={self.paid_mode}, archived={self.archived})>"
        )


class ChatMessage(Base):
    """
    ORM model for chat_messages table.

    Append-only conversation log. Availability denials are stored here too.
    """

    __tablename__ = "chat_messages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    advisor_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("advisors.id", ondelete="RESTRICT"), nullable=False
    )
    sender: Mapped[str] = mapped_column(String(10), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("sender IN ('user', 'ai')", name="ck_chat_message_sender"),
        Index("idx_chat_messages_conversation", "user_id", "advisor_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ChatMessage(id={self.id}, sender={self.sender})>"


class AdvisorFeedback(Base):
    """
    ORM model for advisor_feedback table.

    Star rating left by a user after a session ends. A user may rate the same
    advisor any number of times; every rating counts toward the average.
    """

    __tablename__ = "advisor_feedback"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    advisor_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("advisors.id", ondelete="RESTRICT"), nullable=False
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_advisor_feedback_rating"),
        Index("idx_advisor_feedback_advisor", "advisor_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<AdvisorFeedback(id={self.id}, rating={self.rating})>"
