"""
Feedback Service - star ratings users leave for advisors after a session.

The client asks for a rating when a session update carries
`showFeedbackModal`. Ratings are independent of metering: they touch no
wallet or chat session rows.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from psychic_metering.db.models import AdvisorFeedback, User
from psychic_metering.models.api import (
    AdvisorFeedbackResponse,
    FeedbackItem,
    FeedbackSubmittedEvent,
    FeedbackSummary,
)
from psychic_metering.observability.logging import get_logger
from psychic_metering.observability.metrics import metrics
from psychic_metering.services.broadcaster import SessionBroadcaster
from psychic_metering.services.metering import MeteringService

logger = get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5
ANONYMOUS = "Anonymous"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def summarize(items: Sequence[FeedbackItem]) -> FeedbackSummary:
    """Average rating of a list of ratings, 0.0 when there are none."""
    if not items:
        return FeedbackSummary()
    average = sum(item.rating for item in items) / len(items)
    return FeedbackSummary(
        feedback=list(items),
        average_rating=round(average, 2),
        feedback_count=len(items),
    )


class FeedbackService:
    """Stores and aggregates advisor ratings."""

    def __init__(
        self, session: AsyncSession, broadcaster: SessionBroadcaster | None = None
    ) -> None:
        self.session = session
        self.broadcaster = broadcaster

    async def submit_feedback(
        self, user_id: UUID, advisor_id: UUID, rating: int, now: datetime | None = None
    ) -> FeedbackItem:
        """
        Store a rating and confirm it to the user's connected clients.

        Raises:
            ValueError: rating outside 1..5
            AdvisorNotFoundError: unknown advisor
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

        await MeteringService(self.session).get_advisor(advisor_id)
        feedback = AdvisorFeedback(
            id=uuid4(),
            user_id=user_id,
            advisor_id=advisor_id,
            rating=rating,
            created_at=now or _utc_now(),
        )
        try:
            self.session.add(feedback)
            await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        metrics.feedback_submitted_total.labels(rating=str(rating)).inc()
        logger.info(
            "feedback_submitted", user_id=str(user_id), advisor_id=str(advisor_id), rating=rating
        )

        created_at = feedback.created_at.isoformat()
        if self.broadcaster is not None:
            await self.broadcaster.feedback_submitted(
                FeedbackSubmittedEvent(
                    user_id=user_id,
                    advisor_id=advisor_id,
                    rating=rating,
                    created_at=created_at,
                )
            )

        user_name = await self._user_name(user_id)
        return FeedbackItem(
            id=feedback.id,
            user_id=user_id,
            user_name=user_name,
            rating=rating,
            created_at=created_at,
        )

    async def get_advisor_feedback(
        self, advisor_id: UUID, user_id: UUID
    ) -> AdvisorFeedbackResponse:
        """
        All ratings for an advisor, plus the subset left by `user_id`.

        Newest first. An advisor with no ratings has an empty summary.

        Raises:
            AdvisorNotFoundError: unknown advisor
        """
        await MeteringService(self.session).get_advisor(advisor_id)

        stmt = (
            select(AdvisorFeedback, User.username)
            .outerjoin(User, User.id == AdvisorFeedback.user_id)
            .where(AdvisorFeedback.advisor_id == advisor_id)
            .order_by(AdvisorFeedback.created_at.desc(), AdvisorFeedback.id)
        )
        result = await self.session.execute(stmt)
        items = [
            FeedbackItem(
                id=row.id,
                user_id=row.user_id,
                user_name=username or ANONYMOUS,
                rating=row.rating,
                created_at=row.created_at.isoformat(),
            )
            for row, username in result.all()
        ]

        return AdvisorFeedbackResponse(
            advisor_id=advisor_id,
            overall=summarize(items),
            user=summarize([item for item in items if item.user_id == user_id]),
        )

    async def _user_name(self, user_id: UUID) -> str:
        result = await self.session.execute(select(User.username).where(User.id == user_id))
        return result.scalar_one_or_none() or ANONYMOUS
