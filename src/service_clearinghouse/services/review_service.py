"""Review Service — requesters rate the fulfiller once payment is released.

One review per job. Submitting one refreshes the fulfiller's average rating
and review count, and closes the job to disputes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from service_clearinghouse.domain.enums import (
    ActivityType,
    EscrowStatus,
    JobStatus,
    NotificationType,
    Role,
)
from service_clearinghouse.domain.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnprocessableError,
    ValidationError,
)
from service_clearinghouse.infrastructure.database.orm_models import Review
from service_clearinghouse.infrastructure.database.repositories import (
    ActivityRepository,
    FulfillerProfileRepository,
    ReviewRepository,
)
from service_clearinghouse.infrastructure.locks import profile_lock_key
from service_clearinghouse.logging_config import get_logger
from service_clearinghouse.services.job_service import MAX_PAGE_SIZE, load_job_for_update
from service_clearinghouse.services.listing import REVIEW_VISIBILITY, visibility_clauses

if TYPE_CHECKING:
    import uuid
    from collections.abc import Mapping

    from service_clearinghouse.domain.actor import Actor
    from service_clearinghouse.infrastructure.database.orm_models import FulfillerProfile
    from service_clearinghouse.services.unit_of_work import UnitOfWork

logger = get_logger(__name__)

MIN_FEEDBACK_LENGTH = 10
MAX_FEEDBACK_LENGTH = 500
BREAKDOWN_ASPECTS = ("quality", "professionalism", "punctuality", "communication")
# Characters of feedback quoted in the fulfiller's notification
FEEDBACK_PREVIEW_LENGTH = 60


def _check_score(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(f"{name} must be a whole number from 1 to 5")
    return value


class ReviewService:
    def __init__(self, uow: UnitOfWork) -> None:
        self._uow = uow
        self._reviews = ReviewRepository(uow.session)
        self._profiles = FulfillerProfileRepository(uow.session)
        self._activity = ActivityRepository(uow.session)

    async def submit_review(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        rating: int,
        feedback: str,
        breakdown: Mapping[str, int | None] | None = None,
    ) -> Review:
        """The job's requester rates its fulfiller after the escrow is released."""
        actor.require_role(Role.REQUESTER, message="Only requesters can submit reviews")
        rating = _check_score("Rating", rating)
        feedback = (feedback or "").strip()
        if not MIN_FEEDBACK_LENGTH <= len(feedback) <= MAX_FEEDBACK_LENGTH:
            raise ValidationError(
                f"Feedback must be between {MIN_FEEDBACK_LENGTH} and "
                f"{MAX_FEEDBACK_LENGTH} characters"
            )
        scores = None
        if breakdown:
            unknown = set(breakdown) - set(BREAKDOWN_ASPECTS)
            if unknown:
                raise ValidationError(f"Unknown rating aspects: {', '.join(sorted(unknown))}")
            scores = {
                aspect: _check_score(aspect.capitalize(), value)
                for aspect, value in breakdown.items()
                if value is not None
            } or None

        job = await load_job_for_update(self._uow, job_id)
        if job.requester_id != actor.subject_id:
            raise ForbiddenError("Only the job requester can review this job")
        if job.status != JobStatus.COMPLETED:
            raise UnprocessableError("Can only review completed jobs")
        if job.escrow_status != EscrowStatus.RELEASED:
            raise UnprocessableError("Escrow must be released before reviewing")
        if job.fulfiller_id is None:
            raise UnprocessableError("This job has no fulfiller to review")
        if await self._reviews.get_for_job_and_requester(job.id, actor.subject_id):
            raise ConflictError("You have already reviewed this job")

        review = Review(
            job_id=job.id,
            requester_id=actor.subject_id,
            fulfiller_id=job.fulfiller_id,
            rating=rating,
            feedback=feedback,
            breakdown=scores,
        )
        try:
            async with self._uow.session.begin_nested():
                await self._reviews.create(review)
        except IntegrityError as exc:
            raise ConflictError("You have already reviewed this job") from exc

        profile = await self._refresh_rating(job.fulfiller_id)
        await self._activity.record(
            ActivityType.REVIEW_SUBMITTED,
            actor=actor.subject_id,
            job_id=job.id,
            metadata={"review_id": str(review.id), "rating": rating},
        )
        preview = feedback[:FEEDBACK_PREVIEW_LENGTH]
        if len(feedback) > FEEDBACK_PREVIEW_LENGTH:
            preview += "..."
        self._uow.notifications.notify(
            job.fulfiller_id,
            NotificationType.REVIEW_RECEIVED,
            "New review received",
            f'{rating}/5 for "{job.title}": {preview}',
            entity="review",
            entity_id=review.id,
            job_id=str(job.id),
            rating=rating,
        )

        logger.info(
            "review.submitted",
            review_id=str(review.id),
            job_id=str(job.id),
            rating=rating,
            avg_rating=profile.avg_rating,
        )
        return review

    async def list_reviews(
        self,
        actor: Actor,
        fulfiller_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Review], int]:
        """Requesters see reviews they wrote, fulfillers reviews about them, admins all."""
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        clauses = visibility_clauses(REVIEW_VISIBILITY, actor, fulfiller_id)
        return await self._reviews.search(clauses, page, limit)

    async def get_profile(self, fulfiller_id: str) -> FulfillerProfile:
        profile = await self._profiles.get(fulfiller_id)
        if profile is None:
            raise NotFoundError("Fulfiller profile", fulfiller_id)
        return profile

    async def _refresh_rating(self, fulfiller_id: str) -> FulfillerProfile:
        await self._uow.lock(profile_lock_key(fulfiller_id))
        average, count = await self._reviews.rating_stats_for_fulfiller(fulfiller_id)
        return await self._profiles.save_rating(fulfiller_id, average, count)
