"""Review submission: one review per completed request, then release escrow."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from marketplace_escrow.domain.clock import utcnow
from marketplace_escrow.domain.enums import EventType, RequestStatus
from marketplace_escrow.domain.exceptions import (
    AlreadyReviewedError,
    InvalidStateTransitionError,
    NotEligibleError,
    NotFoundError,
    RequestNotFoundError,
    ValidationError,
)
from marketplace_escrow.infrastructure.database.orm_models import Review
from marketplace_escrow.infrastructure.database.repositories import (
    EventRepository,
    RequestRepository,
    ReviewRepository,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from marketplace_escrow.domain.clock import Clock
    from marketplace_escrow.services.escrow_ledger import EscrowLedger, ReleaseOutcome

logger = get_logger(__name__)

MIN_RATING = 1
MAX_RATING = 5


@dataclass(frozen=True)
class ReviewResult:
    review: Review
    release: ReleaseOutcome | None


class ReviewService:
    def __init__(self, session: AsyncSession, ledger: EscrowLedger, clock: Clock = utcnow) -> None:
        self._ledger = ledger
        self._clock = clock
        self._request_repo = RequestRepository(session)
        self._review_repo = ReviewRepository(session)
        self._event_repo = EventRepository(session)

    async def submit_review(
        self,
        request_id: uuid.UUID,
        client_id: str,
        rating: int,
        comment: str | None = None,
    ) -> ReviewResult:
        """Record the client's review and release the request's escrow.

        The review row and the release commit together.

        Raises:
            AlreadyReviewedError: A review for this request exists.
            NotEligibleError: The caller is not the request's client.
            InvalidStateTransitionError: The request is not COMPLETED.
        """
        if not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(
                f"Rating must be between {MIN_RATING} and {MAX_RATING}",
                details={"rating": rating},
            )
        request = await self._request_repo.get_by_id(request_id)
        if request is None:
            raise RequestNotFoundError(str(request_id))
        if request.client_id != client_id:
            raise NotEligibleError(
                "Only the request's client can review it",
                details={"client_id": client_id, "request_id": str(request_id)},
            )
        if request.status != RequestStatus.COMPLETED.value:
            raise InvalidStateTransitionError(request.status, "review", str(request_id))

        review = Review(
            request_id=request.id,
            client_id=client_id,
            rating=rating,
            comment=comment,
            created_at=self._clock(),
        )
        if not await self._review_repo.try_create(review):
            raise AlreadyReviewedError(str(request_id))

        await self._event_repo.record(
            entity_type="request",
            entity_id=request.id,
            event_type=EventType.REVIEW_SUBMITTED,
            old_status=request.status,
            new_status=request.status,
            actor=client_id,
            metadata={"review_id": str(review.id), "rating": rating},
        )
        logger.info("review.submitted", request_id=str(request_id), rating=rating)

        outcome = await self._ledger.release_on_review(request.id)
        return ReviewResult(review=review, release=outcome)

    async def get_review(self, request_id: uuid.UUID) -> Review:
        review = await self._review_repo.get_by_request(request_id)
        if review is None:
            raise NotFoundError("Review", str(request_id))
        return review
