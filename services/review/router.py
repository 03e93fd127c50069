"""
services/review/router.py
Double-blind reviews: submission, reads, and the internal timer endpoints
an external scheduler may call instead of (or alongside) Celery beat.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import LockNotAcquired, RedisCache, get_redis
from services.booking.router import dispatch_events
from services.booking.service import BookingService
from services.booking.state_machine import BookingAction
from services.review.visibility import ReviewVisibilityScheduler
from shared.events import EventPublisher, get_event_publisher
from shared.exceptions import ConflictError
from shared.middleware.auth import require_party, verify_cron_secret
from shared.models.models import Review, User
from shared.schemas.schemas import (
    ReviewCreateRequest,
    ReviewResponse,
    ReviewSubmissionResponse,
    VisibilityResponse,
)

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("", response_model=ReviewSubmissionResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Submit a review through the booking's submit_review action.
    - Talents review organizers once the booking is COMPLETED
    - Organizers may review after the event has ended, before completing
    - One review per giver per booking (DB unique constraint is the real guard)
    The review stays hidden until the other side reviews or the window closes.
    Secondary failures (the eager visibility check) come back as warnings.
    """
    cache = RedisCache(redis)
    try:
        async with cache.booking_lock(str(data.booking_id), owner=str(current_user.id)):
            outcome = await BookingService(db).apply_action(
                data.booking_id,
                current_user,
                BookingAction.SUBMIT_REVIEW,
                review=data,
            )
            await db.commit()
    except LockNotAcquired:
        raise ConflictError(
            "This booking is being updated by another request. Please retry.",
            code="BOOKING_LOCKED",
        )

    background_tasks.add_task(dispatch_events, publisher, outcome.events)
    review = await db.get(Review, outcome.review_id)
    response = ReviewSubmissionResponse.model_validate(review)
    response.warnings = outcome.warnings
    return response


@router.get("/users/{user_id}", response_model=List[ReviewResponse])
async def list_user_reviews(
    user_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _: User = Depends(require_party),
):
    """Visible reviews received by a user, newest first."""
    result = await db.execute(
        select(Review)
        .where(Review.receiver_id == user_id, Review.is_visible.is_(True))
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars().all()]


@router.get("/bookings/{booking_id}", response_model=List[ReviewResponse])
async def list_booking_reviews(
    booking_id: UUID,
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
):
    """A party sees its own review plus whatever has been published."""
    await BookingService(db).get_for_party(booking_id, current_user)
    result = await db.execute(
        select(Review)
        .where(
            Review.booking_id == booking_id,
            or_(Review.is_visible.is_(True), Review.giver_id == current_user.id),
        )
        .order_by(Review.created_at)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars().all()]


# ── Timer endpoints (CRON_SECRET) ─────────────────────────────

@router.post(
    "/visibility/{booking_id}/reevaluate",
    response_model=VisibilityResponse,
    include_in_schema=False,
    dependencies=[Depends(verify_cron_secret)],
)
async def reevaluate_visibility(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Idempotent; safe to call late or repeatedly."""
    outcome = await ReviewVisibilityScheduler(db).reevaluate(booking_id)
    await db.commit()
    background_tasks.add_task(dispatch_events, publisher, outcome.events)
    return VisibilityResponse(booking_id=booking_id, visible=outcome.visible, changed=outcome.changed)


@router.post(
    "/visibility/sweep",
    include_in_schema=False,
    dependencies=[Depends(verify_cron_secret)],
)
async def sweep_visibility(
    background_tasks: BackgroundTasks,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """Process every due visibility job."""
    processed, events = await ReviewVisibilityScheduler(db).process_due(limit=limit)
    await db.commit()
    background_tasks.add_task(dispatch_events, publisher, events)
    return {"processed": processed}
