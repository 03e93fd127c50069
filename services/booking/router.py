"""
services/booking/router.py
Booking creation, reads and the single action endpoint that drives the
lifecycle:
    PENDING → ACCEPTED | DECLINED → IN_PROGRESS → COMPLETED
    (CANCELLED from any non-terminal status)
"""

import math
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import LockNotAcquired, RedisCache, get_redis
from services.booking.service import BookingService
from services.booking.state_machine import parse_action
from shared.events import BookingEvent, EventPublisher, get_event_publisher
from shared.exceptions import ConflictError
from shared.middleware.auth import require_organizer, require_party
from shared.models.models import BookingStatus, User
from shared.schemas.schemas import (
    BookingActionRequest,
    BookingActionResponse,
    BookingCreateRequest,
    BookingResponse,
    PaginatedResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def dispatch_events(
    publisher: EventPublisher,
    events: List[BookingEvent],
    review_check: Optional[tuple] = None,
) -> None:
    """Runs after the response; the transaction has already committed."""
    for event in events:
        publisher.publish(event)
    if review_check:
        publisher.schedule_review_check(*review_check)


# ── Creation ──────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_organizer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Request a talent for an event. Steps:
    1. Hold the talent's creation lock in Redis
    2. Re-check the talent's calendar inside this transaction (409 on conflict)
    3. Create the PENDING booking with the platform-fee split
    4. Notify the talent after commit
    """
    cache = RedisCache(redis)
    try:
        async with cache.talent_lock(str(data.talent_id), owner=str(current_user.id)):
            booking, events = await BookingService(db).create_booking(current_user, data)
            await db.commit()
    except LockNotAcquired:
        raise ConflictError(
            "Another booking for this talent is being processed. Please retry.",
            code="TALENT_LOCKED",
        )

    background_tasks.add_task(dispatch_events, publisher, events)
    return BookingResponse.model_validate(booking)


# ── Actions ───────────────────────────────────────────────────

@router.post("/{booking_id}/actions", response_model=BookingActionResponse)
async def perform_action(
    booking_id: UUID,
    data: BookingActionRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    publisher: EventPublisher = Depends(get_event_publisher),
):
    """
    Apply one of: accept, decline, make_payment, mark_complete, cancel,
    submit_review, complete_booking. Transitions on the same booking are
    serialized by a Redis mutex plus a row lock.
    """
    action = parse_action(data.action)
    cache = RedisCache(redis)
    try:
        async with cache.booking_lock(str(booking_id), owner=str(current_user.id)):
            outcome = await BookingService(db).apply_action(
                booking_id,
                current_user,
                action,
                notes=data.notes,
                reason=data.reason,
                review=data.review,
            )
            await db.commit()
    except LockNotAcquired:
        raise ConflictError(
            "This booking is being updated by another request. Please retry.",
            code="BOOKING_LOCKED",
        )

    review_check = None
    if outcome.review_check_due_at:
        review_check = (outcome.booking.id, outcome.review_check_due_at)
    background_tasks.add_task(dispatch_events, publisher, outcome.events, review_check)

    return BookingActionResponse(
        booking=BookingResponse.model_validate(outcome.booking),
        warnings=outcome.warnings,
        payout_transaction_id=outcome.payout_transaction_id,
        review_id=outcome.review_id,
    )


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
):
    """Parties only; anyone else gets a 404."""
    booking = await BookingService(db).get_for_party(booking_id, current_user)
    return BookingResponse.model_validate(booking)


@router.get("", response_model=PaginatedResponse)
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
):
    """Bookings where the current user is the organizer or the talent."""
    bookings, total = await BookingService(db).list_for_user(
        current_user, status=status_filter, page=page, page_size=page_size
    )
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b).model_dump(mode="json") for b in bookings],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )
