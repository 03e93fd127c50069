"""
services/booking/service.py
Booking creation and action handling on top of the transition table.

apply_action runs inside the caller's transaction: status change, audit row,
ledger entry and review are flushed together and committed by the router.
Payout-record creation and timer arming run in savepoints; their failures are
logged and returned as warnings instead of aborting the completion.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.availability.engine import AvailabilityEngine
from services.booking.state_machine import (
    BookingAction,
    Effect,
    Guard,
    Party,
    Transition,
    compute_fee_split,
    resolve_transition,
)
from services.review.visibility import ReviewVisibilityScheduler, visibility_due_at
from services.settlement.service import SettlementService, resolve_payout_amount
from shared.events import BookingEvent, BookingEventType, make_event
from shared.exceptions import (
    ConflictError,
    InputValidationError,
    NotFoundError,
    PreconditionFailedError,
)
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingAuditLog,
    BookingStatus,
    Event,
    Review,
    ReviewerType,
    User,
    UserRole,
)
from shared.schemas.schemas import BookingCreateRequest, ReviewPayload
from shared.utils.intervals import as_utc

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    booking: Booking
    warnings: List[str] = field(default_factory=list)
    events: List[BookingEvent] = field(default_factory=list)
    payout_transaction_id: Optional[uuid.UUID] = None
    review_id: Optional[uuid.UUID] = None
    review_check_due_at: Optional[datetime] = None


def party_of(booking: Booking, user: User) -> Optional[Party]:
    if booking.organizer_id == user.id:
        return Party.ORGANIZER
    if booking.talent_id == user.id:
        return Party.TALENT
    return None


def counterparty_id(booking: Booking, party: Party) -> uuid.UUID:
    return booking.talent_id if party == Party.ORGANIZER else booking.organizer_id


def event_end_time(booking: Booking, event: Optional[Event]) -> Optional[datetime]:
    """Explicit end if recorded, else event date plus its duration."""
    if booking.event_end_date_time is not None:
        return as_utc(booking.event_end_date_time)
    if event is None:
        return None
    hours = event.duration_hours or settings.DEFAULT_EVENT_DURATION_HOURS
    return as_utc(event.event_date) + timedelta(hours=hours)


class BookingService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.settlement = SettlementService(db)
        self.visibility = ReviewVisibilityScheduler(db)
        self.availability = AvailabilityEngine(db)

    # ── Creation ─────────────────────────────────────────────

    async def create_booking(
        self, organizer: User, data: BookingCreateRequest
    ) -> Tuple[Booking, List[BookingEvent]]:
        """
        Create a PENDING booking. The talent's user row is locked first, so
        concurrent creations for one talent re-check availability one at a
        time inside their inserting transactions. The router's Redis talent
        lock sits in front of this and may be skipped when Redis is down.
        """
        talent = await self.db.scalar(
            select(User).where(User.id == data.talent_id).with_for_update()
        )
        if talent is None or talent.role != UserRole.TALENT or not talent.is_active:
            raise NotFoundError("Talent not found", details={"talent_id": str(data.talent_id)})

        if data.event_id is not None:
            event = await self.db.get(Event, data.event_id)
            if event is None or event.organizer_id != organizer.id:
                raise NotFoundError("Event not found", details={"event_id": str(data.event_id)})
        else:
            event = Event(organizer_id=organizer.id, **data.event.model_dump())
            event.event_date = as_utc(event.event_date)
            self.db.add(event)
            await self.db.flush()

        proposed = as_utc(data.proposed_date) or as_utc(event.event_date)
        hours = event.duration_hours or settings.DEFAULT_EVENT_DURATION_HOURS
        end = as_utc(data.event_end_date_time) or as_utc(event.event_date) + timedelta(hours=hours)
        if end <= proposed:
            raise InputValidationError(
                "event_end_date_time must be after the booking start",
                details={"start": proposed.isoformat(), "end": end.isoformat()},
            )

        duplicate = await self.db.scalar(
            select(func.count(Booking.id)).where(
                Booking.event_id == event.id,
                Booking.talent_id == talent.id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            )
        )
        if duplicate:
            raise ConflictError(
                "Talent already has an active booking for this event",
                code="DUPLICATE_BOOKING",
                details={"event_id": str(event.id), "talent_id": str(talent.id)},
            )

        check = await self.availability.check_availability(talent.id, proposed, end)
        if not check.is_available:
            raise ConflictError(
                check.message,
                code="TALENT_UNAVAILABLE",
                details={
                    "has_booking_conflict": check.has_booking_conflict,
                    "conflicting_entries": [
                        {
                            "id": str(e.id),
                            "start_date": as_utc(e.start_date).isoformat(),
                            "end_date": as_utc(e.end_date).isoformat(),
                            "status": e.status.value,
                        }
                        for e in check.conflicting_entries
                    ],
                },
            )

        platform_fee, talent_amount = compute_fee_split(data.amount)
        booking = Booking(
            organizer_id=organizer.id,
            talent_id=talent.id,
            event_id=event.id,
            amount=platform_fee + talent_amount,
            platform_fee=platform_fee,
            talent_amount=talent_amount,
            currency=data.currency or settings.DEFAULT_CURRENCY,
            proposed_date=proposed,
            event_end_date_time=end,
            status=BookingStatus.PENDING,
            notes=data.notes,
        )
        self.db.add(booking)
        await self.db.flush()
        self._audit(booking, "create", None, organizer.id)

        logger.info(
            f"Booking {booking.id} created by organizer {organizer.id} for talent {talent.id} "
            f"(amount {booking.amount}, fee {platform_fee})"
        )
        events = [
            make_event(
                BookingEventType.BOOKING_REQUESTED,
                booking.id,
                talent.id,
                f'You have a new booking request for "{event.title}".',
                event_title=event.title,
            )
        ]
        return booking, events

    # ── Reads ────────────────────────────────────────────────

    async def get_for_party(
        self, booking_id: uuid.UUID, user: User, for_update: bool = False
    ) -> Booking:
        """Bookings the user is not a party to are reported as missing."""
        stmt = select(Booking).where(
            Booking.id == booking_id,
            or_(Booking.organizer_id == user.id, Booking.talent_id == user.id),
        )
        if for_update:
            stmt = stmt.with_for_update()
        booking = (await self.db.execute(stmt)).scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": str(booking_id)})
        return booking

    async def list_for_user(
        self,
        user: User,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> Tuple[List[Booking], int]:
        filters = [or_(Booking.organizer_id == user.id, Booking.talent_id == user.id)]
        if status:
            filters.append(Booking.status == status)
        total = await self.db.scalar(select(func.count(Booking.id)).where(*filters)) or 0
        result = await self.db.execute(
            select(Booking)
            .where(*filters)
            .order_by(Booking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    # ── Actions ──────────────────────────────────────────────

    async def apply_action(
        self,
        booking_id: uuid.UUID,
        actor: User,
        action: BookingAction,
        notes: Optional[str] = None,
        reason: Optional[str] = None,
        review: Optional[ReviewPayload] = None,
        now: Optional[datetime] = None,
    ) -> ActionOutcome:
        now = as_utc(now) or datetime.now(timezone.utc)
        booking = await self.get_for_party(booking_id, actor, for_update=True)
        party = party_of(booking, actor)
        transition = resolve_transition(booking.status, action, party)
        event = await self.db.get(Event, booking.event_id)

        await self._check_guards(booking, event, transition, now)

        from_status = booking.status
        outcome = ActionOutcome(booking=booking)
        if transition.target is not None:
            booking.status = transition.target

        for effect in transition.effects:
            if effect == Effect.STAMP_ACCEPTED:
                booking.accepted_date = now
                outcome.events.append(self._counterparty_event(
                    BookingEventType.BOOKING_ACCEPTED, booking, party, event,
                    'Your booking for "{title}" has been accepted.',
                ))
            elif effect == Effect.RECORD_DECLINE:
                booking.decline_reason = reason or notes
                outcome.events.append(self._counterparty_event(
                    BookingEventType.BOOKING_DECLINED, booking, party, event,
                    'Your booking for "{title}" has been declined.',
                    reason=booking.decline_reason,
                ))
            elif effect == Effect.RECORD_CANCELLATION:
                booking.cancellation_reason = reason or notes
                booking.cancelled_by = party.value
                booking.cancelled_at = now
                outcome.events.append(self._counterparty_event(
                    BookingEventType.BOOKING_CANCELLED, booking, party, event,
                    'The booking for "{title}" has been cancelled.',
                    reason=booking.cancellation_reason,
                ))
            elif effect == Effect.RECORD_PAYMENT:
                await self.settlement.record_booking_payment(booking, booking.organizer_id)
            elif effect == Effect.SAVE_REVIEW:
                await self._save_review(booking, actor, party, event, review, outcome)
            elif effect == Effect.COMPLETE:
                await self._complete(booking, event, action, now, outcome)

        if booking.status != from_status:
            self._audit(booking, action.value, from_status, actor.id, reason or notes)
        await self.db.flush()

        logger.info(
            f"Booking {booking.id}: {action.value} by {party.value} "
            f"({from_status.value} -> {booking.status.value})"
        )
        return outcome

    async def _check_guards(
        self, booking: Booking, event: Optional[Event], transition: Transition, now: datetime
    ) -> None:
        for guard in transition.guards:
            if guard == Guard.EVENT_ENDED:
                ends_at = event_end_time(booking, event)
                if ends_at is None or now <= ends_at:
                    raise PreconditionFailedError(
                        "The event has not ended yet",
                        code="EVENT_NOT_ENDED",
                        details={"event_end": ends_at.isoformat() if ends_at else None},
                    )
            elif guard == Guard.ORGANIZER_REVIEWED:
                reviewed = await self.db.scalar(
                    select(func.count(Review.id)).where(
                        Review.booking_id == booking.id,
                        Review.giver_id == booking.organizer_id,
                    )
                )
                if not reviewed:
                    raise PreconditionFailedError(
                        "Submit a review for the talent before completing the booking",
                        code="REVIEW_REQUIRED",
                    )

    async def _save_review(
        self,
        booking: Booking,
        actor: User,
        party: Party,
        event: Optional[Event],
        payload: Optional[ReviewPayload],
        outcome: ActionOutcome,
    ) -> None:
        if payload is None:
            raise InputValidationError("A review with a rating is required", code="REVIEW_MISSING")
        if not 1 <= payload.rating <= 5:
            raise InputValidationError("Rating must be between 1 and 5", details={"rating": payload.rating})

        duplicate = PreconditionFailedError(
            "Review already submitted for this booking", code="DUPLICATE_REVIEW"
        )
        existing = await self.db.scalar(
            select(func.count(Review.id)).where(
                Review.booking_id == booking.id, Review.giver_id == actor.id
            )
        )
        if existing:
            raise duplicate

        review = Review(
            booking_id=booking.id,
            giver_id=actor.id,
            receiver_id=counterparty_id(booking, party),
            rating=payload.rating,
            comment=(payload.comment or "").strip() or None,
            reviewer_type=ReviewerType.ORGANIZER if party == Party.ORGANIZER else ReviewerType.TALENT,
            is_visible=False,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(review)
                await self.db.flush()
        except IntegrityError:
            raise duplicate
        outcome.review_id = review.id

        title = event.title if event else "your event"
        outcome.events.append(make_event(
            BookingEventType.REVIEW_RECEIVED,
            booking.id,
            review.receiver_id,
            f'A review has been submitted for "{title}".',
        ))

        if booking.status == BookingStatus.COMPLETED:
            try:
                async with self.db.begin_nested():
                    visibility = await self.visibility.reevaluate(booking.id)
                outcome.events.extend(visibility.events)
            except Exception as e:
                logger.exception(f"Eager review visibility check failed for booking {booking.id}")
                outcome.warnings.append(f"Review visibility will be re-evaluated later: {e}")

    async def _complete(
        self,
        booking: Booking,
        event: Optional[Event],
        action: BookingAction,
        now: datetime,
        outcome: ActionOutcome,
    ) -> None:
        booking.completed_date = now
        title = event.title if event else "Event"

        try:
            async with self.db.begin_nested():
                payout = await self.settlement.create_talent_payout(
                    booking_id=booking.id,
                    talent_id=booking.talent_id,
                    amount=resolve_payout_amount(booking),
                    event_title=title,
                    created_by=action.value,
                    currency=booking.currency,
                )
            outcome.payout_transaction_id = payout.transaction.id
        except Exception as e:
            logger.exception(f"Payout record creation failed for completed booking {booking.id}")
            outcome.warnings.append(f"Payout record could not be created: {e}")

        try:
            async with self.db.begin_nested():
                job = await self.visibility.arm(booking)
            outcome.review_check_due_at = as_utc(job.due_at)
        except Exception as e:
            logger.exception(f"Could not arm review visibility timer for booking {booking.id}")
            outcome.warnings.append(f"Review visibility timer could not be scheduled: {e}")
            outcome.review_check_due_at = visibility_due_at(booking)

        hours = settings.REVIEW_VISIBILITY_DELAY_HOURS
        outcome.events.extend([
            make_event(
                BookingEventType.BOOKING_COMPLETED,
                booking.id,
                booking.talent_id,
                f'The booking for "{title}" has been completed. Your payout is being processed.',
                payout_transaction_id=outcome.payout_transaction_id,
            ),
            make_event(
                BookingEventType.REVIEW_REQUESTED,
                booking.id,
                booking.talent_id,
                f'Please review the organizer of "{title}" within {hours} hours. '
                f"Reviews stay hidden until both sides have submitted or the window closes.",
            ),
        ])

    # ── Helpers ──────────────────────────────────────────────

    def _counterparty_event(
        self,
        event_type: BookingEventType,
        booking: Booking,
        party: Party,
        event: Optional[Event],
        template: str,
        **data,
    ) -> BookingEvent:
        title = event.title if event else "your event"
        return make_event(
            event_type,
            booking.id,
            counterparty_id(booking, party),
            template.format(title=title),
            **data,
        )

    def _audit(
        self,
        booking: Booking,
        action: str,
        from_status: Optional[BookingStatus],
        changed_by: Optional[uuid.UUID],
        reason: Optional[str] = None,
    ) -> None:
        """Append an immutable audit log entry for every status change."""
        self.db.add(BookingAuditLog(
            booking_id=booking.id,
            action=action,
            from_status=from_status.value if from_status else None,
            to_status=booking.status.value,
            changed_by_id=changed_by,
            reason=reason,
        ))
