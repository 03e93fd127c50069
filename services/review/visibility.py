"""
services/review/visibility.py
Double-blind review release.

Reviews are stored hidden. A booking's reviews become visible once both
parties have reviewed, or once REVIEW_VISIBILITY_DELAY_HOURS have passed
since completion, whichever comes first. The second review triggers an eager
re-evaluation; the timeout path is driven by review_visibility_jobs, swept by
tasks.review_tasks.

Whenever reviews become visible the receivers' ratings are recomputed from
all of their visible reviews.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.events import BookingEvent, BookingEventType, make_event
from shared.exceptions import NotFoundError
from shared.models.models import (
    Booking,
    Event,
    JobStatus,
    OrganizerProfile,
    Review,
    ReviewerType,
    ReviewVisibilityJob,
    TalentProfile,
)
from shared.utils.intervals import as_utc

logger = logging.getLogger(__name__)


@dataclass
class VisibilityOutcome:
    booking_id: uuid.UUID
    visible: bool
    changed: bool
    events: List[BookingEvent] = field(default_factory=list)


def visibility_due_at(booking: Booking) -> Optional[datetime]:
    """When the timeout condition starts to hold, or None before completion."""
    if booking.completed_date is None:
        return None
    return as_utc(booking.completed_date) + timedelta(hours=settings.REVIEW_VISIBILITY_DELAY_HOURS)


class ReviewVisibilityScheduler:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Timer ────────────────────────────────────────────────

    async def arm(self, booking: Booking) -> ReviewVisibilityJob:
        """Create (or return) the durable timer row for a completed booking."""
        due_at = visibility_due_at(booking)
        if due_at is None:
            raise ValueError(f"Booking {booking.id} has no completion date")

        existing = await self._get_job(booking.id)
        if existing:
            return existing

        job = ReviewVisibilityJob(booking_id=booking.id, due_at=due_at, status=JobStatus.PENDING)
        try:
            async with self.db.begin_nested():
                self.db.add(job)
                await self.db.flush()
        except IntegrityError:
            existing = await self._get_job(booking.id)
            if existing is None:
                raise
            return existing

        logger.info(f"Armed review visibility check for booking {booking.id} at {due_at.isoformat()}")
        return job

    async def _get_job(self, booking_id: uuid.UUID) -> Optional[ReviewVisibilityJob]:
        result = await self.db.execute(
            select(ReviewVisibilityJob).where(ReviewVisibilityJob.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    # ── Evaluation ───────────────────────────────────────────

    async def reevaluate(
        self, booking_id: uuid.UUID, now: Optional[datetime] = None
    ) -> VisibilityOutcome:
        """
        Apply the visibility rule to one booking. Idempotent; safe to call
        late or repeatedly.
        """
        now = as_utc(now) or datetime.now(timezone.utc)
        booking = await self.db.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", details={"booking_id": str(booking_id)})

        result = await self.db.execute(
            select(Review).where(Review.booking_id == booking_id).with_for_update()
        )
        reviews = list(result.scalars().all())
        reviewer_types = {r.reviewer_type for r in reviews}
        both_submitted = {ReviewerType.ORGANIZER, ReviewerType.TALENT} <= reviewer_types

        due_at = visibility_due_at(booking)
        timed_out = due_at is not None and now >= due_at
        should_show = both_submitted or timed_out

        outcome = VisibilityOutcome(booking_id=booking_id, visible=should_show, changed=False)
        if not should_show:
            return outcome

        hidden = [r for r in reviews if not r.is_visible]
        if hidden:
            for review in hidden:
                review.is_visible = True
            await self.db.flush()

            for review in hidden:
                if review.reviewer_type == ReviewerType.ORGANIZER:
                    await self.recompute_talent_rating(review.receiver_id)
                else:
                    await self.recompute_organizer_rating(review.receiver_id)

            outcome.changed = True
            outcome.events = await self._published_events(booking, both_submitted)
            reason = "both reviews submitted" if both_submitted else "visibility window elapsed"
            logger.info(f"Published {len(hidden)} review(s) for booking {booking_id}: {reason}")

        job = await self._get_job(booking_id)
        if job and job.status != JobStatus.DONE:
            job.status = JobStatus.DONE
            job.processed_at = now
            await self.db.flush()
        return outcome

    async def _published_events(self, booking: Booking, both_submitted: bool) -> List[BookingEvent]:
        event = await self.db.get(Event, booking.event_id)
        title = event.title if event else "your event"
        if both_submitted:
            message = f'Reviews for "{title}" are now visible on both profiles.'
        else:
            message = (
                f'Reviews for "{title}" are now visible. The review window of '
                f"{settings.REVIEW_VISIBILITY_DELAY_HOURS} hours has closed."
            )
        return [
            make_event(BookingEventType.REVIEWS_PUBLISHED, booking.id, recipient, message)
            for recipient in (booking.organizer_id, booking.talent_id)
        ]

    async def process_due(self, now: Optional[datetime] = None, limit: Optional[int] = None):
        """
        Re-evaluate every PENDING job whose due time has passed.
        Returns (processed_count, events). One failing booking does not stop
        the sweep.
        """
        now = as_utc(now) or datetime.now(timezone.utc)
        result = await self.db.execute(
            select(ReviewVisibilityJob)
            .where(
                ReviewVisibilityJob.status == JobStatus.PENDING,
                ReviewVisibilityJob.due_at <= now,
            )
            .order_by(ReviewVisibilityJob.due_at)
            .limit(limit or settings.REVIEW_SWEEP_BATCH_SIZE)
        )
        jobs = list(result.scalars().all())

        processed = 0
        events: List[BookingEvent] = []
        for job in jobs:
            job.attempts += 1
            try:
                async with self.db.begin_nested():
                    outcome = await self.reevaluate(job.booking_id, now=now)
            except Exception:
                logger.exception(f"Review visibility check failed for booking {job.booking_id}")
                continue
            processed += 1
            events.extend(outcome.events)

        if jobs:
            logger.info(f"Review visibility sweep processed {processed}/{len(jobs)} due job(s)")
        return processed, events

    # ── Ratings ──────────────────────────────────────────────

    async def _visible_rating_stats(self, receiver_id: uuid.UUID):
        row = (
            await self.db.execute(
                select(func.avg(Review.rating), func.count(Review.id)).where(
                    Review.receiver_id == receiver_id,
                    Review.is_visible.is_(True),
                )
            )
        ).one()
        average, count = row
        average = Decimal(str(average or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return average, count or 0

    async def recompute_talent_rating(self, talent_id: uuid.UUID) -> None:
        average, count = await self._visible_rating_stats(talent_id)
        await self.db.execute(
            update(TalentProfile)
            .where(TalentProfile.user_id == talent_id)
            .values(average_rating=average, total_reviews=count)
        )
        logger.info(f"Talent {talent_id} rating recomputed: {average} over {count} review(s)")

    async def recompute_organizer_rating(self, organizer_id: uuid.UUID) -> None:
        average, count = await self._visible_rating_stats(organizer_id)
        await self.db.execute(
            update(OrganizerProfile)
            .where(OrganizerProfile.user_id == organizer_id)
            .values(average_rating=average, total_reviews=count)
        )
        logger.info(f"Organizer {organizer_id} rating recomputed: {average} over {count} review(s)")
