"""
services/availability/engine.py
Conflict detection against a talent's calendar, and expansion of recurring
availability templates into concrete rows.

Two independent sources block a window:
- AvailabilityEntry rows with status UNAVAILABLE or BUSY (AVAILABLE never blocks)
- active bookings (PENDING, ACCEPTED, IN_PROGRESS) whose occupied window overlaps

Overlap is inclusive on both ends, see shared.utils.intervals.ranges_overlap.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.exceptions import InputValidationError
from shared.models.models import (
    ACTIVE_BOOKING_STATUSES,
    AvailabilityEntry,
    AvailabilityStatus,
    Booking,
)
from shared.utils.intervals import as_utc, ranges_overlap

logger = logging.getLogger(__name__)

BLOCKING_ENTRY_STATUSES = (AvailabilityStatus.UNAVAILABLE, AvailabilityStatus.BUSY)

MSG_BOOKING_CONFLICT = "Talent has existing bookings during this period"
MSG_ENTRY_CONFLICT = "Talent is not available during this period"
MSG_AVAILABLE = "Talent is available for this period"


@dataclass
class AvailabilityResult:
    is_available: bool
    message: str
    has_booking_conflict: bool = False
    conflicting_entries: List[AvailabilityEntry] = field(default_factory=list)


def weekday_index(value: datetime) -> int:
    """Weekday with Sunday = 0 … Saturday = 6."""
    return (value.weekday() + 1) % 7


def booking_occupied_window(booking: Booking):
    """
    (start, end) a booking holds on the talent's calendar.
    Starts at accepted_date, else proposed_date. An unknown end is open-ended.
    """
    start = booking.accepted_date or booking.proposed_date or booking.created_at
    return as_utc(start), as_utc(booking.event_end_date_time)


class AvailabilityEngine:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def check_availability(
        self,
        talent_id: uuid.UUID,
        start_date: datetime,
        end_date: datetime,
    ) -> AvailabilityResult:
        """
        Advisory check; it reserves nothing. Booking creation calls it again
        inside the inserting transaction, after locking the talent row.
        """
        start_date, end_date = as_utc(start_date), as_utc(end_date)
        if start_date >= end_date:
            raise InputValidationError(
                "start_date must be before end_date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

        entries = await self._conflicting_entries(talent_id, start_date, end_date)
        booking_conflict = await self._has_booking_conflict(talent_id, start_date, end_date)

        if booking_conflict:
            message = MSG_BOOKING_CONFLICT
        elif entries:
            message = MSG_ENTRY_CONFLICT
        else:
            message = MSG_AVAILABLE

        return AvailabilityResult(
            is_available=not booking_conflict and not entries,
            message=message,
            has_booking_conflict=booking_conflict,
            conflicting_entries=entries,
        )

    async def _conflicting_entries(
        self, talent_id: uuid.UUID, start_date: datetime, end_date: datetime
    ) -> List[AvailabilityEntry]:
        # Same inclusive rule as ranges_overlap, pushed into SQL
        result = await self.db.execute(
            select(AvailabilityEntry)
            .where(
                AvailabilityEntry.talent_id == talent_id,
                AvailabilityEntry.status.in_(BLOCKING_ENTRY_STATUSES),
                AvailabilityEntry.start_date <= end_date,
                AvailabilityEntry.end_date >= start_date,
            )
            .order_by(AvailabilityEntry.start_date)
        )
        return list(result.scalars().all())

    async def _has_booking_conflict(
        self, talent_id: uuid.UUID, start_date: datetime, end_date: datetime
    ) -> bool:
        # SQL narrows to active bookings not finished before the window;
        # the occupied-window start is coalesced in Python.
        result = await self.db.execute(
            select(Booking).where(
                Booking.talent_id == talent_id,
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                or_(Booking.event_end_date_time.is_(None), Booking.event_end_date_time >= start_date),
            )
        )
        return any(
            ranges_overlap(start_date, end_date, *booking_occupied_window(booking))
            for booking in result.scalars().all()
        )

    # ── Recurring expansion ──────────────────────────────────

    def expand_recurring(
        self,
        talent_id: uuid.UUID,
        start_date: datetime,
        end_date: datetime,
        recurring_days: Iterable[int],
        generate_until: datetime,
        status: AvailabilityStatus = AvailabilityStatus.AVAILABLE,
        recurring_pattern: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> List[dict]:
        """
        Walk day by day from start_date to generate_until and materialise one
        row per matching weekday, reusing the template's time of day.
        Bounded by RECURRING_GENERATION_MAX_DAYS iterations.
        """
        days = sorted(set(recurring_days))
        if not days:
            return []

        template_start = as_utc(start_date).replace(second=0, microsecond=0)
        template_end = as_utc(end_date).replace(second=0, microsecond=0)
        until = as_utc(generate_until)

        rows = []
        cursor = template_start
        iterations = 0
        while cursor <= until and iterations < settings.RECURRING_GENERATION_MAX_DAYS:
            if weekday_index(cursor) in days:
                entry_start = cursor.replace(hour=template_start.hour, minute=template_start.minute)
                entry_end = cursor.replace(hour=template_end.hour, minute=template_end.minute)
                if entry_end <= entry_start:
                    # Crosses midnight
                    entry_end += timedelta(days=1)
                rows.append({
                    "id": uuid.uuid4(),
                    "talent_id": talent_id,
                    "start_date": entry_start,
                    "end_date": entry_end,
                    "status": status,
                    "is_recurring": True,
                    "recurring_pattern": recurring_pattern,
                    "recurring_days": days,
                    "notes": notes,
                })
            cursor += timedelta(days=1)
            iterations += 1
        return rows

    async def generate_recurring_availability(
        self,
        talent_id: uuid.UUID,
        base_entry,
        generate_until: datetime,
    ) -> int:
        """
        Materialise `base_entry` (an AvailabilityEntry or any object with the
        same fields) up to `generate_until`. Exact duplicates are skipped, so
        re-running the same window is a no-op. Returns the number of new rows.
        """
        rows = self.expand_recurring(
            talent_id=talent_id,
            start_date=base_entry.start_date,
            end_date=base_entry.end_date,
            recurring_days=base_entry.recurring_days or [],
            generate_until=generate_until,
            status=AvailabilityStatus(base_entry.status),
            recurring_pattern=base_entry.recurring_pattern,
            notes=base_entry.notes,
        )
        if not rows:
            return 0

        dialect = self.db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(AvailabilityEntry).values(rows).on_conflict_do_nothing(
            index_elements=["talent_id", "start_date", "end_date", "status"]
        )
        result = await self.db.execute(stmt)
        created = max(result.rowcount or 0, 0)
        logger.info(
            f"Generated {created} recurring availability entries for talent {talent_id} "
            f"({len(rows) - created} duplicates skipped)"
        )
        return created
