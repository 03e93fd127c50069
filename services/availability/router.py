"""
services/availability/router.py
Talent calendar management and the availability check organizers run
before requesting a booking.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.availability.engine import AvailabilityEngine
from shared.exceptions import ConflictError, InputValidationError, NotFoundError
from shared.middleware.auth import require_party, require_talent
from shared.models.models import AvailabilityEntry, AvailabilityStatus, User, UserRole
from shared.schemas.schemas import (
    AvailabilityCheckRequest,
    AvailabilityCheckResponse,
    AvailabilityEntryCreate,
    AvailabilityEntryResponse,
    AvailabilityEntryUpdate,
    MessageResponse,
    RecurringAvailabilityRequest,
    RecurringGenerateResponse,
)
from shared.utils.intervals import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/availability", tags=["Availability"])


# ── Helpers ───────────────────────────────────────────────────

def _validate_window(start_date: datetime, end_date: datetime) -> None:
    if as_utc(start_date) >= as_utc(end_date):
        raise InputValidationError("start_date must be before end_date")


async def _get_own_entry(entry_id: UUID, talent: User, db: AsyncSession) -> AvailabilityEntry:
    entry = await db.get(AvailabilityEntry, entry_id)
    if entry is None or entry.talent_id != talent.id:
        raise NotFoundError("Availability entry not found", details={"entry_id": str(entry_id)})
    return entry


# ── Check ─────────────────────────────────────────────────────

@router.post("/check", response_model=AvailabilityCheckResponse)
async def check_availability(
    data: AvailabilityCheckRequest,
    _: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
):
    """
    Advisory: lists every blocking entry in the window and whether an active
    booking already occupies it. Nothing is reserved.
    """
    result = await AvailabilityEngine(db).check_availability(
        data.talent_id, data.start_date, data.end_date
    )
    return AvailabilityCheckResponse(
        is_available=result.is_available,
        conflicting_entries=[AvailabilityEntryResponse.model_validate(e) for e in result.conflicting_entries],
        message=result.message,
    )


# ── Entries ───────────────────────────────────────────────────

@router.get("", response_model=List[AvailabilityEntryResponse])
async def list_entries(
    talent_id: Optional[UUID] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    current_user: User = Depends(require_party),
    db: AsyncSession = Depends(get_db),
):
    """Talents see their own calendar; organizers pass talent_id."""
    if current_user.role == UserRole.TALENT:
        talent_id = current_user.id
    elif talent_id is None:
        raise InputValidationError("talent_id is required")

    query = select(AvailabilityEntry).where(AvailabilityEntry.talent_id == talent_id)
    if end_date is not None:
        query = query.where(AvailabilityEntry.start_date <= as_utc(end_date))
    if start_date is not None:
        query = query.where(AvailabilityEntry.end_date >= as_utc(start_date))
    result = await db.execute(query.order_by(AvailabilityEntry.start_date).limit(500))
    return [AvailabilityEntryResponse.model_validate(e) for e in result.scalars().all()]


@router.post("", response_model=AvailabilityEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_entry(
    data: AvailabilityEntryCreate,
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    """
    Declare a window. A recurring entry with generate_until is expanded into
    concrete rows straight away.
    """
    _validate_window(data.start_date, data.end_date)
    entry = AvailabilityEntry(
        talent_id=current_user.id,
        start_date=as_utc(data.start_date),
        end_date=as_utc(data.end_date),
        status=AvailabilityStatus(data.status),
        is_recurring=data.is_recurring,
        recurring_pattern=data.recurring_pattern,
        recurring_days=data.recurring_days,
        notes=data.notes,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except IntegrityError:
        raise ConflictError("An identical availability entry already exists", code="DUPLICATE_ENTRY")

    if data.is_recurring and data.generate_until is not None:
        created = await AvailabilityEngine(db).generate_recurring_availability(
            current_user.id, entry, data.generate_until
        )
        logger.info(f"Recurring entry {entry.id} expanded into {created} additional rows")

    await db.commit()
    return AvailabilityEntryResponse.model_validate(entry)


@router.post("/recurring", response_model=RecurringGenerateResponse, status_code=status.HTTP_201_CREATED)
async def generate_recurring(
    data: RecurringAvailabilityRequest,
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    """Expand a template without storing it; re-running the same window creates nothing."""
    if as_utc(data.generate_until) < as_utc(data.start_date):
        raise InputValidationError("generate_until must not be before start_date")
    created = await AvailabilityEngine(db).generate_recurring_availability(
        current_user.id, data, data.generate_until
    )
    await db.commit()
    return RecurringGenerateResponse(created=created)


@router.put("/{entry_id}", response_model=AvailabilityEntryResponse)
async def update_entry(
    entry_id: UUID,
    data: AvailabilityEntryUpdate,
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    entry = await _get_own_entry(entry_id, current_user, db)
    changes = data.model_dump(exclude_unset=True)
    for field in ("start_date", "end_date"):
        if changes.get(field) is not None:
            changes[field] = as_utc(changes[field])
    if changes.get("status") is not None:
        changes["status"] = AvailabilityStatus(changes["status"])
    for field, value in changes.items():
        if value is not None:
            setattr(entry, field, value)
    _validate_window(entry.start_date, entry.end_date)

    try:
        async with db.begin_nested():
            await db.flush()
    except IntegrityError:
        raise ConflictError("An identical availability entry already exists", code="DUPLICATE_ENTRY")
    await db.commit()
    return AvailabilityEntryResponse.model_validate(entry)


@router.delete("/{entry_id}", response_model=MessageResponse)
async def delete_entry(
    entry_id: UUID,
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    entry = await _get_own_entry(entry_id, current_user, db)
    await db.delete(entry)
    await db.commit()
    return MessageResponse(message="Availability entry deleted")
