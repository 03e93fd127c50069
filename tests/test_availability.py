"""
tests/test_availability.py
Calendar conflict detection, recurring expansion and the availability endpoints.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from config.settings import settings
from services.availability.engine import (
    MSG_AVAILABLE,
    MSG_BOOKING_CONFLICT,
    MSG_ENTRY_CONFLICT,
    AvailabilityEngine,
    booking_occupied_window,
    weekday_index,
)
from shared.exceptions import InputValidationError
from shared.models.models import AvailabilityEntry, AvailabilityStatus, Booking
from tests.conftest import booking_payload, create_booking

# Monday 4 March 2030
DAY = datetime(2030, 3, 4, tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: int = 0) -> datetime:
    return DAY + timedelta(days=day, hours=hour, minutes=minute)


async def add_entry(db, talent_id, start, end, status=AvailabilityStatus.BUSY) -> AvailabilityEntry:
    entry = AvailabilityEntry(talent_id=talent_id, start_date=start, end_date=end, status=status)
    db.add(entry)
    await db.commit()
    return entry


# ── Engine: conflict check ────────────────────────────────────

@pytest.mark.asyncio
async def test_touching_entry_blocks(db, talent):
    """A BUSY 10:00-12:00 entry blocks a 12:00-14:00 request."""
    await add_entry(db, talent.id, at(10), at(12))

    result = await AvailabilityEngine(db).check_availability(talent.id, at(12), at(14))

    assert result.is_available is False
    assert result.has_booking_conflict is False
    assert result.message == MSG_ENTRY_CONFLICT
    assert len(result.conflicting_entries) == 1


@pytest.mark.asyncio
async def test_available_entries_never_block(db, talent):
    await add_entry(db, talent.id, at(9), at(18), status=AvailabilityStatus.AVAILABLE)

    result = await AvailabilityEngine(db).check_availability(talent.id, at(12), at(14))

    assert result.is_available is True
    assert result.message == MSG_AVAILABLE
    assert result.conflicting_entries == []


@pytest.mark.asyncio
async def test_all_blocking_entries_reported(db, talent):
    await add_entry(db, talent.id, at(8), at(11), status=AvailabilityStatus.UNAVAILABLE)
    await add_entry(db, talent.id, at(13), at(15), status=AvailabilityStatus.BUSY)
    await add_entry(db, talent.id, at(11), at(13), status=AvailabilityStatus.AVAILABLE)
    await add_entry(db, talent.id, at(20), at(22), status=AvailabilityStatus.BUSY)

    result = await AvailabilityEngine(db).check_availability(talent.id, at(10), at(14))

    assert result.is_available is False
    statuses = [e.status for e in result.conflicting_entries]
    assert statuses == [AvailabilityStatus.UNAVAILABLE, AvailabilityStatus.BUSY]


@pytest.mark.asyncio
async def test_other_talents_entries_ignored(db, talent, other_talent):
    await add_entry(db, other_talent.id, at(10), at(14))

    result = await AvailabilityEngine(db).check_availability(talent.id, at(10), at(14))
    assert result.is_available is True


@pytest.mark.asyncio
async def test_inverted_window_rejected(db, talent):
    with pytest.raises(InputValidationError):
        await AvailabilityEngine(db).check_availability(talent.id, at(14), at(12))
    with pytest.raises(InputValidationError):
        await AvailabilityEngine(db).check_availability(talent.id, at(12), at(12))


@pytest.mark.asyncio
async def test_active_booking_blocks_its_window(client: AsyncClient, db, organizer, talent):
    await create_booking(client, organizer, talent, event_date=at(10), duration_hours=4)
    engine = AvailabilityEngine(db)

    touching = await engine.check_availability(talent.id, at(14), at(16))
    assert touching.is_available is False
    assert touching.has_booking_conflict is True
    assert touching.message == MSG_BOOKING_CONFLICT

    after = await engine.check_availability(talent.id, at(14, 1), at(16))
    assert after.is_available is True


@pytest.mark.asyncio
async def test_declined_booking_frees_the_window(client: AsyncClient, db, organizer, talent):
    booking = await create_booking(client, organizer, talent, event_date=at(10), duration_hours=4)
    response = await client.post(
        f"/bookings/{booking['id']}/actions",
        json={"action": "decline", "reason": "Double booked"},
        headers=talent.headers,
    )
    assert response.status_code == 200

    result = await AvailabilityEngine(db).check_availability(talent.id, at(11), at(12))
    assert result.is_available is True


def test_occupied_window_prefers_accepted_date():
    booking = Booking(proposed_date=at(10), accepted_date=at(8), event_end_date_time=at(14))
    assert booking_occupied_window(booking) == (at(8), at(14))

    booking.accepted_date = None
    assert booking_occupied_window(booking) == (at(10), at(14))


def test_occupied_window_without_end_is_open():
    booking = Booking(proposed_date=at(10).replace(tzinfo=None), event_end_date_time=None)

    start, end = booking_occupied_window(booking)

    assert start == at(10)
    assert end is None


# ── Engine: recurring expansion ───────────────────────────────

def test_weekday_index_starts_on_sunday():
    assert weekday_index(datetime(2030, 3, 3)) == 0  # Sunday
    assert weekday_index(DAY) == 1
    assert weekday_index(datetime(2030, 3, 9)) == 6  # Saturday


def test_expand_matches_requested_weekdays():
    talent_id = uuid.uuid4()
    rows = AvailabilityEngine(None).expand_recurring(
        talent_id, at(10), at(12), [1, 3], generate_until=at(23, day=13)
    )

    starts = [row["start_date"] for row in rows]
    assert starts == [at(10), at(10, day=2), at(10, day=7), at(10, day=9)]
    assert all(row["end_date"] - row["start_date"] == timedelta(hours=2) for row in rows)
    assert all(row["is_recurring"] for row in rows)


def test_expand_crossing_midnight_ends_next_day():
    rows = AvailabilityEngine(None).expand_recurring(
        uuid.uuid4(), at(22, day=4), at(2, day=5), [5], generate_until=at(23, day=12)
    )

    assert len(rows) == 2
    for row in rows:
        assert row["end_date"] == row["start_date"] + timedelta(hours=4)
        assert weekday_index(row["start_date"]) == 5


def test_expand_with_no_days_is_empty():
    rows = AvailabilityEngine(None).expand_recurring(
        uuid.uuid4(), at(10), at(12), [], generate_until=at(10, day=30)
    )
    assert rows == []


def test_expand_is_bounded(monkeypatch):
    monkeypatch.setattr(settings, "RECURRING_GENERATION_MAX_DAYS", 14)
    rows = AvailabilityEngine(None).expand_recurring(
        uuid.uuid4(), at(10), at(12), range(7), generate_until=at(10, day=5000)
    )
    assert len(rows) == 14


@pytest.mark.asyncio
async def test_generation_skips_existing_rows(db, talent):
    engine = AvailabilityEngine(db)
    template = AvailabilityEntry(
        talent_id=talent.id,
        start_date=at(18),
        end_date=at(22),
        status=AvailabilityStatus.AVAILABLE,
        is_recurring=True,
        recurring_days=[1, 5],
    )

    first = await engine.generate_recurring_availability(talent.id, template, at(23, day=13))
    await db.commit()
    second = await engine.generate_recurring_availability(talent.id, template, at(23, day=13))
    await db.commit()

    assert first == 4
    assert second == 0
    count = await db.scalar(
        select(func.count(AvailabilityEntry.id)).where(AvailabilityEntry.talent_id == talent.id)
    )
    assert count == 4


# ── Endpoints ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_check_endpoint_lists_conflicts(client: AsyncClient, db, organizer, talent):
    await add_entry(db, talent.id, at(10), at(12))

    response = await client.post(
        "/availability/check",
        json={
            "talent_id": str(talent.id),
            "start_date": at(12).isoformat(),
            "end_date": at(14).isoformat(),
        },
        headers=organizer.headers,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["is_available"] is False
    assert body["message"] == MSG_ENTRY_CONFLICT
    assert len(body["conflicting_entries"]) == 1
    assert body["conflicting_entries"][0]["status"] == "BUSY"


@pytest.mark.asyncio
async def test_check_endpoint_rejects_inverted_window(client: AsyncClient, organizer, talent):
    response = await client.post(
        "/availability/check",
        json={
            "talent_id": str(talent.id),
            "start_date": at(14).isoformat(),
            "end_date": at(12).isoformat(),
        },
        headers=organizer.headers,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_entry_and_duplicate(client: AsyncClient, talent):
    payload = {
        "start_date": at(9).isoformat(),
        "end_date": at(17).isoformat(),
        "status": "UNAVAILABLE",
        "notes": "Studio session",
    }
    first = await client.post("/availability", json=payload, headers=talent.headers)
    assert first.status_code == 201
    assert first.json()["status"] == "UNAVAILABLE"

    second = await client.post("/availability", json=payload, headers=talent.headers)
    assert second.status_code == 409
    assert second.json()["code"] == "DUPLICATE_ENTRY"


@pytest.mark.asyncio
async def test_create_entry_rejects_inverted_window(client: AsyncClient, talent):
    response = await client.post(
        "/availability",
        json={"start_date": at(17).isoformat(), "end_date": at(9).isoformat()},
        headers=talent.headers,
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_organizer_cannot_declare_availability(client: AsyncClient, organizer):
    response = await client.post(
        "/availability",
        json={"start_date": at(9).isoformat(), "end_date": at(17).isoformat()},
        headers=organizer.headers,
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_recurring_endpoint_is_idempotent(client: AsyncClient, talent):
    payload = {
        "start_date": at(18).isoformat(),
        "end_date": at(23).isoformat(),
        "status": "AVAILABLE",
        "recurring_days": [5, 6],
        "recurring_pattern": "weekends",
        "generate_until": at(23, day=20).isoformat(),
    }
    first = await client.post("/availability/recurring", json=payload, headers=talent.headers)
    second = await client.post("/availability/recurring", json=payload, headers=talent.headers)

    assert first.status_code == 201
    assert first.json()["created"] == 6
    assert second.json()["created"] == 0


@pytest.mark.asyncio
async def test_recurring_days_validated(client: AsyncClient, talent):
    response = await client.post(
        "/availability/recurring",
        json={
            "start_date": at(18).isoformat(),
            "end_date": at(23).isoformat(),
            "recurring_days": [7],
            "generate_until": at(23, day=20).isoformat(),
        },
        headers=talent.headers,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_listing_requires_talent_for_organizers(client: AsyncClient, db, organizer, talent):
    await add_entry(db, talent.id, at(10), at(12))

    missing = await client.get("/availability", headers=organizer.headers)
    assert missing.status_code == 400

    found = await client.get(f"/availability?talent_id={talent.id}", headers=organizer.headers)
    assert found.status_code == 200
    assert len(found.json()) == 1

    own = await client.get("/availability", headers=talent.headers)
    assert len(own.json()) == 1


@pytest.mark.asyncio
async def test_update_and_delete_own_entry_only(client: AsyncClient, talent, other_talent):
    created = await client.post(
        "/availability",
        json={"start_date": at(9).isoformat(), "end_date": at(17).isoformat()},
        headers=talent.headers,
    )
    entry_id = created.json()["id"]

    foreign = await client.put(
        f"/availability/{entry_id}", json={"status": "BUSY"}, headers=other_talent.headers
    )
    assert foreign.status_code == 404

    updated = await client.put(
        f"/availability/{entry_id}", json={"status": "BUSY"}, headers=talent.headers
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "BUSY"

    assert (await client.delete(f"/availability/{entry_id}", headers=other_talent.headers)).status_code == 404
    assert (await client.delete(f"/availability/{entry_id}", headers=talent.headers)).status_code == 200


@pytest.mark.asyncio
async def test_booking_blocked_by_busy_entry(client: AsyncClient, db, organizer, talent, publisher):
    await add_entry(db, talent.id, at(9), at(11))

    response = await client.post(
        "/bookings",
        json=booking_payload(talent.id, event_date=at(10), duration_hours=3),
        headers=organizer.headers,
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "TALENT_UNAVAILABLE"
    assert body["details"]["has_booking_conflict"] is False
    assert len(body["details"]["conflicting_entries"]) == 1
    assert publisher.events == []
