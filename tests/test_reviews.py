"""
tests/test_reviews.py
Double-blind review submission, the visibility timeout and rating aggregation.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from config.settings import settings
from services.review.visibility import ReviewVisibilityScheduler
from shared.exceptions import NotFoundError
from shared.models.models import (
    JobStatus,
    OrganizerProfile,
    Review,
    ReviewVisibilityJob,
    TalentProfile,
)
from tests.conftest import act, drive_to, profile, utcnow

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


async def submit_review(client, party, booking_id, rating=5, comment="Great night"):
    return await client.post(
        "/reviews",
        json={"booking_id": booking_id, "rating": rating, "comment": comment},
        headers=party.headers,
    )


async def visibility_job(db, booking_id) -> ReviewVisibilityJob:
    result = await db.execute(
        select(ReviewVisibilityJob)
        .where(ReviewVisibilityJob.booking_id == uuid.UUID(booking_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def booking_reviews(db, booking_id):
    result = await db.execute(
        select(Review)
        .where(Review.booking_id == uuid.UUID(booking_id))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# ── Submission rules ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_talent_reviews_only_completed_bookings(client: AsyncClient, organizer, talent):
    booking = await drive_to(client, organizer, talent, "IN_PROGRESS")

    response = await submit_review(client, talent, booking["id"])
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_organizer_review_waits_for_event_end(client: AsyncClient, organizer, talent):
    booking = await drive_to(
        client, organizer, talent, "ACCEPTED", event_date=utcnow() + timedelta(days=2)
    )

    response = await submit_review(client, organizer, booking["id"])
    assert response.status_code == 422
    assert response.json()["code"] == "EVENT_NOT_ENDED"


@pytest.mark.asyncio
async def test_duplicate_review_rejected(client: AsyncClient, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    assert (await submit_review(client, organizer, booking["id"])).status_code == 201
    second = await submit_review(client, organizer, booking["id"], rating=1)

    assert second.status_code == 422
    assert second.json()["code"] == "DUPLICATE_REVIEW"


@pytest.mark.asyncio
@pytest.mark.parametrize("rating", [0, 6])
async def test_rating_out_of_range(client: AsyncClient, organizer, talent, rating):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    response = await submit_review(client, organizer, booking["id"], rating=rating)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_review_action_needs_payload(client: AsyncClient, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    response = await act(client, organizer, booking["id"], "submit_review")
    assert response.status_code == 400
    assert response.json()["code"] == "REVIEW_MISSING"


@pytest.mark.asyncio
async def test_non_party_cannot_review(client: AsyncClient, organizer, other_organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    response = await submit_review(client, other_organizer, booking["id"])
    assert response.status_code == 404


# ── Double-blind release ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reviews_hidden_until_both_submitted(client: AsyncClient, db, organizer, talent, publisher):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    first = await submit_review(client, organizer, booking["id"], rating=5)
    assert first.status_code == 201
    assert first.json()["is_visible"] is False
    assert first.json()["reviewer_type"] == "ORGANIZER"
    assert first.json()["warnings"] == []
    assert publisher.events[-1].type.value == "review.received"
    assert publisher.events[-1].recipient_id == talent.id

    as_talent = await client.get(f"/reviews/bookings/{booking['id']}", headers=talent.headers)
    assert as_talent.json() == []
    as_organizer = await client.get(f"/reviews/bookings/{booking['id']}", headers=organizer.headers)
    assert len(as_organizer.json()) == 1

    second = await submit_review(client, talent, booking["id"], rating=3)
    assert second.status_code == 201

    reviews = await booking_reviews(db, booking["id"])
    assert all(r.is_visible for r in reviews)
    public = await client.get(f"/reviews/users/{talent.id}", headers=organizer.headers)
    assert [r["rating"] for r in public.json()] == [5]

    published = [e for e in publisher.events if e.type.value == "reviews.published"]
    assert {e.recipient_id for e in published} == {organizer.id, talent.id}

    job = await visibility_job(db, booking["id"])
    assert job.status == JobStatus.DONE


@pytest.mark.asyncio
async def test_completion_arms_visibility_timer(client: AsyncClient, db, organizer, talent, publisher):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    job = await visibility_job(db, booking["id"])
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0

    booking_id, due_at = publisher.review_checks[0]
    assert str(booking_id) == booking["id"]
    assert timedelta(hours=47, minutes=59) < due_at - utcnow() <= timedelta(hours=48)


@pytest.mark.asyncio
async def test_single_review_published_after_timeout(client: AsyncClient, db, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")
    await submit_review(client, organizer, booking["id"], rating=3)
    booking_id = uuid.UUID(booking["id"])
    scheduler = ReviewVisibilityScheduler(db)

    early = await scheduler.reevaluate(booking_id, now=utcnow() + timedelta(hours=47))
    assert early.visible is False
    assert early.changed is False

    late = utcnow() + timedelta(hours=settings.REVIEW_VISIBILITY_DELAY_HOURS + 1)
    outcome = await scheduler.reevaluate(booking_id, now=late)
    await db.commit()

    assert outcome.visible is True
    assert outcome.changed is True
    assert len(outcome.events) == 2
    assert all(r.is_visible for r in await booking_reviews(db, booking["id"]))

    talent_profile = await profile(db, TalentProfile, talent.id)
    assert Decimal(talent_profile.average_rating) == Decimal("3.00")
    assert talent_profile.total_reviews == 1

    repeat = await scheduler.reevaluate(booking_id, now=late)
    assert repeat.visible is True
    assert repeat.changed is False
    assert repeat.events == []


@pytest.mark.asyncio
async def test_reevaluate_unknown_booking(db):
    with pytest.raises(NotFoundError):
        await ReviewVisibilityScheduler(db).reevaluate(uuid.uuid4())


@pytest.mark.asyncio
async def test_sweep_processes_only_due_jobs(client: AsyncClient, db, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")
    await submit_review(client, organizer, booking["id"], rating=4)
    scheduler = ReviewVisibilityScheduler(db)

    processed, events = await scheduler.process_due(now=utcnow())
    assert processed == 0
    assert events == []

    processed, events = await scheduler.process_due(now=utcnow() + timedelta(hours=49))
    await db.commit()

    assert processed == 1
    assert len(events) == 2
    job = await visibility_job(db, booking["id"])
    assert job.status == JobStatus.DONE
    assert job.attempts == 1
    assert job.processed_at is not None

    processed, _ = await scheduler.process_due(now=utcnow() + timedelta(hours=50))
    assert processed == 0


@pytest.mark.asyncio
async def test_ratings_average_all_visible_reviews(client: AsyncClient, db, organizer, talent):
    first = await drive_to(
        client, organizer, talent, "COMPLETED", event_date=utcnow() - timedelta(days=20)
    )
    second = await drive_to(
        client, organizer, talent, "COMPLETED", event_date=utcnow() - timedelta(days=10)
    )
    await submit_review(client, organizer, first["id"], rating=5)
    await submit_review(client, organizer, second["id"], rating=4)
    await submit_review(client, talent, second["id"], rating=2)

    processed, _ = await ReviewVisibilityScheduler(db).process_due(now=utcnow() + timedelta(hours=49))
    await db.commit()
    assert processed == 1

    talent_profile = await profile(db, TalentProfile, talent.id)
    assert Decimal(talent_profile.average_rating) == Decimal("4.50")
    assert talent_profile.total_reviews == 2
    organizer_profile = await profile(db, OrganizerProfile, organizer.id)
    assert Decimal(organizer_profile.average_rating) == Decimal("2.00")
    assert organizer_profile.total_reviews == 1

    public = await client.get(f"/reviews/users/{talent.id}", headers=talent.headers)
    assert sorted(r["rating"] for r in public.json()) == [4, 5]


# ── Secondary failures ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_eager_visibility_failure_is_a_warning(
    client: AsyncClient, db, organizer, talent, monkeypatch
):
    booking = await drive_to(client, organizer, talent, "COMPLETED")
    assert (await submit_review(client, organizer, booking["id"], rating=5)).status_code == 201

    async def index_rebuilding(self, booking_id, now=None):
        raise RuntimeError("index rebuilding")

    monkeypatch.setattr(ReviewVisibilityScheduler, "reevaluate", index_rebuilding)

    response = await submit_review(client, talent, booking["id"], rating=4)

    assert response.status_code == 201
    body = response.json()
    assert body["is_visible"] is False
    assert body["warnings"] == ["Review visibility will be re-evaluated later: index rebuilding"]

    reviews = await booking_reviews(db, booking["id"])
    assert len(reviews) == 2
    assert not any(r.is_visible for r in reviews)
    job = await visibility_job(db, booking["id"])
    assert job.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_eager_visibility_failure_through_action_endpoint(
    client: AsyncClient, organizer, talent, monkeypatch
):
    booking = await drive_to(client, organizer, talent, "COMPLETED")

    async def index_rebuilding(self, booking_id, now=None):
        raise RuntimeError("index rebuilding")

    monkeypatch.setattr(ReviewVisibilityScheduler, "reevaluate", index_rebuilding)

    response = await act(
        client, talent, booking["id"], "submit_review", review={"rating": 5, "comment": "Lovely crowd"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["review_id"] is not None
    assert body["warnings"] == ["Review visibility will be re-evaluated later: index rebuilding"]


@pytest.mark.asyncio
async def test_timer_write_failure_still_completes(
    client: AsyncClient, db, organizer, talent, publisher, monkeypatch
):
    async def jobs_table_missing(self, booking):
        raise RuntimeError("jobs table missing")

    monkeypatch.setattr(ReviewVisibilityScheduler, "arm", jobs_table_missing)
    booking = await drive_to(client, organizer, talent, "IN_PROGRESS")

    response = await act(client, organizer, booking["id"], "mark_complete")

    assert response.status_code == 200
    body = response.json()
    assert body["booking"]["status"] == "COMPLETED"
    assert body["payout_transaction_id"] is not None
    assert body["warnings"] == ["Review visibility timer could not be scheduled: jobs table missing"]

    booking_id, due_at = publisher.review_checks[0]
    assert str(booking_id) == booking["id"]
    assert timedelta(hours=47, minutes=59) < due_at - utcnow() <= timedelta(hours=48)

    jobs = await db.scalar(
        select(func.count(ReviewVisibilityJob.id)).where(
            ReviewVisibilityJob.booking_id == uuid.UUID(booking["id"])
        )
    )
    assert jobs == 0


# ── Timer endpoints ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_timer_endpoints_require_cron_secret(client: AsyncClient, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")
    path = f"/reviews/visibility/{booking['id']}/reevaluate"

    assert (await client.post(path)).status_code == 401
    assert (await client.post(path, headers={"Authorization": "Bearer wrong"})).status_code == 401
    assert (await client.post(path, headers=organizer.headers)).status_code == 401
    assert (await client.post("/reviews/visibility/sweep")).status_code == 401


@pytest.mark.asyncio
async def test_timer_endpoints_with_cron_secret(client: AsyncClient, organizer, talent):
    booking = await drive_to(client, organizer, talent, "COMPLETED")
    await submit_review(client, organizer, booking["id"])

    response = await client.post(
        f"/reviews/visibility/{booking['id']}/reevaluate", headers=CRON_HEADERS
    )
    assert response.status_code == 200
    assert response.json() == {"booking_id": booking["id"], "visible": False, "changed": False}

    sweep = await client.post("/reviews/visibility/sweep", headers=CRON_HEADERS)
    assert sweep.status_code == 200
    assert sweep.json() == {"processed": 0}

    missing = await client.post(f"/reviews/visibility/{uuid.uuid4()}/reevaluate", headers=CRON_HEADERS)
    assert missing.status_code == 404
