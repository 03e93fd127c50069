"""
tests/test_review_tasks.py
Celery entry points for the review-visibility timer, run eagerly in-process.
"""

import uuid

import pytest

from shared.exceptions import NotFoundError
from tasks import review_tasks


def test_reevaluate_task_reports_outcome(monkeypatch):
    booking_id = uuid.uuid4()
    seen = []

    async def fake_reevaluate(value):
        seen.append(value)
        return {"booking_id": str(value), "visible": True, "changed": True}

    monkeypatch.setattr(review_tasks, "_reevaluate", fake_reevaluate)

    result = review_tasks.reevaluate_review_visibility(str(booking_id))

    assert seen == [booking_id]
    assert result == {"booking_id": str(booking_id), "visible": True, "changed": True}


def test_reevaluate_task_skips_missing_booking(monkeypatch):
    async def missing(value):
        raise NotFoundError("Booking not found")

    monkeypatch.setattr(review_tasks, "_reevaluate", missing)
    booking_id = str(uuid.uuid4())

    result = review_tasks.reevaluate_review_visibility(booking_id)

    assert result == {"booking_id": booking_id, "visible": False, "changed": False}


def test_sweep_task_returns_processed_count(monkeypatch):
    limits = []

    async def fake_sweep(limit=None):
        limits.append(limit)
        return 3

    monkeypatch.setattr(review_tasks, "_sweep", fake_sweep)

    assert review_tasks.process_due_review_visibility(limit=50) == {"processed": 3}
    assert limits == [50]


@pytest.mark.parametrize("task_name", [
    "tasks.review_tasks.reevaluate_review_visibility",
    "tasks.review_tasks.process_due_review_visibility",
])
def test_tasks_registered(task_name):
    from tasks.celery_app import celery_app

    assert task_name in celery_app.tasks
