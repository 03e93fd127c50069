"""
tasks/review_tasks.py
Celery tasks that drive the review-visibility timeout.

reevaluate_review_visibility is the delayed task queued with an ETA when a
booking completes. process_due_review_visibility is the beat sweep over
review_visibility_jobs and fires even if the ETA task was never delivered.

Both are idempotent; running twice has no side effect.
"""

import asyncio
import logging
import uuid

from config.database import worker_session
from services.review.visibility import ReviewVisibilityScheduler
from shared.events import get_event_publisher
from shared.exceptions import NotFoundError
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _reevaluate(booking_id: uuid.UUID) -> dict:
    async with worker_session() as db:
        outcome = await ReviewVisibilityScheduler(db).reevaluate(booking_id)

    publisher = get_event_publisher()
    for event in outcome.events:
        publisher.publish(event)
    return {"booking_id": str(booking_id), "visible": outcome.visible, "changed": outcome.changed}


async def _sweep(limit: int = None) -> int:
    async with worker_session() as db:
        processed, events = await ReviewVisibilityScheduler(db).process_due(limit=limit)

    publisher = get_event_publisher()
    for event in events:
        publisher.publish(event)
    return processed


@celery_app.task(
    name="tasks.review_tasks.reevaluate_review_visibility",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def reevaluate_review_visibility(self, booking_id: str):
    """Re-apply the visibility rule for one booking. Safe to run late or repeatedly."""
    try:
        return asyncio.run(_reevaluate(uuid.UUID(booking_id)))
    except NotFoundError:
        logger.warning(f"Review visibility check skipped: booking {booking_id} not found")
        return {"booking_id": booking_id, "visible": False, "changed": False}
    except Exception as exc:
        logger.error(f"Review visibility check failed for booking {booking_id}: {exc}")
        raise self.retry(exc=exc)


@celery_app.task(name="tasks.review_tasks.process_due_review_visibility")
def process_due_review_visibility(limit: int = None):
    """Beat task: publish reviews whose visibility window has elapsed."""
    processed = asyncio.run(_sweep(limit))
    logger.info(f"Review visibility sweep finished: {processed} booking(s) processed")
    return {"processed": processed}
