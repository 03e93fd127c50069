"""
shared/events.py
Outbound booking events for the notification subsystem, plus the best-effort
delayed review-visibility check.

Delivery belongs to whichever worker consumes NOTIFICATION_TASK_NAME; this
module only hands events over the Celery broker. Publishing never raises:
the booking transition has already committed by the time events go out.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

REVIEW_CHECK_TASK = "tasks.review_tasks.reevaluate_review_visibility"


class BookingEventType(str, Enum):
    BOOKING_REQUESTED = "booking.requested"
    BOOKING_ACCEPTED = "booking.accepted"
    BOOKING_DECLINED = "booking.declined"
    BOOKING_CANCELLED = "booking.cancelled"
    BOOKING_COMPLETED = "booking.completed"
    REVIEW_REQUESTED = "review.requested"
    REVIEW_RECEIVED = "review.received"
    REVIEWS_PUBLISHED = "reviews.published"


class BookingEvent(BaseModel):
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    type: BookingEventType
    booking_id: uuid.UUID
    recipient_id: uuid.UUID
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


# ── Resilience: Circuit Breaker ──────────────────────────────

class _BreakerLogListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker '{cb.name}' changed state: "
            f"{getattr(old_state, 'name', old_state)} -> {new_state.name}"
        )


class CircuitBreakerManager:
    """Manages circuit breakers for each downstream service."""

    def __init__(self):
        self.breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=5,          # Open after 5 failures
                reset_timeout=60,    # Try again after 60 seconds
                name=service_name,
                listeners=[_BreakerLogListener()],
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_not_exception_type(CircuitBreakerError),
    reraise=True,
)
def _send_task(name: str, **options):
    breaker = circuit_breaker_manager.get_breaker("celery-broker")
    return breaker.call(celery_app.send_task, name, **options)


# ── Publisher ────────────────────────────────────────────────

class EventPublisher:
    """Hands booking events and delayed checks to Celery."""

    def publish(self, event: BookingEvent) -> bool:
        try:
            _send_task(
                settings.NOTIFICATION_TASK_NAME,
                kwargs={"event": event.model_dump(mode="json")},
                queue="notifications",
            )
        except CircuitBreakerError:
            logger.warning(f"Notification broker circuit open, dropped {event.type.value} for booking {event.booking_id}")
            return False
        except Exception:
            logger.exception(f"Failed to publish {event.type.value} for booking {event.booking_id}")
            return False
        logger.info(f"Published {event.type.value} for booking {event.booking_id} to {event.recipient_id}")
        return True

    def schedule_review_check(self, booking_id: uuid.UUID, due_at: datetime) -> bool:
        """
        Ask Celery to re-evaluate review visibility at `due_at`.
        The review_visibility_jobs sweep fires even if this never arrives.
        """
        try:
            _send_task(REVIEW_CHECK_TASK, args=[str(booking_id)], eta=due_at)
        except Exception as e:
            logger.warning(f"Could not schedule review check for booking {booking_id}: {e}")
            return False
        return True


def make_event(
    event_type: BookingEventType,
    booking_id: uuid.UUID,
    recipient_id: uuid.UUID,
    message: str,
    **data: Any,
) -> BookingEvent:
    return BookingEvent(
        type=event_type,
        booking_id=booking_id,
        recipient_id=recipient_id,
        message=message,
        data=data,
    )


_publisher: Optional[EventPublisher] = None


def get_event_publisher() -> EventPublisher:
    """FastAPI dependency returning the process-wide publisher."""
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher
