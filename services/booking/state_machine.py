"""
services/booking/state_machine.py
Booking transition table.

Every legal (status, action) pair maps to a Transition naming the target
status, the parties allowed to trigger it, the guards that must pass and the
side effects BookingService runs. A pair missing from the table is an
invalid transition; nothing falls through to a default branch.

    PENDING      → ACCEPTED | DECLINED | CANCELLED
    ACCEPTED     → IN_PROGRESS | COMPLETED (complete_booking) | CANCELLED
    IN_PROGRESS  → COMPLETED | CANCELLED
    COMPLETED, DECLINED, CANCELLED are terminal
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from config.settings import settings
from shared.exceptions import InputValidationError, InvalidTransitionError, PermissionDeniedError
from shared.models.models import BookingStatus

CENT = Decimal("0.01")


class BookingAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    MAKE_PAYMENT = "make_payment"
    MARK_COMPLETE = "mark_complete"
    CANCEL = "cancel"
    SUBMIT_REVIEW = "submit_review"
    COMPLETE_BOOKING = "complete_booking"


class Party(str, Enum):
    ORGANIZER = "organizer"
    TALENT = "talent"


class Guard(str, Enum):
    EVENT_ENDED = "event_ended"
    ORGANIZER_REVIEWED = "organizer_reviewed"


class Effect(str, Enum):
    STAMP_ACCEPTED = "stamp_accepted"
    RECORD_DECLINE = "record_decline"
    RECORD_PAYMENT = "record_payment"
    RECORD_CANCELLATION = "record_cancellation"
    SAVE_REVIEW = "save_review"
    COMPLETE = "complete"


@dataclass(frozen=True)
class Transition:
    target: Optional[BookingStatus]          # None keeps the current status
    parties: FrozenSet[Party]
    guards: Tuple[Guard, ...] = ()
    effects: Tuple[Effect, ...] = ()


ORGANIZER = frozenset({Party.ORGANIZER})
TALENT = frozenset({Party.TALENT})
BOTH = frozenset({Party.ORGANIZER, Party.TALENT})

_ACCEPT = Transition(BookingStatus.ACCEPTED, BOTH, effects=(Effect.STAMP_ACCEPTED,))
_DECLINE = Transition(BookingStatus.DECLINED, BOTH, effects=(Effect.RECORD_DECLINE,))
_CANCEL = Transition(BookingStatus.CANCELLED, ORGANIZER, effects=(Effect.RECORD_CANCELLATION,))
_EARLY_REVIEW = Transition(None, ORGANIZER, guards=(Guard.EVENT_ENDED,), effects=(Effect.SAVE_REVIEW,))
_COMPLETE_BOOKING = Transition(
    BookingStatus.COMPLETED,
    ORGANIZER,
    guards=(Guard.EVENT_ENDED, Guard.ORGANIZER_REVIEWED),
    effects=(Effect.COMPLETE,),
)

TRANSITIONS: Dict[Tuple[BookingStatus, BookingAction], Transition] = {
    (BookingStatus.PENDING, BookingAction.ACCEPT): _ACCEPT,
    (BookingStatus.PENDING, BookingAction.DECLINE): _DECLINE,
    (BookingStatus.PENDING, BookingAction.CANCEL): _CANCEL,

    (BookingStatus.ACCEPTED, BookingAction.MAKE_PAYMENT): Transition(
        BookingStatus.IN_PROGRESS, ORGANIZER, effects=(Effect.RECORD_PAYMENT,)
    ),
    (BookingStatus.ACCEPTED, BookingAction.SUBMIT_REVIEW): _EARLY_REVIEW,
    (BookingStatus.ACCEPTED, BookingAction.COMPLETE_BOOKING): _COMPLETE_BOOKING,
    (BookingStatus.ACCEPTED, BookingAction.CANCEL): _CANCEL,

    (BookingStatus.IN_PROGRESS, BookingAction.MARK_COMPLETE): Transition(
        BookingStatus.COMPLETED, ORGANIZER, guards=(Guard.EVENT_ENDED,), effects=(Effect.COMPLETE,)
    ),
    (BookingStatus.IN_PROGRESS, BookingAction.SUBMIT_REVIEW): _EARLY_REVIEW,
    (BookingStatus.IN_PROGRESS, BookingAction.COMPLETE_BOOKING): _COMPLETE_BOOKING,
    (BookingStatus.IN_PROGRESS, BookingAction.CANCEL): _CANCEL,

    (BookingStatus.COMPLETED, BookingAction.SUBMIT_REVIEW): Transition(
        None, BOTH, effects=(Effect.SAVE_REVIEW,)
    ),
}

TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.DECLINED, BookingStatus.CANCELLED}
)


def parse_action(raw: str) -> BookingAction:
    try:
        return BookingAction(raw)
    except ValueError:
        raise InputValidationError(
            f"Unknown action '{raw}'",
            details={"allowed_actions": [a.value for a in BookingAction]},
        )


def allowed_sources(action: BookingAction) -> List[str]:
    """Statuses from which `action` is legal, for error messages."""
    return sorted(status.value for (status, act) in TRANSITIONS if act == action)


def resolve_transition(status: BookingStatus, action: BookingAction, party: Party) -> Transition:
    """Look up the transition or raise the error the caller should surface."""
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise InvalidTransitionError(action.value, status.value, allowed_sources(action))
    if party not in transition.parties:
        raise PermissionDeniedError(
            f"The {party.value} cannot {action.value} this booking",
            code="ACTION_NOT_PERMITTED",
            details={"action": action.value, "party": party.value},
        )
    return transition


def compute_fee_split(amount: Decimal) -> Tuple[Decimal, Decimal]:
    """
    (platform_fee, talent_amount) for a gross amount, fixed at creation.
    platform_fee + talent_amount always equals amount.
    """
    amount = Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    platform_fee = (amount * Decimal(str(settings.PLATFORM_FEE_PERCENT)) / Decimal("100")).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    return platform_fee, amount - platform_fee
