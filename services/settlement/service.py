"""
services/settlement/service.py
Money-movement records produced by the booking lifecycle.

create_talent_payout is the only place a TALENT_PAYOUT row is written.
Every completion path calls through it. The existence check is a fast path;
the unique constraint on (booking_id, user_id, type) is what actually stops
a double payout when two completions race.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.exceptions import InputValidationError
from shared.models.models import (
    Booking,
    Payout,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    transaction: Transaction
    created: bool


def resolve_payout_amount(booking: Booking) -> Decimal:
    """Talent's share; the gross amount only when talent_amount was never set."""
    if booking.talent_amount is not None:
        return Decimal(booking.talent_amount)
    return Decimal(booking.amount or 0)


class SettlementService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_transaction(
        self, booking_id: uuid.UUID, user_id: uuid.UUID, tx_type: TransactionType
    ) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(
                Transaction.booking_id == booking_id,
                Transaction.user_id == user_id,
                Transaction.type == tx_type,
            )
        )
        return result.scalar_one_or_none()

    async def create_talent_payout(
        self,
        booking_id: uuid.UUID,
        talent_id: uuid.UUID,
        amount: Decimal,
        event_title: str,
        created_by: str = "system",
        currency: Optional[str] = None,
    ) -> PayoutResult:
        """
        Create the PENDING TALENT_PAYOUT ledger entry plus its Payout queue row.
        Safe to call any number of times: later calls return the first row.
        """
        existing = await self.find_transaction(booking_id, talent_id, TransactionType.TALENT_PAYOUT)
        if existing:
            logger.info(f"TALENT_PAYOUT already exists for booking {booking_id}: {existing.id}")
            return PayoutResult(transaction=existing, created=False)

        amount = Decimal(amount)
        if amount <= 0:
            raise InputValidationError(
                f"Invalid payout amount {amount}",
                details={"booking_id": str(booking_id), "amount": str(amount)},
            )

        currency = currency or settings.DEFAULT_CURRENCY
        transaction = Transaction(
            booking_id=booking_id,
            user_id=talent_id,
            type=TransactionType.TALENT_PAYOUT,
            status=TransactionStatus.PENDING,
            amount=amount,
            currency=currency,
            description=f"Payout for {event_title}",
            tx_metadata={
                "created_by": created_by,
                "reason": "booking_completion",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_title": event_title,
                "booking_id": str(booking_id),
            },
        )
        payout = Payout(
            talent_id=talent_id,
            booking_id=booking_id,
            amount=amount,
            status=PayoutStatus.PENDING,
            payout_method=settings.DEFAULT_PAYOUT_METHOD,
        )

        try:
            async with self.db.begin_nested():
                self.db.add_all([transaction, payout])
                await self.db.flush()
        except IntegrityError:
            existing = await self.find_transaction(booking_id, talent_id, TransactionType.TALENT_PAYOUT)
            if existing is None:
                raise
            logger.info(f"Concurrent payout creation for booking {booking_id}; using {existing.id}")
            return PayoutResult(transaction=existing, created=False)

        logger.info(
            f"Created TALENT_PAYOUT {transaction.id} for booking {booking_id} "
            f"({amount} {currency}, by {created_by})"
        )
        return PayoutResult(transaction=transaction, created=True)

    async def record_booking_payment(self, booking: Booking, payer_id: uuid.UUID) -> Transaction:
        """
        BOOKING_PAYMENT entry for the full booking amount. Gateway confirmation
        happens upstream; this only records it.
        """
        existing = await self.find_transaction(booking.id, payer_id, TransactionType.BOOKING_PAYMENT)
        if existing:
            return existing

        transaction = Transaction(
            booking_id=booking.id,
            user_id=payer_id,
            type=TransactionType.BOOKING_PAYMENT,
            status=TransactionStatus.COMPLETED,
            amount=booking.amount,
            currency=booking.currency,
            description="Booking payment",
            tx_metadata={
                "reason": "booking_payment",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "booking_id": str(booking.id),
            },
        )
        self.db.add(transaction)
        await self.db.flush()
        logger.info(f"Recorded BOOKING_PAYMENT {transaction.id} for booking {booking.id}")
        return transaction

    # ── Reads ────────────────────────────────────────────────

    async def list_talent_payouts(
        self,
        talent_id: uuid.UUID,
        page: int = 1,
        page_size: int = 10,
        status: Optional[TransactionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Tuple[List[Transaction], int, int]:
        """Returns (transactions, total, pages), newest first."""
        filters = [
            Transaction.user_id == talent_id,
            Transaction.type == TransactionType.TALENT_PAYOUT,
        ]
        if status:
            filters.append(Transaction.status == status)
        if start_date:
            filters.append(Transaction.created_at >= start_date)
        if end_date:
            filters.append(Transaction.created_at <= end_date)

        total = await self.db.scalar(select(func.count(Transaction.id)).where(*filters)) or 0
        result = await self.db.execute(
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total, math.ceil(total / page_size) if total else 0

    async def earnings_summary(self, talent_id: uuid.UUID) -> dict:
        result = await self.db.execute(
            select(Transaction.status, func.count(Transaction.id), func.sum(Transaction.amount))
            .where(
                Transaction.user_id == talent_id,
                Transaction.type == TransactionType.TALENT_PAYOUT,
            )
            .group_by(Transaction.status)
        )
        total = pending = completed = Decimal("0")
        count = 0
        for status, n, amount in result.all():
            amount = Decimal(amount or 0)
            total += amount
            count += n
            if status == TransactionStatus.PENDING:
                pending += amount
            elif status == TransactionStatus.COMPLETED:
                completed += amount
        return {
            "currency": settings.DEFAULT_CURRENCY,
            "total_earnings": total,
            "pending_earnings": pending,
            "completed_earnings": completed,
            "payout_count": count,
        }
