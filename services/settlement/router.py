"""
services/settlement/router.py
Talent-facing payout ledger and earnings summary.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.settlement.service import SettlementService
from shared.middleware.auth import require_talent
from shared.models.models import TransactionStatus, User
from shared.schemas.schemas import EarningsSummaryResponse, PaginatedResponse, TransactionResponse
from shared.utils.intervals import as_utc

router = APIRouter(prefix="/payouts", tags=["Payouts"])


@router.get("/me", response_model=PaginatedResponse)
async def list_my_payouts(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    transactions, total, pages = await SettlementService(db).list_talent_payouts(
        current_user.id,
        page=page,
        page_size=page_size,
        status=status_filter,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
    )
    return PaginatedResponse(
        items=[
            TransactionResponse.model_validate(t).model_dump(mode="json", by_alias=True)
            for t in transactions
        ],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.get("/me/summary", response_model=EarningsSummaryResponse)
async def my_earnings_summary(
    current_user: User = Depends(require_talent),
    db: AsyncSession = Depends(get_db),
):
    """Total, pending and completed TALENT_PAYOUT amounts."""
    return await SettlementService(db).earnings_summary(current_user.id)
