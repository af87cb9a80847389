"""Escrow transaction endpoints and ledger aggregates."""

from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.schemas import (
    AnalyticsResponse,
    CreateTransactionRequest,
    SubscriptionSummaryResponse,
    SummaryResponse,
    TransactionDetailResponse,
    TransactionResponse,
)
from escrow_ledger.core.config import settings
from escrow_ledger.core.deps import get_db
from escrow_ledger.core.rate_limit import limiter
from escrow_ledger.core.security import get_current_user_id
from escrow_ledger.services import escrow as escrow_svc
from escrow_ledger.services import projections

router = APIRouter(prefix="/escrow", tags=["escrow"])


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
@limiter.limit(settings.rate_limit_escrow)
async def create_transaction(
    request: Request,
    body: CreateTransactionRequest,
    idempotency_key: str | None = Header(default=None, max_length=128),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Authorize the payer's charge and hold it in escrow until the release date."""
    if body.payer_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the payer can create an escrow transaction",
        )
    return await escrow_svc.create_transaction(
        db,
        subscription_id=body.subscription_id,
        payer_id=body.payer_id,
        receiver_id=body.receiver_id,
        amount=body.amount,
        release_date=body.release_date,
        idempotency_key=idempotency_key,
    )


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    role: Literal["payer", "receiver"] | None = None,
    status_filter: str | None = Query(default=None, alias="status"),
    include_archived: bool = False,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Transactions where the caller is payer or receiver (all of them for resolvers)."""
    return await escrow_svc.list_transactions_for_user(
        db,
        user_id,
        role=role,
        status=status_filter,
        include_archived=include_archived,
        offset=offset,
        limit=limit,
    )


@router.get("/transactions/{transaction_id}", response_model=TransactionDetailResponse)
async def get_transaction(
    transaction_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await escrow_svc.get_transaction_detail(db, transaction_id, user_id)


@router.post("/transactions/{transaction_id}/release", response_model=TransactionResponse)
async def release_transaction(
    transaction_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Release held funds to the receiver ahead of the scheduled date (payer only)."""
    tx = await escrow_svc.get_transaction(db, transaction_id)
    actor = escrow_svc.resolve_actor(tx, user_id)
    return await escrow_svc.release_transaction(
        db, transaction_id, actor=actor, actor_id=user_id
    )


@router.post("/transactions/{transaction_id}/refund", response_model=TransactionResponse)
async def refund_transaction(
    transaction_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Refund held or disputed funds to the payer (receiver or resolver)."""
    tx = await escrow_svc.get_transaction(db, transaction_id)
    actor = escrow_svc.resolve_actor(tx, user_id)
    return await escrow_svc.refund_transaction(
        db, transaction_id, actor=actor, actor_id=user_id
    )


@router.get("/summary", response_model=SummaryResponse)
async def get_summary(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Count and totals per status across the whole ledger."""
    return await projections.get_summary(db)


@router.get(
    "/subscriptions/{subscription_id}/summary",
    response_model=SubscriptionSummaryResponse,
)
async def get_subscription_summary(
    subscription_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await projections.get_subscription_summary(db, subscription_id)


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await projections.get_analytics(db)
