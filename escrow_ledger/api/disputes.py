from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.schemas import (
    DisputeResponse,
    OpenDisputeRequest,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
)
from escrow_ledger.core.deps import get_db
from escrow_ledger.core.security import get_current_user_id, require_resolver
from escrow_ledger.services import disputes as dispute_svc

router = APIRouter(prefix="/escrow/disputes", tags=["disputes"])


@router.post("", response_model=DisputeResponse, status_code=201)
async def open_dispute(
    body: OpenDisputeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Payer or receiver disputes a held transaction, freezing its release."""
    if body.initiator_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Disputes can only be opened on your own behalf",
        )
    return await dispute_svc.open_dispute(
        db,
        transaction_id=body.transaction_id,
        initiator_id=body.initiator_id,
        reason=body.reason,
        description=body.description,
    )


@router.get("", response_model=list[DisputeResponse])
async def list_disputes(
    status_filter: str | None = Query(default=None, alias="status"),
    transaction_id: int | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.list_disputes(
        db,
        user_id,
        status=status_filter,
        transaction_id=transaction_id,
        offset=offset,
        limit=limit,
    )


@router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.get_dispute(db, dispute_id, user_id)


@router.post("/{dispute_id}/investigate", response_model=DisputeResponse)
async def investigate_dispute(
    dispute_id: int,
    resolver_id: str = Depends(require_resolver),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.investigate_dispute(db, dispute_id, resolver_id=resolver_id)


@router.post("/{dispute_id}/resolve", response_model=ResolveDisputeResponse)
async def resolve_dispute(
    dispute_id: int,
    body: ResolveDisputeRequest,
    resolver_id: str = Depends(require_resolver),
    db: AsyncSession = Depends(get_db),
):
    """Settle the disputed funds: release to the receiver or refund the payer."""
    dispute, tx = await dispute_svc.resolve_dispute(
        db,
        dispute_id,
        outcome=body.outcome,
        resolution_note=body.note,
        resolver_id=resolver_id,
    )
    return {"dispute": dispute, "transaction": tx}


@router.post("/{dispute_id}/close", response_model=DisputeResponse)
async def close_dispute(
    dispute_id: int,
    resolver_id: str = Depends(require_resolver),
    db: AsyncSession = Depends(get_db),
):
    return await dispute_svc.close_dispute(db, dispute_id, resolver_id=resolver_id)
