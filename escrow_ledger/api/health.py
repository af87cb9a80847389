from fastapi import APIRouter

from escrow_ledger.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/config/public")
async def public_config() -> dict:
    """Public ledger configuration shown next to checkout."""
    return {
        "currency": settings.currency,
        "escrow_fee_percent": settings.escrow_fee_percent,
        "payment_sandbox": settings.payment_sandbox and not settings.payment_gateway_configured,
    }
