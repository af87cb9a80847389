from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_serializer

TransactionStatusLiteral = Literal["pending", "held", "released", "disputed", "refunded"]
DisputeStatusLiteral = Literal["open", "investigating", "resolved", "closed"]


def _money(v: Decimal) -> str:
    return f"{v:.2f}"


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    subscription_id: str = Field(..., min_length=1, max_length=64)
    payer_id: str = Field(..., min_length=1, max_length=64)
    receiver_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    release_date: datetime


class TransactionResponse(BaseModel):
    id: int
    subscription_id: str
    payer_id: str
    receiver_id: str
    amount: Decimal
    escrow_fee: Decimal
    currency: str
    status: TransactionStatusLiteral
    created_at: datetime
    release_date: datetime
    dispute_reason: str | None = None
    payment_authorization_id: str | None = None
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    archived_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_serializer("amount", "escrow_fee")
    def _serialize_money(self, v: Decimal) -> str:
        return _money(v)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class OpenDisputeRequest(BaseModel):
    transaction_id: int
    initiator_id: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(..., min_length=1, max_length=120)
    description: str = Field(default="", max_length=4000)


class ResolveDisputeRequest(BaseModel):
    outcome: Literal["release", "refund"]
    note: str = Field(..., min_length=1, max_length=4000)


class DisputeResponse(BaseModel):
    id: int
    transaction_id: int
    initiator_id: str
    reason: str
    description: str
    status: DisputeStatusLiteral
    created_at: datetime
    outcome: Literal["release", "refund"] | None = None
    resolution: str | None = None
    resolver_id: str | None = None
    resolved_at: datetime | None = None
    closed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ResolveDisputeResponse(BaseModel):
    dispute: DisputeResponse
    transaction: TransactionResponse


class TransactionDetailResponse(BaseModel):
    transaction: TransactionResponse
    disputes: list[DisputeResponse]
    available_actions: list[str]


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class StatusTotals(BaseModel):
    count: int
    amount: Decimal
    fee: Decimal

    @field_serializer("amount", "fee")
    def _serialize_money(self, v: Decimal) -> str:
        return _money(v)


class SummaryResponse(BaseModel):
    by_status: dict[str, StatusTotals]
    total_count: int
    total_amount: Decimal
    total_fee: Decimal

    @field_serializer("total_amount", "total_fee")
    def _serialize_money(self, v: Decimal) -> str:
        return _money(v)


class SubscriptionSummaryResponse(SummaryResponse):
    subscription_id: str


class AnalyticsResponse(BaseModel):
    settled_transactions: int
    success_rate: float | None
    active_disputes: int
    resolved_disputes: int
    average_resolution_days: float | None
    held_amount: Decimal
    disputed_amount: Decimal

    @field_serializer("held_amount", "disputed_amount")
    def _serialize_money(self, v: Decimal) -> str:
        return _money(v)
