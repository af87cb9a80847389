from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.db.base import Base


class EscrowTransaction(Base):
    __tablename__ = "escrow_transactions"

    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    escrow_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    currency: Mapped[str] = mapped_column(String(8), default="USD", server_default="USD")
    status: Mapped[str] = mapped_column(
        String(20), default="pending", server_default="pending", nullable=False
    )  # pending / held / released / disputed / refunded
    release_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_authorization_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # Release sweep: held rows ordered by due date
        Index("ix_escrow_transactions_status_release_date", "status", "release_date"),
    )
