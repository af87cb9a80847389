from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.db.base import Base


class EscrowSummary(Base):
    """Running per-status totals, updated in the same DB transaction as each status change."""

    __tablename__ = "escrow_summary"

    status: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    transaction_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
    total_fee: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0"), server_default="0"
    )
