from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.db.base import Base


class DisputeCase(Base):
    __tablename__ = "dispute_cases"

    transaction_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("escrow_transactions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    initiator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="", server_default="")
    status: Mapped[str] = mapped_column(
        String(20), default="open", server_default="open", nullable=False, index=True
    )  # open / investigating / resolved / closed
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)  # release / refund
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolver_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
