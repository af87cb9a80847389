from escrow_ledger.models.escrow import EscrowTransaction
from escrow_ledger.models.dispute import DisputeCase
from escrow_ledger.models.escrow_summary import EscrowSummary
from escrow_ledger.models.audit_log import AuditLog

__all__ = [
    "EscrowTransaction",
    "DisputeCase",
    "EscrowSummary",
    "AuditLog",
]
