"""Typed ledger errors.

Every error carries the HTTP status the API renders it with and a stable
machine-readable code; the global handler in ``escrow_ledger.main`` turns
any ``EscrowError`` into ``{"detail": ..., "error": ...}``.
"""


class EscrowError(Exception):
    status_code: int = 400
    code: str = "escrow_error"


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: int):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class Forbidden(EscrowError):
    status_code = 403
    code = "forbidden"


class ValidationFailed(EscrowError):
    status_code = 422
    code = "validation_failed"


class PaymentAuthorizationFailed(EscrowError):
    """The payer's funding source declined the charge."""

    status_code = 402
    code = "payment_authorization_failed"

    def __init__(self, reason: str = "declined"):
        self.reason = reason
        super().__init__(f"Payment authorization failed: {reason}")


class PaymentGatewayUnavailable(EscrowError):
    status_code = 503
    code = "payment_gateway_unavailable"


class InvalidStateTransition(EscrowError):
    """Raised when a transaction or dispute transition is not allowed."""

    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, current: str, action: str, actor: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        super().__init__(msg)


class InvalidPrecondition(EscrowError):
    status_code = 409
    code = "invalid_precondition"


class ConcurrentModification(EscrowError):
    """Another writer changed the record between our read and write. Safe to retry once."""

    status_code = 409
    code = "concurrent_modification"


class TransactionNotDisputed(EscrowError):
    status_code = 409
    code = "transaction_not_disputed"

    def __init__(self, transaction_id: int, status: str):
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(
            f"Transaction {transaction_id} is no longer disputed (status: {status})"
        )


class PersistenceUnavailable(EscrowError):
    status_code = 503
    code = "persistence_unavailable"
