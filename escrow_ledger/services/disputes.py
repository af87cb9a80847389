"""Dispute workflow: open, investigate, resolve and close disputes.

Owns the DisputeCase lifecycle. Money only moves through the transaction
service helpers, which this module calls inside its own unit of work.
"""

import logging
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.core.security import is_resolver
from escrow_ledger.db.base import utcnow
from escrow_ledger.models.dispute import DisputeCase
from escrow_ledger.models.escrow import EscrowTransaction
from escrow_ledger.services import escrow as escrow_svc
from escrow_ledger.services import events
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.errors import (
    Forbidden,
    InvalidPrecondition,
    InvalidStateTransition,
    TransactionNotDisputed,
    ValidationFailed,
)
from escrow_ledger.services.ledger_store import ACTIVE_DISPUTE_STATUSES, LedgerStore
from escrow_ledger.services.transaction_state_machine import (
    TERMINAL_STATUSES,
    Actor,
    TransactionStatus,
)

logger = logging.getLogger(__name__)


class DisputeStatus(StrEnum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DisputeAction(StrEnum):
    INVESTIGATE = "investigate"
    RESOLVE = "resolve"
    CLOSE = "close"


class DisputeOutcome(StrEnum):
    RELEASE = "release"
    REFUND = "refund"


DISPUTE_TRANSITIONS: dict[tuple[DisputeStatus, DisputeAction], DisputeStatus] = {
    (DisputeStatus.OPEN, DisputeAction.INVESTIGATE): DisputeStatus.INVESTIGATING,
    (DisputeStatus.INVESTIGATING, DisputeAction.INVESTIGATE): DisputeStatus.INVESTIGATING,
    (DisputeStatus.OPEN, DisputeAction.RESOLVE): DisputeStatus.RESOLVED,
    (DisputeStatus.INVESTIGATING, DisputeAction.RESOLVE): DisputeStatus.RESOLVED,
    (DisputeStatus.RESOLVED, DisputeAction.CLOSE): DisputeStatus.CLOSED,
}


def validate_dispute_transition(current: str, action: str) -> DisputeStatus:
    try:
        key = (DisputeStatus(current), DisputeAction(action))
    except ValueError:
        raise InvalidStateTransition(current, action)
    if key not in DISPUTE_TRANSITIONS:
        raise InvalidStateTransition(current, action)
    return DISPUTE_TRANSITIONS[key]


def _party_actor(tx: EscrowTransaction, user_id: str) -> Actor:
    if user_id == tx.payer_id:
        return Actor.PAYER
    if user_id == tx.receiver_id:
        return Actor.RECEIVER
    raise Forbidden("Only the payer or the receiver can open a dispute")


async def open_dispute(
    db: AsyncSession,
    *,
    transaction_id: int,
    initiator_id: str,
    reason: str,
    description: str = "",
) -> DisputeCase:
    """Open a dispute on a held transaction, moving it to ``disputed``."""
    store = LedgerStore(db)
    tx = await store.get_transaction(transaction_id, for_update=True)
    if tx.status != TransactionStatus.HELD:
        raise InvalidPrecondition(
            f"Transaction {tx.id} is {tx.status}; disputes can only be opened while funds are held"
        )
    actor = _party_actor(tx, initiator_id)
    return await escrow_svc.flag_disputed(
        db,
        tx.id,
        reason,
        actor=actor,
        initiator_id=initiator_id,
        description=description,
    )


async def investigate_dispute(
    db: AsyncSession, dispute_id: int, *, resolver_id: str
) -> DisputeCase:
    """open → investigating. A no-op when already investigating."""
    store = LedgerStore(db)
    dispute = await store.get_dispute(dispute_id, for_update=True)
    new_status = validate_dispute_transition(dispute.status, DisputeAction.INVESTIGATE)
    if dispute.status == new_status:
        return dispute

    dispute.status = new_status.value
    log_audit(
        db,
        action="dispute_investigate",
        entity_type="dispute",
        entity_id=dispute.id,
        actor_id=resolver_id,
    )
    await store.commit()
    logger.info("Dispute %s under investigation by %s", dispute.id, resolver_id)
    return dispute


async def resolve_dispute(
    db: AsyncSession,
    dispute_id: int,
    *,
    outcome: str,
    resolution_note: str,
    resolver_id: str,
) -> tuple[DisputeCase, EscrowTransaction]:
    """Resolve a dispute and settle its transaction in a single commit.

    Raises TransactionNotDisputed if the owning transaction already left
    ``disputed`` through another path (e.g. a direct refund); the dispute is
    left untouched in that case.
    """
    try:
        chosen = DisputeOutcome(outcome)
    except ValueError:
        raise ValidationFailed(f"Unknown dispute outcome: {outcome}")

    store = LedgerStore(db)
    dispute = await store.get_dispute(dispute_id, for_update=True)
    new_status = validate_dispute_transition(dispute.status, DisputeAction.RESOLVE)

    tx = await store.get_transaction(dispute.transaction_id, for_update=True)
    if tx.status != TransactionStatus.DISPUTED:
        error = TransactionNotDisputed(tx.id, tx.status)
        logger.warning("Dispute %s cannot be resolved: %s", dispute_id, error)
        await store.rollback()
        raise error

    dispute.status = new_status.value
    dispute.outcome = chosen.value
    dispute.resolution = resolution_note
    dispute.resolver_id = resolver_id
    dispute.resolved_at = utcnow()
    await store.flush()

    if chosen == DisputeOutcome.RELEASE:
        await escrow_svc._release(store, tx, Actor.RESOLVER, resolver_id)
        funds_event = events.FUNDS_RELEASED
    else:
        await escrow_svc._refund(store, tx, Actor.RESOLVER, resolver_id)
        funds_event = events.FUNDS_REFUNDED

    log_audit(
        db,
        action="dispute_resolve",
        entity_type="dispute",
        entity_id=dispute.id,
        actor_id=resolver_id,
        details={"outcome": chosen.value, "transaction_id": tx.id},
    )
    await store.commit()

    logger.info(
        "Dispute %s resolved with %s; transaction %s is %s",
        dispute.id, chosen.value, tx.id, tx.status,
    )
    await events.publish_event(
        events.event_for_transaction(events.DISPUTE_RESOLVED, tx, dispute_id=dispute.id)
    )
    await events.publish_event(events.event_for_transaction(funds_event, tx, dispute_id=dispute.id))
    return dispute, tx


async def close_dispute(db: AsyncSession, dispute_id: int, *, resolver_id: str) -> DisputeCase:
    """resolved → closed. Administrative; the transaction is not touched.

    An open or investigating dispute can also be closed once its transaction
    was settled outside the workflow (e.g. a direct refund), since it can no
    longer be resolved.
    """
    store = LedgerStore(db)
    dispute = await store.get_dispute(dispute_id, for_update=True)
    details = None
    if dispute.status in ACTIVE_DISPUTE_STATUSES:
        tx = await store.get_transaction(dispute.transaction_id, for_update=True)
        if tx.status not in TERMINAL_STATUSES:
            raise InvalidStateTransition(dispute.status, DisputeAction.CLOSE)
        details = {"unresolved": True, "transaction_status": tx.status}
        dispute.status = DisputeStatus.CLOSED.value
    else:
        dispute.status = validate_dispute_transition(dispute.status, DisputeAction.CLOSE).value
    dispute.closed_at = utcnow()
    log_audit(
        db,
        action="dispute_close",
        entity_type="dispute",
        entity_id=dispute.id,
        actor_id=resolver_id,
        details=details,
    )
    await store.commit()
    return dispute


async def get_dispute(db: AsyncSession, dispute_id: int, user_id: str) -> DisputeCase:
    store = LedgerStore(db)
    dispute = await store.get_dispute(dispute_id)
    if not is_resolver(user_id):
        tx = await store.get_transaction(dispute.transaction_id)
        if user_id not in (tx.payer_id, tx.receiver_id):
            raise Forbidden("You are not a party to this dispute")
    return dispute


async def list_disputes(
    db: AsyncSession,
    user_id: str,
    *,
    status: str | None = None,
    transaction_id: int | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[DisputeCase]:
    if status is not None:
        try:
            DisputeStatus(status)
        except ValueError:
            raise ValidationFailed(f"Unknown dispute status: {status}")
    return await LedgerStore(db).list_disputes(
        status=status,
        transaction_id=transaction_id,
        party_id=None if is_resolver(user_id) else user_id,
        offset=offset,
        limit=limit,
    )
