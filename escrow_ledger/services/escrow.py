"""Escrow transaction service. The only place transaction status changes.

Public functions are complete units of work (load with row lock, validate,
mutate, commit, publish). The underscore-prefixed helpers apply a single
transition inside a caller's unit of work so the dispute workflow can
combine a dispute change and a transaction change in one commit.
"""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.core.config import settings
from escrow_ledger.core.security import is_resolver
from escrow_ledger.db.base import utcnow
from escrow_ledger.models.dispute import DisputeCase
from escrow_ledger.models.escrow import EscrowTransaction
from escrow_ledger.services import events
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.errors import (
    EscrowError,
    Forbidden,
    InvalidStateTransition,
    ValidationFailed,
)
from escrow_ledger.services.ledger_store import LedgerStore
from escrow_ledger.services.payments.gateway import PaymentGateway
from escrow_ledger.services.transaction_state_machine import (
    Actor,
    TransactionAction,
    TransactionStatus,
    get_available_actions,
    validate_transition,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def compute_escrow_fee(amount: Decimal, fee_percent: int | None = None) -> Decimal:
    """Fee charged on top of the held amount, rounded half-up to cents."""
    percent = settings.escrow_fee_percent if fee_percent is None else fee_percent
    return (amount * Decimal(percent) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_actor(tx: EscrowTransaction, user_id: str) -> Actor:
    """Map the caller to their role on this transaction."""
    if user_id == tx.payer_id:
        return Actor.PAYER
    if user_id == tx.receiver_id:
        return Actor.RECEIVER
    if is_resolver(user_id):
        return Actor.RESOLVER
    raise Forbidden("You are not a party to this transaction")


# ---------------------------------------------------------------------------
# Transitions inside an open unit of work
# ---------------------------------------------------------------------------


async def _apply_transition(
    store: LedgerStore,
    tx: EscrowTransaction,
    action: TransactionAction,
    actor: Actor,
    actor_id: str | None,
) -> TransactionStatus:
    """Validate and apply one transition, keeping the running aggregates in step."""
    old_status = tx.status
    new_status = validate_transition(old_status, action, actor)

    now = utcnow()
    tx.status = new_status.value
    if old_status == TransactionStatus.DISPUTED:
        tx.dispute_reason = None
    if new_status == TransactionStatus.RELEASED:
        tx.released_at = now
    elif new_status == TransactionStatus.REFUNDED:
        tx.refunded_at = now

    # Version-checked UPDATE of the row happens here
    await store.flush()
    # Pending rows are never committed, so they are never counted
    if old_status != TransactionStatus.PENDING:
        await store.adjust_summary(old_status, count=-1, amount=-tx.amount, fee=-tx.escrow_fee)
    await store.adjust_summary(new_status.value, count=1, amount=tx.amount, fee=tx.escrow_fee)

    log_audit(
        store.db,
        action=f"transaction_{action.value}",
        entity_type="transaction",
        entity_id=tx.id,
        actor_id=actor_id,
        details={"from_status": old_status, "to_status": new_status.value, "actor": actor.value},
    )
    return new_status


async def _release(
    store: LedgerStore, tx: EscrowTransaction, actor: Actor, actor_id: str | None
) -> None:
    if await store.active_dispute_for(tx.id) is not None:
        raise InvalidStateTransition(tx.status, TransactionAction.RELEASE, actor)
    await _apply_transition(store, tx, TransactionAction.RELEASE, actor, actor_id)


async def _refund(
    store: LedgerStore, tx: EscrowTransaction, actor: Actor, actor_id: str | None
) -> None:
    await _apply_transition(store, tx, TransactionAction.REFUND, actor, actor_id)


async def _flag_disputed(
    store: LedgerStore,
    tx: EscrowTransaction,
    *,
    reason: str,
    description: str,
    actor: Actor,
    initiator_id: str,
) -> DisputeCase:
    if await store.active_dispute_for(tx.id) is not None:
        raise InvalidStateTransition(tx.status, TransactionAction.FLAG_DISPUTED, actor)

    await _apply_transition(store, tx, TransactionAction.FLAG_DISPUTED, actor, initiator_id)
    tx.dispute_reason = reason

    dispute = DisputeCase(
        transaction_id=tx.id,
        initiator_id=initiator_id,
        reason=reason,
        description=description,
        status="open",
    )
    store.add(dispute)
    await store.flush()
    log_audit(
        store.db,
        action="dispute_open",
        entity_type="dispute",
        entity_id=dispute.id,
        actor_id=initiator_id,
        details={"transaction_id": tx.id, "reason": reason},
    )
    return dispute


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------


async def create_transaction(
    db: AsyncSession,
    *,
    subscription_id: str,
    payer_id: str,
    receiver_id: str,
    amount: Decimal,
    release_date: datetime,
    idempotency_key: str | None = None,
    gateway: PaymentGateway | None = None,
) -> EscrowTransaction:
    """Create a held escrow transaction after authorizing the payer's charge.

    The row is inserted as ``pending`` and moved to ``held`` in the same
    database transaction once the gateway approves, so a declined or failed
    authorization leaves nothing behind. The shared status counters are only
    touched after the gateway call returns.
    """
    amount = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    if amount <= 0:
        raise ValidationFailed("Amount must be greater than zero")
    if payer_id == receiver_id:
        raise ValidationFailed("Payer and receiver must be different users")

    now = utcnow()
    release_date = _as_utc(release_date)
    if release_date <= now:
        raise ValidationFailed("Release date must be in the future")

    store = LedgerStore(db)

    if idempotency_key:
        existing = await store.find_by_idempotency_key(idempotency_key)
        if existing is not None:
            if (
                existing.payer_id != payer_id
                or existing.receiver_id != receiver_id
                or existing.subscription_id != subscription_id
                or existing.amount != amount
            ):
                raise ValidationFailed("Idempotency key was already used for a different payment")
            logger.info(
                "Idempotent replay of transaction %s (key=%s)", existing.id, idempotency_key
            )
            return existing

    escrow_fee = compute_escrow_fee(amount)
    tx = EscrowTransaction(
        subscription_id=subscription_id,
        payer_id=payer_id,
        receiver_id=receiver_id,
        amount=amount,
        escrow_fee=escrow_fee,
        currency=settings.currency,
        status=TransactionStatus.PENDING.value,
        release_date=release_date,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    store.add(tx)
    await store.flush()

    gateway = gateway or PaymentGateway()
    try:
        tx.payment_authorization_id = await gateway.authorize(
            payer_id=payer_id,
            amount=amount + escrow_fee,
            currency=tx.currency,
            idempotency_key=idempotency_key or f"escrow-tx-{tx.id}",
            description=f"Subscription share {subscription_id}",
        )
    except EscrowError:
        await store.rollback()
        raise

    authorization_id = tx.payment_authorization_id
    await _apply_transition(store, tx, TransactionAction.AUTHORIZE, Actor.SYSTEM, payer_id)
    log_audit(
        db,
        action="transaction_create",
        entity_type="transaction",
        entity_id=tx.id,
        actor_id=payer_id,
        details={
            "subscription_id": subscription_id,
            "amount": amount,
            "escrow_fee": escrow_fee,
            "authorization_id": authorization_id,
        },
    )
    try:
        await store.commit()
    except EscrowError:
        logger.error(
            "Authorization %s succeeded but the ledger commit failed; void required",
            authorization_id,
        )
        raise

    logger.info("Escrow transaction %s held (%s %s)", tx.id, amount, tx.currency)
    await events.publish_event(events.event_for_transaction(events.FUNDS_HELD, tx))
    return tx


async def release_transaction(
    db: AsyncSession, transaction_id: int, *, actor: Actor, actor_id: str | None = None
) -> EscrowTransaction:
    """held → released. Fails while any dispute on the transaction is active."""
    store = LedgerStore(db)
    tx = await store.get_transaction(transaction_id, for_update=True)
    await _release(store, tx, actor, actor_id)
    await store.commit()

    logger.info("Escrow transaction %s released by %s", tx.id, actor.value)
    await events.publish_event(events.event_for_transaction(events.FUNDS_RELEASED, tx))
    return tx


async def refund_transaction(
    db: AsyncSession, transaction_id: int, *, actor: Actor, actor_id: str | None = None
) -> EscrowTransaction:
    """held|disputed → refunded."""
    store = LedgerStore(db)
    tx = await store.get_transaction(transaction_id, for_update=True)
    await _refund(store, tx, actor, actor_id)
    await store.commit()

    logger.info("Escrow transaction %s refunded by %s", tx.id, actor.value)
    await events.publish_event(events.event_for_transaction(events.FUNDS_REFUNDED, tx))
    return tx


async def flag_disputed(
    db: AsyncSession,
    transaction_id: int,
    reason: str,
    *,
    actor: Actor,
    initiator_id: str,
    description: str = "",
) -> DisputeCase:
    """held → disputed, opening a DisputeCase in the same commit."""
    store = LedgerStore(db)
    tx = await store.get_transaction(transaction_id, for_update=True)
    dispute = await _flag_disputed(
        store,
        tx,
        reason=reason,
        description=description,
        actor=actor,
        initiator_id=initiator_id,
    )
    await store.commit()

    logger.info("Escrow transaction %s disputed (dispute %s)", tx.id, dispute.id)
    await events.publish_event(
        events.event_for_transaction(events.DISPUTE_OPENED, tx, dispute_id=dispute.id)
    )
    return dispute


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_transaction(db: AsyncSession, transaction_id: int) -> EscrowTransaction:
    return await LedgerStore(db).get_transaction(transaction_id)


async def get_transaction_detail(db: AsyncSession, transaction_id: int, user_id: str) -> dict:
    """Transaction + disputes + the caller's available actions, for the UI."""
    store = LedgerStore(db)
    tx = await store.get_transaction(transaction_id)
    actor = resolve_actor(tx, user_id)
    actions = get_available_actions(tx.status, actor)
    # Resolver-side outcomes go through the dispute workflow
    if actor == Actor.RESOLVER and tx.status == TransactionStatus.DISPUTED:
        actions = [a for a in actions if a != TransactionAction.RELEASE]
    disputes = await store.disputes_for_transaction(tx.id)
    return {
        "transaction": tx,
        "disputes": disputes,
        "available_actions": actions,
    }


async def list_transactions_for_user(
    db: AsyncSession,
    user_id: str,
    *,
    role: str | None = None,
    status: str | None = None,
    include_archived: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[EscrowTransaction]:
    if status is not None:
        try:
            TransactionStatus(status)
        except ValueError:
            raise ValidationFailed(f"Unknown transaction status: {status}")
    store = LedgerStore(db)
    return await store.list_transactions(
        user_id=None if is_resolver(user_id) and role is None else user_id,
        role=role,
        status=status,
        include_archived=include_archived,
        offset=offset,
        limit=limit,
    )


async def archive_settled_transactions(db: AsyncSession, cutoff: datetime, limit: int = 500) -> int:
    """Mark released/refunded transactions last touched before ``cutoff`` as archived."""
    store = LedgerStore(db)
    settled = await store.settled_before(cutoff, limit)
    now = utcnow()
    for tx in settled:
        tx.archived_at = now
        log_audit(
            db,
            action="transaction_archive",
            entity_type="transaction",
            entity_id=tx.id,
            details={"status": tx.status},
        )
    if settled:
        await store.commit()
    return len(settled)
