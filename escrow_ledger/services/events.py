"""Ledger events published on Redis pub/sub for notification consumers.

Publishing is fire-and-forget: the ledger row is already committed when an
event is emitted, so a Redis outage is logged and never rolls anything back.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis

from escrow_ledger.core.config import settings
from escrow_ledger.db.base import utcnow

logger = logging.getLogger(__name__)

FUNDS_HELD = "FundsHeld"
FUNDS_RELEASED = "FundsReleased"
FUNDS_REFUNDED = "FundsRefunded"
DISPUTE_OPENED = "DisputeOpened"
DISPUTE_RESOLVED = "DisputeResolved"

_redis: aioredis.Redis | None = None


async def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


@dataclass
class LedgerEvent:
    type: str
    transaction_id: int
    subscription_id: str
    payer_id: str
    receiver_id: str
    amount: Decimal
    currency: str
    dispute_id: int | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)


def event_for_transaction(event_type: str, tx, dispute_id: int | None = None) -> LedgerEvent:
    return LedgerEvent(
        type=event_type,
        transaction_id=tx.id,
        subscription_id=tx.subscription_id,
        payer_id=tx.payer_id,
        receiver_id=tx.receiver_id,
        amount=tx.amount,
        currency=tx.currency,
        dispute_id=dispute_id,
    )


async def publish_event(event: LedgerEvent) -> bool:
    """Publish an event; return False (and log) if Redis is unavailable."""
    try:
        r = await _get_redis()
        await r.publish(settings.events_channel, event.to_json())
        return True
    except Exception:
        logger.exception(
            "Failed to publish %s for transaction %s", event.type, event.transaction_id
        )
        return False


async def close() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
