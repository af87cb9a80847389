"""Escrow transaction state machine. Pure logic, no DB dependency.

Defines the five-status transaction lifecycle, allowed transitions, actors,
and helper functions for validation and action discovery.
"""

from enum import StrEnum

from escrow_ledger.services.errors import InvalidStateTransition


class TransactionStatus(StrEnum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class TransactionAction(StrEnum):
    AUTHORIZE = "authorize"
    RELEASE = "release"
    REFUND = "refund"
    FLAG_DISPUTED = "flag_disputed"


class Actor(StrEnum):
    PAYER = "payer"
    RECEIVER = "receiver"
    SYSTEM = "system"
    RESOLVER = "resolver"


# Mapping: (current_status, action) → (new_status, frozenset_of_allowed_actors)
TRANSITIONS: dict[
    tuple[TransactionStatus, TransactionAction], tuple[TransactionStatus, frozenset[Actor]]
] = {
    # Payment authorized inside create()
    (TransactionStatus.PENDING, TransactionAction.AUTHORIZE): (
        TransactionStatus.HELD,
        frozenset({Actor.SYSTEM}),
    ),
    # Scheduled release, or early confirmation by the payer
    (TransactionStatus.HELD, TransactionAction.RELEASE): (
        TransactionStatus.RELEASED,
        frozenset({Actor.PAYER, Actor.SYSTEM}),
    ),
    (TransactionStatus.HELD, TransactionAction.REFUND): (
        TransactionStatus.REFUNDED,
        frozenset({Actor.RECEIVER, Actor.SYSTEM, Actor.RESOLVER}),
    ),
    (TransactionStatus.HELD, TransactionAction.FLAG_DISPUTED): (
        TransactionStatus.DISPUTED,
        frozenset({Actor.PAYER, Actor.RECEIVER}),
    ),
    # Dispute outcomes
    (TransactionStatus.DISPUTED, TransactionAction.RELEASE): (
        TransactionStatus.RELEASED,
        frozenset({Actor.RESOLVER}),
    ),
    (TransactionStatus.DISPUTED, TransactionAction.REFUND): (
        TransactionStatus.REFUNDED,
        frozenset({Actor.RECEIVER, Actor.SYSTEM, Actor.RESOLVER}),
    ),
}

TERMINAL_STATUSES: frozenset[TransactionStatus] = frozenset({
    TransactionStatus.RELEASED,
    TransactionStatus.REFUNDED,
})


def validate_transition(current: str, action: str, actor: str) -> TransactionStatus:
    """Validate and return the new status for a transition.

    Raises InvalidStateTransition if the transition is not allowed.
    """
    try:
        current_status = TransactionStatus(current)
        tx_action = TransactionAction(action)
        tx_actor = Actor(actor)
    except ValueError:
        raise InvalidStateTransition(current, action, actor)

    key = (current_status, tx_action)
    if key not in TRANSITIONS:
        raise InvalidStateTransition(current, action, actor)

    new_status, allowed_actors = TRANSITIONS[key]
    if tx_actor not in allowed_actors:
        raise InvalidStateTransition(current, action, actor)

    return new_status


def get_available_actions(current: str, actor: str) -> list[str]:
    """Return list of action names available for the given status and actor."""
    try:
        current_status = TransactionStatus(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    if current_status in TERMINAL_STATUSES:
        return []

    actions: list[str] = []
    for (status, action), (_, allowed_actors) in TRANSITIONS.items():
        if status != current_status:
            continue
        if actor_enum in allowed_actors:
            actions.append(action.value)

    return actions
