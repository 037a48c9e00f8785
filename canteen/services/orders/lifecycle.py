"""
Order Lifecycle State Machine

Pure description of every allowed lifecycle move and of the column changes
that come with it. Nothing here touches the database; the manager applies a
``Transition`` as one compare-and-swap UPDATE guarded on ``source``.

    pending_payment --(verify)--> active
    active          --(scan)----> scanned
    scanned         --(deliver)-> delivered
    {pending_payment, active} --(cancel)--> cancelled
"""

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from canteen.models import LifecycleState, PaymentState

ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.PENDING_PAYMENT: frozenset({LifecycleState.ACTIVE, LifecycleState.CANCELLED}),
    LifecycleState.ACTIVE: frozenset({LifecycleState.SCANNED, LifecycleState.CANCELLED}),
    LifecycleState.SCANNED: frozenset({LifecycleState.DELIVERED}),
    LifecycleState.DELIVERED: frozenset(),
    LifecycleState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    state for state, targets in ALLOWED_TRANSITIONS.items() if not targets
)

REDEMPTION_TOKEN_PREFIX = "ORD-"


def issue_redemption_token(now_ms: Optional[int] = None) -> str:
    """``ORD-<epoch ms>-<16 hex chars from the OS CSPRNG>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{REDEMPTION_TOKEN_PREFIX}{now_ms}-{secrets.token_hex(8)}"


def can_transition(source: LifecycleState, target: LifecycleState) -> bool:
    return target in ALLOWED_TRANSITIONS[source]


@dataclass(frozen=True)
class Transition:
    """
    One lifecycle move and its derived effects.

    Attributes:
        source: state the order must be in for the move to apply
        target: resulting state
        changes: extra column values written together with ``target``
        stock_direction: -1 commits line quantities to the catalog,
            +1 returns them, 0 leaves stock alone
    """
    source: LifecycleState
    target: LifecycleState
    changes: dict[str, Any] = field(default_factory=dict)
    stock_direction: int = 0

    @property
    def issues_token(self) -> bool:
        return "redemption_token" in self.changes


def plan_transition(
    source: LifecycleState,
    target: LifecycleState,
    now: datetime,
) -> Transition:
    """
    Compute the move ``source -> target`` and everything it implies.

    Entering ``active`` completes the payment and mints the redemption
    token; entering ``scanned``, ``delivered`` or ``cancelled`` stamps the
    matching timestamp. Stock is committed on activation and returned only
    when an ``active`` order is cancelled.

    Raises:
        ValueError: the move is not part of the state machine
    """
    if not can_transition(source, target):
        raise ValueError(f"No transition from {source.value} to {target.value}")

    if target == LifecycleState.ACTIVE:
        return Transition(
            source,
            target,
            changes={
                "payment_state": PaymentState.COMPLETED,
                "redemption_token": issue_redemption_token(int(now.timestamp() * 1000)),
            },
            stock_direction=-1,
        )
    if target == LifecycleState.SCANNED:
        return Transition(source, target, changes={"scanned_at": now})
    if target == LifecycleState.DELIVERED:
        return Transition(source, target, changes={"delivered_at": now})

    # Cancelled
    return Transition(
        source,
        target,
        changes={"cancelled_at": now},
        stock_direction=1 if source == LifecycleState.ACTIVE else 0,
    )
