"""
Order lifecycle: state machine, checkout, verification and redemption.
"""

from canteen.services.orders.lifecycle import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    Transition,
    can_transition,
    issue_redemption_token,
    plan_transition,
)
from canteen.services.orders.manager import (
    PLACEHOLDER_HANDLE_PREFIX,
    CheckoutResult,
    LineRequest,
    OrderLifecycleManager,
    is_placeholder_handle,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATES",
    "Transition",
    "can_transition",
    "issue_redemption_token",
    "plan_transition",
    "PLACEHOLDER_HANDLE_PREFIX",
    "CheckoutResult",
    "LineRequest",
    "OrderLifecycleManager",
    "is_placeholder_handle",
]
