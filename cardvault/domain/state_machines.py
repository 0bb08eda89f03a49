"""State machines for domain entities.

Deterministic state machines that define valid state transitions
for cards and orders. The order machine is driven by named events so
every write can be checked against the transition table before it
touches the database.
"""

from dataclasses import dataclass
from enum import Enum

from cardvault.domain.exceptions import InvalidStateTransitionError


# ============================================================================
# Card State Machine
# ============================================================================


class CardStatus(str, Enum):
    """Card lifecycle states.

    State diagram:
        AVAILABLE ──reserve──► LOCKED ──fulfill──► SOLD
            ▲                    │                  │
            └──────release───────┘                  │
            └──────────────return_to_pool───────────┘
    """

    AVAILABLE = "available"
    LOCKED = "locked"
    SOLD = "sold"

    def can_transition_to(self, target: "CardStatus") -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.

        Returns:
            True if transition is valid.
        """
        return target in _CARD_TRANSITIONS.get(self, set())

    def holds_order(self) -> bool:
        """Check if a card in this state references an order.

        Returns:
            True for locked and sold cards.
        """
        return self in {CardStatus.LOCKED, CardStatus.SOLD}


_CARD_TRANSITIONS: dict[CardStatus, set[CardStatus]] = {
    CardStatus.AVAILABLE: {CardStatus.LOCKED},
    CardStatus.LOCKED: {CardStatus.SOLD, CardStatus.AVAILABLE},
    CardStatus.SOLD: {CardStatus.AVAILABLE},
}


# ============================================================================
# Order State Machine
# ============================================================================


class OrderStatus(str, Enum):
    """Order lifecycle states.

    State diagram:
        PENDING ──────────────────────────────────► EXPIRED
          │
          │ payment_confirmed / admin_completed
          ▼
        COMPLETED (or legacy PAID)
          │
          │ refund_requested
          ▼
        REFUND_PENDING ──refund_rejected──► REFUND_REJECTED
          │
          │ refund_approved
          ▼
        REFUNDED
    """

    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUND_PENDING = "refund_pending"
    REFUND_REJECTED = "refund_rejected"
    REFUNDED = "refunded"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        """Check if transition to target state is valid.

        Args:
            target: Target state to transition to.

        Returns:
            True if transition is valid.
        """
        return target in _ORDER_TRANSITIONS.get(self, set())

    def allowed_transitions(self) -> list["OrderStatus"]:
        """Get list of valid target states.

        Returns:
            List of states that can be transitioned to.
        """
        return sorted(_ORDER_TRANSITIONS.get(self, set()), key=lambda s: s.value)

    def is_terminal(self) -> bool:
        """Check if this is a terminal (final) state.

        Returns:
            True if no further transitions are possible.
        """
        return len(_ORDER_TRANSITIONS.get(self, set())) == 0

    def is_fulfilled(self) -> bool:
        """Check if payment has been applied and cards were handed over.

        Returns:
            True for completed and legacy paid orders.
        """
        return self in {OrderStatus.COMPLETED, OrderStatus.PAID}


_ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.COMPLETED, OrderStatus.EXPIRED},
    OrderStatus.PAID: {OrderStatus.REFUND_PENDING},
    OrderStatus.COMPLETED: {OrderStatus.REFUND_PENDING},
    OrderStatus.EXPIRED: set(),  # Terminal state
    OrderStatus.REFUND_PENDING: {OrderStatus.REFUNDED, OrderStatus.REFUND_REJECTED},
    OrderStatus.REFUND_REJECTED: set(),  # Terminal state
    OrderStatus.REFUNDED: set(),  # Terminal state
}


class OrderEvent(str, Enum):
    """Triggers that move an order between states."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    ADMIN_COMPLETED = "admin_completed"
    EXPIRED = "expired"
    REFUND_REQUESTED = "refund_requested"
    REFUND_APPROVED = "refund_approved"
    REFUND_REJECTED = "refund_rejected"


@dataclass(frozen=True)
class OrderEdge:
    """Edge of the order transition table.

    Attributes:
        sources: States the event may fire from.
        target: State the event moves the order to.
    """

    sources: frozenset[OrderStatus]
    target: OrderStatus


ORDER_EDGES: dict[OrderEvent, OrderEdge] = {
    OrderEvent.PAYMENT_CONFIRMED: OrderEdge(
        frozenset({OrderStatus.PENDING}), OrderStatus.COMPLETED
    ),
    OrderEvent.ADMIN_COMPLETED: OrderEdge(
        frozenset({OrderStatus.PENDING}), OrderStatus.COMPLETED
    ),
    OrderEvent.EXPIRED: OrderEdge(frozenset({OrderStatus.PENDING}), OrderStatus.EXPIRED),
    OrderEvent.REFUND_REQUESTED: OrderEdge(
        frozenset({OrderStatus.COMPLETED, OrderStatus.PAID}),
        OrderStatus.REFUND_PENDING,
    ),
    OrderEvent.REFUND_APPROVED: OrderEdge(
        frozenset({OrderStatus.REFUND_PENDING}), OrderStatus.REFUNDED
    ),
    OrderEvent.REFUND_REJECTED: OrderEdge(
        frozenset({OrderStatus.REFUND_PENDING}), OrderStatus.REFUND_REJECTED
    ),
}


# ============================================================================
# State Machine Helpers
# ============================================================================


def validate_order_transition(
    order_id: str,
    current_status: OrderStatus,
    target_status: OrderStatus,
) -> None:
    """Validate and raise if order state transition is invalid.

    Args:
        order_id: Order identifier for error message.
        current_status: Current order status.
        target_status: Target order status.

    Raises:
        InvalidStateTransitionError: If transition is not valid.
    """
    if not current_status.can_transition_to(target_status):
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=order_id,
            current_state=current_status.value,
            target_state=target_status.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )


def resolve_order_event(
    order_id: str,
    current_status: OrderStatus,
    event: OrderEvent,
) -> OrderEdge:
    """Find the edge an event takes from the current state.

    Args:
        order_id: Order identifier for error message.
        current_status: Current order status.
        event: Event being applied.

    Returns:
        The matching edge.

    Raises:
        InvalidStateTransitionError: If the event cannot fire from the
            current state.
    """
    edge = ORDER_EDGES[event]
    if current_status not in edge.sources:
        raise InvalidStateTransitionError(
            entity_type="Order",
            entity_id=order_id,
            current_state=current_status.value,
            target_state=edge.target.value,
            allowed_transitions=[s.value for s in current_status.allowed_transitions()],
        )
    validate_order_transition(order_id, current_status, edge.target)
    return edge
