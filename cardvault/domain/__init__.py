"""Domain layer - state machines, principals, amounts and domain errors.

This module exports the core domain building blocks:

- **State Machines**: Card and order statuses with their legal transitions
  and the event table driving order transitions
- **Principal**: The authenticated caller and its role capabilities
- **Value Objects**: Money amounts and order numbers
- **Exceptions**: Domain-specific errors and invariant violations

Example usage:
    from cardvault.domain import OrderEvent, OrderStatus, resolve_order_event

    edge = resolve_order_event("order-1", OrderStatus.PENDING, OrderEvent.EXPIRED)
    print(edge.target)  # OrderStatus.EXPIRED
"""

# Exceptions
from cardvault.domain.exceptions import (
    DomainError,
    GatewayConfigurationError,
    GatewayError,
    GatewayRejectedError,
    GatewayUnavailableError,
    InsufficientStockError,
    InvalidStateTransitionError,
    OrderError,
    OrderNotFoundError,
    PermissionDeniedError,
    SignatureMismatchError,
    UntrustedSenderError,
    ValidationError,
    WebhookRejectedError,
)

# Principal
from cardvault.domain.principal import Capability, Principal, Role

# State Machines
from cardvault.domain.state_machines import (
    ORDER_EDGES,
    CardStatus,
    OrderEdge,
    OrderEvent,
    OrderStatus,
    resolve_order_event,
    validate_order_transition,
)

# Value Objects
from cardvault.domain.value_objects import (
    format_amount,
    generate_order_no,
    to_decimal_amount,
    to_minor_units,
)

__all__ = [
    # Exceptions
    "DomainError",
    "GatewayConfigurationError",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayUnavailableError",
    "InsufficientStockError",
    "InvalidStateTransitionError",
    "OrderError",
    "OrderNotFoundError",
    "PermissionDeniedError",
    "SignatureMismatchError",
    "UntrustedSenderError",
    "ValidationError",
    "WebhookRejectedError",
    # Principal
    "Capability",
    "Principal",
    "Role",
    # State Machines
    "ORDER_EDGES",
    "CardStatus",
    "OrderEdge",
    "OrderEvent",
    "OrderStatus",
    "resolve_order_event",
    "validate_order_transition",
    # Value Objects
    "format_amount",
    "generate_order_no",
    "to_decimal_amount",
    "to_minor_units",
]
