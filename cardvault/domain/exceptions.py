"""Domain exceptions.

All domain-level errors that represent business rule violations.
These exceptions are raised by the ledger, the order state machine and
the application services when invariants are violated or invalid
operations are attempted.
"""

from typing import Any


class DomainError(Exception):
    """Base class for all domain exceptions.

    All domain errors should inherit from this class to allow
    catching domain-specific errors at the application layer.
    """

    error_code = "DOMAIN_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DomainError):
    """Raised when input is malformed and rejected before any transaction."""

    error_code = "VALIDATION_ERROR"


class PermissionDeniedError(DomainError):
    """Raised when a principal lacks the capability for an operation."""

    error_code = "PERMISSION_DENIED"

    def __init__(self, principal_id: str, capability: str) -> None:
        """Initialize permission denied error.

        Args:
            principal_id: ID of the acting principal.
            capability: Capability that was required.
        """
        super().__init__(
            "Operation not permitted",
            details={"principal_id": principal_id, "required_capability": capability},
        )


# ============================================================================
# State Machine Errors
# ============================================================================


class InvalidStateTransitionError(DomainError):
    """Raised when an invalid state transition is attempted.

    This error indicates that the requested operation cannot be performed
    in the current state of the entity. No write has happened.
    """

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        current_state: str,
        target_state: str,
        allowed_transitions: list[str] | None = None,
    ) -> None:
        """Initialize invalid state transition error.

        Args:
            entity_type: Type of entity (e.g., "Order").
            entity_id: ID of the entity.
            current_state: Current state of the entity.
            target_state: Attempted target state.
            allowed_transitions: List of allowed target states from current state.
        """
        allowed = allowed_transitions or []
        message = (
            f"Cannot transition {entity_type}({entity_id}) "
            f"from '{current_state}' to '{target_state}'. "
            f"Allowed transitions: {allowed}"
        )
        super().__init__(
            message,
            details={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
                "allowed_transitions": allowed,
            },
        )
        self.current_state = current_state
        self.target_state = target_state


# ============================================================================
# Order / Inventory Errors
# ============================================================================


class OrderError(DomainError):
    """Base class for order-related errors."""

    pass


class OrderNotFoundError(OrderError):
    """Raised when an order does not exist or is not visible to the caller."""

    error_code = "ORDER_NOT_FOUND"

    def __init__(self, reference: str) -> None:
        """Initialize order not found error.

        Args:
            reference: Order ID or order number that was looked up.
        """
        super().__init__("Order not found", details={"reference": reference})


class InsufficientStockError(OrderError):
    """Raised when fewer cards are available than requested.

    The reservation is aborted as a whole; nothing was mutated.
    """

    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        """Initialize insufficient stock error.

        Args:
            product_id: Product that was reserved against.
            requested: Number of cards requested.
            available: Number of cards that could be locked.
        """
        super().__init__(
            f"Insufficient stock, only {available} left",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            },
        )
        self.available = available


class RefundInProgressError(OrderError):
    """Raised when another refund attempt already holds the order."""

    error_code = "REFUND_IN_PROGRESS"

    def __init__(self, order_id: str, claimed_by: str | None = None) -> None:
        """Initialize refund in progress error.

        Args:
            order_id: Order being refunded.
            claimed_by: Actor holding the refund claim, if known.
        """
        super().__init__(
            "A refund for this order is already in progress",
            details={"order_id": order_id, "claimed_by": claimed_by},
        )


# ============================================================================
# Webhook Errors
# ============================================================================


class WebhookRejectedError(DomainError):
    """Base class for inbound notifications rejected before any mutation.

    The detail is for server-side logs only; the sender sees a generic
    ``fail`` token.
    """

    error_code = "WEBHOOK_REJECTED"


class SignatureMismatchError(WebhookRejectedError):
    """Raised when a notification's signature does not verify."""

    error_code = "SIGNATURE_MISMATCH"


class UntrustedSenderError(WebhookRejectedError):
    """Raised when a notification names a different merchant or channel."""

    error_code = "UNTRUSTED_SENDER"


# ============================================================================
# Gateway Errors
# ============================================================================


class GatewayError(DomainError):
    """Base class for payment gateway errors."""

    error_code = "GATEWAY_ERROR"


class GatewayConfigurationError(GatewayError):
    """Raised when merchant credentials are not configured."""

    error_code = "GATEWAY_NOT_CONFIGURED"


class GatewayUnavailableError(GatewayError):
    """Raised on network failure, timeout, non-2xx or non-JSON response.

    No local state was changed. When ``outcome_unknown`` is set the
    request reached the gateway and may have been executed there, so a
    non-idempotent call must not simply be repeated.
    """

    error_code = "GATEWAY_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        outcome_unknown: bool = False,
    ) -> None:
        """Initialize gateway unavailable error.

        Args:
            message: Human-readable error message.
            details: Optional dictionary with additional error context.
            outcome_unknown: Whether the gateway may have acted on the request.
        """
        super().__init__(message, details={**(details or {}), "outcome_unknown": outcome_unknown})
        self.outcome_unknown = outcome_unknown


class GatewayRejectedError(GatewayError):
    """Raised when the gateway answers with an explicit error code.

    Terminal for this attempt.
    """

    error_code = "GATEWAY_REJECTED"

    def __init__(self, message: str, code: Any = None) -> None:
        """Initialize gateway rejected error.

        Args:
            message: Message returned by the gateway.
            code: The gateway's result code.
        """
        super().__init__(message, details={"gateway_code": code})
        self.code = code
