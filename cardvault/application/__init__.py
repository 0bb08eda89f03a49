"""Application layer module.

Contains the services that compose the inventory ledger, the order
state machine and the payment gateway into buyer, admin and gateway
use cases.
"""

from cardvault.application.checkout_service import CheckoutResult, CheckoutService
from cardvault.application.expiry_sweeper import ExpirySweeper
from cardvault.application.inventory_ledger import InventoryLedger
from cardvault.application.order_state_machine import OrderStateMachine, TransitionResult
from cardvault.application.refund_service import ManualRefundHandoff, RefundWorkflow
from cardvault.application.webhook_service import NotifyParams, NotifyResult, WebhookVerifier

__all__ = [
    "CheckoutResult",
    "CheckoutService",
    "ExpirySweeper",
    "InventoryLedger",
    "ManualRefundHandoff",
    "NotifyParams",
    "NotifyResult",
    "OrderStateMachine",
    "RefundWorkflow",
    "TransitionResult",
    "WebhookVerifier",
]
