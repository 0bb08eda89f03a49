"""Admin endpoints.

Provides:
- POST /admin/orders/{order_id}/complete - mark a pending order paid by hand
- POST /admin/orders/{order_id}/refund/approve - refund through the gateway
- POST /admin/orders/{order_id}/refund/reject - reject a refund request
- POST /admin/orders/{order_id}/refund/handoff - parameters for a manual refund
- POST /admin/orders/{order_id}/refund/attest - record a manual refund outcome
- POST /admin/maintenance/sweep - expire abandoned orders now

Errors on these endpoints carry ``details`` naming the failed precondition.
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from cardvault.api.dependencies import (
    PrincipalDep,
    get_checkout_service,
    get_refund_workflow,
    get_sweeper,
)
from cardvault.api.schemas import (
    AdminCompleteRequest,
    AdminOrderSchema,
    ErrorResponse,
    RefundAttestRequest,
    RefundHandoffResponse,
    RefundRejectRequest,
    SweepResponse,
)
from cardvault.application.checkout_service import CheckoutService
from cardvault.application.expiry_sweeper import ExpirySweeper
from cardvault.application.refund_service import RefundWorkflow
from cardvault.domain.principal import Capability
from cardvault.infrastructure.models import OrderModel

router = APIRouter(prefix="/admin", tags=["Admin"])

RefundWorkflowDep = Annotated[RefundWorkflow, Depends(get_refund_workflow)]

ADMIN_ERRORS = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}
GATEWAY_ERRORS = {
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def order_to_admin_schema(order: OrderModel) -> AdminOrderSchema:
    """Convert an order to the admin schema (no card contents)."""
    return AdminOrderSchema(
        id=order.id,
        order_no=order.order_no,
        product_id=order.product_id,
        product_name=order.product_name,
        unit_price=order.unit_price,
        quantity=order.quantity,
        total_amount=order.total_amount,
        status=order.status,
        payment_method=order.payment_method,
        trade_no=order.trade_no,
        expired_at=order.expired_at,
        paid_at=order.paid_at,
        refund_reason=order.refund_reason,
        refund_requested_at=order.refund_requested_at,
        refunded_at=order.refunded_at,
        created_at=order.created_at,
        user_id=order.user_id,
        username=order.username,
        admin_remark=order.admin_remark,
        updated_at=order.updated_at,
    )


# ============================================================================
# Orders
# ============================================================================


@router.post(
    "/orders/{order_id}/complete",
    response_model=AdminOrderSchema,
    responses=ADMIN_ERRORS,
    summary="Complete order manually",
)
async def complete_order(
    order_id: str,
    principal: PrincipalDep,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
    request: AdminCompleteRequest | None = None,
) -> AdminOrderSchema:
    """Complete a pending order without a gateway notification.

    Sells the reserved cards and counts the sale, as a paid notification
    would.
    """
    remark = request.remark if request else None
    order = await service.admin_complete(principal, order_id, remark)
    return order_to_admin_schema(order)


@router.post(
    "/orders/{order_id}/refund/approve",
    response_model=AdminOrderSchema,
    responses={**ADMIN_ERRORS, **GATEWAY_ERRORS},
    summary="Approve refund",
)
async def approve_refund(
    order_id: str,
    principal: PrincipalDep,
    workflow: RefundWorkflowDep,
) -> AdminOrderSchema:
    """Refund through the gateway and return the cards to the pool.

    If the gateway refuses or cannot be reached the order stays
    ``refund_pending`` and the gateway error is returned.
    """
    order = await workflow.approve(principal, order_id)
    return order_to_admin_schema(order)


@router.post(
    "/orders/{order_id}/refund/reject",
    response_model=AdminOrderSchema,
    responses=ADMIN_ERRORS,
    summary="Reject refund",
)
async def reject_refund(
    order_id: str,
    principal: PrincipalDep,
    workflow: RefundWorkflowDep,
    request: RefundRejectRequest | None = None,
) -> AdminOrderSchema:
    reason = request.reason if request else None
    order = await workflow.reject(principal, order_id, reason)
    return order_to_admin_schema(order)


@router.post(
    "/orders/{order_id}/refund/handoff",
    response_model=RefundHandoffResponse,
    responses={**ADMIN_ERRORS, **GATEWAY_ERRORS},
    summary="Manual refund handoff",
)
async def refund_handoff(
    order_id: str,
    principal: PrincipalDep,
    workflow: RefundWorkflowDep,
) -> RefundHandoffResponse:
    handoff = await workflow.issue_manual_handoff(principal, order_id)
    return RefundHandoffResponse(
        order_id=handoff.order_id,
        api_url=handoff.api_url,
        fields=handoff.fields,
        token=handoff.token,
        expires_at=handoff.expires_at,
    )


@router.post(
    "/orders/{order_id}/refund/attest",
    response_model=AdminOrderSchema,
    responses=ADMIN_ERRORS,
    summary="Attest manual refund",
)
async def attest_refund(
    order_id: str,
    request: RefundAttestRequest,
    principal: PrincipalDep,
    workflow: RefundWorkflowDep,
) -> AdminOrderSchema:
    order = await workflow.attest_manual_refund(
        principal,
        order_id,
        token=request.token,
        succeeded=request.succeeded,
        note=request.note,
    )
    return order_to_admin_schema(order)


# ============================================================================
# Maintenance
# ============================================================================


@router.post(
    "/maintenance/sweep",
    response_model=SweepResponse,
    responses={403: {"model": ErrorResponse}},
    summary="Run expiry sweep",
    description="Expire abandoned pending orders now. Intended for an external timer.",
)
async def run_sweep(
    principal: PrincipalDep,
    sweeper: Annotated[ExpirySweeper, Depends(get_sweeper)],
) -> SweepResponse:
    principal.require(Capability.RUN_MAINTENANCE)
    expired = await sweeper.sweep()
    return SweepResponse(expired_orders=expired)
