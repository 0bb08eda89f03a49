"""Buyer order endpoints.

Provides:
- POST /orders - checkout: create order, reserve cards, build payment form
- GET /orders/my - list the caller's orders
- GET /orders/{order_no} - order details, with cards once fulfilled
- POST /orders/{order_no}/payment - rebuild the payment form
- POST /orders/{order_no}/refund - request a refund
"""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from cardvault.api.dependencies import PrincipalDep, get_checkout_service, get_refund_workflow
from cardvault.api.schemas import (
    CardSchema,
    CheckoutResponse,
    ErrorResponse,
    OrderCreateRequest,
    OrderSchema,
    OrdersListResponse,
    PaymentFormSchema,
    RefundRequest,
)
from cardvault.application.checkout_service import CheckoutResult, CheckoutService, OrderView
from cardvault.application.refund_service import RefundWorkflow
from cardvault.infrastructure.models import OrderModel

router = APIRouter(prefix="/orders", tags=["Orders"])

CheckoutServiceDep = Annotated[CheckoutService, Depends(get_checkout_service)]
RefundWorkflowDep = Annotated[RefundWorkflow, Depends(get_refund_workflow)]


# ============================================================================
# Converters
# ============================================================================


def order_to_schema(order: OrderModel, view: OrderView | None = None) -> OrderSchema:
    """Convert an order to the buyer-facing schema."""
    cards = [CardSchema(id=c.id, content=c.content) for c in view.cards] if view else []
    return OrderSchema(
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
        cards=cards,
    )


def checkout_to_response(result: CheckoutResult) -> CheckoutResponse:
    payment = None
    if result.payment:
        payment = PaymentFormSchema(
            action_url=result.payment.action_url,
            fields=result.payment.fields,
        )
    return CheckoutResponse(
        order=order_to_schema(result.order),
        payment=payment,
        partial_success=result.partial_success,
        next_step=result.next_step,
        error_code=result.error_code,
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Checkout",
    description="Create a pending order with reserved cards and return the gateway payment form.",
)
async def create_order(
    request: OrderCreateRequest,
    principal: PrincipalDep,
    service: CheckoutServiceDep,
) -> CheckoutResponse:
    """Create an order.

    A 201 without ``payment`` is a partial success: the order is placed
    and its cards are held, and payment can be resumed at ``next_step``.
    """
    result = await service.create_order(
        principal,
        product_id=request.product_id,
        quantity=request.quantity,
        payment_method=request.payment_method,
    )
    return checkout_to_response(result)


@router.get(
    "/my",
    response_model=OrdersListResponse,
    summary="List my orders",
)
async def list_my_orders(
    principal: PrincipalDep,
    service: CheckoutServiceDep,
) -> OrdersListResponse:
    views = await service.list_orders(principal)
    items = [order_to_schema(view.order, view) for view in views]
    return OrdersListResponse(items=items, total=len(items))


@router.get(
    "/{order_no}",
    response_model=OrderSchema,
    responses={404: {"model": ErrorResponse}},
    summary="Get order details",
)
async def get_order(
    order_no: str,
    principal: PrincipalDep,
    service: CheckoutServiceDep,
) -> OrderSchema:
    view = await service.get_order(principal, order_no)
    return order_to_schema(view.order, view)


@router.post(
    "/{order_no}/payment",
    response_model=CheckoutResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
    summary="Resume payment",
    description="Rebuild the payment form for a pending order.",
)
async def resume_payment(
    order_no: str,
    principal: PrincipalDep,
    service: CheckoutServiceDep,
) -> CheckoutResponse:
    result = await service.resume_payment(principal, order_no)
    return checkout_to_response(result)


@router.post(
    "/{order_no}/refund",
    response_model=OrderSchema,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
    summary="Request refund",
)
async def request_refund(
    order_no: str,
    request: RefundRequest,
    principal: PrincipalDep,
    workflow: RefundWorkflowDep,
) -> OrderSchema:
    """Ask for a refund of a completed order.

    The order moves to ``refund_pending`` until an admin decides.
    """
    order = await workflow.request(principal, order_no, request.reason)
    return order_to_schema(order)
