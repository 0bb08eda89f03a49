"""Inventory endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from cardvault.api.dependencies import get_checkout_service
from cardvault.api.schemas import StockResponse
from cardvault.application.checkout_service import CheckoutService

router = APIRouter(prefix="/inventory", tags=["Inventory"])


@router.get(
    "/{product_id}",
    response_model=StockResponse,
    summary="Available stock",
    description="Number of cards on sale, after reclaiming expired reservations.",
)
async def get_stock(
    product_id: str,
    service: Annotated[CheckoutService, Depends(get_checkout_service)],
) -> StockResponse:
    available = await service.available_stock(product_id)
    return StockResponse(product_id=product_id, available=available)
