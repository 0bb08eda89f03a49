"""API layer module.

Contains FastAPI routers, dependencies and request/response schemas.
"""

from cardvault.api.admin import router as admin_router
from cardvault.api.health import router as health_router
from cardvault.api.inventory import router as inventory_router
from cardvault.api.orders import router as orders_router
from cardvault.api.payment import router as payment_router

__all__ = [
    "admin_router",
    "health_router",
    "inventory_router",
    "orders_router",
    "payment_router",
]
