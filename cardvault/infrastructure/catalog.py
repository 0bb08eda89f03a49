"""Catalog lookup.

The catalog data model lives outside this service. Checkout only needs
the price, purchase limits and active flag of a product, so the
collaborator is consumed through the small ``Catalog`` protocol with an
HTTP-backed and an in-memory implementation.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx
import structlog

from cardvault.domain.value_objects import to_decimal_amount
from cardvault.infrastructure.config import settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class CatalogProduct:
    """Product facts checkout depends on."""

    id: str
    name: str
    price: Decimal
    min_quantity: int = 1
    max_quantity: int = 10
    is_active: bool = True

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "CatalogProduct":
        """Create from catalog API response data."""
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            price=to_decimal_amount(data["price"]),
            min_quantity=int(data.get("min_quantity", 1)),
            max_quantity=int(data.get("max_quantity", 10)),
            is_active=bool(data.get("is_active", True)),
        )


class Catalog(Protocol):
    """Read access to the product catalog."""

    async def get_product(self, product_id: str) -> CatalogProduct | None: ...


class InMemoryCatalog:
    """Catalog held in process memory.

    Used for local development and tests.
    """

    def __init__(self, products: list[CatalogProduct] | None = None) -> None:
        self._products: dict[str, CatalogProduct] = {p.id: p for p in products or []}

    def add(self, product: CatalogProduct) -> None:
        self._products[product.id] = product

    async def get_product(self, product_id: str) -> CatalogProduct | None:
        return self._products.get(product_id)


class HttpCatalog:
    """Catalog served by the storefront's product API."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_product(self, product_id: str) -> CatalogProduct | None:
        """Get product by ID.

        Args:
            product_id: Product identifier.

        Returns:
            Product if found, None otherwise.

        Raises:
            httpx.HTTPError: On transport failure or unexpected status.
        """
        client = await self._get_client()
        response = await client.get(f"/products/{product_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return CatalogProduct.from_api_response(response.json())


# Global catalog instance
_catalog: Catalog | None = None


def get_catalog() -> Catalog:
    """Get the catalog singleton.

    Uses the storefront's product API when ``catalog_url`` is set and an
    empty in-memory catalog otherwise.
    """
    global _catalog
    if _catalog is None:
        if settings.catalog_url:
            _catalog = HttpCatalog(settings.catalog_url)
        else:
            logger.warning("No catalog_url configured, using in-memory catalog")
            _catalog = InMemoryCatalog()
    return _catalog


async def close_catalog() -> None:
    """Close the catalog singleton's HTTP client, if it has one."""
    if isinstance(_catalog, HttpCatalog):
        await _catalog.close()
