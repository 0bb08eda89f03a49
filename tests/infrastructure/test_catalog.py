"""Tests for catalog lookup and its client lifecycle."""

from decimal import Decimal

import pytest

from cardvault.infrastructure import catalog as catalog_module
from cardvault.infrastructure.catalog import (
    CatalogProduct,
    HttpCatalog,
    InMemoryCatalog,
    close_catalog,
)


class TestCatalogProduct:
    """Tests for parsing catalog API payloads."""

    def test_from_api_response(self) -> None:
        product = CatalogProduct.from_api_response(
            {"id": 7, "name": "Gift Card", "price": "9.9", "max_quantity": "3"}
        )

        assert product.id == "7"
        assert product.price == Decimal("9.90")
        assert product.min_quantity == 1
        assert product.max_quantity == 3
        assert product.is_active is True


class TestCloseCatalog:
    """Tests for closing the catalog singleton."""

    @pytest.mark.asyncio
    async def test_closes_http_client(self, monkeypatch: pytest.MonkeyPatch) -> None:
        http_catalog = HttpCatalog("https://shop.example.com/api")
        client = await http_catalog._get_client()
        monkeypatch.setattr(catalog_module, "_catalog", http_catalog)

        await close_catalog()

        assert client.is_closed
        assert http_catalog._client is None

    @pytest.mark.asyncio
    async def test_in_memory_catalog_is_left_alone(self, monkeypatch: pytest.MonkeyPatch) -> None:
        in_memory = InMemoryCatalog()
        monkeypatch.setattr(catalog_module, "_catalog", in_memory)

        await close_catalog()

        assert catalog_module._catalog is in_memory

    @pytest.mark.asyncio
    async def test_nothing_to_close(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(catalog_module, "_catalog", None)

        await close_catalog()

        assert catalog_module._catalog is None
