"""Tests for ProductCatalog: caching, empty results, supersession."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from iapsync.catalog import (
    CatalogError,
    CatalogNetworkError,
    FetchSupersededError,
    ProductCatalog,
)
from iapsync.models import ProductDescriptor, ProductsResponse
from iapsync.queues import StaticProductsProvider

PRO = ProductDescriptor("com.example.pro", "Pro", Decimal("4.99"), "en_US@currency=USD")
GEMS = ProductDescriptor("com.example.gems", "Gems", Decimal("0.99"), "en_US@currency=USD")


class _GatedProvider:
    """Provider whose lookups complete only when the test releases them."""

    def __init__(self) -> None:
        self.gates: list[asyncio.Event] = []
        self.responses: list[ProductsResponse] = []
        self.ignore_cancel = False

    def add(self, response: ProductsResponse) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates.append(gate)
        self.responses.append(response)
        return gate

    async def request_products(self, identifiers: frozenset[str]) -> ProductsResponse:
        gate = self.gates.pop(0)
        response = self.responses.pop(0)
        if self.ignore_cancel:
            # Simulate a platform request that cannot be aborted
            while True:
                try:
                    await gate.wait()
                    break
                except asyncio.CancelledError:
                    continue
        else:
            await gate.wait()
        return response


# ---------------------------------------------------------------------------
# Basic lookup
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_returns_and_caches(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO, GEMS]))
        products = await catalog.fetch({"com.example.pro"})
        assert products == [PRO]
        assert catalog.products == (PRO,)
        assert catalog.get("com.example.pro") is PRO
        assert catalog.get("com.example.gems") is None

    @pytest.mark.asyncio
    async def test_new_result_replaces_cache(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO, GEMS]))
        await catalog.fetch({"com.example.pro"})
        await catalog.fetch({"com.example.gems"})
        # Replaced, not merged
        assert catalog.products == (GEMS,)

    @pytest.mark.asyncio
    async def test_empty_identifiers_rejected(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO]))
        with pytest.raises(ValueError):
            await catalog.fetch(set())

    @pytest.mark.asyncio
    async def test_no_valid_products_is_empty_not_error(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO]))
        await catalog.fetch({"com.example.pro"})
        products = await catalog.fetch({"com.example.missing"})
        assert products == []
        assert catalog.products == ()
        assert catalog.invalid_identifiers == frozenset({"com.example.missing"})

    @pytest.mark.asyncio
    async def test_partial_match_records_invalid(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO]))
        products = await catalog.fetch(["com.example.pro", "com.example.missing"])
        assert products == [PRO]
        assert catalog.invalid_identifiers == frozenset({"com.example.missing"})

    @pytest.mark.asyncio
    async def test_listeners_notified(self) -> None:
        listener = MagicMock()
        catalog = ProductCatalog(StaticProductsProvider([PRO]), on_resolved=listener)
        await catalog.fetch({"com.example.pro"})
        listener.assert_called_once_with([PRO])

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_break_fetch(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO]))
        catalog.add_listener(MagicMock(side_effect=RuntimeError("ui bug")))
        assert await catalog.fetch({"com.example.pro"}) == [PRO]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFetchErrors:
    @pytest.mark.asyncio
    async def test_provider_error_becomes_network_error(self) -> None:
        provider = AsyncMock()
        provider.request_products = AsyncMock(side_effect=OSError("offline"))
        catalog = ProductCatalog(provider)
        with pytest.raises(CatalogNetworkError) as exc_info:
            await catalog.fetch({"com.example.pro"})
        assert isinstance(exc_info.value, CatalogError)
        assert "offline" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_cache(self) -> None:
        provider = AsyncMock()
        provider.request_products = AsyncMock(
            side_effect=[ProductsResponse(products=(PRO,)), OSError("offline")]
        )
        catalog = ProductCatalog(provider)
        await catalog.fetch({"com.example.pro"})
        with pytest.raises(CatalogNetworkError):
            await catalog.fetch({"com.example.pro"})
        assert catalog.products == (PRO,)


# ---------------------------------------------------------------------------
# Supersession
# ---------------------------------------------------------------------------


class TestSupersession:
    @pytest.mark.asyncio
    async def test_back_to_back_only_second_delivered(self) -> None:
        provider = _GatedProvider()
        provider.add(ProductsResponse(products=(PRO,)))
        second_gate = provider.add(ProductsResponse(products=(GEMS,)))
        listener = MagicMock()
        catalog = ProductCatalog(provider, on_resolved=listener)

        first = asyncio.create_task(catalog.fetch({"com.example.pro"}))
        await asyncio.sleep(0)
        second = asyncio.create_task(catalog.fetch({"com.example.gems"}))
        await asyncio.sleep(0)
        second_gate.set()

        assert await second == [GEMS]
        with pytest.raises(FetchSupersededError):
            await first
        assert catalog.products == (GEMS,)
        listener.assert_called_once_with([GEMS])

    @pytest.mark.asyncio
    async def test_late_result_of_superseded_lookup_is_dropped(self) -> None:
        provider = _GatedProvider()
        provider.ignore_cancel = True
        first_gate = provider.add(ProductsResponse(products=(PRO,)))
        second_gate = provider.add(ProductsResponse(products=(GEMS,)))
        listener = MagicMock()
        catalog = ProductCatalog(provider, on_resolved=listener)

        first = asyncio.create_task(catalog.fetch({"com.example.pro"}))
        await asyncio.sleep(0)
        second = asyncio.create_task(catalog.fetch({"com.example.gems"}))
        await asyncio.sleep(0)

        second_gate.set()
        assert await second == [GEMS]

        # The old platform request finishes after the new one
        first_gate.set()
        with pytest.raises(FetchSupersededError):
            await first
        assert catalog.products == (GEMS,)
        listener.assert_called_once_with([GEMS])

    @pytest.mark.asyncio
    async def test_supersession_before_lookup_starts(self) -> None:
        catalog = ProductCatalog(StaticProductsProvider([PRO, GEMS], delay=0.01))
        first = asyncio.create_task(catalog.fetch({"com.example.pro"}))
        second = asyncio.create_task(catalog.fetch({"com.example.gems"}))
        with pytest.raises(FetchSupersededError):
            await first
        assert await second == [GEMS]

    @pytest.mark.asyncio
    async def test_caller_cancellation_propagates(self) -> None:
        provider = _GatedProvider()
        provider.add(ProductsResponse(products=(PRO,)))
        catalog = ProductCatalog(provider)
        task = asyncio.create_task(catalog.fetch({"com.example.pro"}))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
