"""Product lookup with last-result caching and request supersession."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence

from iapsync.models import ProductDescriptor, ProductsResponse
from iapsync.payment_queue import ProductsProvider

logger = logging.getLogger(__name__)

ProductsListener = Callable[[Sequence[ProductDescriptor]], None]


class CatalogError(Exception):
    """Base exception for product lookups."""


class CatalogNetworkError(CatalogError):
    """The platform lookup failed (transport or parse failure)."""


class FetchSupersededError(CatalogError):
    """A newer ``fetch()`` replaced this one before it completed."""


class ProductCatalog:
    """Resolves product identifiers through a ``ProductsProvider``.

    Only one lookup is outstanding at a time. Starting a new ``fetch()``
    cancels the previous lookup; if the previous lookup completes anyway,
    its result is dropped and its caller gets ``FetchSupersededError``.

    A lookup that matches nothing is not an error: the cache becomes empty
    and ``invalid_identifiers`` records what the platform rejected.
    """

    def __init__(
        self,
        provider: ProductsProvider,
        on_resolved: ProductsListener | None = None,
    ) -> None:
        self._provider = provider
        self._products: tuple[ProductDescriptor, ...] = ()
        self._invalid_identifiers: frozenset[str] = frozenset()
        self._generation = 0
        self._task: asyncio.Future[ProductsResponse] | None = None
        self._listeners: list[ProductsListener] = []
        if on_resolved is not None:
            self._listeners.append(on_resolved)

    def add_listener(self, listener: ProductsListener) -> None:
        self._listeners.append(listener)

    @property
    def products(self) -> tuple[ProductDescriptor, ...]:
        """Products from the last successful lookup."""
        return self._products

    @property
    def invalid_identifiers(self) -> frozenset[str]:
        return self._invalid_identifiers

    def get(self, identifier: str) -> ProductDescriptor | None:
        for product in self._products:
            if product.identifier == identifier:
                return product
        return None

    async def fetch(self, identifiers: Iterable[str]) -> list[ProductDescriptor]:
        """Look up ``identifiers``, superseding any lookup still in flight."""
        requested = frozenset(identifiers)
        if not requested:
            raise ValueError("identifiers must be non-empty")

        self._generation += 1
        generation = self._generation
        previous = self._task
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self._provider.request_products(requested))
        self._task = task
        try:
            response = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise FetchSupersededError(
                    f"Lookup for {sorted(requested)} superseded by a newer fetch"
                ) from None
            raise
        except Exception as exc:
            if generation != self._generation:
                raise FetchSupersededError(
                    f"Lookup for {sorted(requested)} superseded by a newer fetch"
                ) from exc
            logger.warning("Failed to load list of products: %s", exc)
            raise CatalogNetworkError(str(exc)) from exc
        finally:
            if self._task is task:
                self._task = None

        if generation != self._generation:
            logger.debug("Dropping stale product lookup (generation %d).", generation)
            raise FetchSupersededError(
                f"Lookup for {sorted(requested)} superseded by a newer fetch"
            )

        return self._apply(response)

    def _apply(self, response: ProductsResponse) -> list[ProductDescriptor]:
        """Replace the cached set and notify listeners."""
        self._products = tuple(response.products)
        self._invalid_identifiers = frozenset(response.invalid_identifiers)

        if not self._products:
            logger.info(
                "No valid products; invalid identifiers: %s",
                sorted(self._invalid_identifiers),
            )
        elif self._invalid_identifiers:
            logger.warning(
                "Platform rejected product identifiers: %s",
                sorted(self._invalid_identifiers),
            )

        products = list(self._products)
        for listener in list(self._listeners):
            try:
                listener(products)
            except Exception:
                logger.exception("Products listener raised.")
        return products
