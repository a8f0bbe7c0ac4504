"""Abstract platform interfaces: payment queue, product lookup, observer.

Defines the Protocols PurchaseCoordinator and ProductCatalog depend on.
A concrete in-memory implementation lives in ``iapsync.queues``; a native
StoreKit bridge implements the same methods.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from iapsync.models import (
    ProductDescriptor,
    ProductsResponse,
    TransactionErrorInfo,
    TransactionEvent,
)


@runtime_checkable
class TransactionObserver(Protocol):
    """Receives callbacks from the payment queue.

    All methods are called on the event loop thread and must not block.
    """

    def on_products_resolved(self, products: Sequence[ProductDescriptor]) -> None: ...

    def on_transaction_events(self, events: Sequence[TransactionEvent]) -> None: ...

    def on_restore_finished(self, error: TransactionErrorInfo | None = None) -> None: ...


@runtime_checkable
class PaymentQueue(Protocol):
    """The platform's payment queue.

    ``finish_transaction`` must be called exactly once per terminal event;
    the platform redelivers any transaction left unfinished.
    """

    def add_observer(self, observer: TransactionObserver) -> None: ...

    def can_make_payments(self) -> bool: ...

    def add_payment(self, product_identifier: str) -> None: ...

    def restore_completed_transactions(self) -> None: ...

    def finish_transaction(self, event: TransactionEvent) -> None: ...


@runtime_checkable
class ProductsProvider(Protocol):
    """Async platform product lookup."""

    async def request_products(self, identifiers: frozenset[str]) -> ProductsResponse: ...
