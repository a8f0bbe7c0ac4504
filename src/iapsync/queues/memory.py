"""In-memory payment queue and product lookup.

Implements the ``PaymentQueue`` and ``ProductsProvider`` protocols without
a platform behind them. The host (a test, a sandbox harness, a desktop
build without StoreKit) plays the platform's part by delivering events:

    queue = InMemoryPaymentQueue()
    coordinator = PurchaseCoordinator(queue, ...)
    queue.deliver([queue.make_event("com.example.pro", TransactionState.PURCHASED)])

Every ``finish_transaction`` call is recorded, so callers can assert that
each transaction was finished exactly once.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import Counter
from collections.abc import Hashable, Iterable, Sequence

from iapsync.models import (
    ProductDescriptor,
    ProductsResponse,
    TransactionErrorInfo,
    TransactionEvent,
    TransactionState,
)
from iapsync.payment_queue import TransactionObserver

logger = logging.getLogger(__name__)


class InMemoryPaymentQueue:
    """Payment queue that records requests and lets the host deliver events.

    Implements the iapsync ``PaymentQueue`` protocol:

    - ``add_observer(observer)``
    - ``can_make_payments() -> bool``
    - ``add_payment(product_identifier)``
    - ``restore_completed_transactions()``
    - ``finish_transaction(event)``

    Unfinished transactions are kept so ``redeliver_unfinished()`` can
    replay them the way the platform does on the next launch.
    """

    def __init__(self, payments_allowed: bool = True) -> None:
        self.payments_allowed = payments_allowed
        self.payments: list[str] = []
        self.restore_requests: int = 0
        self.finished: list[TransactionEvent] = []
        self._observers: list[TransactionObserver] = []
        self._finish_counts: Counter[Hashable] = Counter()
        self._unfinished: dict[Hashable, TransactionEvent] = {}
        self._refs = itertools.count(1)

    # -- PaymentQueue --------------------------------------------------------

    def add_observer(self, observer: TransactionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def remove_observer(self, observer: TransactionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @property
    def observers(self) -> list[TransactionObserver]:
        return list(self._observers)

    def can_make_payments(self) -> bool:
        return self.payments_allowed

    def add_payment(self, product_identifier: str) -> None:
        self.payments.append(product_identifier)

    def restore_completed_transactions(self) -> None:
        self.restore_requests += 1

    def finish_transaction(self, event: TransactionEvent) -> None:
        self._finish_counts[event.transaction_ref] += 1
        self.finished.append(event)
        self._unfinished.pop(event.transaction_ref, None)

    # -- platform side -------------------------------------------------------

    def make_event(
        self,
        product_identifier: str,
        state: TransactionState,
        error: TransactionErrorInfo | None = None,
        transaction_ref: Hashable | None = None,
    ) -> TransactionEvent:
        """Build an event with a fresh ``txn-N`` reference unless one is given."""
        ref = transaction_ref if transaction_ref is not None else f"txn-{next(self._refs)}"
        return TransactionEvent(
            product_identifier=product_identifier,
            transaction_ref=ref,
            state=state,
            error=error,
        )

    def deliver(self, events: Sequence[TransactionEvent]) -> None:
        """Hand a batch of events to every observer."""
        batch = list(events)
        for event in batch:
            if event.state.is_terminal and self._finish_counts[event.transaction_ref] == 0:
                self._unfinished[event.transaction_ref] = event
        for observer in list(self._observers):
            observer.on_transaction_events(batch)

    def redeliver_unfinished(self) -> list[TransactionEvent]:
        """Replay terminal events that were never finished."""
        pending = list(self._unfinished.values())
        if pending:
            logger.info("Redelivering %d unfinished transaction(s).", len(pending))
            self.deliver(pending)
        return pending

    def complete_restore(self, error: TransactionErrorInfo | None = None) -> None:
        """Signal the end of a restore batch (or its failure)."""
        for observer in list(self._observers):
            observer.on_restore_finished(error)

    def finish_count(self, transaction_ref: Hashable) -> int:
        return self._finish_counts[transaction_ref]

    @property
    def unfinished(self) -> list[TransactionEvent]:
        return list(self._unfinished.values())


class StaticProductsProvider:
    """``ProductsProvider`` answering from a fixed product list.

    ``delay`` (seconds) simulates lookup latency so supersession can be
    exercised.
    """

    def __init__(self, products: Iterable[ProductDescriptor], delay: float = 0.0) -> None:
        self._products = {p.identifier: p for p in products}
        self._delay = delay
        self.requests: list[frozenset[str]] = []

    async def request_products(self, identifiers: frozenset[str]) -> ProductsResponse:
        self.requests.append(identifiers)
        if self._delay:
            await asyncio.sleep(self._delay)
        found = tuple(
            self._products[i] for i in sorted(identifiers) if i in self._products
        )
        invalid = frozenset(i for i in identifiers if i not in self._products)
        return ProductsResponse(products=found, invalid_identifiers=invalid)
