"""PurchaseCoordinator: reconciles payment-queue events with verification.

Event lifecycle per transaction reference:

    Purchasing / Deferred  -> nothing (wait for a terminal event)
    Purchased / Restored   -> refresh receipt -> verify -> finish -> resolve -> notify
    Failed                 -> resolve (cancelled or failed) -> finish

``finish_transaction`` always follows the verification attempt, so a crash
in between leaves the transaction unfinished and the platform redelivers
it. Each reference is finished at most once per process, even when the
queue delivers the same event twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterable, Sequence
from typing import TYPE_CHECKING

from iapsync.catalog import ProductCatalog
from iapsync.constants import DEFAULT_FINISHED_HISTORY, RESTORE_KEY, VerifyEndpoint, describe_status
from iapsync.ledger import (
    Outcome,
    PurchaseCancelledError,
    PurchaseError,
    PurchaseFailedError,
    PurchaseIntent,
    TransactionLedger,
    VerificationFailedError,
)
from iapsync.models import (
    EntitlementGranted,
    ProductDescriptor,
    PurchaseOutcome,
    RestoreOutcome,
    TransactionErrorInfo,
    TransactionEvent,
    TransactionState,
    VerificationResult,
)
from iapsync.receipt_store import ReceiptError, ReceiptStore
from iapsync.verification_client import VerificationClient, VerifyError

if TYPE_CHECKING:
    from iapsync.config import ReconcilerConfig
    from iapsync.payment_queue import PaymentQueue, ProductsProvider

logger = logging.getLogger(__name__)

EntitlementListener = Callable[[EntitlementGranted], None]


def _settle(future: asyncio.Future[object], outcome: Outcome) -> None:
    """Deliver ``outcome`` to a caller's future unless the caller gave up."""
    if future.done():
        return
    if isinstance(outcome, PurchaseError):
        future.set_exception(outcome)
    else:
        future.set_result(outcome)


class PurchaseCoordinator:
    """Drives purchases and restores from request to verified entitlement.

    Registers itself as the payment queue's observer on construction and
    stays registered for its lifetime. Construct one per queue and pass it
    to whoever needs it; there is no shared instance.
    """

    def __init__(
        self,
        queue: PaymentQueue,
        catalog: ProductCatalog,
        receipts: ReceiptStore,
        verifier: VerificationClient,
        ledger: TransactionLedger | None = None,
        endpoint: VerifyEndpoint | None = None,
        finished_history: int = DEFAULT_FINISHED_HISTORY,
    ) -> None:
        self._queue = queue
        self._catalog = catalog
        self._receipts = receipts
        self._verifier = verifier
        self._ledger = ledger if ledger is not None else TransactionLedger()
        self._endpoint = endpoint if endpoint is not None else verifier.endpoint
        self._finished_history = finished_history
        self._finished: OrderedDict[Hashable, None] = OrderedDict()
        self._flows: dict[Hashable, tuple[TransactionEvent, asyncio.Task[None]]] = {}
        self._listeners: list[EntitlementListener] = []
        self._restored_in_batch: list[str] = []
        self._total_finished: int = 0
        self._restore_tasks: set[asyncio.Task[None]] = set()

        self._catalog.add_listener(self.on_products_resolved)
        self._queue.add_observer(self)

    @classmethod
    def from_config(
        cls,
        config: ReconcilerConfig,
        queue: PaymentQueue,
        provider: ProductsProvider,
    ) -> PurchaseCoordinator:
        """Build a coordinator and its default collaborators from ``config``."""
        endpoint = config.endpoint
        return cls(
            queue=queue,
            catalog=ProductCatalog(provider),
            receipts=ReceiptStore(config.receipt_path),
            verifier=VerificationClient(
                endpoint=endpoint,
                shared_secret=config.shared_secret,
                exclude_old_transactions=config.exclude_old_transactions,
            ),
            endpoint=endpoint,
            finished_history=config.finished_history,
        )

    @property
    def ledger(self) -> TransactionLedger:
        return self._ledger

    @property
    def catalog(self) -> ProductCatalog:
        return self._catalog

    def add_listener(self, listener: EntitlementListener) -> None:
        """Subscribe to ``EntitlementGranted`` notifications."""
        self._listeners.append(listener)

    # -- caller-facing API ----------------------------------------------------

    async def fetch_products(self, identifiers: Iterable[str]) -> list[ProductDescriptor]:
        """Resolve product identifiers; a newer call supersedes this one."""
        return await self._catalog.fetch(identifiers)

    async def purchase(self, product: ProductDescriptor | str) -> PurchaseOutcome:
        """Enqueue a payment and wait for its verified outcome.

        Raises PurchaseError subclasses: DuplicateIntentError if the product
        already has a purchase pending, PurchaseCancelledError,
        PurchaseFailedError, or VerificationFailedError.
        """
        product_id = product.identifier if isinstance(product, ProductDescriptor) else product

        if not self._queue.can_make_payments():
            logger.warning("Payments are disabled; refusing purchase of %s.", product_id)
            raise PurchaseFailedError("payments are disabled on this device", product_id)

        future = self._register(product_id)
        try:
            self._queue.add_payment(product_id)
        except Exception as exc:
            logger.warning("Failed to enqueue payment for %s: %s", product_id, exc)
            self._ledger.resolve(product_id, PurchaseFailedError(str(exc), product_id))
        else:
            logger.info("Enqueued payment for %s.", product_id)
        return await future  # type: ignore[return-value]

    async def restore(self) -> RestoreOutcome:
        """Ask the platform to redeliver completed transactions.

        Resolves once the platform reports the batch finished and every
        restored transaction in it has been verified and finished.
        """
        future = self._register(RESTORE_KEY)
        self._restored_in_batch = []
        try:
            self._queue.restore_completed_transactions()
        except Exception as exc:
            logger.warning("Failed to request restore: %s", exc)
            self._ledger.resolve(RESTORE_KEY, PurchaseFailedError(str(exc), RESTORE_KEY))
        return await future  # type: ignore[return-value]

    async def verify_receipt(self, endpoint: VerifyEndpoint | None = None) -> VerificationResult:
        """Verify the held receipt on demand.

        Raises ReceiptError when no receipt exists and VerifyError on
        transport or response failures.
        """
        receipt = self._receipts.current_receipt()
        return await self._verifier.verify(receipt, endpoint or self._endpoint)

    async def join(self) -> None:
        """Wait until every in-flight flow and restore batch has finished."""
        while self._flows or self._restore_tasks:
            await asyncio.gather(
                *(task for _, task in list(self._flows.values())),
                *list(self._restore_tasks),
                return_exceptions=True,
            )

    def _register(self, correlation_key: str) -> asyncio.Future[object]:
        future: asyncio.Future[object] = asyncio.get_running_loop().create_future()
        self._ledger.register(
            PurchaseIntent(
                correlation_key=correlation_key,
                completion=lambda outcome: _settle(future, outcome),
            )
        )
        return future

    # -- TransactionObserver ----------------------------------------------------

    def on_products_resolved(self, products: Sequence[ProductDescriptor]) -> None:
        for product in products:
            logger.info(
                "Found product: %s %s (%s)",
                product.display_title, product.price, product.identifier,
            )

    def on_transaction_events(self, events: Sequence[TransactionEvent]) -> None:
        """Dispatch a batch from the queue without waiting on any network call."""
        for event in events:
            try:
                self._dispatch(event)
            except Exception:
                logger.exception(
                    "Failed to handle transaction %s for %s.",
                    event.transaction_ref, event.product_identifier,
                )

    def _dispatch(self, event: TransactionEvent) -> None:
        ref = event.transaction_ref
        if not event.state.is_terminal:
            logger.debug(
                "Transaction %s for %s is %s; waiting.",
                ref, event.product_identifier, event.state.value,
            )
            return
        if ref in self._flows or ref in self._finished:
            logger.debug("Ignoring duplicate delivery of transaction %s.", ref)
            return

        if event.state is TransactionState.FAILED:
            self._fail_flow(event)
        else:
            task = asyncio.get_running_loop().create_task(self._complete_flow(event))
            self._flows[ref] = (event, task)
            task.add_done_callback(lambda t, ref=ref: self._on_flow_done(ref, t))

    def on_restore_finished(self, error: TransactionErrorInfo | None = None) -> None:
        """Platform finished (or failed) redelivering restored transactions."""
        if error is not None:
            if error.is_cancellation:
                logger.debug("Restore cancelled by user.")
                self._ledger.resolve(
                    RESTORE_KEY, PurchaseCancelledError("Restore cancelled", RESTORE_KEY)
                )
            else:
                logger.warning("Restore failed: %s (code %d)", error.message, error.code)
                self._ledger.resolve(
                    RESTORE_KEY, PurchaseFailedError(error.message or "restore failed", RESTORE_KEY)
                )
            return

        pending = [
            task for event, task in self._flows.values()
            if event.state is TransactionState.RESTORED
        ]
        task = asyncio.get_running_loop().create_task(self._finish_restore(pending))
        self._restore_tasks.add(task)
        task.add_done_callback(self._restore_tasks.discard)

    # -- flows --------------------------------------------------------------

    async def _complete_flow(self, event: TransactionEvent) -> None:
        product_id = event.product_identifier
        restored = event.state is TransactionState.RESTORED
        result: VerificationResult | None = None
        failure = ""

        try:
            receipt = self._receipts.refresh()
        except ReceiptError as exc:
            failure = str(exc)
            logger.warning("No receipt to verify %s: %s", product_id, exc)
        else:
            try:
                result = await self._verifier.verify(receipt, self._endpoint)
            except VerifyError as exc:
                failure = str(exc)
                logger.warning("Receipt verification failed for %s: %s", product_id, exc)
            else:
                if not result.verified:
                    failure = f"status {result.raw_status} ({describe_status(result.raw_status)})"
                    logger.warning(
                        "Receipt for %s not verified: %s", product_id, failure,
                    )

        self._acknowledge(event)

        if result is not None and result.verified:
            self._ledger.resolve(
                product_id,
                PurchaseOutcome(product_id, restored=restored, raw_status=result.raw_status),
            )
            if restored:
                self._restored_in_batch.append(product_id)
            self._emit(EntitlementGranted(product_id, restored=restored))
        else:
            self._ledger.resolve(
                product_id,
                VerificationFailedError(
                    f"Verification failed for {product_id}: {failure}",
                    product_id,
                    raw_status=result.raw_status if result is not None else None,
                ),
            )

    def _fail_flow(self, event: TransactionEvent) -> None:
        product_id = event.product_identifier
        error = event.error
        if error is not None and error.is_cancellation:
            logger.debug("Purchase of %s cancelled by user.", product_id)
            outcome: PurchaseError = PurchaseCancelledError(
                f"Purchase of {product_id} cancelled", product_id
            )
        else:
            reason = error.message if error is not None and error.message else "unknown error"
            logger.warning("Transaction failed with error: %s (%s)", reason, product_id)
            outcome = PurchaseFailedError(reason, product_id)

        self._ledger.resolve(product_id, outcome)
        self._acknowledge(event)

    async def _finish_restore(self, pending: list[asyncio.Task[None]]) -> None:
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        restored = tuple(dict.fromkeys(self._restored_in_batch))
        self._restored_in_batch = []
        logger.info("Restore finished; %d product(s) verified.", len(restored))
        self._ledger.resolve(RESTORE_KEY, RestoreOutcome(restored))

    def _on_flow_done(self, ref: Hashable, task: asyncio.Task[None]) -> None:
        entry = self._flows.pop(ref, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None or entry is None:
            return
        event = entry[0]
        logger.error(
            "Unexpected error completing transaction %s for %s.",
            ref, event.product_identifier, exc_info=exc,
        )
        self._ledger.resolve(
            event.product_identifier,
            PurchaseFailedError(str(exc) or type(exc).__name__, event.product_identifier),
        )

    # -- acknowledgment and notification ---------------------------------------

    def _acknowledge(self, event: TransactionEvent) -> None:
        """Finish ``event`` on the queue, at most once per reference."""
        ref = event.transaction_ref
        if ref in self._finished:
            return
        self._queue.finish_transaction(event)
        self._finished[ref] = None
        self._total_finished += 1
        while len(self._finished) > self._finished_history:
            self._finished.popitem(last=False)

    def _emit(self, notification: EntitlementGranted) -> None:
        logger.info(
            "Entitlement granted for %s%s.",
            notification.product_identifier,
            " (restored)" if notification.restored else "",
        )
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Entitlement listener raised.")

    # -- monitoring -----------------------------------------------------------

    def health(self) -> dict[str, object]:
        """Return coordinator metrics for monitoring."""
        return {
            "endpoint": self._endpoint.name.lower(),
            "in_flight_flows": len(self._flows),
            "finished_history": len(self._finished),
            "total_finished": self._total_finished,
            "cached_products": len(self._catalog.products),
            "ledger": self._ledger.health(),
        }
