"""iapsync: in-app purchase reconciliation.

Turns payment-queue transaction events into verified entitlements, with
exactly-once acknowledgment and App Store receipt verification.
"""

__version__ = "0.1.0"

from iapsync.catalog import CatalogError, CatalogNetworkError, FetchSupersededError, ProductCatalog
from iapsync.config import ReconcilerConfig
from iapsync.constants import PURCHASE_NOTIFICATION, RESTORE_KEY, ReceiptStatus, VerifyEndpoint
from iapsync.coordinator import PurchaseCoordinator
from iapsync.ledger import (
    DuplicateIntentError,
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
    ProductsResponse,
    PurchaseOutcome,
    ReceiptBlob,
    RestoreOutcome,
    TransactionErrorInfo,
    TransactionEvent,
    TransactionState,
    VerificationResult,
)
from iapsync.payment_queue import PaymentQueue, ProductsProvider, TransactionObserver
from iapsync.receipt_store import NoReceiptPresentError, ReceiptError, ReceiptStore
from iapsync.verification_client import (
    MalformedResponseError,
    VerificationClient,
    VerifyError,
    VerifyHTTPStatusError,
    VerifyTimeoutError,
    VerifyTransportError,
)
from iapsync.queues import InMemoryPaymentQueue, StaticProductsProvider

__all__ = [
    "CatalogError",
    "CatalogNetworkError",
    "FetchSupersededError",
    "ProductCatalog",
    "ReconcilerConfig",
    "PURCHASE_NOTIFICATION",
    "RESTORE_KEY",
    "ReceiptStatus",
    "VerifyEndpoint",
    "PurchaseCoordinator",
    "DuplicateIntentError",
    "PurchaseCancelledError",
    "PurchaseError",
    "PurchaseFailedError",
    "PurchaseIntent",
    "TransactionLedger",
    "VerificationFailedError",
    "EntitlementGranted",
    "ProductDescriptor",
    "ProductsResponse",
    "PurchaseOutcome",
    "ReceiptBlob",
    "RestoreOutcome",
    "TransactionErrorInfo",
    "TransactionEvent",
    "TransactionState",
    "VerificationResult",
    "PaymentQueue",
    "ProductsProvider",
    "TransactionObserver",
    "NoReceiptPresentError",
    "ReceiptError",
    "ReceiptStore",
    "MalformedResponseError",
    "VerificationClient",
    "VerifyError",
    "VerifyHTTPStatusError",
    "VerifyTimeoutError",
    "VerifyTransportError",
    "InMemoryPaymentQueue",
    "StaticProductsProvider",
]
