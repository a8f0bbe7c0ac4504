"""Data model for products, transactions, receipts and verification.

Pure data, no I/O. Values that cross a boundary (product lookups,
verification responses) get ``to_dict()`` / ``from_dict()`` helpers.
"""

from __future__ import annotations

import base64
from collections.abc import Hashable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from iapsync.constants import (
    INTERNAL_ERROR_STATUS_RANGE,
    PAYMENT_CANCELLED_CODE,
    PURCHASE_NOTIFICATION,
    RETRYABLE_STATUSES,
    ReceiptStatus,
)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductDescriptor:
    """A priced product returned by the platform lookup."""

    identifier: str
    display_title: str
    price: Decimal
    currency_locale: str  # opaque, e.g. "en_US@currency=USD"
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "display_title": self.display_title,
            "price": str(self.price),
            "currency_locale": self.currency_locale,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProductDescriptor:
        return cls(
            identifier=str(data["identifier"]),
            display_title=str(data.get("display_title", "")),
            # str() first so floats don't leak binary noise into the Decimal
            price=Decimal(str(data.get("price", "0"))),
            currency_locale=str(data.get("currency_locale", "")),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True)
class ProductsResponse:
    """Raw answer of a platform product lookup."""

    products: tuple[ProductDescriptor, ...] = ()
    invalid_identifiers: frozenset[str] = frozenset()


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TransactionState(Enum):
    PURCHASING = "purchasing"
    DEFERRED = "deferred"
    PURCHASED = "purchased"
    FAILED = "failed"
    RESTORED = "restored"

    @property
    def is_terminal(self) -> bool:
        return self in (
            TransactionState.PURCHASED,
            TransactionState.FAILED,
            TransactionState.RESTORED,
        )


@dataclass(frozen=True)
class TransactionErrorInfo:
    """Error attached to a failed transaction by the platform."""

    code: int
    message: str = ""

    @property
    def is_cancellation(self) -> bool:
        return self.code == PAYMENT_CANCELLED_CODE


@dataclass(frozen=True)
class TransactionEvent:
    """A transaction state change delivered by the payment queue.

    ``transaction_ref`` is the platform's opaque handle; it is only ever
    compared and handed back to ``PaymentQueue.finish_transaction``.
    """

    product_identifier: str
    transaction_ref: Hashable
    state: TransactionState
    error: TransactionErrorInfo | None = None


# ---------------------------------------------------------------------------
# Receipts and verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceiptBlob:
    """Opaque on-device receipt bytes."""

    data: bytes = field(repr=False)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a single ``verifyReceipt`` call.

    ``verified`` is True only for status 0. The helper properties exist so
    a caller's retry policy can decide on an endpoint switch; the client
    itself never retries.
    """

    verified: bool
    raw_status: int
    environment: str | None = None

    @property
    def is_sandbox_receipt(self) -> bool:
        """Sandbox receipt was sent to the production endpoint."""
        return self.raw_status == ReceiptStatus.SANDBOX_RECEIPT_ON_PRODUCTION

    @property
    def is_production_receipt(self) -> bool:
        """Production receipt was sent to the sandbox endpoint."""
        return self.raw_status == ReceiptStatus.PRODUCTION_RECEIPT_ON_SANDBOX

    @property
    def is_retryable(self) -> bool:
        return (
            self.raw_status in RETRYABLE_STATUSES
            or self.raw_status in INTERNAL_ERROR_STATUS_RANGE
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "verified": self.verified,
            "status": self.raw_status,
            "environment": self.environment,
        }


# ---------------------------------------------------------------------------
# Outcomes and notifications
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PurchaseOutcome:
    """Successful, verified completion of a purchased or restored product."""

    product_identifier: str
    restored: bool = False
    raw_status: int = 0


@dataclass(frozen=True)
class RestoreOutcome:
    """Successful completion of a restore batch."""

    restored_identifiers: tuple[str, ...] = ()


@dataclass(frozen=True)
class EntitlementGranted:
    """Notification fired once a purchase has been verified."""

    product_identifier: str
    restored: bool = False

    name = PURCHASE_NOTIFICATION
