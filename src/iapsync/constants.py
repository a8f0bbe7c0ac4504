"""Constants for App Store receipt verification and transaction handling."""

from enum import Enum, IntEnum


class VerifyEndpoint(str, Enum):
    """App Store ``verifyReceipt`` hosts."""

    SANDBOX = "https://sandbox.itunes.apple.com/verifyReceipt"
    PRODUCTION = "https://buy.itunes.apple.com/verifyReceipt"

    @property
    def url(self) -> str:
        return self.value


class ReceiptStatus(IntEnum):
    """Documented ``status`` values returned by ``verifyReceipt``."""

    VALID = 0
    BAD_JSON = 21000
    MALFORMED_RECEIPT_DATA = 21002
    NOT_AUTHENTICATED = 21003
    SHARED_SECRET_MISMATCH = 21004
    SERVER_UNAVAILABLE = 21005
    SUBSCRIPTION_EXPIRED = 21006
    SANDBOX_RECEIPT_ON_PRODUCTION = 21007
    PRODUCTION_RECEIPT_ON_SANDBOX = 21008
    INTERNAL_DATA_ACCESS_ERROR = 21009
    ACCOUNT_NOT_FOUND = 21010


# 21100-21199 are internal data access errors; Apple says retry.
INTERNAL_ERROR_STATUS_RANGE = range(21100, 21200)

RETRYABLE_STATUSES = frozenset({
    ReceiptStatus.SERVER_UNAVAILABLE,
    ReceiptStatus.INTERNAL_DATA_ACCESS_ERROR,
})

# SKErrorPaymentCancelled
PAYMENT_CANCELLED_CODE = 2

# Correlation key for a restore batch (never a valid product identifier).
RESTORE_KEY = "__restore__"

PURCHASE_NOTIFICATION = "IAPManagerPurchaseNotification"

DEFAULT_FINISHED_HISTORY = 1024


def describe_status(status: int) -> str:
    """Human-readable label for a ``verifyReceipt`` status code."""
    try:
        return ReceiptStatus(status).name.lower()
    except ValueError:
        if status in INTERNAL_ERROR_STATUS_RANGE:
            return "internal_data_access_error"
        return "unknown"
