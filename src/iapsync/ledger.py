"""In-flight purchase and restore intents keyed by correlation key.

Pure bookkeeping with no I/O, not persisted. Transactions lost with the
process are redelivered by the platform on the next launch, so nothing
here needs to survive a restart.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

from iapsync.models import PurchaseOutcome, RestoreOutcome

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class PurchaseError(Exception):
    """Base exception for purchase and restore outcomes."""

    def __init__(self, message: str, correlation_key: str | None = None) -> None:
        super().__init__(message)
        self.correlation_key = correlation_key


class PurchaseCancelledError(PurchaseError):
    """The user cancelled. A normal outcome, not a fault."""


class VerificationFailedError(PurchaseError):
    """The transaction completed but its receipt did not verify."""

    def __init__(
        self,
        message: str,
        correlation_key: str | None = None,
        raw_status: int | None = None,
    ) -> None:
        super().__init__(message, correlation_key)
        self.raw_status = raw_status


class PurchaseFailedError(PurchaseError):
    """The platform (or the device) rejected the payment."""

    def __init__(self, reason: str, correlation_key: str | None = None) -> None:
        super().__init__(f"Purchase failed: {reason}", correlation_key)
        self.reason = reason


class DuplicateIntentError(PurchaseError):
    """An unresolved intent already exists for the correlation key."""

    def __init__(self, correlation_key: str) -> None:
        super().__init__(
            f"A request for {correlation_key!r} is already pending", correlation_key
        )


Outcome = Union[PurchaseOutcome, RestoreOutcome, PurchaseError]


# ---------------------------------------------------------------------------
# PurchaseIntent
# ---------------------------------------------------------------------------


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class PurchaseIntent:
    """A caller waiting on the outcome for ``correlation_key``."""

    correlation_key: str
    completion: Callable[[Outcome], None] = field(repr=False)
    created_at: str = field(default_factory=_now)


# ---------------------------------------------------------------------------
# TransactionLedger
# ---------------------------------------------------------------------------


class TransactionLedger:
    """Map of correlation key to pending intent.

    - ``register()`` refuses a second intent for a pending key.
    - ``resolve()`` pops the intent and calls its completion exactly once;
      unknown keys are a no-op (restored transactions nobody asked for).
    - The map is guarded by a lock; completions run outside it.
    """

    def __init__(self) -> None:
        self._intents: dict[str, PurchaseIntent] = {}
        self._lock = threading.Lock()
        self._total_resolved: int = 0

    def register(self, intent: PurchaseIntent) -> None:
        """Record ``intent``. Raises DuplicateIntentError if its key is pending."""
        with self._lock:
            if intent.correlation_key in self._intents:
                raise DuplicateIntentError(intent.correlation_key)
            self._intents[intent.correlation_key] = intent
        logger.debug("Registered intent for %s.", intent.correlation_key)

    def resolve(self, correlation_key: str, outcome: Outcome) -> bool:
        """Complete and remove the intent for ``correlation_key``.

        Returns True if an intent was waiting, False otherwise.
        """
        with self._lock:
            intent = self._intents.pop(correlation_key, None)
            if intent is not None:
                self._total_resolved += 1
        if intent is None:
            logger.debug("No pending intent for %s; outcome dropped.", correlation_key)
            return False

        try:
            intent.completion(outcome)
        except Exception:
            logger.exception("Completion callback for %s raised.", correlation_key)
        return True

    def is_pending(self, correlation_key: str) -> bool:
        with self._lock:
            return correlation_key in self._intents

    def pending_keys(self) -> list[str]:
        with self._lock:
            return list(self._intents)

    def __contains__(self, correlation_key: object) -> bool:
        with self._lock:
            return correlation_key in self._intents

    def __len__(self) -> int:
        with self._lock:
            return len(self._intents)

    def health(self) -> dict[str, object]:
        """Return ledger metrics for monitoring."""
        with self._lock:
            return {
                "pending_intents": len(self._intents),
                "pending_keys": sorted(self._intents),
                "total_resolved": self._total_resolved,
            }
