"""Local App Store receipt access.

Reads the receipt the platform writes on-device after a transaction. No
network access; the blob is re-read on ``refresh()`` because the platform
rewrites the file whenever a new transaction completes.
"""

from __future__ import annotations

import logging
from pathlib import Path

from iapsync.models import ReceiptBlob

logger = logging.getLogger(__name__)


class ReceiptError(Exception):
    """Base exception for receipt access."""


class NoReceiptPresentError(ReceiptError):
    """No receipt exists on-device (e.g. nothing was ever purchased)."""


class ReceiptStore:
    """Holds the latest receipt blob read from ``receipt_path``.

    ``receipt_path`` may be None when the platform reports no receipt
    location at all; every read then raises ``NoReceiptPresentError``.
    """

    def __init__(self, receipt_path: str | Path | None) -> None:
        self._path = Path(receipt_path) if receipt_path is not None else None
        self._latest: ReceiptBlob | None = None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def latest(self) -> ReceiptBlob | None:
        """The blob held from the last successful read, if any."""
        return self._latest

    def current_receipt(self) -> ReceiptBlob:
        """Return the held receipt, reading it from disk on first use."""
        if self._latest is not None:
            return self._latest
        return self.refresh()

    def refresh(self) -> ReceiptBlob:
        """Re-read the receipt file, replacing the held blob."""
        if self._path is None:
            self._latest = None
            raise NoReceiptPresentError("No receipt location configured.")

        try:
            data = self._path.read_bytes()
        except FileNotFoundError:
            self._latest = None
            raise NoReceiptPresentError(f"No receipt at {self._path}.") from None
        except OSError as exc:
            logger.warning("Failed to read receipt at %s: %s", self._path, exc)
            self._latest = None
            raise NoReceiptPresentError(f"Receipt at {self._path} is unreadable.") from exc

        if not data:
            self._latest = None
            raise NoReceiptPresentError(f"Receipt at {self._path} is empty.")

        self._latest = ReceiptBlob(data)
        return self._latest
