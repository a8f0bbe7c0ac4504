"""iapsync configuration: a plain frozen dataclass, no pydantic.

The host application constructs this from its own settings (env vars,
pydantic-settings, a plist, etc.) and passes it to
``PurchaseCoordinator.from_config``.
"""

from dataclasses import dataclass

from iapsync.constants import DEFAULT_FINISHED_HISTORY, VerifyEndpoint

_ENDPOINTS = {
    "sandbox": VerifyEndpoint.SANDBOX,
    "production": VerifyEndpoint.PRODUCTION,
}


@dataclass(frozen=True)
class ReconcilerConfig:
    verify_endpoint: str = "sandbox"
    shared_secret: str | None = None  # auto-renewable subscriptions only
    exclude_old_transactions: bool = False
    receipt_path: str | None = None
    finished_history: int = DEFAULT_FINISHED_HISTORY

    @property
    def endpoint(self) -> VerifyEndpoint:
        """Resolve ``verify_endpoint`` to a ``VerifyEndpoint``."""
        try:
            return _ENDPOINTS[self.verify_endpoint.strip().lower()]
        except KeyError:
            raise ValueError(
                f"verify_endpoint must be 'sandbox' or 'production', "
                f"got {self.verify_endpoint!r}"
            ) from None
