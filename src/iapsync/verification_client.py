"""Async HTTP client for the App Store ``verifyReceipt`` endpoint."""

from __future__ import annotations

from typing import Any

import httpx

from iapsync.constants import VerifyEndpoint
from iapsync.models import ReceiptBlob, VerificationResult


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class VerifyError(Exception):
    """Base exception for receipt verification."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VerifyTransportError(VerifyError):
    """Network/DNS failure before a response arrived."""


class VerifyTimeoutError(VerifyTransportError):
    """Request timeout, handled like any other transport failure."""


class MalformedResponseError(VerifyError):
    """200 response whose body is not a JSON object with an integer status."""


class VerifyHTTPStatusError(VerifyError):
    """Any non-200 HTTP status."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class VerificationClient:
    """Async client for ``verifyReceipt``.

    Stateless apart from endpoint configuration. A non-zero ``status`` is
    returned as ``verified=False``; choosing to retry against the other
    endpoint (status 21007/21008) is the caller's decision.
    """

    def __init__(
        self,
        endpoint: VerifyEndpoint = VerifyEndpoint.SANDBOX,
        shared_secret: str | None = None,
        exclude_old_transactions: bool = False,
    ) -> None:
        self._endpoint = endpoint
        self._shared_secret = shared_secret
        self._exclude_old_transactions = exclude_old_transactions
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )

    @property
    def endpoint(self) -> VerifyEndpoint:
        return self._endpoint

    def build_payload(self, receipt: ReceiptBlob) -> dict[str, Any]:
        """JSON body for ``verifyReceipt``: base64 receipt plus optional fields."""
        payload: dict[str, Any] = {"receipt-data": receipt.to_base64()}
        if self._shared_secret:
            payload["password"] = self._shared_secret
        if self._exclude_old_transactions:
            payload["exclude-old-transactions"] = True
        return payload

    # -- internal request dispatcher -----------------------------------------

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        """POST and map failures to the VerifyError hierarchy."""
        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            raise VerifyTimeoutError(str(exc)) from exc
        except httpx.TransportError as exc:
            raise VerifyTransportError(str(exc)) from exc
        except httpx.DecodingError as exc:
            raise MalformedResponseError(
                f"verifyReceipt response body could not be decoded: {exc}"
            ) from exc
        except httpx.RequestError as exc:
            raise VerifyTransportError(str(exc)) from exc

        if response.status_code != 200:
            raise VerifyHTTPStatusError(
                f"verifyReceipt returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                "verifyReceipt response is not JSON", status_code=200
            ) from exc

    # -- public API -----------------------------------------------------------

    async def verify(
        self,
        receipt: ReceiptBlob,
        endpoint: VerifyEndpoint | None = None,
    ) -> VerificationResult:
        """POST the receipt and interpret the ``status`` field."""
        target = endpoint or self._endpoint
        body = await self._post(target.url, self.build_payload(receipt))

        if not isinstance(body, dict):
            raise MalformedResponseError(
                "verifyReceipt response is not a JSON object", status_code=200
            )
        status = body.get("status")
        # bool is an int subclass; {"status": true} is not a status code
        if not isinstance(status, int) or isinstance(status, bool):
            raise MalformedResponseError(
                f"verifyReceipt response has no integer status: {status!r}",
                status_code=200,
            )

        environment = body.get("environment")
        return VerificationResult(
            verified=status == 0,
            raw_status=status,
            environment=environment if isinstance(environment, str) else None,
        )

    # -- lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> VerificationClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
