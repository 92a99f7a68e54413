"""HTTP client for the booking backend's payment endpoints."""

from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from .config import get_settings
from .errors import ApiError
from .logging import get_logger
from .models import (
    BinCheckResult,
    BookingPaymentStatus,
    CallbackStatus,
    InitiationRequest,
    InitiationResult,
)
from .secrets import get_secret_manager

logger = get_logger(__name__)


def _redact_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redact card fields from a payload for logging."""
    redacted = {}
    for key, value in data.items():
        if any(s in key.lower() for s in ["card", "cvc", "expire", "token"]):
            redacted[key] = "***REDACTED***"
        else:
            redacted[key] = value
    return redacted


def _unwrap(data: Any) -> Any:
    """Accept both bare DTOs and the backend's {success, data} envelope."""
    if isinstance(data, dict) and "data" in data and "success" in data:
        return data["data"]
    return data


class PaymentApiClient:
    """Async client for /payments/* on the booking backend.

    A single httpx.AsyncClient is reused for all calls; pass ``client`` to
    supply your own (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        if token is None:
            token = get_secret_manager().get_api_token()

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if client is not None:
            client.headers.update(headers)
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=timeout if timeout is not None else settings.request_timeout,
                headers=headers,
            )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        logger.debug(
            f"Backend request: {method} {endpoint}",
            params=params,
            payload=_redact_sensitive(json) if json else None,
        )
        try:
            resp = await self._client.request(method, endpoint, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning("Backend request failed", endpoint=endpoint, error=str(e))
            raise ApiError(f"Request to {endpoint} failed: {e}") from e

        try:
            data = resp.json() if resp.content else None
        except ValueError:
            data = None

        if resp.status_code >= 400:
            _raise_for_error(resp.status_code, data, endpoint)
        return _unwrap(data)

    async def initialize_3ds(self, request: InitiationRequest) -> InitiationResult:
        data = await self._request(
            "POST",
            "/payments/3ds/initialize",
            json=request.model_dump(by_alias=True),
        )
        return _parse(InitiationResult, data, "/payments/3ds/initialize")

    async def send_callback(
        self,
        booking_id: int,
        payment_id: str,
        conversation_id: Optional[str],
        status: str,
    ) -> None:
        await self._request(
            "GET",
            "/payments/callback",
            params={
                "bookingId": str(booking_id),
                "conversationId": conversation_id or str(booking_id),
                "paymentId": payment_id,
                "status": status,
            },
        )

    async def get_callback_status(self, booking_id: int) -> CallbackStatus:
        data = await self._request(
            "GET",
            "/payments/callback/status",
            params={"bookingId": str(booking_id)},
        )
        return _parse(CallbackStatus, data, "/payments/callback/status")

    async def get_booking_payment_status(self, booking_id: int) -> BookingPaymentStatus:
        endpoint = f"/payments/{booking_id}"
        data = await self._request("GET", endpoint)
        return _parse(BookingPaymentStatus, data, endpoint)

    async def bin_check(self, bin_number: str, amount: float) -> BinCheckResult:
        data = await self._request(
            "GET",
            "/payments/bin-check",
            params={"bin": bin_number, "amount": amount},
        )
        return _parse(BinCheckResult, data, "/payments/bin-check")


def _parse(model, data: Any, endpoint: str):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.warning("Malformed backend response", endpoint=endpoint, error=str(e))
        raise ApiError(f"Malformed response from {endpoint}") from e


def _raise_for_error(status_code: int, data: Any, endpoint: str) -> None:
    """Map backend error responses to ApiError."""
    message = None
    if isinstance(data, dict):
        message = data.get("message") or data.get("errorMessage") or data.get("error")
    message = message or f"Backend error {status_code} on {endpoint}"
    logger.warning("Backend returned error", endpoint=endpoint, status_code=status_code, message=message)
    raise ApiError(message, status_code=status_code)


# Global instance
_api_client: Optional[PaymentApiClient] = None


def get_api_client() -> PaymentApiClient:
    """Get or create the global PaymentApiClient instance."""
    global _api_client
    if _api_client is None:
        _api_client = PaymentApiClient()
    return _api_client


async def close_api_client() -> None:
    global _api_client
    if _api_client is not None:
        await _api_client.aclose()
        _api_client = None
