"""Builders and a scripted backend shared by the test modules."""

import asyncio
import base64
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from src.core.api import PaymentApiClient
from src.core.models import CardInput

BASE_URL = "http://backend.test/api"

CHALLENGE_HTML = (
    "<!DOCTYPE html><html><head><title>3D Secure</title></head><body>"
    '<form id="bank-form" action="https://acs.bank.example/challenge" method="post">'
    '<input type="hidden" name="PaReq" value="eJxVUttugkAQ">'
    "</form>"
    '<script>document.getElementById("bank-form").submit();</script>'
    "</body></html>"
)

Scripted = Union[Dict[str, Any], Exception, Callable[[httpx.Request], Any]]


def encoded_challenge(html: str = CHALLENGE_HTML) -> str:
    return base64.b64encode(html.encode("utf-8")).decode("ascii")


def valid_card(**overrides) -> CardInput:
    fields = {
        "card_holder_name": "JOHN DOE",
        "card_number": "5528 7900 0000 0008",
        "expire_month": "7",
        "expire_year": str(datetime.now(timezone.utc).year + 3),
        "cvc": "123",
        "installment": 1,
    }
    fields.update(overrides)
    return CardInput(**fields)


def initiation_success(payment_id: str = "p1", conversation_id: str = "c1") -> Dict[str, Any]:
    return {
        "status": "success",
        "threeDSHtmlContent": encoded_challenge(),
        "paymentId": payment_id,
        "conversationId": conversation_id,
    }


def pending(message: str = "Payment is being processed") -> Dict[str, Any]:
    return {"bookingId": 42, "paymentStatus": "PENDING", "isComplete": False, "isPending": True, "message": message}


def completed() -> Dict[str, Any]:
    return {"bookingId": 42, "paymentStatus": "COMPLETED", "isComplete": True, "isPending": False}


def failed(message: str = "Card declined") -> Dict[str, Any]:
    return {"bookingId": 42, "paymentStatus": "FAILED", "isComplete": True, "isPending": False, "message": message}


class FakeBackend:
    """Scripted stand-in for the booking backend's /payments endpoints.

    Response queues hand out one entry per request and keep repeating the
    last one. An entry may be a JSON body, an exception to raise, or a
    callable taking the request.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.initialize_responses: List[Scripted] = [initiation_success()]
        self.status_responses: List[Scripted] = [pending()]
        self.payment_status: Dict[str, Any] = {
            "bookingId": 42,
            "totalAmount": 1500.0,
            "paidAmount": 1500.0,
            "remainingAmount": 0.0,
            "paymentStatus": "COMPLETED",
        }
        self.bin_response: Optional[Dict[str, Any]] = {
            "binNumber": "552879",
            "cardAssociation": "MASTER_CARD",
            "cardType": "CREDIT_CARD",
            "bankName": "Example Bank",
            "force3ds": 1,
            "installmentPrices": [
                {"installmentNumber": 1, "totalPrice": 1500.0},
                {"installmentNumber": 3, "totalPrice": 1545.0},
            ],
        }
        self.callback_status_code = 200
        # Holds initiation requests until set.
        self.initialize_gate: Optional[asyncio.Event] = None

    def calls(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == f"/api{path}"]

    @staticmethod
    def _next(queue: List[Scripted], request: httpx.Request) -> Any:
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/api/payments/3ds/initialize":
            if self.initialize_gate is not None:
                await self.initialize_gate.wait()
            return httpx.Response(200, json=self._next(self.initialize_responses, request))

        if path == "/api/payments/callback":
            return httpx.Response(self.callback_status_code, json={"received": True})

        if path == "/api/payments/callback/status":
            return httpx.Response(200, json=self._next(self.status_responses, request))

        if path == "/api/payments/bin-check":
            if self.bin_response is None:
                return httpx.Response(500, json={"message": "BIN service unavailable"})
            return httpx.Response(200, json={"success": True, "data": self.bin_response})

        if path.startswith("/api/payments/"):
            return httpx.Response(200, json=self.payment_status)

        return httpx.Response(404, json={"message": "not found"})


def make_api(backend: FakeBackend) -> PaymentApiClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handle), base_url=BASE_URL)
    return PaymentApiClient(base_url=BASE_URL, token="test-token", client=client)
