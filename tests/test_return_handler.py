"""Tests for return signal parsing, the supplementary callback and dedupe."""

import asyncio

import pytest

from src.core.models import PaymentAttempt
from src.tools.callback import send_supplementary_callback
from src.tools.return_handler import ReturnAction, ReturnHandler, ReturnSignal


@pytest.fixture
def recorded(ledger):
    """Ledger with an in-flight attempt for booking 42."""
    ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1", conversation_id="c1"))
    return ledger


class TestReturnSignal:
    """Tests for ReturnSignal parsing."""

    def test_from_url(self):
        """All return parameters are read from the URL."""
        signal = ReturnSignal.from_url("https://app.example/payment/42?bookingId=42&status=Success&retry=1&amount=99.5")

        assert signal.booking_id == 42
        assert signal.status == "success"
        assert signal.retry is True
        assert signal.amount == 99.5
        assert signal.start is None

    def test_missing_and_malformed_values(self):
        """Malformed numbers are ignored rather than raising."""
        signal = ReturnSignal.from_params({"bookingId": "abc", "amount": "lots"})

        assert signal.booking_id is None
        assert signal.amount is None
        assert signal.status is None
        assert signal.retry is False

    def test_retry_marker_without_value(self):
        """A bare retry marker counts as set."""
        assert ReturnSignal.from_url("/payment/42?bookingId=42&retry").retry is True
        assert ReturnSignal.from_url("/payment/42?bookingId=42&retry=false").retry is False

    def test_failure_messages(self):
        """Failure text prefers the error parameter, then the status."""
        assert ReturnSignal(status="failed").failure_message == "Payment failed"
        assert ReturnSignal(status="error").failure_message == "An error occurred during the transaction"
        assert ReturnSignal(status="failed", error="Card declined").failure_message == "Card declined"


class TestSupplementaryCallback:
    """Tests for send_supplementary_callback."""

    async def test_sends_persisted_identifiers(self, api, backend, recorded):
        """The callback backfills paymentId and conversationId from the ledger."""
        assert await send_supplementary_callback(api, recorded, 42, "success") is True

        calls = backend.calls("/payments/callback")
        assert len(calls) == 1
        assert calls[0].url.params["paymentId"] == "p1"
        assert calls[0].url.params["conversationId"] == "c1"
        assert calls[0].url.params["status"] == "success"

    async def test_missing_status_sends_pending(self, api, backend, recorded):
        """Without a status in the URL the callback reports pending."""
        await send_supplementary_callback(api, recorded, 42, None)

        assert backend.calls("/payments/callback")[0].url.params["status"] == "pending"

    async def test_acknowledged_attempt_is_closed(self, api, recorded):
        """A delivered callback clears the attempt but keeps the marker."""
        await send_supplementary_callback(api, recorded, 42, "success")

        assert recorded.get_attempt(42) is None
        assert recorded.callback_sent(42, "p1") is True

    async def test_no_attempt_sends_nothing(self, api, backend, ledger):
        """Nothing is sent when the session never initiated a payment."""
        assert await send_supplementary_callback(api, ledger, 42, "success") is False
        assert backend.calls("/payments/callback") == []

    async def test_failure_is_not_retried(self, api, backend, recorded):
        """A failed callback is logged and never resent."""
        backend.callback_status_code = 500

        assert await send_supplementary_callback(api, recorded, 42, "success") is False
        assert await send_supplementary_callback(api, recorded, 42, "success") is False

        assert len(backend.calls("/payments/callback")) == 1
        assert recorded.get_attempt(42).payment_id == "p1"


class TestReturnHandler:
    """Tests for ReturnHandler."""

    async def test_success_return_sends_one_callback(self, api, backend, recorded):
        """A success return sends exactly one callback carrying the stored paymentId."""
        handler = ReturnHandler(api, recorded, 42)

        action = await handler.handle(ReturnSignal.from_url("/payment/42?bookingId=42&status=success"))

        assert action is ReturnAction.SUCCESS
        calls = backend.calls("/payments/callback")
        assert len(calls) == 1
        assert calls[0].url.params["paymentId"] == "p1"

    async def test_repeated_handling_sends_once(self, api, backend, recorded):
        """Remounts and back/forward navigation do not resend the callback."""
        signal = ReturnSignal.from_url("/payment/42?bookingId=42&status=success")

        for _ in range(3):
            await ReturnHandler(api, recorded, 42).handle(signal)

        assert len(backend.calls("/payments/callback")) == 1

    async def test_concurrent_handling_sends_once(self, api, backend, recorded):
        """Interleaved handler runs still produce a single callback."""
        signal = ReturnSignal.from_url("/payment/42?bookingId=42")
        handlers = [ReturnHandler(api, recorded, 42) for _ in range(5)]

        actions = await asyncio.gather(*(h.handle(signal) for h in handlers))

        assert set(actions) == {ReturnAction.AMBIGUOUS}
        assert len(backend.calls("/payments/callback")) == 1

    async def test_other_booking_is_ignored(self, api, backend, recorded):
        """A return for another booking does nothing."""
        action = await ReturnHandler(api, recorded, 42).handle(
            ReturnSignal.from_url("/payment/42?bookingId=7&status=success")
        )

        assert action is ReturnAction.IGNORE
        assert backend.calls("/payments/callback") == []

    async def test_plain_mount_is_ignored(self, api, backend, recorded):
        """Opening the page without return parameters does nothing."""
        action = await ReturnHandler(api, recorded, 42).handle(ReturnSignal())

        assert action is ReturnAction.IGNORE
        assert backend.calls("/payments/callback") == []

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("status=success", ReturnAction.SUCCESS),
            ("status=failed", ReturnAction.FAILURE),
            ("status=error", ReturnAction.FAILURE),
            ("status=pending", ReturnAction.AMBIGUOUS),
            ("", ReturnAction.AMBIGUOUS),
            ("start=3ds", ReturnAction.RESTART),
            ("status=success&start=3ds", ReturnAction.RESTART),
        ],
    )
    async def test_actions(self, api, ledger, query, expected):
        """Each status maps to its page action."""
        signal = ReturnSignal.from_url(f"/payment/42?bookingId=42&{query}")

        assert await ReturnHandler(api, ledger, 42).handle(signal) is expected
