"""
Payment state machine.

Drives one booking's payment page through
card-input -> 3ds-verification -> processing -> complete
and back to card-input on failure. A PaymentFlow lives for one "mount" of
the page; the bank redirect destroys it and the return navigation creates a
fresh one, which recovers the in-flight attempt from the session ledger.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.api import PaymentApiClient
from ..core.config import Settings, get_settings
from ..core.errors import ApiError, CardValidationError, InitiationError, InvalidTransitionError
from ..core.ledger import SessionLedger
from ..core.logging import get_logger
from ..core.models import BookingPaymentStatus, CardInput
from ..tools.card import SINGLE_PAYMENT, CardCapture, validate_card
from ..tools.challenge import RelayDocument, render_challenge
from ..tools.initiate import initiate_3ds
from ..tools.poller import PollerState, StatusPoller
from ..tools.return_handler import ReturnAction, ReturnHandler, ReturnSignal
from .states import FlowStep, PaymentOutcome, can_transition

logger = get_logger(__name__)

PENDING_MESSAGE = "Checking your payment status..."
UNKNOWN_MESSAGE = "Payment status unknown. Please check again in a moment or review your bookings."
FAILED_MESSAGE = "Payment failed"
SUCCESS_MESSAGE = "Payment successful. Your booking is confirmed."


class PaymentFlow:
    """Payment page controller for a single booking and session."""

    def __init__(
        self,
        api: PaymentApiClient,
        ledger: SessionLedger,
        booking_id: int,
        total_amount: Optional[float] = None,
        *,
        settings: Optional[Settings] = None,
        on_redirect: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.ledger = ledger
        self.booking_id = booking_id
        self.settings = settings or get_settings()
        self.on_redirect = on_redirect
        self._sleep = sleep

        self.step = FlowStep.CARD_INPUT
        self.outcome: Optional[PaymentOutcome] = None
        self.error: Optional[str] = None
        self.error_field: Optional[str] = None
        self.message: Optional[str] = None
        self.total_amount = total_amount
        self.display_amount = total_amount
        self.payment_status: Optional[BookingPaymentStatus] = None
        self.relay: Optional[RelayDocument] = None

        self.card = CardCapture(api, total_amount or 0.0)
        self.return_handler = ReturnHandler(api, ledger, booking_id)
        self.poller: Optional[StatusPoller] = None

        self._submitting = False
        self._closed = False
        self._poll_task: Optional[asyncio.Task] = None
        self._redirect_task: Optional[asyncio.Task] = None
        self.last_activity = time.monotonic()

    # -- state -----------------------------------------------------------

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _transition(self, target: FlowStep) -> None:
        if not can_transition(self.step, target):
            raise InvalidTransitionError(f"Cannot move from {self.step.value} to {target.value}")
        if target is not self.step:
            logger.info(
                "Payment flow transition",
                booking_id=self.booking_id,
                from_step=self.step.value,
                to_step=target.value,
            )
        self.step = target

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def can_submit(self) -> bool:
        return self.step is FlowStep.CARD_INPUT and not self._submitting and not self._closed

    @property
    def can_check_again(self) -> bool:
        return self.step in (FlowStep.PROCESSING, FlowStep.COMPLETE) and not self.is_polling

    @property
    def can_retry(self) -> bool:
        return self.step is FlowStep.COMPLETE and self.outcome in (PaymentOutcome.FAILED, PaymentOutcome.UNKNOWN)

    # -- card submit -----------------------------------------------------

    async def submit(self, card: Optional[CardInput] = None) -> Optional[RelayDocument]:
        """
        Validate the card, open the 3DS attempt and build the relay page.

        Repeated calls while one is in flight are ignored, so a double
        click never produces a second initiation request.

        Returns:
            RelayDocument to serve, or None if nothing was started (see ``error``)
        """
        if not self.can_submit:
            logger.info("Submit ignored", booking_id=self.booking_id, step=self.step.value, in_flight=self._submitting)
            return None

        self._submitting = True
        try:
            self.error = None
            self.error_field = None
            if card is not None:
                self.card.card = card
                if card.installment and card.installment != SINGLE_PAYMENT:
                    await self.card.ensure_bin_info()
                self.card.select_installment(card.installment)

            try:
                normalized = validate_card(self.card.card)
            except CardValidationError as e:
                self.error = str(e)
                self.error_field = e.field
                return None

            try:
                result = await initiate_3ds(self.api, self.ledger, self.booking_id, normalized)
            except InitiationError as e:
                self.error = str(e)
                self._transition(FlowStep.CARD_INPUT)
                return None

            self._transition(FlowStep.THREEDS_VERIFICATION)
            self.relay = render_challenge(
                result.three_ds_html_content,
                result.payment_id,
                self.settings.relay_url,
                self.settings.relay_submit_delay_ms,
            )
            self.outcome = None
            self._transition(FlowStep.PROCESSING)
            return self.relay
        finally:
            self._submitting = False

    # -- return from the bank -------------------------------------------

    async def handle_return(self, signal: ReturnSignal) -> ReturnAction:
        """Apply a return navigation (initial mount or back/forward)."""
        action = await self.return_handler.handle(signal)
        if self._closed:
            return action

        if action is ReturnAction.RESTART:
            self._cancel_poll()
            self.outcome = None
            self.error = None
            self._transition(FlowStep.CARD_INPUT)
        elif action is ReturnAction.SUCCESS:
            self._cancel_poll()
            self._transition(FlowStep.COMPLETE)
            self.outcome = PaymentOutcome.SUCCESS
            self.message = SUCCESS_MESSAGE
            self.error = None
            await self._refresh_payment_status()
            self._schedule_redirect()
        elif action is ReturnAction.FAILURE:
            self._cancel_poll()
            self.outcome = None
            self.error = signal.failure_message
            self._transition(FlowStep.CARD_INPUT)
        elif action is ReturnAction.AMBIGUOUS:
            if signal.amount is not None and self.payment_status is None:
                self.display_amount = signal.amount
            self.start_polling(skip_grace=signal.retry)
        return action

    async def _refresh_payment_status(self) -> None:
        try:
            self.payment_status = await self.api.get_booking_payment_status(self.booking_id)
        except ApiError as e:
            logger.warning("Could not fetch booking payment status", booking_id=self.booking_id, error=str(e))

    # -- reconciliation --------------------------------------------------

    def start_polling(self, skip_grace: bool = False) -> asyncio.Task:
        """Start a fresh status poller in the background (one at a time)."""
        if self.is_polling:
            return self._poll_task

        self._cancel_poll()
        self.poller = StatusPoller(
            self.api,
            self.booking_id,
            max_retries=self.settings.max_retries,
            retry_interval=self.settings.retry_interval,
            grace_delay=self.settings.grace_delay,
            on_update=self._on_poll_update,
            sleep=self._sleep,
        )
        self._transition(FlowStep.PROCESSING)
        self.outcome = PaymentOutcome.PENDING
        self.message = PENDING_MESSAGE
        self.error = None
        self._poll_task = asyncio.create_task(self.poller.run(skip_grace=skip_grace))
        return self._poll_task

    async def wait_for_poll(self) -> Optional[PollerState]:
        if self._poll_task is None:
            return None
        return await self._poll_task

    def check_again(self) -> Optional[asyncio.Task]:
        """Manual re-check; skips the grace delay."""
        if self.is_polling:
            return self._poll_task
        if not self.can_check_again:
            logger.info("Check again not available", booking_id=self.booking_id, step=self.step.value)
            return None
        logger.info("Manual payment status check requested", booking_id=self.booking_id)
        return self.start_polling(skip_grace=True)

    def _on_poll_update(self, poller: StatusPoller) -> None:
        if self._closed:
            return

        if poller.state is PollerState.POLLING:
            self._transition(FlowStep.PROCESSING)
            self.outcome = PaymentOutcome.PENDING
            self.message = poller.message or PENDING_MESSAGE
            return

        if poller.snapshot is not None:
            self.payment_status = poller.snapshot

        self._transition(FlowStep.COMPLETE)
        if poller.state is PollerState.SUCCEEDED:
            self.outcome = PaymentOutcome.SUCCESS
            self.message = SUCCESS_MESSAGE
            self.error = None
            self._schedule_redirect()
        elif poller.state is PollerState.FAILED:
            self.outcome = PaymentOutcome.FAILED
            self.message = None
            self.error = poller.message or FAILED_MESSAGE
        elif poller.state is PollerState.EXHAUSTED:
            self.outcome = PaymentOutcome.UNKNOWN
            self.message = UNKNOWN_MESSAGE
            self.error = None

    def _cancel_poll(self) -> None:
        if self.poller is not None:
            self.poller.cancel()

    # -- completion ------------------------------------------------------

    def _schedule_redirect(self) -> None:
        if self.on_redirect is None or self._redirect_task is not None:
            return
        self._redirect_task = asyncio.create_task(self._redirect_later())

    async def _redirect_later(self) -> None:
        await self._sleep(self.settings.redirect_delay)
        if self._closed or self.outcome is not PaymentOutcome.SUCCESS:
            return
        logger.info("Redirecting to bookings", booking_id=self.booking_id, url=self.settings.bookings_url)
        self.on_redirect(self.settings.bookings_url)

    def retry(self) -> Optional[str]:
        """
        Retry affordance after a failed or unknown outcome.

        Returns:
            The backend's existing payment URL to send the user to, or None
            when the card flow was restarted instead
        """
        if not self.can_retry:
            logger.info("Retry not available", booking_id=self.booking_id, step=self.step.value)
            return None
        self._cancel_poll()
        if self.payment_status is not None and self.payment_status.payment_url:
            logger.info("Retrying via existing payment URL", booking_id=self.booking_id)
            return self.payment_status.payment_url
        self.outcome = None
        self.error = None
        self.message = None
        self._transition(FlowStep.CARD_INPUT)
        return None

    async def close(self) -> None:
        """Tear down: stop polling and any pending redirect."""
        if self._closed:
            return
        self._closed = True
        self._cancel_poll()
        if self._redirect_task is not None and not self._redirect_task.done():
            self._redirect_task.cancel()
        logger.debug("Payment flow closed", booking_id=self.booking_id)

    # -- view ------------------------------------------------------------

    def view(self) -> Dict[str, Any]:
        """JSON-ready state for the payment page."""
        polling = None
        if self.poller is not None:
            polling = {
                "state": self.poller.state.value,
                "attempts": self.poller.attempts,
                "maxRetries": self.poller.max_retries,
                "lastError": self.poller.last_error,
            }

        redirect = None
        if self.step is FlowStep.COMPLETE and self.outcome is PaymentOutcome.SUCCESS:
            redirect = {"url": self.settings.bookings_url, "afterSeconds": self.settings.redirect_delay}

        bin_info = self.card.bin_info
        return {
            "bookingId": self.booking_id,
            "step": self.step.value,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.error,
            "errorField": self.error_field,
            "message": self.message,
            "displayAmount": self.display_amount,
            "paymentStatus": self.payment_status.model_dump(mode="json", by_alias=True) if self.payment_status else None,
            "polling": polling,
            "installments": [
                option.model_dump(mode="json", by_alias=True) for option in self.card.installment_options
            ],
            "force3ds": bin_info.force3ds if bin_info else None,
            "actions": {
                "submit": self.can_submit,
                "checkAgain": self.can_check_again,
                "retry": self.can_retry,
            },
            "redirect": redirect,
        }
