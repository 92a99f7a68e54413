"""Bounded reconciliation polling of the backend payment status."""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..core.api import PaymentApiClient
from ..core.errors import ApiError
from ..core.logging import get_logger
from ..core.models import BookingPaymentStatus, CallbackStatus, PaymentStatus

logger = get_logger(__name__)

# Defaults; the flow passes values from settings.
MAX_RETRIES = 3
RETRY_INTERVAL_SECONDS = 4.0
GRACE_DELAY_SECONDS = 2.0


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"

    @property
    def is_final(self) -> bool:
        return self in (PollerState.SUCCEEDED, PollerState.FAILED, PollerState.EXHAUSTED)


class CancellationToken:
    """Flag flipped on teardown; checked before every continuation."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


def classify(status: CallbackStatus) -> PollerState:
    """Map one poll response to succeeded, failed or (still) polling."""
    if status.payment_status is not None:
        if status.payment_status.is_success:
            return PollerState.SUCCEEDED
        if status.payment_status.is_failure:
            return PollerState.FAILED
        return PollerState.POLLING
    if status.is_complete and not status.is_pending:
        return PollerState.SUCCEEDED
    return PollerState.POLLING


class StatusPoller:
    """
    Polls GET /payments/callback/status until the payment settles.

    idle -> polling -> succeeded | failed | exhausted. Runs at most once.
    Request errors use up an attempt like a pending answer does. Once the
    token is cancelled no further request is made and late results are
    dropped without touching state.
    """

    def __init__(
        self,
        api: PaymentApiClient,
        booking_id: int,
        *,
        max_retries: int = MAX_RETRIES,
        retry_interval: float = RETRY_INTERVAL_SECONDS,
        grace_delay: float = GRACE_DELAY_SECONDS,
        on_update: Optional[Callable[["StatusPoller"], None]] = None,
        token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.booking_id = booking_id
        self.max_retries = max_retries
        self.retry_interval = retry_interval
        self.grace_delay = grace_delay
        self.on_update = on_update
        self.token = token or CancellationToken()
        self._sleep = sleep

        self.state = PollerState.IDLE
        self.attempts = 0
        self.last_status: Optional[PaymentStatus] = None
        self.message: Optional[str] = None
        self.last_error: Optional[str] = None
        self.snapshot: Optional[BookingPaymentStatus] = None

    def cancel(self) -> None:
        self.token.cancel()

    def _set_state(self, state: PollerState) -> None:
        self.state = state
        self._emit()

    def _emit(self) -> None:
        if self.on_update and not self.token.cancelled:
            self.on_update(self)

    async def _wait(self, seconds: float) -> bool:
        """Sleep, then report whether we may continue."""
        if self.token.cancelled:
            return False
        if seconds > 0:
            await self._sleep(seconds)
        return not self.token.cancelled

    async def run(self, skip_grace: bool = False) -> PollerState:
        if self.state is not PollerState.IDLE:
            return self.state

        logger.info("Starting payment status polling", booking_id=self.booking_id, max_retries=self.max_retries)
        self._set_state(PollerState.POLLING)

        if not await self._wait(0 if skip_grace else self.grace_delay):
            return self._cancelled()

        while self.attempts < self.max_retries:
            self.attempts += 1
            try:
                status = await self.api.get_callback_status(self.booking_id)
            except ApiError as e:
                if self.token.cancelled:
                    return self._cancelled()
                self.last_error = str(e)
                logger.warning(
                    "Payment status poll failed",
                    booking_id=self.booking_id,
                    attempt=self.attempts,
                    error=str(e),
                )
                self._emit()
            else:
                if self.token.cancelled:
                    return self._cancelled()
                self.last_error = None
                self.last_status = status.payment_status
                self.message = status.message
                outcome = classify(status)
                logger.info(
                    "Payment status polled",
                    booking_id=self.booking_id,
                    attempt=self.attempts,
                    payment_status=status.payment_status.value if status.payment_status else None,
                    outcome=outcome.value,
                )
                if outcome.is_final:
                    return await self._finish(outcome)
                self._emit()

            if self.attempts >= self.max_retries:
                break
            if not await self._wait(self.retry_interval):
                return self._cancelled()

        logger.warning("Payment status polling exhausted", booking_id=self.booking_id, attempts=self.attempts)
        self._set_state(PollerState.EXHAUSTED)
        return self.state

    async def _finish(self, outcome: PollerState) -> PollerState:
        """One last full status fetch, then stop for good."""
        try:
            snapshot = await self.api.get_booking_payment_status(self.booking_id)
        except ApiError as e:
            logger.warning("Could not refresh booking payment status", booking_id=self.booking_id, error=str(e))
        else:
            if self.token.cancelled:
                return self._cancelled()
            self.snapshot = snapshot
        if self.token.cancelled:
            return self._cancelled()
        self._set_state(outcome)
        return self.state

    def _cancelled(self) -> PollerState:
        logger.debug("Payment status polling cancelled", booking_id=self.booking_id, attempts=self.attempts)
        return self.state
