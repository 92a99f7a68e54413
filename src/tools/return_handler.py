"""Handling of the navigation back from the bank challenge."""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from ..core.api import PaymentApiClient
from ..core.ledger import SessionLedger
from ..core.logging import get_logger
from .callback import send_supplementary_callback

logger = get_logger(__name__)

FORCE_CARD_FLOW = "3ds"
FAILED_MESSAGE = "Payment failed"
ERROR_MESSAGE = "An error occurred during the transaction"


class ReturnAction(str, Enum):
    """What the payment page should do with a return signal."""
    IGNORE = "ignore"
    SUCCESS = "success"
    FAILURE = "failure"
    AMBIGUOUS = "ambiguous"
    RESTART = "restart"


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except ValueError:
        return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except ValueError:
        return None


@dataclass(frozen=True)
class ReturnSignal:
    """Query parameters of the payment page URL."""
    booking_id: Optional[int] = None
    status: Optional[str] = None
    error: Optional[str] = None
    retry: bool = False
    start: Optional[str] = None
    amount: Optional[float] = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "ReturnSignal":
        status = (params.get("status") or "").strip().lower() or None
        retry = params.get("retry")
        return cls(
            booking_id=_parse_int(params.get("bookingId")),
            status=status,
            error=params.get("error") or None,
            retry=retry is not None and retry.lower() not in ("0", "false"),
            start=params.get("start") or None,
            # Display hint only, never compared with the backend amount.
            amount=_parse_float(params.get("amount")),
        )

    @classmethod
    def from_url(cls, url: str) -> "ReturnSignal":
        return cls.from_params(dict(parse_qsl(urlsplit(url).query, keep_blank_values=True)))

    @property
    def failure_message(self) -> str:
        if self.error:
            return self.error
        return ERROR_MESSAGE if self.status == "error" else FAILED_MESSAGE


class ReturnHandler:
    """Interprets return signals for one booking's payment page.

    Safe to run repeatedly for the same navigation (remount, back/forward);
    the supplementary callback is still sent at most once.
    """

    def __init__(self, api: PaymentApiClient, ledger: SessionLedger, booking_id: int):
        self.api = api
        self.ledger = ledger
        self.booking_id = booking_id

    async def handle(self, signal: ReturnSignal) -> ReturnAction:
        if signal.booking_id != self.booking_id:
            if signal.booking_id is not None:
                logger.info(
                    "Ignoring return for another booking",
                    booking_id=self.booking_id,
                    returned_booking_id=signal.booking_id,
                )
            return ReturnAction.IGNORE

        await send_supplementary_callback(self.api, self.ledger, self.booking_id, signal.status)

        if signal.start == FORCE_CARD_FLOW:
            action = ReturnAction.RESTART
        elif signal.status == "success":
            action = ReturnAction.SUCCESS
        elif signal.status in ("failed", "error"):
            action = ReturnAction.FAILURE
        else:
            action = ReturnAction.AMBIGUOUS

        logger.info(
            "Return signal handled",
            booking_id=self.booking_id,
            status=signal.status,
            action=action.value,
            retry=signal.retry,
        )
        return action
