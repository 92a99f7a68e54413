"""Card capture, validation and BIN enrichment."""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from ..core.api import PaymentApiClient
from ..core.config import get_settings
from ..core.errors import ApiError, CardValidationError
from ..core.logging import get_logger
from ..core.models import BinCheckResult, CardInput, InstallmentPrice

logger = get_logger(__name__)

BIN_LENGTH = 6
MIN_HOLDER_NAME_LENGTH = 3
MIN_CARD_NUMBER_DIGITS = 15
MIN_CVC_DIGITS = 3
SINGLE_PAYMENT = 1

_SEPARATORS = re.compile(r"[\s-]+")


def strip_card_number(value: str) -> str:
    """Drop spaces and dashes a user may type between digit groups."""
    return _SEPARATORS.sub("", value or "")


def format_card_number(value: str) -> str:
    """Group digits by four for display (``4111 1111 1111 1111``)."""
    digits = re.sub(r"\D", "", value or "")[:19]
    if not digits:
        return value
    return " ".join(digits[i:i + 4] for i in range(0, len(digits), 4))


@dataclass(frozen=True)
class NormalizedCard:
    card_holder_name: str
    card_number: str
    expire_month: str
    expire_year: str
    cvc: str
    installment: int = SINGLE_PAYMENT

    @property
    def bin(self) -> str:
        return self.card_number[:BIN_LENGTH]


def normalize_expiry_year(raw: str) -> str:
    raw = raw.strip()
    if len(raw) == 2:
        return f"20{raw}"
    return raw


def validate_card(card: CardInput, now: Optional[datetime] = None) -> NormalizedCard:
    """
    Validate card form fields and return the normalized card.

    Args:
        card: Raw form input
        now: Reference time for the expiry window (defaults to current UTC time)

    Returns:
        NormalizedCard with separator-free number and zero-padded month

    Raises:
        CardValidationError: On the first invalid field
    """
    name = (card.card_holder_name or "").strip()
    if len(name) < MIN_HOLDER_NAME_LENGTH:
        raise CardValidationError("cardHolderName", "Please enter the cardholder name")

    number = strip_card_number(card.card_number)
    if len(number) < MIN_CARD_NUMBER_DIGITS or not number.isdigit():
        raise CardValidationError("cardNumber", "Please enter a valid card number")

    raw_month = (card.expire_month or "").strip()
    raw_year = (card.expire_year or "").strip()
    if not raw_month or not raw_year:
        raise CardValidationError("expiry", "Please enter the expiry date")

    if not re.fullmatch(r"\d{1,2}", raw_month):
        raise CardValidationError("expireMonth", "Expiry month must be numeric")
    month = int(raw_month)
    if month < 1 or month > 12:
        raise CardValidationError("expireMonth", "Expiry month must be between 01 and 12")

    if not re.fullmatch(r"\d{2,4}", raw_year):
        raise CardValidationError("expireYear", "Expiry year must be numeric")
    year = normalize_expiry_year(raw_year)
    current_year = (now or datetime.now(timezone.utc)).year
    window = get_settings().card_expiry_window_years
    if len(year) != 4 or not current_year <= int(year) <= current_year + window:
        raise CardValidationError("expireYear", "Please enter the expiry year as YYYY (e.g. 2029)")

    cvc = (card.cvc or "").strip()
    if len(cvc) < MIN_CVC_DIGITS or not cvc.isdigit():
        raise CardValidationError("cvc", "Please enter the CVC code")

    installment = card.installment if card.installment and card.installment > 0 else SINGLE_PAYMENT

    return NormalizedCard(
        card_holder_name=name,
        card_number=number,
        expire_month=f"{month:02d}",
        expire_year=year,
        cvc=cvc,
        installment=installment,
    )


class CardCapture:
    """Holds the card form for one payment page and enriches it by BIN."""

    def __init__(self, api: PaymentApiClient, amount: float):
        self.api = api
        self.amount = amount
        self.card = CardInput()
        self.bin_info: Optional[BinCheckResult] = None
        self._bin_info_for: Optional[str] = None
        self._looked_up_bin: Optional[str] = None
        self._lookup_task: Optional[asyncio.Task] = None

    @property
    def installment_options(self) -> List[InstallmentPrice]:
        return self.bin_info.installment_prices if self.bin_info else []

    def update_card_number(self, value: str) -> Optional[asyncio.Task]:
        """Store the typed number and schedule a BIN lookup once 6 digits exist.

        Must be called from a running event loop. Never blocks on the network.
        """
        self.card = self.card.model_copy(update={"card_number": value})
        digits = strip_card_number(value)
        if len(digits) < BIN_LENGTH:
            return None
        bin_number = digits[:BIN_LENGTH]
        if bin_number == self._looked_up_bin:
            return None
        self._looked_up_bin = bin_number
        self._lookup_task = asyncio.create_task(self.lookup_bin(bin_number))
        return self._lookup_task

    async def lookup_bin(self, bin_number: str) -> Optional[BinCheckResult]:
        """Fetch issuer metadata. Failures are logged and swallowed."""
        try:
            result = await self.api.bin_check(bin_number, self.amount)
        except ApiError as e:
            logger.info("BIN lookup failed, continuing without installments", error=str(e))
            return None
        self.bin_info = result
        self._bin_info_for = bin_number
        logger.debug(
            "BIN lookup complete",
            bank_name=result.bank_name,
            force3ds=result.force3ds,
            installment_count=len(result.installment_prices),
        )
        return result

    async def ensure_bin_info(self) -> Optional[BinCheckResult]:
        """Installment table for the current card number, looked up if not yet known.

        A submit can arrive before the as-you-type lookup ran or finished.
        """
        bin_number = strip_card_number(self.card.card_number)[:BIN_LENGTH]
        if len(bin_number) < BIN_LENGTH or not bin_number.isdigit():
            return None
        if self._lookup_task is not None and self._looked_up_bin == bin_number:
            await self._lookup_task
        if self.bin_info is not None and self._bin_info_for == bin_number:
            return self.bin_info
        return await self.lookup_bin(bin_number)

    def select_installment(self, count: int) -> int:
        offered = {option.installment_number for option in self.installment_options}
        if count != SINGLE_PAYMENT and count not in offered:
            logger.info("Installment plan not offered, using single payment", requested=count)
            count = SINGLE_PAYMENT
        self.card = self.card.model_copy(update={"installment": count})
        return count
