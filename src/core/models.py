"""Payment data shapes exchanged with the booking backend."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Backend DTOs use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class PaymentStatus(str, Enum):
    """Authoritative payment status reported by the backend."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_success(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.PARTIAL)

    @property
    def is_failure(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.is_success or self.is_failure


class CardInput(ApiModel):
    """Raw card form fields. Never persisted."""
    card_holder_name: str = ""
    card_number: str = ""
    expire_month: str = ""
    expire_year: str = ""
    cvc: str = ""
    installment: int = 1


class InitiationRequest(ApiModel):
    """Body of POST /payments/3ds/initialize."""
    booking_id: int
    card_holder_name: str
    card_number: str
    expire_month: str
    expire_year: str
    cvc: str
    installment: int = 1


class InitiationResult(ApiModel):
    status: str
    three_ds_html_content: Optional[str] = Field(default=None, alias="threeDSHtmlContent")
    payment_id: Optional[str] = None
    conversation_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status.lower() == "success"


class PaymentAttempt(ApiModel):
    """In-flight payment identifiers kept across the bank redirect."""
    booking_id: int
    payment_id: str
    conversation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallbackStatus(ApiModel):
    """Response of the lightweight GET /payments/callback/status."""
    booking_id: Optional[int] = None
    payment_status: Optional[PaymentStatus] = None
    is_complete: bool = False
    is_pending: bool = False
    message: Optional[str] = None
    should_retry: Optional[bool] = None


class BookingPaymentStatus(ApiModel):
    """Read-only snapshot of the backend's payment record for a booking."""
    booking_id: int
    total_amount: float = 0.0
    paid_amount: float = 0.0
    remaining_amount: Optional[float] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_url: Optional[str] = None
    payment_deadline: Optional[datetime] = None
    owner_approved_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_paid_not_above_total(self):
        if self.paid_amount > self.total_amount:
            raise ValueError(
                f"paidAmount {self.paid_amount} exceeds totalAmount {self.total_amount}"
            )
        return self


class InstallmentPrice(ApiModel):
    installment_number: int
    total_price: Optional[float] = None
    installment_price: Optional[float] = None


class BinCheckResult(ApiModel):
    """Issuer metadata and installment table for a card BIN."""
    bin_number: Optional[str] = None
    card_association: Optional[str] = None
    card_family: Optional[str] = None
    card_type: Optional[str] = None
    bank_name: Optional[str] = None
    force3ds: bool = Field(default=False, alias="force3ds")
    installment_prices: List[InstallmentPrice] = Field(default_factory=list)
