"""Open a 3DS payment attempt with the backend."""

from ..core.api import PaymentApiClient
from ..core.errors import ApiError, InitiationError
from ..core.ledger import SessionLedger
from ..core.logging import get_logger
from ..core.models import InitiationRequest, InitiationResult, PaymentAttempt
from .card import NormalizedCard

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Payment could not be started"


async def initiate_3ds(
    api: PaymentApiClient,
    ledger: SessionLedger,
    booking_id: int,
    card: NormalizedCard,
) -> InitiationResult:
    """
    Start a 3DS charge for a booking.

    Issues exactly one initiation request; there is no retry here, a
    second request could charge the card twice. On success the payment
    identifiers are written to the ledger before returning, so they are on
    disk before the browser leaves for the bank.

    Args:
        api: Backend client
        ledger: Session ledger for this browser session
        booking_id: Booking being paid
        card: Validated card

    Returns:
        InitiationResult carrying the (base64) challenge markup

    Raises:
        InitiationError: If the backend rejects the attempt or cannot be reached
    """
    request = InitiationRequest(
        booking_id=booking_id,
        card_holder_name=card.card_holder_name,
        card_number=card.card_number,
        expire_month=card.expire_month,
        expire_year=card.expire_year,
        cvc=card.cvc,
        installment=card.installment,
    )

    logger.info("Initializing 3DS payment", booking_id=booking_id, installment=card.installment)

    try:
        result = await api.initialize_3ds(request)
    except ApiError as e:
        logger.error("3DS initialization request failed", booking_id=booking_id, error=str(e))
        raise InitiationError("An error occurred while processing the payment") from e

    if not result.succeeded or not result.three_ds_html_content:
        message = result.error_message or DEFAULT_FAILURE_MESSAGE
        logger.warning(
            "3DS initialization rejected",
            booking_id=booking_id,
            status=result.status,
            error_message=message,
        )
        raise InitiationError(message)

    if result.payment_id:
        ledger.record_attempt(
            PaymentAttempt(
                booking_id=booking_id,
                payment_id=result.payment_id,
                conversation_id=result.conversation_id,
            )
        )
    else:
        logger.warning("3DS initialization returned no paymentId", booking_id=booking_id)

    logger.info(
        "3DS payment initialized",
        booking_id=booking_id,
        payment_id=result.payment_id,
        conversation_id=result.conversation_id,
    )
    return result
