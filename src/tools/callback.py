"""Supplementary reconciliation callback to the backend."""

from typing import Optional

from ..core.api import PaymentApiClient
from ..core.errors import ApiError
from ..core.ledger import SessionLedger
from ..core.logging import get_logger

logger = get_logger(__name__)


async def send_supplementary_callback(
    api: PaymentApiClient,
    ledger: SessionLedger,
    booking_id: int,
    status: Optional[str],
) -> bool:
    """
    Forward the persisted paymentId to the backend callback, at most once.

    The return navigation from the bank often lacks paymentId/status; this
    backfills them from the ledger. The dedupe marker is claimed before the
    request is awaited, so a second handler run that interleaves with this
    one sees the marker and sends nothing. A failed request is not retried.

    Args:
        api: Backend client
        ledger: Session ledger holding the attempt
        booking_id: Booking the return belongs to
        status: Status from the return URL, if any

    Returns:
        True if the callback was delivered by this call
    """
    attempt = ledger.get_attempt(booking_id)
    if not attempt or not attempt.payment_id:
        return False

    if not ledger.claim_callback(booking_id, attempt.payment_id):
        logger.debug("Supplementary callback already sent", booking_id=booking_id, payment_id=attempt.payment_id)
        return False

    try:
        await api.send_callback(
            booking_id=booking_id,
            payment_id=attempt.payment_id,
            conversation_id=attempt.conversation_id,
            status=status or "pending",
        )
    except ApiError as e:
        logger.warning(
            "Supplementary callback failed",
            booking_id=booking_id,
            payment_id=attempt.payment_id,
            error=str(e),
        )
        return False

    logger.info("Supplementary callback delivered", booking_id=booking_id, payment_id=attempt.payment_id)
    ledger.close_attempt(booking_id, attempt.payment_id)
    return True
