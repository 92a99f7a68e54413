"""Payment page endpoints: mount/return, card submit, BIN lookup and manual actions."""

import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse

from ..core.api import PaymentApiClient, get_api_client
from ..core.errors import InvalidTransitionError, LedgerError, PaymentFlowError
from ..core.ledger import SessionLedger, cleanup_old_ledgers
from ..core.logging import get_logger
from ..core.models import CardInput
from ..flow.machine import PaymentFlow
from ..tools.card import strip_card_number
from ..tools.return_handler import ReturnSignal

logger = get_logger(__name__)
router = APIRouter(prefix="/payment")

SESSION_COOKIE = "payment_session"

# Live payment pages, one per (session, booking). A new mount replaces the old one.
_flows: Dict[Tuple[str, int], PaymentFlow] = {}
_flows_lock = threading.Lock()
FLOW_IDLE_TTL = 30 * 60  # Seconds a page may sit untouched before it is dropped
MAX_FLOWS = 1000  # Upper bound on live pages held in memory

# Abandoned ledger files are swept at most once per interval
LEDGER_CLEANUP_INTERVAL = 3600
LEDGER_MAX_AGE_HOURS = 24
_last_ledger_cleanup = time.time()

# Rate limiting for manual check-again (IP address -> (request_count, window_start_time))
_rate_limit_store: Dict[str, Tuple[int, float]] = {}
_rate_limit_lock = threading.Lock()
RATE_LIMIT_REQUESTS = 10  # Max requests per window
RATE_LIMIT_WINDOW = 60  # Window duration in seconds
RATE_LIMIT_CLEANUP_INTERVAL = 300  # Cleanup every 5 minutes
_last_rate_limit_cleanup = time.time()


def cleanup_rate_limit_store() -> None:
    """Clean up old entries from rate limit store to prevent memory leak."""
    global _last_rate_limit_cleanup

    current_time = time.time()
    if current_time - _last_rate_limit_cleanup < RATE_LIMIT_CLEANUP_INTERVAL:
        return

    with _rate_limit_lock:
        # Entries older than 2x the window can no longer limit anyone
        cutoff_time = current_time - (2 * RATE_LIMIT_WINDOW)
        ips_to_remove = [ip for ip, (_, window_start) in _rate_limit_store.items() if window_start < cutoff_time]
        for ip in ips_to_remove:
            del _rate_limit_store[ip]

        if ips_to_remove:
            logger.debug("Cleaned up rate limit store", removed_count=len(ips_to_remove))

        _last_rate_limit_cleanup = current_time


def check_rate_limit(client_ip: str) -> None:
    """
    Check if client has exceeded the check-again rate limit.

    Raises:
        HTTPException: If rate limit exceeded (429 Too Many Requests)
    """
    cleanup_rate_limit_store()
    current_time = time.time()

    with _rate_limit_lock:
        request_count, window_start = _rate_limit_store.get(client_ip, (0, current_time))

        if current_time - window_start > RATE_LIMIT_WINDOW:
            _rate_limit_store[client_ip] = (1, current_time)
            return

        if request_count >= RATE_LIMIT_REQUESTS:
            logger.warning("Rate limit exceeded for check-again", client_ip=client_ip, requests=request_count)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Max {RATE_LIMIT_REQUESTS} requests per {RATE_LIMIT_WINDOW} seconds.",
                headers={"Retry-After": str(int(RATE_LIMIT_WINDOW - (current_time - window_start)))}
            )

        _rate_limit_store[client_ip] = (request_count + 1, window_start)


def _session_id(request: Request) -> str:
    return request.cookies.get(SESSION_COOKIE) or uuid.uuid4().hex


def _ledger(session_id: str) -> SessionLedger:
    try:
        return SessionLedger(session_id)
    except LedgerError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _respond(content: dict, session_id: str, status_code: int = 200) -> JSONResponse:
    response = JSONResponse(content, status_code=status_code)
    _set_session_cookie(response, session_id)
    return response


def _set_session_cookie(response: Response, session_id: str) -> None:
    response.set_cookie(SESSION_COOKIE, session_id, httponly=True, samesite="lax")


def _evict_flows(now: float, keep: int) -> List[PaymentFlow]:
    """
    Remove closed and idle pages, then the least recently used beyond ``keep``.

    Caller holds _flows_lock and closes the returned flows.
    """
    expired = [
        key for key, flow in _flows.items()
        if flow.is_closed or now - flow.last_activity > FLOW_IDLE_TTL
    ]
    evicted = [_flows.pop(key) for key in expired]

    overflow = len(_flows) - keep
    if overflow > 0:
        # Pages still polling go last
        by_age = sorted(_flows, key=lambda key: (_flows[key].is_polling, _flows[key].last_activity))
        evicted.extend(_flows.pop(key) for key in by_age[:overflow])

    if evicted:
        logger.debug("Evicted payment pages", removed_count=len(evicted), live_count=len(_flows))
    return evicted


def cleanup_ledgers() -> None:
    """Periodically delete ledger files of abandoned sessions."""
    global _last_ledger_cleanup

    current_time = time.time()
    if current_time - _last_ledger_cleanup < LEDGER_CLEANUP_INTERVAL:
        return
    _last_ledger_cleanup = current_time
    cleanup_old_ledgers(max_age_hours=LEDGER_MAX_AGE_HOURS)


async def _mount(
    session_id: str,
    booking_id: int,
    api: PaymentApiClient,
    amount: Optional[float] = None,
    *,
    replace: bool = True,
) -> PaymentFlow:
    """
    Register a page for (session, booking) and return it.

    With ``replace=False`` a live page already registered for the key is
    returned instead. Lookup and insert share one lock acquisition, so
    concurrent first requests end up on the same page.
    """
    key = (session_id, booking_id)
    ledger = _ledger(session_id)

    with _flows_lock:
        current = _flows.get(key)
        if current is not None and not replace and not current.is_closed:
            current.touch()
            return current

        stale = []
        previous = _flows.pop(key, None)
        if previous is not None:
            stale.append(previous)
        stale.extend(_evict_flows(time.monotonic(), keep=MAX_FLOWS - 1))
        flow = PaymentFlow(api, ledger, booking_id, total_amount=amount)
        _flows[key] = flow

    for old in stale:
        await old.close()
    cleanup_ledgers()
    return flow


async def _current_flow(session_id: str, booking_id: int, api: PaymentApiClient) -> PaymentFlow:
    return await _mount(session_id, booking_id, api, replace=False)


async def close_flows() -> None:
    """Close every live page (application shutdown)."""
    with _flows_lock:
        flows = list(_flows.values())
        _flows.clear()
    for flow in flows:
        await flow.close()


@router.get("/{booking_id}")
async def mount_payment_page(
    booking_id: int,
    request: Request,
    total: Optional[float] = Query(default=None, description="Booking total shown on the form"),
    api: PaymentApiClient = Depends(get_api_client),
):
    """
    Mount the payment page; this is also the 3DS return URL.

    Query parameters follow the return contract: bookingId, status
    (success|failed|error|pending), error, retry, start=3ds, amount.
    """
    session_id = _session_id(request)
    flow = await _mount(session_id, booking_id, api, amount=total)
    signal = ReturnSignal.from_params(request.query_params)

    try:
        await flow.handle_return(signal)
    except InvalidTransitionError as e:
        logger.warning("Return rejected by payment flow", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=409, detail=str(e))
    except PaymentFlowError as e:
        logger.warning("Return handling failed", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Unexpected error handling return", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    return _respond(flow.view(), session_id)


@router.get("/{booking_id}/state")
async def payment_state(
    booking_id: int,
    request: Request,
    api: PaymentApiClient = Depends(get_api_client),
):
    """Current view without remounting."""
    session_id = _session_id(request)
    flow = await _current_flow(session_id, booking_id, api)
    return _respond(flow.view(), session_id)


@router.post("/{booking_id}/card")
async def submit_card(
    booking_id: int,
    card: CardInput,
    request: Request,
    api: PaymentApiClient = Depends(get_api_client),
):
    """Submit the card; responds with the self-submitting relay page."""
    session_id = _session_id(request)
    flow = await _current_flow(session_id, booking_id, api)

    try:
        relay = await flow.submit(card)
    except PaymentFlowError as e:
        logger.warning("Card submit failed", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("Unexpected error submitting card", booking_id=booking_id, error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")

    if relay is None:
        return _respond(flow.view(), session_id, status_code=422)

    response = HTMLResponse(relay.html)
    _set_session_cookie(response, session_id)
    return response


@router.get("/{booking_id}/bin")
async def bin_lookup(
    booking_id: int,
    request: Request,
    number: str = Query(..., description="Card number typed so far"),
    api: PaymentApiClient = Depends(get_api_client),
):
    """Issuer metadata and installment options (null when unavailable)."""
    session_id = _session_id(request)
    flow = await _current_flow(session_id, booking_id, api)

    digits = strip_card_number(number)
    if len(digits) < 6 or not digits.isdigit():
        return _respond({"bin": None}, session_id)

    result = await flow.card.lookup_bin(digits[:6])
    return _respond(
        {"bin": result.model_dump(mode="json", by_alias=True) if result else None},
        session_id,
    )


@router.post("/{booking_id}/check-again")
async def check_again(
    booking_id: int,
    request: Request,
    api: PaymentApiClient = Depends(get_api_client),
):
    """Manually restart status reconciliation."""
    client_ip = request.client.host if request.client else "unknown"
    check_rate_limit(client_ip)

    session_id = _session_id(request)
    flow = await _current_flow(session_id, booking_id, api)
    if flow.check_again() is None:
        raise HTTPException(status_code=409, detail="Check again is not available in the current state")
    return _respond(flow.view(), session_id)


@router.post("/{booking_id}/retry")
async def retry_payment(
    booking_id: int,
    request: Request,
    api: PaymentApiClient = Depends(get_api_client),
):
    """Retry after a failed or unknown outcome."""
    session_id = _session_id(request)
    flow = await _current_flow(session_id, booking_id, api)
    if not flow.can_retry:
        raise HTTPException(status_code=409, detail="Retry is not available in the current state")

    payment_url = flow.retry()
    content = flow.view()
    content["paymentUrl"] = payment_url
    return _respond(content, session_id)
