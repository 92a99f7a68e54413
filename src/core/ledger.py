"""Session-scoped ledger of in-flight 3DS payment attempts.

The bank challenge is a full navigation away from the application, so any
in-memory state is gone by the time the customer returns. The ledger keeps
the identifiers issued at initiation (and the callback dedupe markers) in a
small JSON document per session that survives reloads and process restarts.

Layout of a session document::

    {
        "threeds:init:42": {"paymentId": "...", "conversationId": "...", "createdAt": "..."},
        "threeds:init:42:sent:p1": true
    }
"""

import json
import os
import re
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import get_settings
from .errors import LedgerError
from .logging import get_logger
from .models import PaymentAttempt

logger = get_logger(__name__)

KEY_PREFIX = "threeds:init"

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# Writes within one process are serialized; each session file is replaced atomically.
_ledger_lock = threading.Lock()


def attempt_key(booking_id: int) -> str:
    return f"{KEY_PREFIX}:{booking_id}"


def marker_key(booking_id: int, payment_id: str) -> str:
    return f"{attempt_key(booking_id)}:sent:{payment_id}"


class SessionLedger:
    """Durable key-value record for one browser session."""

    def __init__(self, session_id: str, directory: Optional[Path] = None):
        if not _SESSION_ID_PATTERN.match(session_id):
            raise LedgerError(f"Invalid session id: {session_id!r}")
        self.session_id = session_id
        self.directory = Path(directory) if directory is not None else get_settings().ledger_dir
        self.path = self.directory / f"{session_id}.json"

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ledger file unreadable, starting empty", session_id=self.session_id, error=str(e))
            return {}
        if not isinstance(data, dict):
            logger.warning("Ledger file malformed, starting empty", session_id=self.session_id)
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{self.session_id}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise LedgerError(f"Failed to write ledger for session {self.session_id}: {e}") from e

    def record_attempt(self, attempt: PaymentAttempt) -> None:
        """Store the attempt for its booking, replacing any earlier one."""
        record = attempt.model_dump(mode="json", by_alias=True, exclude={"booking_id"})
        with _ledger_lock:
            data = self._read()
            previous = data.get(attempt_key(attempt.booking_id))
            data[attempt_key(attempt.booking_id)] = record
            self._write(data)

        if previous and previous.get("paymentId") != attempt.payment_id:
            logger.info(
                "Payment attempt superseded",
                booking_id=attempt.booking_id,
                previous_payment_id=previous.get("paymentId"),
                payment_id=attempt.payment_id,
            )
        else:
            logger.info("Payment attempt recorded", booking_id=attempt.booking_id, payment_id=attempt.payment_id)

    def get_attempt(self, booking_id: int) -> Optional[PaymentAttempt]:
        with _ledger_lock:
            record = self._read().get(attempt_key(booking_id))
        if not record:
            return None
        try:
            return PaymentAttempt.model_validate({**record, "bookingId": booking_id})
        except ValidationError as e:
            logger.warning("Discarding malformed ledger entry", booking_id=booking_id, error=str(e))
            return None

    def close_attempt(self, booking_id: int, payment_id: str) -> bool:
        """Drop the attempt once the backend acknowledged it.

        Only removes the entry if it still belongs to ``payment_id``; a newer
        attempt for the same booking is left alone. Dedupe markers are kept.
        """
        with _ledger_lock:
            data = self._read()
            record = data.get(attempt_key(booking_id))
            if not record or record.get("paymentId") != payment_id:
                return False
            del data[attempt_key(booking_id)]
            self._write(data)
        logger.info("Payment attempt closed", booking_id=booking_id, payment_id=payment_id)
        return True

    def callback_sent(self, booking_id: int, payment_id: str) -> bool:
        with _ledger_lock:
            return bool(self._read().get(marker_key(booking_id, payment_id)))

    def claim_callback(self, booking_id: int, payment_id: str) -> bool:
        """Compare-and-set the callback marker.

        Returns True exactly once per (booking, payment) for this session; the
        marker is on disk before this returns.
        """
        key = marker_key(booking_id, payment_id)
        with _ledger_lock:
            data = self._read()
            if data.get(key):
                return False
            data[key] = True
            self._write(data)
        return True

    def clear(self) -> None:
        with _ledger_lock:
            if self.path.exists():
                self.path.unlink()


def cleanup_old_ledgers(directory: Optional[Path] = None, max_age_hours: int = 24) -> int:
    """
    Delete session ledgers not written for longer than the given age.

    Args:
        directory: Ledger directory (defaults to settings.ledger_dir)
        max_age_hours: Maximum age in hours

    Returns:
        Number of ledger files removed
    """
    directory = Path(directory) if directory is not None else get_settings().ledger_dir
    if not directory.is_dir():
        return 0

    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    with _ledger_lock:
        for path in directory.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as e:
                logger.warning("Could not remove stale ledger", path=str(path), error=str(e))

    if removed:
        logger.info("Cleaned up old session ledgers", count=removed, max_age_hours=max_age_hours)
    return removed
