"""Tests for the session ledger."""

import json
import os
import time

import pytest

from src.core.errors import LedgerError
from src.core.ledger import SessionLedger, attempt_key, cleanup_old_ledgers, marker_key
from src.core.models import PaymentAttempt


class TestKeys:
    """Tests for ledger key layout."""

    def test_attempt_key(self):
        assert attempt_key(42) == "threeds:init:42"

    def test_marker_key(self):
        assert marker_key(42, "p1") == "threeds:init:42:sent:p1"


class TestSessionLedger:
    """Tests for SessionLedger persistence."""

    def test_missing_attempt_is_none(self, ledger):
        """A fresh session has no attempts."""
        assert ledger.get_attempt(42) is None

    def test_attempt_survives_new_instance(self, ledger, tmp_path):
        """Entries outlive the object that wrote them (navigation away and back)."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1", conversation_id="c1"))

        reloaded = SessionLedger("test-session", directory=tmp_path).get_attempt(42)

        assert reloaded.booking_id == 42
        assert reloaded.payment_id == "p1"
        assert reloaded.conversation_id == "c1"
        assert reloaded.created_at is not None

    def test_file_layout(self, ledger):
        """The document is keyed by booking with camelCase records."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1", conversation_id="c1"))
        ledger.claim_callback(42, "p1")

        data = json.loads(ledger.path.read_text())

        assert data["threeds:init:42"]["paymentId"] == "p1"
        assert data["threeds:init:42"]["conversationId"] == "c1"
        assert data["threeds:init:42:sent:p1"] is True

    def test_new_attempt_supersedes_old(self, ledger):
        """A second initiation for the same booking replaces the first."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1", conversation_id="c1"))
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p2", conversation_id="c2"))

        attempt = ledger.get_attempt(42)
        assert attempt.payment_id == "p2"
        assert attempt.conversation_id == "c2"

    def test_bookings_are_independent(self, ledger):
        """Attempts for different bookings do not interfere."""
        ledger.record_attempt(PaymentAttempt(booking_id=1, payment_id="a"))
        ledger.record_attempt(PaymentAttempt(booking_id=2, payment_id="b"))

        assert ledger.get_attempt(1).payment_id == "a"
        assert ledger.get_attempt(2).payment_id == "b"

    def test_sessions_are_isolated(self, ledger, tmp_path):
        """Another session never sees this session's attempts."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1"))

        assert SessionLedger("other-session", directory=tmp_path).get_attempt(42) is None

    def test_claim_callback_once(self, ledger, tmp_path):
        """The callback marker can be claimed exactly once, across instances."""
        assert ledger.claim_callback(42, "p1") is True
        assert ledger.claim_callback(42, "p1") is False
        assert SessionLedger("test-session", directory=tmp_path).claim_callback(42, "p1") is False
        assert ledger.callback_sent(42, "p1") is True

    def test_claims_are_per_payment(self, ledger):
        """A new payment id for the same booking has its own marker."""
        assert ledger.claim_callback(42, "p1") is True
        assert ledger.claim_callback(42, "p2") is True

    def test_close_attempt_matching_payment(self, ledger):
        """Closing removes the attempt but keeps the dedupe marker."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1"))
        ledger.claim_callback(42, "p1")

        assert ledger.close_attempt(42, "p1") is True
        assert ledger.get_attempt(42) is None
        assert ledger.callback_sent(42, "p1") is True

    def test_close_attempt_ignores_newer_attempt(self, ledger):
        """An acknowledgement for an old payment leaves a newer attempt in place."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p2"))

        assert ledger.close_attempt(42, "p1") is False
        assert ledger.get_attempt(42).payment_id == "p2"

    def test_corrupt_file_reads_as_empty(self, ledger):
        """An unreadable document is treated as an empty ledger."""
        ledger.path.parent.mkdir(parents=True, exist_ok=True)
        ledger.path.write_text("{not json")

        assert ledger.get_attempt(42) is None

        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1"))
        assert ledger.get_attempt(42).payment_id == "p1"

    def test_malformed_entry_is_discarded(self, ledger):
        """An entry without a payment id is ignored."""
        ledger.path.parent.mkdir(parents=True, exist_ok=True)
        ledger.path.write_text(json.dumps({"threeds:init:42": {"conversationId": "c1"}}))

        assert ledger.get_attempt(42) is None

    def test_clear(self, ledger):
        """Clearing removes everything for the session."""
        ledger.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1"))
        ledger.clear()

        assert ledger.get_attempt(42) is None
        assert not ledger.path.exists()

    @pytest.mark.parametrize("session_id", ["", "../etc/passwd", "a b", "x" * 129])
    def test_rejects_unsafe_session_id(self, session_id, tmp_path):
        """Session ids that could escape the ledger directory are refused."""
        with pytest.raises(LedgerError):
            SessionLedger(session_id, directory=tmp_path)


class TestCleanupOldLedgers:
    """Tests for removing abandoned session ledgers."""

    def test_removes_only_stale_files(self, tmp_path):
        """Ledgers untouched past the age limit are deleted, fresh ones stay."""
        stale = SessionLedger("stale", directory=tmp_path)
        fresh = SessionLedger("fresh", directory=tmp_path)
        stale.record_attempt(PaymentAttempt(booking_id=42, payment_id="p1"))
        fresh.record_attempt(PaymentAttempt(booking_id=42, payment_id="p2"))
        old = time.time() - 25 * 3600
        os.utime(stale.path, (old, old))

        assert cleanup_old_ledgers(tmp_path, max_age_hours=24) == 1
        assert not stale.path.exists()
        assert fresh.get_attempt(42).payment_id == "p2"

    def test_missing_directory(self, tmp_path):
        assert cleanup_old_ledgers(tmp_path / "absent") == 0
