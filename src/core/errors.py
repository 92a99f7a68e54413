"""Custom exceptions for the booking payment flow."""

from typing import Optional


class PaymentFlowError(Exception):
    """Base exception for payment flow errors."""
    pass


class CardValidationError(PaymentFlowError):
    """Card input failed local validation (never reaches the network)."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


class ApiError(PaymentFlowError):
    """Backend request failed or returned an error response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InitiationError(PaymentFlowError):
    """Backend rejected the 3DS payment attempt."""
    pass


class RelayError(PaymentFlowError):
    """Could not build the relay form for the bank challenge."""
    pass


class InvalidTransitionError(PaymentFlowError):
    """Payment state machine was asked for an illegal transition."""
    pass


class LedgerError(PaymentFlowError):
    """Persisted transaction ledger could not be read or written."""
    pass


class ConfigurationError(PaymentFlowError):
    """Configuration error."""
    pass


class SecretNotFoundError(PaymentFlowError):
    """Secret not found in Secret Manager."""
    pass
