"""Shared exception types for the position lifecycle engine."""

from typing import Optional


class SignalTradingError(Exception):
    """Base class for all engine errors."""


class ValidationError(SignalTradingError):
    """Raised when an inbound signal is malformed.

    A signal that fails validation never reaches admission control.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PersistenceError(SignalTradingError):
    """Raised when the position store cannot be read or written."""

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class ExecutionError(SignalTradingError):
    """Raised when a swap could not be executed."""

    def __init__(self, message: str, position_id: Optional[str] = None):
        super().__init__(message)
        self.position_id = position_id


class RecoveryError(SignalTradingError):
    """Raised when a single persisted record cannot be recovered."""

    def __init__(self, position_id: Optional[str], message: str):
        super().__init__(f"{position_id or '<unknown>'}: {message}")
        self.position_id = position_id


class PositionStateError(SignalTradingError):
    """Raised on a mutation of an unknown or terminal position."""


class PriceOracleError(SignalTradingError):
    """Raised when a price source fails or returns an unusable response."""
