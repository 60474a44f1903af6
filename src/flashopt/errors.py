"""
Error taxonomy for the flashopt engine.

ErrorCode values are what trade operations hand back to callers; the
exception classes are raised inside module boundaries and converted to
codes by the lifecycle controller.
"""

from enum import Enum


class ErrorCode(Enum):
    """Normalized error codes for trade operation results."""
    FEED_UNAVAILABLE = "feed_unavailable"
    INVALID_TRADE_REQUEST = "invalid_trade_request"
    DUPLICATE_PLACEMENT = "duplicate_placement"
    LEDGER_REJECTED = "ledger_rejected"
    SETTLEMENT_STALE = "settlement_stale"
    NO_ACTIVE_TRADE = "no_active_trade"


class FlashOptError(Exception):
    """Base exception for flashopt errors."""
    pass


class ConfigurationError(FlashOptError):
    """Raised when configuration is invalid."""
    pass


class InvalidTradeRequest(FlashOptError):
    """Raised when trade parameters are malformed or out of range."""
    pass


class LedgerError(FlashOptError):
    """Raised when the external ledger fails or refuses a request."""
    pass

