"""Exceptions raised by the ledger, the trade store and the settlement engine."""


class TradingError(Exception):
    """Base class for every business-level failure.

    ``code`` is a stable identifier the HTTP layer returns to clients.
    """
    code = "trading_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class InvalidAmount(TradingError):
    code = "invalid_amount"


class InsufficientBalance(TradingError):
    code = "insufficient_balance"


class InstrumentNotFound(TradingError):
    code = "instrument_not_found"


class AccountNotFound(TradingError):
    code = "account_not_found"


class TradeNotFound(TradingError):
    """Trade is missing, owned by another user, or already settled."""
    code = "trade_not_found"


class LedgerError(TradingError):
    """Storage failure inside the ledger (not a funds problem)."""
    code = "ledger_error"


class SettlementInconsistent(TradingError):
    """Settlement writes were partially applied and could not be undone."""
    code = "settlement_inconsistent"
