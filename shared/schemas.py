"""Pydantic models for everything crossing the engine boundary."""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"

    @classmethod
    def _missing_(cls, value):
        # buy/call and sell/put are the front-end vocabularies
        if isinstance(value, str):
            aliases = {"buy": cls.UP, "call": cls.UP, "sell": cls.DOWN, "put": cls.DOWN}
            lowered = value.lower()
            if lowered in aliases:
                return aliases[lowered]
            if lowered in ("up", "down"):
                return cls(lowered)
        return None

    @property
    def sign(self) -> int:
        return 1 if self is Direction.UP else -1


class TradeStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class Trade(BaseModel):
    """A single timed win/lose prediction with a stake."""
    id: str
    user_id: str
    pair: str
    direction: Direction
    amount: float
    open_price: float
    current_price: float
    close_price: Optional[float] = None
    opened_at: datetime
    expires_at: datetime
    closed_at: Optional[datetime] = None
    status: TradeStatus = TradeStatus.OPEN
    profit: float = 0.0
    # decided at open, never sent to clients
    predetermined_outcome: bool = Field(exclude=True)

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    @property
    def unrealized_profit(self) -> float:
        """Display-only P&L from price movement; settlement ignores it."""
        if not self.is_open or self.open_price == 0:
            return 0.0
        diff = self.current_price - self.open_price
        return diff * self.direction.sign * self.amount / self.open_price


class CloseResult(BaseModel):
    """Outcome of a successful settlement."""
    trade_id: str
    status: TradeStatus
    profit: float
    close_price: float
    credited: float
    balance: float


class TradingStats(BaseModel):
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_profit: float = 0.0
    consecutive_trades: int = 0


class CurrencyPair(BaseModel):
    symbol: str
    name: str = ""
    price: float


class PriceTick(BaseModel):
    """Quote update from the price source."""
    pair: str
    price: float
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class LedgerEntryType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRADE_DEBIT = "trade_debit"
    TRADE_CREDIT = "trade_credit"


class LedgerEntry(BaseModel):
    """Persisted balance movement."""
    id: Optional[int] = None
    user_id: str
    type: LedgerEntryType
    amount: float
    balance_after: float
    trade_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OpenTradeRequest(BaseModel):
    user_id: str
    pair: str
    direction: Direction
    amount: float
    current_price: float


class CloseTradeRequest(BaseModel):
    user_id: str
    exit_price: float


class FundsRequest(BaseModel):
    amount: float
