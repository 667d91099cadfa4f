"""Settlement engine: open, expire and settle timed trades.

Every trade gets its outcome when it is opened (from the per-user
sequencer) and keeps it; only the payout size is drawn when it settles.
Opening and settling each run as one database transaction, and every
operation for a user goes through that user's lock, so a manual close
racing the expiry timer settles the trade once and the loser sees
``TradeNotFound``.
"""
import asyncio
import logging
import math
import random
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from execution.expiry_scheduler import ExpiryScheduler
from feeds.instruments import InstrumentCatalog
from feeds.quote_feed import SimulatedQuoteFeed
from shared.config import Config
from shared.errors import (
    InstrumentNotFound,
    InvalidAmount,
    SettlementInconsistent,
    TradeNotFound,
    TradingError,
)
from shared.schemas import (
    CloseResult,
    Direction,
    LedgerEntryType,
    Trade,
    TradeStatus,
    TradingStats,
)
from storage.db import Database, RollbackFailed
from storage.ledger import AccountLedger
from storage.trade_store import TradeStore
from strategy.outcome_sequencer import OutcomeSequencer
from strategy.payout import settle_profit
from strategy.thresholds import PRICE_PERTURBATION

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Owns the trade lifecycle open -> won | lost."""

    def __init__(
        self,
        db: Database,
        ledger: AccountLedger,
        trades: TradeStore,
        sequencer: OutcomeSequencer,
        catalog: InstrumentCatalog,
        quotes: Optional[SimulatedQuoteFeed] = None,
        config: Optional[Config] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.trades = trades
        self.sequencer = sequencer
        self.catalog = catalog
        self.quotes = quotes
        self.config = config or Config()
        self._rng = rng or random.Random()
        self._user_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.scheduler = ExpiryScheduler(self._auto_close)

    async def open_trade(
        self,
        user_id: str,
        pair: str,
        direction: Direction | str,
        amount: float,
        current_price: float,
    ) -> Trade:
        """Debit the stake, fix the outcome and schedule expiry."""
        if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
            raise InvalidAmount(f"Amount must be positive, got {amount!r}", amount=amount)
        instrument = self.catalog.resolve_instrument(pair)
        if instrument is None:
            logger.warning("Trade rejected", extra={"user_id": user_id, "pair": pair, "reason": "unknown pair"})
            raise InstrumentNotFound(f"Unknown instrument {pair}", pair=pair)
        direction = Direction(direction)

        async with self._user_locks[user_id]:
            trade_id = f"trade-{uuid.uuid4().hex[:12]}"
            try:
                async with self.db.transaction() as tx:
                    await self.ledger.debit(user_id, amount, conn=tx, trade_id=trade_id)
                    outcome = await self.sequencer.next_outcome(user_id, tx)
                    opened_at = datetime.utcnow()
                    trade = Trade(
                        id=trade_id,
                        user_id=user_id,
                        pair=instrument.symbol,
                        direction=direction,
                        amount=amount,
                        open_price=current_price,
                        current_price=current_price,
                        opened_at=opened_at,
                        expires_at=opened_at + timedelta(seconds=self.config.TRADE_DURATION_SECONDS),
                        predetermined_outcome=outcome,
                    )
                    await self.trades.create(trade, conn=tx)
            except RollbackFailed as e:
                logger.critical(
                    "Trade open left partial writes",
                    extra={"user_id": user_id, "trade_id": trade_id, "amount": amount},
                )
                raise SettlementInconsistent(
                    "Trade open could not be rolled back", trade_id=trade_id
                ) from e
            except TradingError as e:
                logger.warning(
                    "Trade rejected",
                    extra={"user_id": user_id, "pair": pair, "amount": amount, "reason": e.code},
                )
                raise

        self.scheduler.schedule(trade.id, trade.expires_at)
        logger.info(
            "Trade opened",
            extra={
                "trade_id": trade.id,
                "user_id": user_id,
                "pair": trade.pair,
                "direction": direction.value,
                "amount": amount,
                "price": current_price,
                "expires_at": trade.expires_at.isoformat(),
            },
        )
        return trade

    async def close_trade(self, user_id: str, trade_id: str, exit_price: float) -> CloseResult:
        """Settle an open trade; TradeNotFound if missing or already settled."""
        async with self._user_locks[user_id]:
            try:
                async with self.db.transaction() as tx:
                    trade = await self.trades.get(trade_id, conn=tx)
                    if trade is None or trade.user_id != user_id or not trade.is_open:
                        raise TradeNotFound(
                            f"No open trade {trade_id} for user {user_id}", trade_id=trade_id
                        )
                    won = trade.predetermined_outcome
                    profit = settle_profit(
                        trade.amount, won, self._rng,
                        self.config.PAYOUT_MIN, self.config.PAYOUT_MAX,
                    )
                    status = TradeStatus.WON if won else TradeStatus.LOST
                    updated = await self.trades.update(
                        trade_id,
                        {
                            "current_price": exit_price,
                            "close_price": exit_price,
                            "closed_at": datetime.utcnow(),
                            "status": status,
                            "profit": profit,
                        },
                        conn=tx,
                    )
                    if not updated:
                        raise TradeNotFound(f"Trade {trade_id} already settled", trade_id=trade_id)
                    credited = trade.amount + profit
                    balance = await self.ledger.credit(
                        user_id, credited, conn=tx, trade_id=trade_id,
                        entry_type=LedgerEntryType.TRADE_CREDIT,
                    )
            except RollbackFailed as e:
                logger.critical(
                    "Settlement left partial writes",
                    extra={"user_id": user_id, "trade_id": trade_id, "exit_price": exit_price},
                )
                raise SettlementInconsistent(
                    "Settlement could not be rolled back", trade_id=trade_id
                ) from e

        logger.info(
            "Trade settled",
            extra={
                "trade_id": trade_id,
                "user_id": user_id,
                "status": status.value,
                "profit": round(profit, 4),
                "exit_price": exit_price,
                "balance": balance,
            },
        )
        return CloseResult(
            trade_id=trade_id,
            status=status,
            profit=profit,
            close_price=exit_price,
            credited=credited,
            balance=balance,
        )

    async def _auto_close(self, trade_id: str):
        """Expiry callback: settle at the latest quote."""
        trade = await self.trades.get(trade_id)
        if trade is None or not trade.is_open:
            logger.debug("Expiry found trade already settled", extra={"trade_id": trade_id})
            return
        exit_price = self._exit_price(trade)
        try:
            await self.close_trade(trade.user_id, trade_id, exit_price)
        except TradeNotFound:
            logger.debug("Expiry lost race to manual close", extra={"trade_id": trade_id})
        except SettlementInconsistent:
            # already logged; retrying could credit twice
            return
        except Exception as e:
            retry = self.config.SETTLEMENT_RETRY_SECONDS
            logger.error(
                "Auto-close failed, retrying",
                extra={"trade_id": trade_id, "error": str(e), "retry_in": retry},
            )
            self.scheduler.schedule(trade_id, trade.expires_at, delay=retry)

    def _exit_price(self, trade: Trade) -> float:
        latest = self.quotes.latest_price(trade.pair) if self.quotes else None
        if latest is None or latest == trade.open_price:
            return trade.current_price + (self._rng.random() - 0.5) * PRICE_PERTURBATION
        return latest

    async def list_open_trades(self, user_id: str) -> list[Trade]:
        return await self.trades.list_open(user_id)

    async def list_trade_history(self, user_id: str) -> list[Trade]:
        return await self.trades.list_history(user_id)

    async def get_stats(self, user_id: str) -> TradingStats:
        opened = await self.sequencer.peek(user_id)
        return await self.trades.get_stats(user_id, consecutive_trades=opened)

    async def mark_price(self, user_id: str, trade_id: str, price: float) -> Trade:
        """Refresh the displayed price of an open trade."""
        async with self._user_locks[user_id]:
            trade = await self.trades.get(trade_id)
            if trade is None or trade.user_id != user_id:
                raise TradeNotFound(f"No open trade {trade_id} for user {user_id}", trade_id=trade_id)
            if not await self.trades.update(trade_id, {"current_price": price}):
                raise TradeNotFound(f"Trade {trade_id} already settled", trade_id=trade_id)
        return trade.model_copy(update={"current_price": price})

    async def recover_open_trades(self) -> int:
        """Reschedule expiry for trades left open by a previous run."""
        open_trades = await self.trades.list_all_open()
        for trade in open_trades:
            self.scheduler.schedule(trade.id, trade.expires_at)
        logger.info("Recovered open trades", extra={"count": len(open_trades)})
        return len(open_trades)

    async def shutdown(self):
        await self.scheduler.shutdown()
