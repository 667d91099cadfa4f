"""Durable trade records keyed by user and trade id."""
import aiosqlite
from datetime import datetime
from typing import Any, Optional

from shared.schemas import Direction, Trade, TradeStatus, TradingStats
from storage.db import Database


_UPDATABLE = {
    "current_price", "close_price", "closed_at", "status", "profit",
}


def _to_row_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (TradeStatus, Direction)):
        return value.value
    return value


def _row_to_trade(row: dict) -> Trade:
    row = dict(row)
    row["predetermined_outcome"] = bool(row["predetermined_outcome"])
    return Trade(**row)


class TradeStore:
    """Trade rows in SQLite. Writes join the caller's transaction if given."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, trade: Trade, conn: Optional[aiosqlite.Connection] = None) -> Trade:
        async with self.db.join_or_begin(conn) as tx:
            await tx.execute(
                """INSERT INTO trades
                   (id, user_id, pair, direction, amount, open_price,
                    current_price, close_price, opened_at, expires_at,
                    closed_at, status, profit, predetermined_outcome)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    trade.id, trade.user_id, trade.pair, trade.direction.value,
                    trade.amount, trade.open_price, trade.current_price,
                    trade.close_price, trade.opened_at.isoformat(),
                    trade.expires_at.isoformat(),
                    trade.closed_at.isoformat() if trade.closed_at else None,
                    trade.status.value, trade.profit,
                    1 if trade.predetermined_outcome else 0,
                ),
            )
        return trade

    async def get(
        self, trade_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[Trade]:
        row = await self.db.fetchone("SELECT * FROM trades WHERE id=?", (trade_id,), conn=conn)
        return _row_to_trade(row) if row else None

    async def update(
        self,
        trade_id: str,
        fields: dict,
        conn: Optional[aiosqlite.Connection] = None,
        only_if_status: Optional[TradeStatus] = TradeStatus.OPEN,
    ) -> bool:
        """Apply ``fields`` to a trade; False when no row matched.

        By default only open trades are touched, which is what makes a
        second settlement of the same trade a no-op.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update trade fields: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{name}=?" for name in fields)
        params = [_to_row_value(v) for v in fields.values()]
        sql = f"UPDATE trades SET {assignments} WHERE id=?"
        params.append(trade_id)
        if only_if_status is not None:
            sql += " AND status=?"
            params.append(only_if_status.value)
        async with self.db.join_or_begin(conn) as tx:
            cursor = await tx.execute(sql, tuple(params))
        return cursor.rowcount == 1

    async def list_open(self, user_id: str) -> list[Trade]:
        rows = await self.db.fetchall(
            "SELECT * FROM trades WHERE user_id=? AND status='open' ORDER BY opened_at DESC",
            (user_id,),
        )
        return [_row_to_trade(r) for r in rows]

    async def list_history(self, user_id: str, limit: Optional[int] = None) -> list[Trade]:
        """Resolved trades, newest first."""
        sql = (
            "SELECT * FROM trades WHERE user_id=? AND status!='open' "
            "ORDER BY closed_at DESC, opened_at DESC"
        )
        params: tuple = (user_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (user_id, limit)
        rows = await self.db.fetchall(sql, params)
        return [_row_to_trade(r) for r in rows]

    async def list_all_open(self) -> list[Trade]:
        rows = await self.db.fetchall(
            "SELECT * FROM trades WHERE status='open' ORDER BY expires_at"
        )
        return [_row_to_trade(r) for r in rows]

    async def get_stats(self, user_id: str, consecutive_trades: int = 0) -> TradingStats:
        """Aggregate resolved-trade statistics."""
        row = await self.db.fetchone(
            """SELECT
                 COUNT(*) as total_trades,
                 COALESCE(SUM(CASE WHEN status='won' THEN 1 ELSE 0 END), 0) as winning_trades,
                 COALESCE(SUM(CASE WHEN status='lost' THEN 1 ELSE 0 END), 0) as losing_trades,
                 COALESCE(SUM(profit), 0) as total_profit
               FROM trades WHERE user_id=? AND status!='open'""",
            (user_id,),
        )
        total = row["total_trades"]
        win_rate = (row["winning_trades"] / total * 100) if total > 0 else 0.0
        return TradingStats(
            total_trades=total,
            winning_trades=row["winning_trades"],
            losing_trades=row["losing_trades"],
            win_rate=win_rate,
            total_profit=row["total_profit"],
            consecutive_trades=consecutive_trades,
        )
