"""Deterministic per-user win/lose schedule: three wins, then two losses."""
import aiosqlite
from typing import Optional

from storage.db import Database
from strategy.thresholds import CYCLE_LENGTH, WINS_PER_CYCLE


def is_winning_position(prior_open_count: int) -> bool:
    """Whether the trade opened after ``prior_open_count`` earlier trades wins."""
    if prior_open_count < 0:
        raise ValueError("prior_open_count must be non-negative")
    return prior_open_count % CYCLE_LENGTH < WINS_PER_CYCLE


class OutcomeSequencer:
    """Persists how many trades each user has opened.

    The counter only ever moves forward, once per opened trade.
    """

    def __init__(self, db: Database):
        self.db = db

    async def peek(self, user_id: str, conn: Optional[aiosqlite.Connection] = None) -> int:
        row = await self.db.fetchone(
            "SELECT opened_count FROM sequencer_counters WHERE user_id=?",
            (user_id,), conn=conn,
        )
        return row["opened_count"] if row else 0

    async def next_outcome(self, user_id: str, conn: aiosqlite.Connection) -> bool:
        """Decide the outcome of the trade being opened and advance the counter.

        Must run inside the transaction that creates the trade so a failed
        open leaves the counter untouched.
        """
        prior = await self.peek(user_id, conn=conn)
        outcome = is_winning_position(prior)
        await conn.execute(
            """INSERT INTO sequencer_counters (user_id, opened_count) VALUES (?, 1)
               ON CONFLICT(user_id) DO UPDATE SET opened_count = opened_count + 1""",
            (user_id,),
        )
        return outcome
