"""Account ledger: per-user spendable balance with an audit trail."""
import aiosqlite
import logging
import math
from datetime import datetime
from typing import Optional

from shared.errors import (
    AccountNotFound,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
)
from shared.schemas import LedgerEntry, LedgerEntryType
from storage.db import Database

logger = logging.getLogger(__name__)


def _check_amount(amount: float):
    if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
        raise InvalidAmount(f"Amount must be a positive number, got {amount!r}", amount=amount)


class AccountLedger:
    """Balance store. Debit and credit join the caller's transaction when
    one is passed, so the engine can commit them together with trade rows.
    """

    def __init__(self, db: Database):
        self.db = db

    async def open_account(self, user_id: str, balance: float = 0.0) -> float:
        """Create an account if missing and return its balance."""
        if balance < 0:
            raise InvalidAmount("Opening balance cannot be negative", amount=balance)
        async with self.db.transaction() as tx:
            row = await self.db.fetchone(
                "SELECT balance FROM accounts WHERE user_id=?", (user_id,), conn=tx
            )
            if row is not None:
                return row["balance"]
            now = datetime.utcnow().isoformat()
            await tx.execute(
                "INSERT INTO accounts (user_id, balance, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (user_id, balance, now, now),
            )
            if balance > 0:
                await self._record(tx, user_id, LedgerEntryType.DEPOSIT, balance, balance)
        logger.info("Account opened", extra={"user_id": user_id, "balance": balance})
        return balance

    async def get_balance(
        self, user_id: str, conn: Optional[aiosqlite.Connection] = None
    ) -> float:
        try:
            row = await self.db.fetchone(
                "SELECT balance FROM accounts WHERE user_id=?", (user_id,), conn=conn
            )
        except aiosqlite.Error as e:
            raise LedgerError(f"Balance lookup failed: {e}", user_id=user_id) from e
        if row is None:
            raise AccountNotFound(f"No account for user {user_id}", user_id=user_id)
        return row["balance"]

    async def debit(
        self,
        user_id: str,
        amount: float,
        conn: Optional[aiosqlite.Connection] = None,
        trade_id: Optional[str] = None,
        entry_type: LedgerEntryType = LedgerEntryType.TRADE_DEBIT,
    ) -> float:
        """Subtract ``amount``; raises InsufficientBalance without mutating."""
        _check_amount(amount)
        async with self.db.join_or_begin(conn) as tx:
            try:
                cursor = await tx.execute(
                    """UPDATE accounts SET balance = balance - ?, updated_at = ?
                       WHERE user_id = ? AND balance >= ?""",
                    (amount, datetime.utcnow().isoformat(), user_id, amount),
                )
            except aiosqlite.Error as e:
                raise LedgerError(f"Debit failed: {e}", user_id=user_id) from e
            if cursor.rowcount == 0:
                balance = await self.get_balance(user_id, conn=tx)
                raise InsufficientBalance(
                    f"Balance {balance:.2f} is below {amount:.2f}",
                    user_id=user_id, balance=balance, amount=amount,
                )
            balance = await self.get_balance(user_id, conn=tx)
            await self._record(tx, user_id, entry_type, -amount, balance, trade_id)
        return balance

    async def credit(
        self,
        user_id: str,
        amount: float,
        conn: Optional[aiosqlite.Connection] = None,
        trade_id: Optional[str] = None,
        entry_type: LedgerEntryType = LedgerEntryType.TRADE_CREDIT,
    ) -> float:
        """Add ``amount`` and return the new balance.

        A zero credit is allowed: a lost trade returns nothing but is
        still recorded against the account.
        """
        if not math.isfinite(amount) or amount < 0:
            raise InvalidAmount(f"Credit must be non-negative, got {amount!r}", amount=amount)
        async with self.db.join_or_begin(conn) as tx:
            try:
                cursor = await tx.execute(
                    """UPDATE accounts SET balance = balance + ?, updated_at = ?
                       WHERE user_id = ?""",
                    (amount, datetime.utcnow().isoformat(), user_id),
                )
            except aiosqlite.Error as e:
                raise LedgerError(f"Credit failed: {e}", user_id=user_id) from e
            if cursor.rowcount == 0:
                raise AccountNotFound(f"No account for user {user_id}", user_id=user_id)
            balance = await self.get_balance(user_id, conn=tx)
            await self._record(tx, user_id, entry_type, amount, balance, trade_id)
        return balance

    async def deposit(self, user_id: str, amount: float) -> float:
        _check_amount(amount)
        balance = await self.credit(user_id, amount, entry_type=LedgerEntryType.DEPOSIT)
        logger.info(
            "Deposit recorded",
            extra={"user_id": user_id, "amount": amount, "balance": balance},
        )
        return balance

    async def withdraw(self, user_id: str, amount: float) -> float:
        balance = await self.debit(user_id, amount, entry_type=LedgerEntryType.WITHDRAWAL)
        logger.info(
            "Withdrawal recorded",
            extra={"user_id": user_id, "amount": amount, "balance": balance},
        )
        return balance

    async def list_entries(self, user_id: str, limit: int = 50) -> list[LedgerEntry]:
        rows = await self.db.fetchall(
            "SELECT * FROM ledger_entries WHERE user_id=? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        return [LedgerEntry(**row) for row in rows]

    async def _record(
        self,
        tx: aiosqlite.Connection,
        user_id: str,
        entry_type: LedgerEntryType,
        amount: float,
        balance_after: float,
        trade_id: Optional[str] = None,
    ):
        try:
            await tx.execute(
                """INSERT INTO ledger_entries
                   (user_id, type, amount, balance_after, trade_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    user_id, entry_type.value, amount, balance_after, trade_id,
                    datetime.utcnow().isoformat(),
                ),
            )
        except aiosqlite.Error as e:
            raise LedgerError(f"Ledger entry write failed: {e}", user_id=user_id) from e
