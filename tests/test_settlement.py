"""Tests for execution.settlement."""
import asyncio
import random
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from execution.settlement import SettlementEngine
from feeds.instruments import InstrumentCatalog
from feeds.quote_feed import SimulatedQuoteFeed
from shared.config import Config
from shared.errors import (
    InstrumentNotFound,
    InsufficientBalance,
    InvalidAmount,
    LedgerError,
    SettlementInconsistent,
    TradeNotFound,
)
from shared.schemas import Direction, LedgerEntryType, TradeStatus
from storage.db import RollbackFailed
from storage.ledger import AccountLedger
from storage.trade_store import TradeStore
from strategy.outcome_sequencer import OutcomeSequencer


async def _funded(engine, user="alice", balance=1000.0):
    await engine.ledger.open_account(user, balance)
    return user


async def _open(engine, user="alice", amount=10.0, pair="EUR/USD", direction="up"):
    return await engine.open_trade(user, pair, direction, amount, 1.0875)


@pytest.mark.asyncio
async def test_open_trade_debits_and_creates_open_trade(engine):
    user = await _funded(engine)
    trade = await _open(engine, user, amount=25.0)

    assert trade.status == TradeStatus.OPEN
    assert trade.profit == 0.0
    assert trade.direction == Direction.UP
    assert trade.expires_at - trade.opened_at == timedelta(seconds=3600)
    assert await engine.ledger.get_balance(user) == 975.0

    stored = await engine.trades.get(trade.id)
    assert stored.model_dump() == trade.model_dump()
    assert stored.predetermined_outcome is True
    assert engine.scheduler.is_scheduled(trade.id)


@pytest.mark.asyncio
async def test_sequencing_law_ten_trades(engine):
    user = await _funded(engine)
    trades = [await _open(engine, user) for _ in range(10)]
    results = [await engine.close_trade(user, t.id, 1.09) for t in trades]
    statuses = [r.status for r in results]
    W, L = TradeStatus.WON, TradeStatus.LOST
    assert statuses == [W, W, W, L, L, W, W, W, L, L]


@pytest.mark.asyncio
async def test_outcome_fixed_at_open_even_if_closed_out_of_order(engine):
    user = await _funded(engine)
    trades = [await _open(engine, user) for _ in range(5)]
    for t in reversed(trades):
        await engine.close_trade(user, t.id, 1.0)
    history = {t.id: t.status for t in await engine.list_trade_history(user)}
    assert [history[t.id] for t in trades] == [
        TradeStatus.WON, TradeStatus.WON, TradeStatus.WON, TradeStatus.LOST, TradeStatus.LOST,
    ]


@pytest.mark.asyncio
async def test_direction_and_amount_do_not_change_outcome(engine):
    user = await _funded(engine)
    a = await engine.open_trade(user, "GBP/USD", "sell", 5.0, 1.26)
    b = await engine.open_trade(user, "USD/JPY", "put", 50.0, 148.0)
    assert a.direction == Direction.DOWN and b.direction == Direction.DOWN
    assert a.predetermined_outcome is True
    assert b.predetermined_outcome is True


@pytest.mark.asyncio
async def test_winning_close_credits_stake_plus_payout(engine):
    user = await _funded(engine)
    trade = await _open(engine, user, amount=100.0)
    result = await engine.close_trade(user, trade.id, 1.09)

    assert result.status == TradeStatus.WON
    assert 70.0 <= result.profit < 90.0
    assert result.credited == pytest.approx(100.0 + result.profit)
    assert await engine.ledger.get_balance(user) == pytest.approx(1000.0 + result.profit)

    closed = await engine.trades.get(trade.id)
    assert closed.status == TradeStatus.WON
    assert closed.close_price == 1.09
    assert closed.closed_at is not None
    assert closed.profit == result.profit


@pytest.mark.asyncio
async def test_losing_close_forfeits_stake(engine):
    user = await _funded(engine)
    for _ in range(3):
        t = await _open(engine, user, amount=10.0)
        await engine.close_trade(user, t.id, 1.0)
    before = await engine.ledger.get_balance(user)

    loser = await _open(engine, user, amount=40.0)
    assert loser.predetermined_outcome is False
    result = await engine.close_trade(user, loser.id, 1.2)

    assert result.status == TradeStatus.LOST
    assert result.profit == -40.0
    assert result.credited == 0.0
    assert await engine.ledger.get_balance(user) == pytest.approx(before - 40.0)


@pytest.mark.asyncio
async def test_close_twice_is_idempotent(engine):
    user = await _funded(engine)
    trade = await _open(engine, user)
    first = await engine.close_trade(user, trade.id, 1.1)
    balance = await engine.ledger.get_balance(user)

    with pytest.raises(TradeNotFound):
        await engine.close_trade(user, trade.id, 2.2)

    assert await engine.ledger.get_balance(user) == balance
    closed = await engine.trades.get(trade.id)
    assert closed.close_price == 1.1
    assert closed.profit == first.profit
    credits = [
        e for e in await engine.ledger.list_entries(user)
        if e.type == LedgerEntryType.TRADE_CREDIT
    ]
    assert len(credits) == 1


@pytest.mark.asyncio
async def test_close_other_users_trade_not_found(engine):
    await _funded(engine, "alice")
    await _funded(engine, "bob")
    trade = await _open(engine, "alice")
    with pytest.raises(TradeNotFound):
        await engine.close_trade("bob", trade.id, 1.0)
    with pytest.raises(TradeNotFound):
        await engine.close_trade("alice", "trade-missing", 1.0)
    assert (await engine.trades.get(trade.id)).is_open


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_state_unchanged(engine):
    user = await _funded(engine, balance=30.0)
    with pytest.raises(InsufficientBalance):
        await _open(engine, user, amount=30.01)
    assert await engine.ledger.get_balance(user) == 30.0
    assert await engine.sequencer.peek(user) == 0
    assert await engine.list_open_trades(user) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1.0, float("nan")])
async def test_invalid_amount_rejected(engine, amount):
    user = await _funded(engine)
    with pytest.raises(InvalidAmount):
        await _open(engine, user, amount=amount)
    assert await engine.sequencer.peek(user) == 0


@pytest.mark.asyncio
async def test_unknown_instrument_rejected(engine):
    user = await _funded(engine)
    with pytest.raises(InstrumentNotFound):
        await _open(engine, user, pair="BTC/DOGE")
    assert await engine.ledger.get_balance(user) == 1000.0
    assert await engine.sequencer.peek(user) == 0


@pytest.mark.asyncio
async def test_counter_moves_only_on_open(engine):
    user = await _funded(engine)
    t1 = await _open(engine, user)
    t2 = await _open(engine, user)
    assert await engine.sequencer.peek(user) == 2
    await engine.close_trade(user, t1.id, 1.0)
    await engine.close_trade(user, t2.id, 1.0)
    assert await engine.sequencer.peek(user) == 2


@pytest.mark.asyncio
async def test_counters_are_per_user(engine):
    await _funded(engine, "alice")
    await _funded(engine, "bob")
    for _ in range(4):
        await _open(engine, "alice")
    bob_trade = await _open(engine, "bob")
    assert bob_trade.predetermined_outcome is True
    assert await engine.sequencer.peek("alice") == 4
    assert await engine.sequencer.peek("bob") == 1


@pytest.mark.asyncio
async def test_manual_close_races_auto_close(engine):
    user = await _funded(engine)
    trade = await _open(engine, user, amount=50.0)

    results = await asyncio.gather(
        engine.close_trade(user, trade.id, 1.11),
        engine._auto_close(trade.id),
        return_exceptions=True,
    )
    assert not any(isinstance(r, Exception) for r in results)

    closed = await engine.trades.get(trade.id)
    assert closed.status == TradeStatus.WON
    credits = [
        e for e in await engine.ledger.list_entries(user)
        if e.type == LedgerEntryType.TRADE_CREDIT
    ]
    assert len(credits) == 1
    assert credits[0].amount == pytest.approx(50.0 + closed.profit)
    assert await engine.ledger.get_balance(user) == pytest.approx(1000.0 + closed.profit)


@pytest.mark.asyncio
async def test_concurrent_manual_closes_settle_once(engine):
    user = await _funded(engine)
    trade = await _open(engine, user, amount=50.0)
    results = await asyncio.gather(
        *(engine.close_trade(user, trade.id, 1.0 + i / 100) for i in range(5)),
        return_exceptions=True,
    )
    settled = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, TradeNotFound)]
    assert len(settled) == 1
    assert len(rejected) == 4


@pytest.mark.asyncio
async def test_ledger_failure_rolls_back_settlement(engine):
    user = await _funded(engine)
    trade = await _open(engine, user, amount=10.0)
    with patch.object(engine.ledger, "credit", AsyncMock(side_effect=LedgerError("disk full"))):
        with pytest.raises(LedgerError):
            await engine.close_trade(user, trade.id, 1.0)

    assert (await engine.trades.get(trade.id)).is_open
    assert await engine.ledger.get_balance(user) == 990.0

    result = await engine.close_trade(user, trade.id, 1.0)
    assert result.status == TradeStatus.WON


@pytest.mark.asyncio
async def test_failed_rollback_surfaces_inconsistency(engine):
    user = await _funded(engine)
    trade = await _open(engine, user)
    failing_credit = AsyncMock(side_effect=LedgerError("lost connection"))
    failing_rollback = AsyncMock(side_effect=RollbackFailed("rollback failed"))
    with patch.object(engine.ledger, "credit", failing_credit), \
            patch.object(engine.db, "_rollback", failing_rollback):
        with pytest.raises(SettlementInconsistent):
            await engine.close_trade(user, trade.id, 1.0)


@pytest.mark.asyncio
async def test_mark_price_updates_display_only(engine):
    user = await _funded(engine)
    trade = await engine.open_trade(user, "EUR/USD", "down", 100.0, 1.0)
    marked = await engine.mark_price(user, trade.id, 0.99)
    assert marked.current_price == 0.99
    assert marked.unrealized_profit == pytest.approx(1.0)
    assert marked.profit == 0.0

    await engine.close_trade(user, trade.id, 0.98)
    with pytest.raises(TradeNotFound):
        await engine.mark_price(user, trade.id, 0.97)


@pytest.mark.asyncio
async def test_stats_and_listings(engine):
    user = await _funded(engine)
    trades = [await _open(engine, user, amount=10.0) for _ in range(5)]
    for t in trades[:4]:
        await engine.close_trade(user, t.id, 1.0)

    open_trades = await engine.list_open_trades(user)
    assert [t.id for t in open_trades] == [trades[4].id]
    history = await engine.list_trade_history(user)
    assert len(history) == 4
    assert all(not t.is_open for t in history)

    stats = await engine.get_stats(user)
    assert stats.total_trades == 4
    assert stats.winning_trades == 3
    assert stats.losing_trades == 1
    assert stats.win_rate == pytest.approx(75.0)
    assert stats.consecutive_trades == 5
    assert stats.total_profit == pytest.approx(sum(t.profit for t in history))


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

def _fast_engine(db, quotes=None, duration=0.05):
    catalog = InstrumentCatalog()
    return SettlementEngine(
        db=db,
        ledger=AccountLedger(db),
        trades=TradeStore(db),
        sequencer=OutcomeSequencer(db),
        catalog=catalog,
        quotes=quotes,
        config=Config(TRADE_DURATION_SECONDS=duration, SETTLEMENT_RETRY_SECONDS=0.05),
        rng=random.Random(11),
    )


async def _wait_settled(engine, trade_id, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        trade = await engine.trades.get(trade_id)
        if not trade.is_open:
            return trade
        await asyncio.sleep(0.02)
    raise AssertionError(f"trade {trade_id} still open")


@pytest.mark.asyncio
async def test_auto_close_uses_latest_quote(db):
    quotes = SimulatedQuoteFeed(InstrumentCatalog())
    engine = _fast_engine(db, quotes=quotes)
    await engine.ledger.open_account("alice", 100.0)
    trade = await engine.open_trade("alice", "EUR/USD", "up", 10.0, 1.0875)
    quotes.update_price("EUR/USD", 1.1)

    settled = await _wait_settled(engine, trade.id)
    assert settled.status == TradeStatus.WON
    assert settled.close_price == 1.1
    await engine.shutdown()


@pytest.mark.asyncio
async def test_auto_close_perturbs_price_without_quotes(db):
    engine = _fast_engine(db)
    await engine.ledger.open_account("alice", 100.0)
    trade = await engine.open_trade("alice", "EUR/USD", "up", 10.0, 1.0875)

    settled = await _wait_settled(engine, trade.id)
    assert abs(settled.close_price - 1.0875) <= 0.005
    await engine.shutdown()


@pytest.mark.asyncio
async def test_manual_close_before_expiry_makes_timer_a_noop(db):
    engine = _fast_engine(db, duration=0.1)
    await engine.ledger.open_account("alice", 100.0)
    trade = await engine.open_trade("alice", "EUR/USD", "up", 10.0, 1.0)
    result = await engine.close_trade("alice", trade.id, 1.05)

    await asyncio.sleep(0.2)
    closed = await engine.trades.get(trade.id)
    assert closed.close_price == 1.05
    assert await engine.ledger.get_balance("alice") == pytest.approx(100.0 + result.profit)
    assert engine.scheduler.pending == 0
    await engine.shutdown()


@pytest.mark.asyncio
async def test_auto_close_retries_after_failure(db):
    engine = _fast_engine(db)
    await engine.ledger.open_account("alice", 100.0)
    real_credit = engine.ledger.credit
    failures = AsyncMock(side_effect=[LedgerError("busy"), None])

    async def flaky_credit(*args, **kwargs):
        if failures.await_count == 0:
            await failures()
        return await real_credit(*args, **kwargs)

    with patch.object(engine.ledger, "credit", flaky_credit):
        trade = await engine.open_trade("alice", "EUR/USD", "up", 10.0, 1.0)
        settled = await _wait_settled(engine, trade.id)
    assert settled.status == TradeStatus.WON
    assert failures.await_count == 1
    await engine.shutdown()


@pytest.mark.asyncio
async def test_recover_open_trades_settles_expired(db):
    first = _fast_engine(db, duration=3600)
    await first.ledger.open_account("alice", 100.0)
    trade = await first.open_trade("alice", "EUR/USD", "up", 10.0, 1.0)
    await first.shutdown()
    await first.trades.db.conn.execute(
        "UPDATE trades SET expires_at=? WHERE id=?",
        ((datetime.utcnow() - timedelta(seconds=1)).isoformat(), trade.id),
    )

    second = _fast_engine(db)
    assert await second.recover_open_trades() == 1
    settled = await _wait_settled(second, trade.id)
    assert settled.status == TradeStatus.WON
    await second.shutdown()
