"""Test configuration and fixtures."""
import random
import sys
from pathlib import Path

import pytest_asyncio

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from execution.settlement import SettlementEngine  # noqa: E402
from feeds.instruments import InstrumentCatalog  # noqa: E402
from shared.config import Config  # noqa: E402
from storage.db import Database  # noqa: E402
from storage.ledger import AccountLedger  # noqa: E402
from storage.trade_store import TradeStore  # noqa: E402
from strategy.outcome_sequencer import OutcomeSequencer  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def ledger(db):
    return AccountLedger(db)


@pytest_asyncio.fixture
async def engine(db):
    """Engine with a long expiry so timers never fire mid-test."""
    eng = SettlementEngine(
        db=db,
        ledger=AccountLedger(db),
        trades=TradeStore(db),
        sequencer=OutcomeSequencer(db),
        catalog=InstrumentCatalog(),
        config=Config(TRADE_DURATION_SECONDS=3600, SETTLEMENT_RETRY_SECONDS=0.05),
        rng=random.Random(7),
    )
    yield eng
    await eng.shutdown()
