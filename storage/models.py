"""SQLite table definitions."""

CREATE_ACCOUNTS_TABLE = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    balance REAL NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

CREATE_LEDGER_ENTRIES_TABLE = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    amount REAL NOT NULL,
    balance_after REAL NOT NULL,
    trade_id TEXT,
    created_at TEXT NOT NULL
);
"""

CREATE_TRADES_TABLE = """
CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pair TEXT NOT NULL,
    direction TEXT NOT NULL,
    amount REAL NOT NULL,
    open_price REAL NOT NULL,
    current_price REAL NOT NULL,
    close_price REAL,
    opened_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    closed_at TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    profit REAL NOT NULL DEFAULT 0,
    predetermined_outcome INTEGER NOT NULL
);
"""

CREATE_TRADES_USER_INDEX = """
CREATE INDEX IF NOT EXISTS idx_trades_user_status ON trades (user_id, status);
"""

CREATE_SEQUENCER_COUNTERS_TABLE = """
CREATE TABLE IF NOT EXISTS sequencer_counters (
    user_id TEXT PRIMARY KEY,
    opened_count INTEGER NOT NULL DEFAULT 0
);
"""

ALL_TABLES = (
    CREATE_ACCOUNTS_TABLE,
    CREATE_LEDGER_ENTRIES_TABLE,
    CREATE_TRADES_TABLE,
    CREATE_TRADES_USER_INDEX,
    CREATE_SEQUENCER_COUNTERS_TABLE,
)
