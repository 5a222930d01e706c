from __future__ import annotations

import sqlite3

SCHEMA_VERSION = 1


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.execute("INSERT OR IGNORE INTO schema_version(version) VALUES (?)", (SCHEMA_VERSION,))
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS ledger_events (
            event_id TEXT PRIMARY KEY,
            ts TEXT NOT NULL,
            kind TEXT NOT NULL,
            signature TEXT,
            cycle_id INTEGER,
            base_amount TEXT NOT NULL DEFAULT '0',
            reward_token_amount TEXT NOT NULL DEFAULT '0',
            status TEXT NOT NULL,
            notes TEXT NOT NULL DEFAULT '',
            reward_token_price_usd TEXT,
            network_fee TEXT NOT NULL DEFAULT '0',
            protocol_fee TEXT NOT NULL DEFAULT '0'
        )
        """
    )
    event_columns = {str(row["name"]) for row in conn.execute("PRAGMA table_info(ledger_events)")}
    if "estimated_fee" not in event_columns:
        conn.execute("ALTER TABLE ledger_events ADD COLUMN estimated_fee TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_events_ts ON ledger_events(ts)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_events_kind ON ledger_events(kind)")
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_events_single_baseline
        ON ledger_events(kind)
        WHERE kind = 'baseline'
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS in_flight_deployments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            cycle_id INTEGER NOT NULL,
            base_amount TEXT NOT NULL,
            ts TEXT NOT NULL,
            resolved INTEGER NOT NULL DEFAULT 0,
            resolved_at TEXT,
            resolution TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_in_flight_unresolved
        ON in_flight_deployments(resolved, cycle_id)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS balance_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            wallet_base TEXT NOT NULL,
            wallet_reward TEXT NOT NULL,
            fund_balance TEXT NOT NULL,
            claimable_base TEXT NOT NULL,
            claimable_reward TEXT NOT NULL,
            staked_reward TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_balance_snapshots_ts ON balance_snapshots(ts)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS price_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            price_in_base TEXT NOT NULL,
            price_in_quote TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_price_history_ts ON price_history(ts)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rounds (
            cycle_id INTEGER PRIMARY KEY,
            ts TEXT NOT NULL,
            risk_parameter TEXT NOT NULL,
            deployed_amount TEXT NOT NULL,
            squares INTEGER NOT NULL,
            fund_balance_before TEXT NOT NULL,
            fund_balance_after TEXT NOT NULL,
            competition_total TEXT,
            expected_value TEXT
        )
        """
    )
