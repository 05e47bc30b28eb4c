"""SQLite audit archive for PressBox swap transactions."""

import json
import os
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from pressbox.config import PressBoxConfig, get_config
from pressbox.models import SwapTransaction

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Terminal swap transactions
CREATE TABLE IF NOT EXISTS swap_transactions (
    id TEXT PRIMARY KEY,
    site_id TEXT NOT NULL,
    from_target TEXT NOT NULL,
    to_target TEXT NOT NULL,
    state TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    warnings TEXT NOT NULL DEFAULT '[]',
    step_log TEXT NOT NULL DEFAULT '[]',
    snapshot_id TEXT,
    fatal INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_swap_transactions_site
    ON swap_transactions(site_id, started_at);
"""


class Database:
    """SQLite database manager for the swap audit trail."""

    def __init__(self, db_path: Path | None = None, timeout: float | None = None) -> None:
        """Initialize database connection."""
        if db_path is None:
            db_path = get_config().db_path
        self.db_path = Path(db_path)
        self.timeout = timeout if timeout is not None else 5.0
        self._ensure_parent_dir()

    def _ensure_parent_dir(self) -> None:
        """Ensure the parent directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _secure_db_permissions(self) -> None:
        """Set secure permissions on the database file (readable by owner only)."""
        if self.db_path.exists():
            try:
                os.chmod(self.db_path, 0o600)
            except OSError:
                pass  # May fail if not owner

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with automatic cleanup."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with transaction support."""
        with self.connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def initialize(self) -> None:
        """Initialize the database schema."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            if cursor.fetchone() is None:
                # Fresh database - create schema
                conn.executescript(SCHEMA_SQL)
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.utcnow().isoformat()),
                )

        self._secure_db_permissions()

    def get_schema_version(self) -> int:
        """Get current schema version."""
        with self.connection() as conn:
            try:
                cursor = conn.execute("SELECT MAX(version) FROM schema_version")
                return cursor.fetchone()[0] or 0
            except sqlite3.OperationalError:
                return 0

    # Swap transaction operations
    def record_transaction(
        self,
        txn: SwapTransaction,
        snapshot_id: str | None = None,
        fatal: bool = False,
    ) -> None:
        """Archive a terminal transaction."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO swap_transactions (
                    id, site_id, from_target, to_target, state,
                    started_at, completed_at, duration_ms,
                    errors, warnings, step_log, snapshot_id, fatal
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    txn.id,
                    txn.site_id,
                    txn.from_target.label,
                    txn.to_target.label,
                    txn.state.value,
                    txn.started_at.isoformat(),
                    txn.completed_at.isoformat() if txn.completed_at else None,
                    txn.duration_ms,
                    json.dumps(txn.errors),
                    json.dumps(txn.warnings),
                    json.dumps(txn.step_log),
                    snapshot_id,
                    1 if fatal else 0,
                ),
            )

    def get_transaction(self, txn_id: str) -> dict[str, Any] | None:
        """Get an archived transaction by id."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM swap_transactions WHERE id = ?", (txn_id,))
            row = cursor.fetchone()
            return self._decode(row) if row else None

    def list_transactions(
        self, site_id: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """List archived transactions, newest first."""
        with self.connection() as conn:
            if site_id:
                cursor = conn.execute(
                    """
                    SELECT * FROM swap_transactions
                    WHERE site_id = ?
                    ORDER BY started_at DESC LIMIT ?
                    """,
                    (site_id, limit),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM swap_transactions ORDER BY started_at DESC LIMIT ?",
                    (limit,),
                )
            return [self._decode(row) for row in cursor.fetchall()]

    def _decode(self, row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        for key in ("errors", "warnings", "step_log"):
            data[key] = json.loads(data[key] or "[]")
        data["fatal"] = bool(data["fatal"])
        return data


# Global database instance (loaded lazily)
_db: Database | None = None


def get_db(config: PressBoxConfig | None = None) -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        config = config or get_config()
        _db = Database(config.db_path, timeout=config.db_timeout)
        _db.initialize()
    return _db
