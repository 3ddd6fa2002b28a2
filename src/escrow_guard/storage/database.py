"""Async SQLite document store for escrow mirrors.

Uses ``aiosqlite`` for non-blocking database access with WAL mode and
dictionary-style row results. Mirrors are stored as JSON documents keyed
by transaction id and indexed by escrow id.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite

from escrow_guard.storage.models import TransactionMirror


class Database:
    """Thin async wrapper around an SQLite database.

    Parameters
    ----------
    db_path:
        Filesystem path to the SQLite database file.  The file (and any
        intermediate directories) will be created automatically on
        :meth:`connect` if they do not already exist. ``":memory:"`` keeps
        everything in memory.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database connection, enable WAL mode, and run migrations."""
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        await self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.row_factory = sqlite3.Row
        await self._migrate()

    async def close(self) -> None:
        """Close the database connection gracefully."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        """Execute a SQL statement and commit."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> Optional[dict]:
        """Execute a query and return the first row as a dict, or ``None``."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        return dict(row)

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a query and return all rows as a list of dicts."""
        assert self._conn is not None, "Database not connected. Call connect() first."
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def _migrate(self) -> None:
        """Create all required tables if they do not already exist."""
        assert self._conn is not None

        await self._conn.executescript(
            """\
            CREATE TABLE IF NOT EXISTS escrow_mirrors (
                transaction_id TEXT PRIMARY KEY,
                escrow_id INTEGER UNIQUE NOT NULL,
                status TEXT NOT NULL,
                buyer_email TEXT NOT NULL,
                seller_email TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_escrow_mirrors_status
                ON escrow_mirrors (status);
            CREATE INDEX IF NOT EXISTS idx_escrow_mirrors_buyer
                ON escrow_mirrors (buyer_email);
            CREATE INDEX IF NOT EXISTS idx_escrow_mirrors_seller
                ON escrow_mirrors (seller_email);
            """
        )
        await self._conn.commit()


class MirrorStore:
    """Reads and writes :class:`TransactionMirror` documents."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, mirror: TransactionMirror) -> None:
        """Insert or overwrite the mirror document."""
        await self.db.execute(
            "INSERT INTO escrow_mirrors "
            "(transaction_id, escrow_id, status, buyer_email, seller_email, document) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(transaction_id) DO UPDATE SET "
            "status = excluded.status, document = excluded.document, "
            "updated_at = CURRENT_TIMESTAMP",
            (
                mirror.transaction_id,
                mirror.escrow_id,
                mirror.status.value,
                mirror.buyer_email.lower(),
                mirror.seller_email.lower(),
                mirror.model_dump_json(),
            ),
        )

    async def get_by_escrow_id(self, escrow_id: int) -> TransactionMirror | None:
        row = await self.db.fetch_one(
            "SELECT document FROM escrow_mirrors WHERE escrow_id = ?", (int(escrow_id),)
        )
        return TransactionMirror.model_validate_json(row["document"]) if row else None

    async def get_by_transaction_id(self, transaction_id: str) -> TransactionMirror | None:
        row = await self.db.fetch_one(
            "SELECT document FROM escrow_mirrors WHERE transaction_id = ?", (transaction_id,)
        )
        return TransactionMirror.model_validate_json(row["document"]) if row else None

    async def list_by_status(self, status: str) -> list[TransactionMirror]:
        rows = await self.db.fetch_all(
            "SELECT document FROM escrow_mirrors WHERE status = ? ORDER BY created_at DESC",
            (status,),
        )
        return [TransactionMirror.model_validate_json(r["document"]) for r in rows]

    async def list_for_party(self, email: str) -> list[TransactionMirror]:
        email = email.lower()
        rows = await self.db.fetch_all(
            "SELECT document FROM escrow_mirrors "
            "WHERE buyer_email = ? OR seller_email = ? ORDER BY created_at DESC",
            (email, email),
        )
        return [TransactionMirror.model_validate_json(r["document"]) for r in rows]


# ------------------------------------------------------------------
# Convenience factory
# ------------------------------------------------------------------

def get_database(db_path: Path | str) -> Database:
    """Return a :class:`Database` for *db_path*.

    The caller is responsible for calling :meth:`Database.connect` before
    using the returned instance.
    """
    return Database(db_path)
