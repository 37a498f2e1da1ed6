"""Append-only, hash-chained log of store events, backed by SQLite.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained: each entry includes the SHA-256 of the previous entry.
- The latest-hash read and the insert share one ``BEGIN IMMEDIATE``
  transaction, so concurrent writers in different processes cannot fork
  the chain.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from envforge.core.hasher import compute_entry_hash
from envforge.models.ledger import StoreEvent, StoreLedgerEntry

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS store_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    content_address       TEXT NOT NULL,
    label                 TEXT NOT NULL,
    event                 TEXT NOT NULL,
    store_path            TEXT NOT NULL DEFAULT '',
    detail                TEXT NOT NULL DEFAULT '',
    timestamp_utc         TEXT NOT NULL,
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ADDRESS = """
CREATE INDEX IF NOT EXISTS idx_content_address ON store_ledger(content_address, id);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class StoreLedger:
    """Append-only, hash-chained store event log.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created on the first append;
        reads of a missing database see an empty ledger.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        self._init_schema()
        return self._open()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, timeout=30.0, isolation_level=None
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._schema_lock:
            if self._schema_ready:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._open()
            try:
                conn.execute(_CREATE_LEDGER)
                conn.execute(_CREATE_IDX_ADDRESS)
            finally:
                conn.close()
            self._schema_ready = True

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def record(
        self,
        event: StoreEvent,
        content_address: str,
        label: str,
        *,
        store_path: Path | str = "",
        detail: str = "",
    ) -> StoreLedgerEntry:
        """Convenience wrapper around ``append``."""
        return self.append(
            StoreLedgerEntry(
                content_address=content_address,
                label=label,
                event=event,
                store_path=str(store_path),
                detail=detail,
            )
        )

    def append(self, entry: StoreLedgerEntry) -> StoreLedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the sealed entry. This is the ONLY write method.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT entry_hash FROM store_ledger ORDER BY id DESC LIMIT 1"
            ).fetchone()
            previous_hash = row[0] if row else ""

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            conn.execute(
                """
                INSERT INTO store_ledger
                    (entry_id, content_address, label, event, store_path, detail,
                     timestamp_utc, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    sealed.entry_id,
                    sealed.content_address,
                    sealed.label,
                    sealed.event.value,
                    sealed.store_path,
                    sealed.detail,
                    entry_dict["timestamp_utc"],
                    sealed.previous_entry_hash,
                    sealed.entry_hash,
                ),
            )
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
        return sealed

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def _query(self, sql: str, params: tuple = ()) -> list[StoreLedgerEntry]:
        if not self._schema_ready and not self._db_path.exists():
            return []
        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def entries(self, limit: int | None = None) -> list[StoreLedgerEntry]:
        """All entries in chronological order (the most recent *limit* if given)."""
        if limit is None:
            return self._query("SELECT * FROM store_ledger ORDER BY id ASC")
        recent = self._query(
            "SELECT * FROM store_ledger ORDER BY id DESC LIMIT ?", (limit,)
        )
        return list(reversed(recent))

    def history(self, content_address: str) -> list[StoreLedgerEntry]:
        """All entries for one artifact, oldest first."""
        return self._query(
            "SELECT * FROM store_ledger WHERE content_address = ? ORDER BY id ASC",
            (content_address,),
        )

    def count(self, event: StoreEvent | None = None) -> int:
        if not self._schema_ready and not self._db_path.exists():
            return 0
        conn = self._connect()
        try:
            if event is None:
                row = conn.execute("SELECT COUNT(*) FROM store_ledger").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM store_ledger WHERE event = ?", (event.value,)
                ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self) -> bool:
        """Verify the hash chain integrity.

        Walks all entries in order, recomputes each entry_hash, and
        verifies that previous_entry_hash links match.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.entries():
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> StoreLedgerEntry:
        """Convert a SQLite row tuple to a StoreLedgerEntry."""
        (
            _id,
            entry_id,
            content_address,
            label,
            event,
            store_path,
            detail,
            timestamp_utc,
            previous_entry_hash,
            entry_hash,
        ) = row
        return StoreLedgerEntry(
            entry_id=entry_id,
            content_address=content_address,
            label=label,
            event=StoreEvent(event),
            store_path=store_path,
            detail=detail,
            timestamp_utc=datetime.fromisoformat(timestamp_utc),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
