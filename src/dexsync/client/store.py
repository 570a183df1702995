"""SQLite local store for synced tidbits and sync metadata."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List

from dexsync.models import Tidbit, TidbitRecord

LOGGER = logging.getLogger(__name__)

CURRENT_VERSION_KEY = "current_version"
VERSION_HISTORY_KEY = "version_history"
CHECKPOINT_KEY = "sync_checkpoint"


class TransactionState(str, Enum):
    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class CommitReceipt:
    """Returned only once the database has confirmed the commit."""

    operations: int


class StoreTransaction:
    """Unit of work with two-phase acknowledgment.

    ``put_record``/``set_meta``/... only stage operations (accepted).  Nothing
    is durable until ``commit()`` returns a receipt (committed).  Used as a
    context manager it commits on normal exit and rolls back on error.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._ops: List[Callable[[sqlite3.Connection], None]] = []
        self.state = TransactionState.OPEN

    @property
    def accepted(self) -> int:
        return len(self._ops)

    @property
    def committed(self) -> bool:
        return self.state is TransactionState.COMMITTED

    def _stage(self, op: Callable[[sqlite3.Connection], None]) -> None:
        if self.state is not TransactionState.OPEN:
            raise RuntimeError(f"Transaction already {self.state.value}")
        self._ops.append(op)

    def put_record(self, record: TidbitRecord) -> None:
        tidbits = json.dumps([t.to_dict() for t in record.tidbits], ensure_ascii=False)

        def op(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO tidbit_records(
                    species_id, tidbit_revision, tidbits, payload_hash,
                    manifest_version, dataset_version
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(species_id) DO UPDATE SET
                    tidbit_revision = excluded.tidbit_revision,
                    tidbits = excluded.tidbits,
                    payload_hash = excluded.payload_hash,
                    manifest_version = excluded.manifest_version,
                    dataset_version = excluded.dataset_version,
                    stored_at = CURRENT_TIMESTAMP
                """,
                (
                    record.species_id,
                    record.tidbit_revision,
                    tidbits,
                    record.payload_hash,
                    record.manifest_version,
                    record.dataset_version,
                ),
            )

        self._stage(op)

    def delete_record(self, species_id: str) -> None:
        self._stage(
            lambda conn: conn.execute("DELETE FROM tidbit_records WHERE species_id = ?", (species_id,))
        )

    def set_meta(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        self._stage(
            lambda conn: conn.execute(
                """
                INSERT INTO metadata(key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                """,
                (key, encoded),
            )
        )

    def delete_meta(self, key: str) -> None:
        self._stage(lambda conn: conn.execute("DELETE FROM metadata WHERE key = ?", (key,)))

    def commit(self) -> CommitReceipt:
        if self.state is not TransactionState.OPEN:
            raise RuntimeError(f"Transaction already {self.state.value}")
        conn = self._conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            for op in self._ops:
                op(conn)
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            self.state = TransactionState.ROLLED_BACK
            raise
        self.state = TransactionState.COMMITTED
        return CommitReceipt(operations=len(self._ops))

    def rollback(self) -> None:
        if self.state is TransactionState.OPEN:
            self._ops.clear()
            self.state = TransactionState.ROLLED_BACK

    def __enter__(self) -> "StoreTransaction":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.rollback()
        elif self.state is TransactionState.OPEN:
            self.commit()


class LocalStore:
    """Persistence layer for synced species payloads and sync metadata."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=FULL;")
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def close(self) -> None:
        self._conn.close()

    def transaction(self) -> StoreTransaction:
        return StoreTransaction(self._conn)

    def _ensure_schema(self) -> None:
        with self.transaction() as tx:
            tx._stage(
                lambda conn: conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS tidbit_records (
                        species_id TEXT PRIMARY KEY,
                        tidbit_revision INTEGER NOT NULL,
                        tidbits TEXT NOT NULL,
                        payload_hash TEXT NOT NULL,
                        manifest_version TEXT,
                        dataset_version TEXT,
                        stored_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )
            tx._stage(
                lambda conn: conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS metadata (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )

    def get_record(self, species_id: str) -> TidbitRecord | None:
        row = self._conn.execute(
            "SELECT * FROM tidbit_records WHERE species_id = ?", (species_id,)
        ).fetchone()
        if row is None:
            return None
        return TidbitRecord(
            species_id=row["species_id"],
            tidbit_revision=row["tidbit_revision"],
            tidbits=[Tidbit.from_dict(item) for item in json.loads(row["tidbits"])],
            payload_hash=row["payload_hash"],
            manifest_version=row["manifest_version"],
            dataset_version=row["dataset_version"],
        )

    def get_revision(self, species_id: str) -> tuple[int, str] | None:
        row = self._conn.execute(
            "SELECT tidbit_revision, payload_hash FROM tidbit_records WHERE species_id = ?",
            (species_id,),
        ).fetchone()
        if row is None:
            return None
        return row["tidbit_revision"], row["payload_hash"]

    def species_ids(self) -> list[str]:
        rows = self._conn.execute("SELECT species_id FROM tidbit_records ORDER BY species_id")
        return [row["species_id"] for row in rows]

    def count_records(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM tidbit_records").fetchone()[0]

    def get_meta(self, key: str, default: Any = None) -> Any:
        row = self._conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row["value"])
