import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Generator, Iterator, Optional, Set

from .config import DEFAULT_METADATA_ROOT
from .errors import MetadataWriteFailure, StoreUnavailable, ValidationError
from .records import FileRecord, StoreClock, datetime_to_micros

MAX_LIST_ALL_LIMIT = 1000

logger = logging.getLogger("piicloud.metadata")


class MetadataStore:
    """File records partitioned by owner key.

    Every record lives under the composite key ``<root>/<owner_key>/<id>``.
    Reads that know the owner stay inside that partition; :meth:`locate` is
    the explicit cross-partition lookup for callers that only hold an id.

    The store starts unavailable. :meth:`open` creates the schema and makes
    it usable, :meth:`close` makes every further call raise
    :class:`StoreUnavailable`.
    """

    def __init__(self, db_path: Path, root: str = DEFAULT_METADATA_ROOT) -> None:
        self.db_path = Path(db_path)
        self.root = root.strip("/") or DEFAULT_METADATA_ROOT
        self.clock = StoreClock()
        self._available = False
        self._state_lock = threading.Lock()

    @property
    def available(self) -> bool:
        return self._available

    def record_path(self, owner_key: str, record_id: str) -> str:
        return f"{self.root}/{owner_key}/{record_id}"

    def open(self) -> None:
        with self._state_lock:
            if self._available:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS file_records (
                        path TEXT PRIMARY KEY,
                        owner_key TEXT NOT NULL,
                        record_id TEXT NOT NULL UNIQUE,
                        stored_name TEXT NOT NULL,
                        created_at INTEGER NOT NULL,
                        document TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_file_records_owner "
                    "ON file_records(owner_key, created_at)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_file_records_created_at "
                    "ON file_records(created_at)"
                )
            self._available = True
        logger.info("metadata_store_opened path=%s root=%s", self.db_path, self.root)

    def close(self) -> None:
        with self._state_lock:
            if not self._available:
                return
            self._available = False
        logger.info("metadata_store_closed path=%s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        if not self._available:
            raise StoreUnavailable()
        conn = self._connect()
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def now(self) -> datetime:
        return self.clock()

    def put(self, owner_key: str, record: FileRecord) -> None:
        if record.owner_key != owner_key:
            raise ValidationError("Record does not belong to this owner partition")
        path = self.record_path(owner_key, record.id)
        try:
            with self.get_db() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    """
                    INSERT INTO file_records (
                        path, owner_key, record_id, stored_name, created_at, document
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        path,
                        owner_key,
                        record.id,
                        record.stored_name,
                        datetime_to_micros(record.created_at),
                        json.dumps(record.to_document()),
                    ),
                )
        except sqlite3.Error as error:
            logger.error("metadata_write_failed path=%s error=%s", path, error)
            raise MetadataWriteFailure(str(error)) from error
        logger.info("metadata_written path=%s", path)

    def _iter_query(self, query: str, params: tuple) -> Iterator[FileRecord]:
        with self.get_db() as conn:
            for row in conn.execute(query, params):
                yield FileRecord.from_document(json.loads(row["document"]))

    def list_by_owner(self, owner_key: str) -> Iterator[FileRecord]:
        """Lazily yield an owner's records, newest first.

        Each call re-reads the store; the returned iterator is single use.
        """

        if not self._available:
            raise StoreUnavailable()
        return self._iter_query(
            """
            SELECT document FROM file_records
            WHERE owner_key = ?
            ORDER BY created_at DESC, rowid DESC
            """,
            (owner_key,),
        )

    def list_all(self, limit: int) -> Iterator[FileRecord]:
        """Cross-partition listing for operational use, bounded by *limit*.

        *limit* must lie between 1 and :data:`MAX_LIST_ALL_LIMIT`.
        """

        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if limit > MAX_LIST_ALL_LIMIT:
            raise ValidationError(f"limit must not exceed {MAX_LIST_ALL_LIMIT}")
        if not self._available:
            raise StoreUnavailable()
        return self._iter_query(
            """
            SELECT document FROM file_records
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (limit,),
        )

    def get(self, owner_key: str, record_id: str) -> Optional[FileRecord]:
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT document FROM file_records WHERE path = ?",
                (self.record_path(owner_key, record_id),),
            ).fetchone()
        if row is None:
            return None
        return FileRecord.from_document(json.loads(row["document"]))

    def locate(self, record_id: str) -> Optional[FileRecord]:
        """Find a record by id alone, searching every partition."""

        with self.get_db() as conn:
            row = conn.execute(
                "SELECT document FROM file_records WHERE record_id = ?",
                (record_id,),
            ).fetchone()
        if row is None:
            return None
        return FileRecord.from_document(json.loads(row["document"]))

    def delete(self, owner_key: str, record_id: str) -> bool:
        """Remove a record. ``False`` means no such record existed."""

        path = self.record_path(owner_key, record_id)
        with self.get_db() as conn:
            cursor = conn.execute("DELETE FROM file_records WHERE path = ?", (path,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("metadata_deleted path=%s", path)
        return deleted

    def stored_names(self) -> Set[str]:
        with self.get_db() as conn:
            cursor = conn.execute("SELECT stored_name FROM file_records")
            return {row["stored_name"] for row in cursor.fetchall()}

    def count(self) -> int:
        with self.get_db() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM file_records").fetchone()
        return int(row["count"] if row and row["count"] is not None else 0)
