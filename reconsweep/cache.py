"""SQLite-backed store of NVD CVE records with TTL expiry."""

import json
import logging
import sqlite3
import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from .models import CVERecord

logger = logging.getLogger(__name__)

CACHE_DIR = Path.home() / ".cache" / "reconsweep"
CACHE_DB = CACHE_DIR / "nvd_records.db"
DEFAULT_TTL = 7 * 86400  # CVE scores rarely change; a week is plenty

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cve_records (
    cve_id      TEXT PRIMARY KEY,
    record      TEXT,
    fetched_at  INTEGER NOT NULL,
    ttl         INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_fetched ON cve_records(fetched_at);
"""


class CVECache:
    """
    Per-CVE cache in front of the NVD API.

    A row with a NULL record remembers that NVD had no such CVE, so misses are
    cached too. Expiry is checked lazily on read; cleanup() purges in bulk.
    """

    def __init__(self, db_path: Path = CACHE_DB, ttl: int = DEFAULT_TTL):
        self.db_path = Path(db_path)
        self.ttl = ttl
        self._init_db()

    def _init_db(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.executescript(_SCHEMA)
        except sqlite3.DatabaseError as exc:
            self._reset_db(exc)

    def _reset_db(self, original_error: Exception) -> None:
        """Delete a corrupt database file and start over."""
        logger.warning("CVE cache at %s was corrupt (%s), resetting", self.db_path, original_error)
        self.db_path.unlink(missing_ok=True)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def contains(self, cve_id: str) -> bool:
        """True when a fresh row (hit or remembered miss) exists for cve_id."""
        return self._fresh_row(cve_id) is not None

    def get(self, cve_id: str) -> Optional[CVERecord]:
        """Return the cached record, or None on a miss, an expired row or a remembered miss."""
        row = self._fresh_row(cve_id)
        if row is None or row["record"] is None:
            return None
        try:
            return CVERecord(**json.loads(row["record"]))
        except (json.JSONDecodeError, TypeError) as exc:
            logger.debug("Discarding unreadable cache row for %s: %s", cve_id, exc)
            return None

    def _fresh_row(self, cve_id: str) -> Optional[sqlite3.Row]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT record, fetched_at, ttl FROM cve_records WHERE cve_id = ?",
                    (cve_id.upper(),),
                ).fetchone()
        except sqlite3.DatabaseError as exc:
            logger.debug("Cache read failed for %s: %s", cve_id, exc)
            return None
        if row is None or time.time() > row["fetched_at"] + row["ttl"]:
            return None
        return row

    def set(self, cve_id: str, record: Optional[CVERecord]) -> None:
        """Store record for cve_id. Pass None to remember that NVD has no such CVE."""
        data = json.dumps(asdict(record)) if record is not None else None
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO cve_records (cve_id, record, fetched_at, ttl) "
                    "VALUES (?, ?, ?, ?)",
                    (cve_id.upper(), data, int(time.time()), self.ttl),
                )
        except sqlite3.DatabaseError as exc:
            logger.warning("Cache write failed for %s: %s", cve_id, exc)

    def invalidate(self, cve_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE cve_records SET fetched_at = 0 WHERE cve_id = ?", (cve_id.upper(),)
                )
        except sqlite3.DatabaseError as exc:
            logger.warning("Cache invalidate failed for %s: %s", cve_id, exc)

    def cleanup(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM cve_records WHERE fetched_at + ttl <= ?", (time.time(),)
                )
                return cursor.rowcount
        except sqlite3.DatabaseError as exc:
            logger.warning("Cache cleanup failed: %s", exc)
            return 0

    def stats(self) -> dict:
        try:
            with self._connect() as conn:
                total = conn.execute("SELECT COUNT(*) FROM cve_records").fetchone()[0]
                expired = conn.execute(
                    "SELECT COUNT(*) FROM cve_records WHERE fetched_at + ttl < ?",
                    (int(time.time()),),
                ).fetchone()[0]
            size = self.db_path.stat().st_size if self.db_path.exists() else 0
        except (sqlite3.DatabaseError, OSError) as exc:
            logger.debug("Cache stats unavailable: %s", exc)
            return {"total_entries": 0, "expired_entries": 0, "db_size_bytes": 0}
        return {
            "total_entries": total,
            "expired_entries": expired,
            "db_size_bytes": size,
            "db_path": str(self.db_path),
        }
