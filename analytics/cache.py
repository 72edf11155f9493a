"""Durable dataset cache.

Normalized frames are stored as Parquet blobs in a small sqlite database,
next to the metadata needed to decide whether they are still usable:
when they were written, how many rows they hold, and a sampled hash of
the raw payload they were built from. Every storage error is logged and
reported as a miss so callers fall back to refetching.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

logger = logging.getLogger(__name__)

HASH_SAMPLE_CHARS = 10_000
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60

_SCHEMA = """
CREATE TABLE IF NOT EXISTS dataset_cache (
    key TEXT PRIMARY KEY,
    timestamp REAL NOT NULL,
    row_count INTEGER NOT NULL,
    file_hash TEXT NOT NULL,
    payload BLOB NOT NULL
)
"""


def content_hash(raw: str) -> str:
    """Hash of the first and last 10k characters plus the length; not a full-content digest."""
    sample = raw[:HASH_SAMPLE_CHARS] + raw[-HASH_SAMPLE_CHARS:] + f"|{len(raw)}"
    return hashlib.sha1(sample.encode("utf-8", errors="surrogatepass")).hexdigest()


@dataclass(frozen=True)
class CacheMetadata:
    key: str
    timestamp: float
    row_count: int
    file_hash: str


def _frame_to_bytes(frame: pd.DataFrame) -> bytes:
    sink = pa.BufferOutputStream()
    pq.write_table(pa.Table.from_pandas(frame, preserve_index=False), sink)
    return sink.getvalue().to_pybytes()


def _frame_from_bytes(payload: bytes) -> pd.DataFrame:
    return pq.read_table(pa.BufferReader(payload)).to_pandas()


class DatasetCache:
    def __init__(self, path: Union[str, Path], *, clock: Callable[[], float] = time.time):
        self.path = str(path)
        self.clock = clock
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._disabled = False

    def _connect(self) -> Optional[sqlite3.Connection]:
        if self._disabled:
            return None
        if self._conn is None:
            try:
                if self.path != ":memory:":
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.path, check_same_thread=False)
                conn.execute(_SCHEMA)
                conn.commit()
            except (sqlite3.Error, OSError) as exc:
                logger.warning("dataset cache unavailable at %s: %s", self.path, exc)
                self._disabled = True
                return None
            self._conn = conn
        return self._conn

    def metadata(self, key: str) -> Optional[CacheMetadata]:
        with self._lock:
            conn = self._connect()
            if conn is None:
                return None
            try:
                row = conn.execute(
                    "SELECT key, timestamp, row_count, file_hash FROM dataset_cache WHERE key = ?",
                    (key,),
                ).fetchone()
            except sqlite3.Error as exc:
                logger.warning("cache metadata read failed for %s: %s", key, exc)
                return None
        if row is None:
            return None
        return CacheMetadata(key=row[0], timestamp=float(row[1]), row_count=int(row[2]), file_hash=row[3])

    def is_valid(self, key: str, raw: str, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> bool:
        meta = self.metadata(key)
        if meta is None:
            return False
        if self.clock() - meta.timestamp > max_age_seconds:
            logger.debug("cache entry %s expired", key)
            return False
        return meta.file_hash == content_hash(raw)

    def store(self, key: str, raw: str, frame: pd.DataFrame) -> bool:
        try:
            payload = _frame_to_bytes(frame)
        except (pa.ArrowException, ValueError, TypeError) as exc:
            logger.warning("could not serialize %s for caching: %s", key, exc)
            return False
        with self._lock:
            conn = self._connect()
            if conn is None:
                return False
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO dataset_cache (key, timestamp, row_count, file_hash, payload) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (key, self.clock(), int(len(frame)), content_hash(raw), sqlite3.Binary(payload)),
                )
                conn.commit()
            except sqlite3.Error as exc:
                logger.warning("cache write failed for %s: %s", key, exc)
                return False
        logger.info("cached %s (%d rows)", key, len(frame))
        return True

    def load(self, key: str) -> Optional[pd.DataFrame]:
        with self._lock:
            conn = self._connect()
            if conn is None:
                return None
            try:
                row = conn.execute("SELECT payload FROM dataset_cache WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as exc:
                logger.warning("cache read failed for %s: %s", key, exc)
                return None
        if row is None:
            return None
        try:
            return _frame_from_bytes(bytes(row[0]))
        except (pa.ArrowException, ValueError, OSError) as exc:
            logger.warning("cached payload for %s is unreadable: %s", key, exc)
            return None

    def clear(self) -> None:
        with self._lock:
            conn = self._connect()
            if conn is None:
                return
            try:
                conn.execute("DELETE FROM dataset_cache")
                conn.commit()
            except sqlite3.Error as exc:
                logger.warning("cache clear failed: %s", exc)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
