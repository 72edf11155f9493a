"""DuckDB-backed analytical store.

One connection per store, shared read-only by every caller once a table is
loaded. Loads are single-flight per table: a second ``load_*`` call for a
table that is already being built waits for the first and gets its result
(or its exception). Reading before ``initialize`` raises StoreLoadError;
once initialized, a missing table or a malformed predicate reads as an
empty frame.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Sequence, Union

import duckdb
import pandas as pd

from analytics.errors import LoadTimeoutError, StoreLoadError
from analytics.logging_utils import log_event
from analytics.query import Predicate, quote_ident, sql_literal
from analytics.sources import is_remote

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]
Where = Union[Predicate, str, None]

LOAD_STAGES = ("initializing", "checking", "downloading", "loading-db", "indexing", "ready")


def _notify(progress: Optional[ProgressCallback], stage: str, percent: int) -> None:
    if progress is None:
        return
    try:
        progress(stage, percent)
    except Exception:
        logger.exception("progress callback failed at stage %s", stage)


def as_predicate(where: Where) -> Predicate:
    if where is None:
        return Predicate()
    if isinstance(where, Predicate):
        return where
    text = where.strip()
    if text.upper().startswith("WHERE "):
        text = text[6:].strip()
    return Predicate((text,)) if text else Predicate()


def _prepare_frame(frame: pd.DataFrame) -> pd.DataFrame:
    out = frame.copy()
    for col in out.columns:
        if out[col].dtype == object:
            out[col] = out[col].astype("string")
    return out


class _ProgressTicker:
    """Advances a synthetic percentage while a blocking download runs."""

    def __init__(
        self,
        progress: Optional[ProgressCallback],
        *,
        stage: str = "downloading",
        start: int = 10,
        step: int = 2,
        interval: float = 0.8,
        ceiling: int = 85,
    ):
        self.progress = progress
        self.stage = stage
        self.value = start
        self.step = step
        self.interval = interval
        self.ceiling = ceiling
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.progress is None:
            return
        self._thread = threading.Thread(target=self._run, name="store-progress", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.value = min(self.value + self.step, self.ceiling)
            _notify(self.progress, self.stage, self.value)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)


class AnalyticalStore:
    def __init__(self, database: str = ":memory:", *, load_timeout_seconds: float = 8.0):
        self.database = database
        self.load_timeout_seconds = load_timeout_seconds
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._init_lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._pending_lock = threading.Lock()
        self._httpfs_loaded = False

    # ---------------------------------------------------------------- lifecycle

    @property
    def is_initialized(self) -> bool:
        return self._conn is not None

    def initialize(self) -> None:
        with self._init_lock:
            if self._conn is not None:
                return
            try:
                self._conn = duckdb.connect(self.database)
            except duckdb.Error as exc:
                raise StoreLoadError(f"Failed to open DuckDB database {self.database!r}: {exc}") from exc
            log_event(logger, logging.INFO, "store_initialized", database=self.database)

    def close(self) -> None:
        with self._init_lock, self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            self._httpfs_loaded = False
            log_event(logger, logging.INFO, "store_closed", database=self.database)

    def __enter__(self) -> "AnalyticalStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise StoreLoadError("Analytical store is not initialized.")
        return self._conn

    # ---------------------------------------------------------------- loading

    def _single_flight(self, table: str, build: Callable[[], int]) -> int:
        with self._pending_lock:
            pending = self._pending.get(table)
            owner = pending is None
            if owner:
                pending = Future()
                self._pending[table] = pending
        if not owner:
            logger.debug("load of %s already in flight, waiting", table)
            return pending.result()

        try:
            rows = build()
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        else:
            pending.set_result(rows)
            return rows
        finally:
            with self._pending_lock:
                self._pending.pop(table, None)

    def _swap_in(self, staging: str, table: str, index_columns: Sequence[str], progress: Optional[ProgressCallback]) -> None:
        conn = self._connection()
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")
            conn.execute(f"ALTER TABLE {quote_ident(staging)} RENAME TO {quote_ident(table)}")
            conn.execute("COMMIT")
        except duckdb.Error:
            conn.execute("ROLLBACK")
            raise

        _notify(progress, "indexing", 92)
        present = set(self.columns(table))
        for col in index_columns:
            if col not in present:
                logger.debug("skipping index on %s.%s: column not present", table, col)
                continue
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS {quote_ident(f'idx_{table}_{col}')} "
                f"ON {quote_ident(table)} ({quote_ident(col)})"
            )

    def _discard(self, staging: str) -> None:
        try:
            self._connection().execute(f"DROP TABLE IF EXISTS {quote_ident(staging)}")
        except duckdb.Error as exc:
            logger.warning("could not drop staging table %s: %s", staging, exc)

    def load_frame(
        self,
        table: str,
        frame: pd.DataFrame,
        *,
        index_columns: Sequence[str] = (),
        force_refresh: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Create ``table`` from an already-normalized frame; a no-op when the table exists."""

        def build() -> int:
            _notify(progress, "checking", 10)
            if not force_refresh and self.table_exists(table):
                _notify(progress, "ready", 100)
                return self.count(table)

            started = time.monotonic()
            staging = f"{table}__loading"
            view = f"{table}__incoming"
            _notify(progress, "loading-db", 60)
            with self._lock:
                conn = self._connection()
                try:
                    conn.register(view, _prepare_frame(frame))
                    try:
                        conn.execute(
                            f"CREATE OR REPLACE TABLE {quote_ident(staging)} AS SELECT * FROM {quote_ident(view)}"
                        )
                    finally:
                        conn.unregister(view)
                    self._swap_in(staging, table, index_columns, progress)
                except duckdb.Error as exc:
                    self._discard(staging)
                    raise StoreLoadError(f"Failed to load table {table}: {exc}") from exc

            rows = self.count(table)
            log_event(
                logger,
                logging.INFO,
                "table_loaded",
                table=table,
                rows=rows,
                source="frame",
                seconds=round(time.monotonic() - started, 3),
            )
            _notify(progress, "ready", 100)
            return rows

        return self._single_flight(table, build)

    def _ensure_httpfs(self) -> None:
        if self._httpfs_loaded:
            return
        conn = self._connection()
        try:
            conn.execute("INSTALL httpfs")
            conn.execute("LOAD httpfs")
        except duckdb.Error as exc:
            raise StoreLoadError(f"Failed to load the httpfs extension: {exc}") from exc
        self._httpfs_loaded = True

    def load_parquet(
        self,
        table: str,
        url: str,
        *,
        index_columns: Sequence[str] = (),
        force_refresh: bool = False,
        progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """Stream a Parquet file (local or over HTTP) straight into ``table``.

        The read is interrupted after ``timeout`` seconds and surfaces as
        LoadTimeoutError; any prior copy of the table survives a failed load.
        """
        limit = self.load_timeout_seconds if timeout is None else timeout

        def build() -> int:
            _notify(progress, "checking", 5)
            if not force_refresh and self.table_exists(table):
                _notify(progress, "ready", 100)
                return self.count(table)

            started = time.monotonic()
            staging = f"{table}__loading"
            with self._lock:
                conn = self._connection()
                if is_remote(url):
                    self._ensure_httpfs()
                _notify(progress, "downloading", 10)

                timed_out = threading.Event()

                def on_timeout() -> None:
                    timed_out.set()
                    conn.interrupt()

                timer = threading.Timer(limit, on_timeout)
                timer.daemon = True
                ticker = _ProgressTicker(progress)
                ticker.start()
                timer.start()
                try:
                    conn.execute(
                        f"CREATE OR REPLACE TABLE {quote_ident(staging)} AS SELECT * FROM read_parquet(?)",
                        [url],
                    )
                except duckdb.Error as exc:
                    self._discard(staging)
                    if timed_out.is_set():
                        raise LoadTimeoutError(f"Loading {url} timed out after {limit:g}s") from exc
                    raise StoreLoadError(f"Failed to load {url}: {exc}") from exc
                finally:
                    timer.cancel()
                    ticker.stop()

                _notify(progress, "loading-db", 90)
                try:
                    self._swap_in(staging, table, index_columns, progress)
                except duckdb.Error as exc:
                    self._discard(staging)
                    raise StoreLoadError(f"Failed to build table {table}: {exc}") from exc

            rows = self.count(table)
            log_event(
                logger,
                logging.INFO,
                "table_loaded",
                table=table,
                rows=rows,
                source="parquet",
                seconds=round(time.monotonic() - started, 3),
            )
            _notify(progress, "ready", 100)
            return rows

        return self._single_flight(table, build)

    def drop_table(self, table: str) -> None:
        with self._lock:
            try:
                self._connection().execute(f"DROP TABLE IF EXISTS {quote_ident(table)}")
            except duckdb.Error as exc:
                raise StoreLoadError(f"Failed to drop table {table}: {exc}") from exc
        log_event(logger, logging.INFO, "table_dropped", table=table)

    def drop_and_reload(self, table: str, loader: Callable[[], int]) -> int:
        """Destructive rebuild: the table is absent until ``loader`` recreates it."""
        self.drop_table(table)
        return loader()

    # ---------------------------------------------------------------- reads

    def execute_read(self, sql: str, params: Optional[Sequence[object]] = None) -> pd.DataFrame:
        if self._conn is None:
            raise StoreLoadError("Analytical store is not initialized.")
        with self._lock:
            if self._conn is None:
                raise StoreLoadError("Analytical store is not initialized.")
            try:
                return self._conn.execute(sql, list(params or [])).fetchdf()
            except duckdb.Error as exc:
                logger.warning("read query failed: %s", exc)
                return pd.DataFrame()

    def table_exists(self, table: str) -> bool:
        df = self.execute_read(
            "SELECT COUNT(*) AS n FROM information_schema.tables WHERE table_name = ?",
            [table],
        )
        return not df.empty and int(df["n"].iloc[0]) > 0

    def columns(self, table: str) -> List[str]:
        df = self.execute_read(
            "SELECT column_name FROM information_schema.columns WHERE table_name = ? ORDER BY ordinal_position",
            [table],
        )
        return [] if df.empty else [str(c) for c in df["column_name"]]

    def query(
        self,
        table: str,
        where: Where = None,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> pd.DataFrame:
        sql = f"SELECT * FROM {quote_ident(table)} {as_predicate(where).where_sql}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        if offset:
            sql += f" OFFSET {int(offset)}"
        return self.execute_read(sql)

    def count(self, table: str, where: Where = None) -> int:
        df = self.execute_read(f"SELECT COUNT(*) AS n FROM {quote_ident(table)} {as_predicate(where).where_sql}")
        return 0 if df.empty else int(df["n"].iloc[0])

    def distinct(
        self,
        table: str,
        column: str,
        where: Where = None,
        *,
        exclude: Sequence[str] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[str]:
        """Non-blank distinct values of ``column``, optionally ordered by another column."""
        col = quote_ident(column)
        conditions = [f"{col} IS NOT NULL", f"CAST({col} AS VARCHAR) != ''"]
        if exclude:
            conditions.append(f"CAST({col} AS VARCHAR) NOT IN ({', '.join(sql_literal(v) for v in exclude)})")
        predicate = as_predicate(where).and_(*conditions)
        sort_key = f"MIN({quote_ident(order_by)})" if order_by else col
        direction = "DESC" if descending else "ASC"
        df = self.execute_read(
            f"SELECT {col} AS value FROM {quote_ident(table)} {predicate.where_sql} "
            f"GROUP BY {col} ORDER BY {sort_key} {direction}, {col}"
        )
        return [] if df.empty else [str(v) for v in df["value"]]
