"""Per-dataset dashboard session.

A session drives one dataset through its load stages, owns the current
filter state, and recomputes the filtered view on a debounced schedule.
The analytical store is shared and owned by the caller (the FastAPI
lifespan or the Streamlit resource cache); the session only borrows it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd
import requests

from analytics import aggregations
from analytics.cache import DatasetCache
from analytics.config import Settings
from analytics.datasets import DatasetSpec
from analytics.demo import demo_approval_frame, demo_ticket_frame
from analytics.errors import FetchError, ParseError, StoreLoadError
from analytics.export import export_rows
from analytics.filters import FilterState
from analytics.logging_utils import log_event
from analytics.normalize import normalize_approval_frame, normalize_participation_frame, normalize_ticket_frame
from analytics.parsing import CSVParseWorker, ParseProgress
from analytics.query import Predicate, build_predicate
from analytics.scheduler import Debouncer, GenerationCounter
from analytics.sources import fetch_text
from analytics.store import LOAD_STAGES, AnalyticalStore

logger = logging.getLogger(__name__)

_STAGE_ORDER = {stage: i for i, stage in enumerate(LOAD_STAGES)}

# datasets with placeholder data to show when no real source is reachable
DEMO_FRAMES: Dict[str, Callable[[], pd.DataFrame]] = {
    "tickets": demo_ticket_frame,
    "approval": demo_approval_frame,
}


@dataclass
class LoadStatus:
    stage: str = "initializing"
    progress: int = 0
    error: Optional[str] = None
    record_count: int = 0
    source: Optional[str] = None
    last_refresh: Optional[datetime] = None

    @property
    def is_ready(self) -> bool:
        return self.stage == "ready"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "progress": self.progress,
            "error": self.error,
            "record_count": self.record_count,
            "source": self.source,
            "last_refresh": self.last_refresh,
        }


@dataclass(frozen=True)
class DashboardView:
    generation: int
    filters: FilterState
    rows: pd.DataFrame = field(repr=False)
    filtered_count: int
    total_count: int

    @property
    def active_filter_count(self) -> int:
        return self.filters.active_filter_count


class DashboardSession:
    def __init__(
        self,
        dataset: DatasetSpec,
        store: AnalyticalStore,
        *,
        settings: Settings,
        cache: Optional[DatasetCache] = None,
        worker: Optional[CSVParseWorker] = None,
        http: Optional[requests.Session] = None,
        on_view: Optional[Callable[[DashboardView], None]] = None,
        on_stage: Optional[Callable[[LoadStatus], None]] = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.dataset = dataset
        self.store = store
        self.settings = settings
        self.cache = cache
        self.http = http
        self.on_view = on_view
        self.on_stage = on_stage
        self._owns_worker = worker is None
        self.worker = worker or CSVParseWorker()
        self.status = LoadStatus()
        self._filters = dataset.initial_filters()
        self._filters_lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._generation = GenerationCounter()
        self._latest_view: Optional[DashboardView] = None
        self._debouncer: Debouncer[FilterState] = Debouncer(
            self._requery,
            settings.debounce_seconds,
            timer_factory=timer_factory,
        )

    # ---------------------------------------------------------------- loading

    def _progress(self, stage: str, percent: int) -> None:
        current = _STAGE_ORDER.get(self.status.stage, 0)
        incoming = _STAGE_ORDER.get(stage, current)
        if incoming < current:
            return
        changed = stage != self.status.stage
        self.status.stage = stage
        self.status.progress = max(self.status.progress, int(percent))
        if changed:
            log_event(
                logger,
                logging.INFO,
                "load_stage",
                dataset=self.dataset.name,
                stage=stage,
                progress=self.status.progress,
            )
            if self.on_stage is not None:
                self.on_stage(self.status)

    def _ready(self, source: Optional[str]) -> LoadStatus:
        self.status.record_count = self.store.count(self.dataset.table)
        if source is not None:
            self.status.source = source
        self.status.last_refresh = datetime.now()
        self._progress("ready", 100)
        return self.status

    def _fail(self, message: str) -> LoadStatus:
        self.status.error = message
        self.status.stage = "error"
        log_event(logger, logging.ERROR, "load_failed", dataset=self.dataset.name, error=message)
        return self.status

    def load(self, *, force_refresh: bool = False) -> LoadStatus:
        """Bring the dataset into the store; errors end up in ``status.error``, never raised."""
        with self._load_lock:
            previous = self.status
            self.status = LoadStatus(source=previous.source, last_refresh=previous.last_refresh)
            self._progress("initializing", 0)
            try:
                self.store.initialize()
                if self.dataset.source_kind == "parquet":
                    status = self._load_parquet(force_refresh)
                else:
                    status = self._load_csv(force_refresh)
            except StoreLoadError as exc:
                logger.exception("loading %s failed", self.dataset.name)
                return self._fail(str(exc))
        if status.is_ready:
            self.apply_now()
        return status

    def refresh(self) -> LoadStatus:
        return self.load(force_refresh=True)

    def clear_cache(self) -> LoadStatus:
        if self.cache is not None:
            self.cache.clear()
        return self.load(force_refresh=True)

    def _load_parquet(self, force_refresh: bool) -> LoadStatus:
        table = self.dataset.table
        try:
            self.store.load_parquet(
                table,
                self.dataset.source_location(self.settings),
                index_columns=self.dataset.index_columns,
                force_refresh=force_refresh,
                progress=self._progress,
                timeout=self.settings.load_timeout_seconds,
            )
        except StoreLoadError as exc:
            if self.store.table_exists(table):
                self.status.error = str(exc)
                log_event(logger, logging.WARNING, "load_failed_stale", dataset=self.dataset.name, error=str(exc))
                return self._ready("stale")
            raise
        return self._ready("remote")

    def _load_csv(self, force_refresh: bool) -> LoadStatus:
        table = self.dataset.table
        self._progress("checking", 5)
        if not force_refresh and self.store.table_exists(table):
            return self._ready(None)

        # one budget covers download and parse together
        deadline = time.monotonic() + self.settings.load_timeout_seconds
        self._progress("downloading", 10)
        try:
            raw = fetch_text(
                self.dataset.source_location(self.settings),
                timeout=self.settings.load_timeout_seconds,
                cache_bust=self.dataset.cache_bust,
                session=self.http,
                deadline=deadline,
            )
        except FetchError as exc:
            return self._fallback(str(exc))

        frame: Optional[pd.DataFrame] = None
        source = "remote"
        self._progress("checking", 30)
        if self.cache is not None and not force_refresh:
            if self.cache.is_valid(self.dataset.name, raw, self.settings.cache_max_age_seconds):
                frame = self.cache.load(self.dataset.name)
                source = "cache"

        if frame is None:
            try:
                frame = self._parse_and_normalize(raw, deadline)
            except (ParseError, TimeoutError) as exc:
                return self._fallback(str(exc))
            if frame.empty:
                return self._fallback(f"{self.dataset.title} source contained no rows.")
            if self.cache is not None:
                self.cache.store(self.dataset.name, raw, frame)
            source = "remote"

        self.store.load_frame(
            table,
            frame,
            index_columns=self.dataset.index_columns,
            force_refresh=True,
            progress=self._progress,
        )
        return self._ready(source)

    def _parse_and_normalize(self, raw: str, deadline: float) -> pd.DataFrame:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"{self.dataset.title} load ran out of time before parsing.")
        self._progress("loading-db", 40)

        def on_progress(message: ParseProgress) -> None:
            self._progress("loading-db", 40 + message.progress * 40 // 100)

        job = self.worker.submit(raw)
        raw_frame = job.result(on_progress=on_progress, timeout=remaining)
        if self.dataset.name == "tickets":
            return normalize_ticket_frame(
                raw_frame,
                attachment_base_url=self.settings.attachment_base_url,
                attachment_token=self.settings.attachment_token,
            )
        if self.dataset.name == "approval":
            return normalize_approval_frame(raw_frame)
        return normalize_participation_frame(raw_frame)

    def _fallback(self, message: str) -> LoadStatus:
        """Keep serving something after a fetch/parse failure: stale table, cached frame, then demo data."""
        table = self.dataset.table
        self.status.error = message
        log_event(logger, logging.WARNING, "load_fallback", dataset=self.dataset.name, error=message)

        if self.store.table_exists(table):
            return self._ready("stale")

        cached = self.cache.load(self.dataset.name) if self.cache is not None else None
        if cached is not None and not cached.empty:
            self.store.load_frame(table, cached, index_columns=self.dataset.index_columns, force_refresh=True)
            return self._ready("cache")

        demo = DEMO_FRAMES.get(self.dataset.name)
        if self.settings.use_demo_fallback and demo is not None:
            self.store.load_frame(
                table,
                demo(),
                index_columns=self.dataset.index_columns,
                force_refresh=True,
            )
            return self._ready("demo")

        return self._fail(message)

    # ---------------------------------------------------------------- filters

    @property
    def filters(self) -> FilterState:
        return self._filters

    @property
    def latest_view(self) -> Optional[DashboardView]:
        return self._latest_view

    @property
    def active_filter_count(self) -> int:
        return self._filters.active_filter_count

    def _update(self, change: Callable[[FilterState], FilterState]) -> FilterState:
        with self._filters_lock:
            self._filters = change(self._filters)
            state = self._filters
        self._debouncer.submit(state)
        return state

    def toggle(self, dimension: str, value: str) -> FilterState:
        return self._update(lambda s: s.toggle(dimension, value))

    def set_values(self, dimension: str, values: Sequence[str]) -> FilterState:
        return self._update(lambda s: s.set_values(dimension, values))

    def set_date_range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> FilterState:
        return self._update(lambda s: s.set_date_range(start, end))

    def set_quick_date_range(self, period: str, now: Optional[datetime] = None) -> FilterState:
        return self._update(lambda s: s.set_quick_date_range(period, now))

    def set_filters(self, state: FilterState) -> FilterState:
        return self._update(lambda _: state)

    def reset(self) -> FilterState:
        return self._update(lambda s: s.reset())

    def apply_now(self) -> Optional[DashboardView]:
        """Skip the quiet period and recompute the view for the current filters."""
        if not self._debouncer.flush():
            self._requery(self._filters)
        return self._latest_view

    def _requery(self, state: FilterState) -> None:
        generation = self._generation.next()
        view = self.view(state, generation=generation)
        if not self._generation.is_current(generation):
            logger.debug("discarding view %d for %s: superseded", generation, self.dataset.name)
            return
        self._latest_view = view
        if self.on_view is not None:
            self.on_view(view)

    # ---------------------------------------------------------------- reads

    def predicate(self, filters: Optional[FilterState] = None) -> Predicate:
        return build_predicate(filters or self._filters, self.dataset)

    def view(
        self,
        filters: Optional[FilterState] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
        generation: int = 0,
    ) -> DashboardView:
        state = filters or self._filters
        where = build_predicate(state, self.dataset)
        table = self.dataset.table
        rows = self.store.query(
            table,
            where,
            order_by=self.dataset.order_by,
            limit=limit if limit is not None else self.dataset.row_cap,
            offset=offset,
        )
        return DashboardView(
            generation=generation,
            filters=state,
            rows=rows,
            filtered_count=self.store.count(table, where),
            total_count=self.store.count(table),
        )

    def kpis(self, filters: Optional[FilterState] = None) -> Dict[str, Any]:
        where = self.predicate(filters)
        table = self.dataset.table
        if self.dataset.name == "tickets":
            return aggregations.ticket_kpis(self.store, table, where).to_dict()
        if self.dataset.name == "nes":
            return aggregations.participation_kpis(self.store, table, where).to_dict()
        if self.dataset.name == "approval":
            return aggregations.approval_kpis(self.store, table, where).to_dict()
        return aggregations.membership_kpis(self.store, table, where).to_dict()

    def distribution(
        self,
        dimension: str,
        filters: Optional[FilterState] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        column = self.dataset.dimension(dimension).column
        return aggregations.group_counts(self.store, self.dataset.table, column, self.predicate(filters), limit=limit)

    def time_series(self, filters: Optional[FilterState] = None, *, buckets: Optional[int] = 12) -> List[Dict[str, Any]]:
        if self.dataset.date_column is None:
            return []
        return aggregations.time_series(
            self.store,
            self.dataset.table,
            self.dataset.date_column,
            self.predicate(filters),
            buckets=buckets,
        )

    def crosstab(
        self,
        row_dimension: str,
        column_dimension: str,
        filters: Optional[FilterState] = None,
        *,
        columns: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        return aggregations.crosstab(
            self.store,
            self.dataset.table,
            self.dataset.dimension(row_dimension).column,
            self.dataset.dimension(column_dimension).column,
            self.predicate(filters),
            columns=columns,
        )

    def geo_points(self, filters: Optional[FilterState] = None, *, limit: int = 500) -> List[Dict[str, Any]]:
        return aggregations.geo_points(self.store, self.dataset.table, self.predicate(filters), limit=limit)

    def state_metrics(self, filters: Optional[FilterState] = None) -> List[Dict[str, Any]]:
        return aggregations.state_metrics(self.store, self.dataset.table, self.predicate(filters))

    def latest_data_date(self) -> Optional[datetime]:
        return aggregations.latest_data_date(self.store, self.dataset.table)

    def filter_options(self, source: Optional[str] = None) -> Dict[str, List[str]]:
        """Options per dimension; a ``source`` narrows them to that source's rows."""
        return aggregations.filter_options(self.store, self.dataset, self._source_predicate(source))

    def _source_predicate(self, source: Optional[str]) -> Predicate:
        if not source:
            return Predicate()
        if self.dataset.source_dimension is None:
            raise ValueError(f"{self.dataset.title} has no source scope.")
        state = self.dataset.initial_filters().set_values(self.dataset.source_dimension, [source])
        return build_predicate(state, self.dataset)

    def sso_sources(self) -> List[str]:
        """Every source value present in the table, regardless of the current filters."""
        if self.dataset.source_dimension is None:
            return []
        column = self.dataset.dimension(self.dataset.source_dimension).column
        return self.store.distinct(self.dataset.table, column)

    def program_report(self, filters: Optional[FilterState] = None, *, limit: int = 50) -> List[Dict[str, Any]]:
        return aggregations.program_report(self.store, self.dataset.table, self.predicate(filters), limit=limit)

    def export_rows(self, filters: Optional[FilterState] = None) -> List[Dict[str, Any]]:
        frame = self.store.query(self.dataset.table, self.predicate(filters), order_by=self.dataset.order_by)
        return export_rows(frame, self.dataset)

    # ---------------------------------------------------------------- teardown

    def close(self) -> None:
        self._debouncer.cancel()
        if self._owns_worker:
            self.worker.close()
