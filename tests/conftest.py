from __future__ import annotations

import threading
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Callable, List

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from analytics.config import Settings
from analytics.normalize import normalize_participation_frame
from analytics.parsing import parse_csv_text
from analytics.store import AnalyticalStore
from tests.sample_data import (
    APPROVAL_CSV,
    ATTACHMENT_BASE,
    ATTACHMENT_TOKEN,
    PARTICIPATION_CSV,
    TICKET_CSV,
    ManualTimer,
    TrickleHandler,
)


@pytest.fixture()
def timers() -> List[ManualTimer]:
    return []


@pytest.fixture()
def timer_factory(timers: List[ManualTimer]) -> Callable[[float, Callable[[], None]], ManualTimer]:
    def factory(interval: float, function: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(interval, function)
        timers.append(timer)
        return timer

    return factory


@pytest.fixture()
def store():
    s = AnalyticalStore(":memory:")
    s.initialize()
    yield s
    s.close()


@pytest.fixture()
def ticket_csv_path(tmp_path: Path) -> Path:
    path = tmp_path / "tickets.csv"
    path.write_text(TICKET_CSV, encoding="utf-8")
    return path


@pytest.fixture()
def membership_csv_path(tmp_path: Path) -> Path:
    path = tmp_path / "consolidated_data.csv"
    path.write_text(PARTICIPATION_CSV, encoding="utf-8")
    return path


@pytest.fixture()
def approval_csv_path(tmp_path: Path) -> Path:
    path = tmp_path / "approvalTP.csv"
    path.write_text(APPROVAL_CSV, encoding="utf-8")
    return path


@pytest.fixture()
def slow_csv_url():
    server = ThreadingHTTPServer(("127.0.0.1", 0), TrickleHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}/maintenance.csv"
    server.shutdown()
    server.server_close()


@pytest.fixture()
def participation_frame():
    return normalize_participation_frame(parse_csv_text(PARTICIPATION_CSV))


@pytest.fixture()
def nes_parquet_path(tmp_path: Path, participation_frame) -> Path:
    path = tmp_path / "nes.parquet"
    pq.write_table(pa.Table.from_pandas(participation_frame, preserve_index=False), path)
    return path


@pytest.fixture()
def settings(
    tmp_path: Path,
    ticket_csv_path: Path,
    membership_csv_path: Path,
    nes_parquet_path: Path,
    approval_csv_path: Path,
) -> Settings:
    return Settings(
        tickets_url=str(ticket_csv_path),
        parquet_url=str(nes_parquet_path),
        membership_csv=str(membership_csv_path),
        approval_url=str(approval_csv_path),
        attachment_base_url=ATTACHMENT_BASE,
        attachment_token=ATTACHMENT_TOKEN,
        cache_path=str(tmp_path / "cache" / "datasets.sqlite3"),
        load_timeout_seconds=5.0,
        debounce_seconds=0.01,
        use_demo_fallback=True,
    )
