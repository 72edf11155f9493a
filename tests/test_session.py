from __future__ import annotations

import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import List

import pytest

from analytics.cache import DatasetCache
from analytics.config import Settings
from analytics.datasets import APPROVAL, MEMBERSHIP, NES, TICKETS
from analytics.session import DashboardSession, DashboardView, LoadStatus
from analytics.store import AnalyticalStore


@pytest.fixture()
def cache(settings: Settings):
    c = DatasetCache(settings.cache_path)
    yield c
    c.close()


@pytest.fixture()
def sessions():
    opened: List[DashboardSession] = []
    yield opened
    for s in opened:
        s.close()


def _session(sessions, dataset, store, settings, **kwargs) -> DashboardSession:
    session = DashboardSession(dataset, store, settings=settings, **kwargs)
    sessions.append(session)
    return session


class TestTicketLoading:
    def test_load_from_source(self, sessions, store: AnalyticalStore, settings: Settings, cache) -> None:
        stages: List[str] = []
        session = _session(sessions, TICKETS, store, settings, cache=cache, on_stage=lambda s: stages.append(s.stage))
        status = session.load()
        assert status.is_ready
        assert status.source == "remote"
        assert status.record_count == 3
        assert status.error is None
        assert "downloading" in stages
        assert stages[-1] == "ready"
        assert session.latest_view is not None
        assert session.latest_view.filtered_count == 3

    def test_second_store_is_served_from_cache(self, sessions, settings: Settings, cache) -> None:
        with AnalyticalStore() as first:
            _session(sessions, TICKETS, first, settings, cache=cache).load()
        with AnalyticalStore() as second:
            status = _session(sessions, TICKETS, second, settings, cache=cache).load()
            assert status.source == "cache"
            assert status.record_count == 3

    def test_load_is_a_noop_when_table_exists(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, TICKETS, store, settings)
        session.load()
        status = session.load()
        assert status.is_ready
        assert status.source == "remote"

    def test_fetch_failure_falls_back_to_demo(self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path) -> None:
        broken = replace(settings, tickets_url=str(tmp_path / "missing.csv"))
        status = _session(sessions, TICKETS, store, broken).load()
        assert status.is_ready
        assert status.source == "demo"
        assert status.error
        assert status.record_count == 250

    def test_trickling_source_is_abandoned_at_the_load_deadline(
        self, sessions, store: AnalyticalStore, settings: Settings, slow_csv_url: str
    ) -> None:
        slow = replace(settings, tickets_url=slow_csv_url, load_timeout_seconds=0.5)
        started = time.monotonic()
        status = _session(sessions, TICKETS, store, slow).load()
        assert time.monotonic() - started < 3.0
        assert status.source == "demo"
        assert "Timed out" in status.error

    def test_parse_is_refused_once_the_budget_is_spent(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, TICKETS, store, settings)
        with pytest.raises(TimeoutError):
            session._parse_and_normalize("a,b\n1,2\n", time.monotonic() - 0.1)

    def test_fetch_failure_prefers_stale_table(self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path) -> None:
        _session(sessions, TICKETS, store, settings).load()
        broken = replace(settings, tickets_url=str(tmp_path / "missing.csv"))
        status = _session(sessions, TICKETS, store, broken).refresh()
        assert status.source == "stale"
        assert status.record_count == 3

    def test_fetch_failure_uses_cached_frame(self, sessions, settings: Settings, cache, tmp_path: Path) -> None:
        with AnalyticalStore() as first:
            _session(sessions, TICKETS, first, settings, cache=cache).load()
        broken = replace(settings, tickets_url=str(tmp_path / "missing.csv"))
        with AnalyticalStore() as second:
            status = _session(sessions, TICKETS, second, broken, cache=cache).load()
            assert status.source == "cache"
            assert status.error

    def test_membership_failure_without_fallback_is_an_error(
        self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path
    ) -> None:
        broken = replace(settings, membership_csv=str(tmp_path / "missing.csv"))
        status = _session(sessions, MEMBERSHIP, store, broken).load()
        assert status.stage == "error"
        assert not status.is_ready
        assert status.error


class TestFilters:
    def test_burst_of_changes_produces_one_view(
        self, sessions, store: AnalyticalStore, settings: Settings, timers, timer_factory
    ) -> None:
        views: List[DashboardView] = []
        session = _session(sessions, TICKETS, store, settings, on_view=views.append, timer_factory=timer_factory)
        session.load()
        views.clear()

        session.toggle("status", "Open")
        session.toggle("state", "Selangor")
        session.toggle("state", "Johor")
        assert views == []
        assert len(timers) == 3
        timers[-1].fire()

        assert len(views) == 1
        view = views[0]
        assert view.filters.values("state") == {"Selangor", "Johor"}
        assert view.filtered_count == 2
        assert view.total_count == 3
        assert view.active_filter_count == 2

    def test_apply_now_skips_the_quiet_period(self, sessions, store: AnalyticalStore, settings: Settings, timer_factory) -> None:
        session = _session(sessions, TICKETS, store, settings, timer_factory=timer_factory)
        session.load()
        session.toggle("status", "Closed")
        view = session.apply_now()
        assert view is not None
        assert view.filtered_count == 1
        assert list(view.rows["refid_mcmc"]) == ["MC-3"]

    def test_reset(self, sessions, store: AnalyticalStore, settings: Settings, timer_factory) -> None:
        session = _session(sessions, TICKETS, store, settings, timer_factory=timer_factory)
        session.load()
        session.set_values("priority", ["High"])
        session.set_date_range(None, None)
        assert session.reset() == TICKETS.initial_filters()
        assert session.active_filter_count == 0

    def test_reads_follow_filters(self, sessions, store: AnalyticalStore, settings: Settings, timer_factory) -> None:
        session = _session(sessions, TICKETS, store, settings, timer_factory=timer_factory)
        session.load()
        state = TICKETS.initial_filters().toggle("nadi", "NADI A")
        assert session.kpis(state)["total"] == 2
        assert session.distribution("status", state) == [{"name": "Closed", "value": 1}, {"name": "Open", "value": 1}]
        assert [p["month"] for p in session.time_series(state)] == ["2024-01", "2024-03"]
        assert session.crosstab("nadi", "status").loc["Total", "Total"] == 3
        rows = session.view(limit=1).rows
        assert list(rows["refid_mcmc"]) == ["MC-3"]

    def test_export_rows(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, TICKETS, store, settings)
        session.load()
        rows = session.export_rows()
        assert [r["REFID MCMC"] for r in rows] == ["MC-3", "MC-2", "MC-1"]
        assert rows[1]["Updated Date"] == "N/A"

    def test_export_is_not_limited_by_the_row_cap(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        capped = replace(MEMBERSHIP, row_cap=1)
        session = _session(sessions, capped, store, settings)
        session.load()
        assert len(session.apply_now().rows) == 1
        assert len(session.export_rows()) == 4

    def test_superseded_view_is_discarded(
        self, sessions, store: AnalyticalStore, settings: Settings, timers, timer_factory, monkeypatch
    ) -> None:
        views: List[DashboardView] = []
        session = _session(sessions, TICKETS, store, settings, on_view=views.append, timer_factory=timer_factory)
        session.load()
        views.clear()

        older = TICKETS.initial_filters().toggle("status", "Open")
        newer = TICKETS.initial_filters().toggle("status", "Closed")
        entered = threading.Event()
        release = threading.Event()
        real_view = session.view

        def slow_view(filters=None, **kwargs):
            if filters == older:
                entered.set()
                release.wait(5)
            return real_view(filters, **kwargs)

        monkeypatch.setattr(session, "view", slow_view)
        session.set_filters(older)
        worker = threading.Thread(target=timers[-1].fire)
        worker.start()
        assert entered.wait(5)

        session.set_filters(newer)
        timers[-1].fire()
        release.set()
        worker.join(5)

        assert [v.filters for v in views] == [newer]
        assert session.latest_view.filters == newer
        assert session.latest_view.filtered_count == 1


class TestParticipationSessions:
    def test_nes_parquet_session(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, NES, store, settings)
        status = session.load()
        assert status.source == "remote"
        assert status.record_count == 4
        assert session.kpis()["total_participants"] == 3
        assert [s["state"] for s in session.state_metrics()] == ["Selangor", "Johor"]
        assert len(session.geo_points()) == 2
        assert session.filter_options()["year"] == ["2024"]

    def test_nes_failed_refresh_serves_stale(self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path) -> None:
        _session(sessions, NES, store, settings).load()
        broken = replace(settings, parquet_url=str(tmp_path / "missing.parquet"))
        status = _session(sessions, NES, store, broken).refresh()
        assert status.source == "stale"
        assert status.error
        assert status.record_count == 4

    def test_nes_missing_source_is_an_error(self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path) -> None:
        broken = replace(settings, parquet_url=str(tmp_path / "missing.parquet"))
        status = _session(sessions, NES, store, broken).load()
        assert status.stage == "error"

    def test_membership_sentinel_filters(self, sessions, store: AnalyticalStore, settings: Settings, timer_factory) -> None:
        session = _session(sessions, MEMBERSHIP, store, settings, timer_factory=timer_factory)
        assert session.load().is_ready
        session.toggle("state", "Johor")
        view = session.apply_now()
        assert view.filtered_count == 1
        session.toggle("state", "Johor")
        assert session.filters.values("state") == {"All"}
        assert session.kpis()["member_rate"] == 75.0

    def test_membership_source_scope(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, MEMBERSHIP, store, settings)
        session.load()
        assert session.sso_sources() == ["SSO1", "SSO2"]
        scoped = session.filter_options("SSO1")
        assert scoped["nadi"] == ["NADI A"]
        assert scoped["sso"] == ["SSO1", "SSO2"]
        assert session.filter_options()["nadi"] == ["NADI A", "NADI B"]

    def test_program_report(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, MEMBERSHIP, store, settings)
        session.load()
        assert session.program_report() == [
            {"program_name": "Prog B", "event_date": "not a date", "participants": 1},
            {"program_name": "Prog B", "event_date": "2024-02-15", "participants": 1},
            {"program_name": "Prog A", "event_date": "2024-01-10", "participants": 2},
        ]
        scoped = MEMBERSHIP.initial_filters().set_values("sso", ["SSO1"])
        assert session.program_report(scoped) == [
            {"program_name": "Prog A", "event_date": "2024-01-10", "participants": 2}
        ]
        assert len(session.program_report(limit=1)) == 1

    def test_source_scope_on_unscoped_dataset_is_rejected(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, TICKETS, store, settings)
        session.load()
        with pytest.raises(ValueError):
            session.filter_options("SSO1")
        assert session.sso_sources() == []


class TestApprovalSession:
    def test_load_and_read(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, APPROVAL, store, settings)
        status = session.load()
        assert status.source == "remote"
        assert status.record_count == 5
        assert session.kpis() == {"total": 5, "request_approval": 1, "submitted": 2}
        assert session.distribution("status")[0] == {"name": "Submitted", "value": 2}
        assert session.filter_options()["site"] == ["Site A", "Site B", "Site C"]
        assert session.time_series() == []

    def test_date_filters_are_ignored(self, sessions, store: AnalyticalStore, settings: Settings) -> None:
        session = _session(sessions, APPROVAL, store, settings)
        session.load()
        state = APPROVAL.initial_filters().set_quick_date_range("last-7-days")
        assert session.view(state).filtered_count == 5

    def test_missing_source_falls_back_to_demo(
        self, sessions, store: AnalyticalStore, settings: Settings, tmp_path: Path
    ) -> None:
        broken = replace(settings, approval_url=str(tmp_path / "missing.csv"))
        status = _session(sessions, APPROVAL, store, broken).load()
        assert status.source == "demo"
        assert status.record_count == 200


def test_load_status_dict() -> None:
    status = LoadStatus(stage="ready", progress=100, record_count=3, source="cache")
    assert status.is_ready
    assert status.to_dict()["source"] == "cache"
