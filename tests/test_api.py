from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from analytics.config import Settings, get_settings
from api.main import app
from tests.sample_data import ATTACHMENT_BASE, ATTACHMENT_TOKEN


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, settings: Settings):
    monkeypatch.setenv("NES_TICKETS_URL", settings.tickets_url)
    monkeypatch.setenv("NES_PARQUET_URL", settings.parquet_url)
    monkeypatch.setenv("NES_MEMBERSHIP_CSV", settings.membership_csv)
    monkeypatch.setenv("NES_APPROVAL_URL", settings.approval_url)
    monkeypatch.setenv("NES_CACHE_PATH", settings.cache_path)
    monkeypatch.setenv("NES_ATTACHMENT_BASE_URL", ATTACHMENT_BASE)
    monkeypatch.setenv("NES_ATTACHMENT_TOKEN", ATTACHMENT_TOKEN)
    monkeypatch.setenv("NES_DEBOUNCE_SECONDS", "0.01")
    get_settings.cache_clear()
    with TestClient(app) as c:
        yield c
    get_settings.cache_clear()


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert set(body["datasets"]) == {"tickets", "nes", "membership", "approval"}


def test_load(client: TestClient) -> None:
    r = client.post("/tickets/load")
    assert r.status_code == 200
    assert r.json()["stage"] == "ready"
    assert r.json()["record_count"] == 3
    assert r.json()["source"] == "remote"


def test_rows_with_filter(client: TestClient) -> None:
    r = client.post("/tickets/rows", json={"dimensions": {"status": ["Open"]}})
    assert r.status_code == 200
    body = r.json()
    assert body["filtered_count"] == 2
    assert body["total_count"] == 3
    assert body["active_filter_count"] == 1
    assert [row["refid_mcmc"] for row in body["rows"]] == ["MC-2", "MC-1"]
    assert body["rows"][0]["maintenance_actions"] is None
    files = body["rows"][1]["maintenance_actions"][0]["files"]
    assert files[0] == f"{ATTACHMENT_BASE}photo1.jpg&token={ATTACHMENT_TOKEN}"


def test_rows_paging(client: TestClient) -> None:
    r = client.post("/tickets/rows", json={"limit": 1, "offset": 1})
    assert [row["refid_mcmc"] for row in r.json()["rows"]] == ["MC-2"]


def test_kpis_and_distribution(client: TestClient) -> None:
    kpis = client.post("/tickets/kpis", json={}).json()
    assert kpis["total"] == 3
    assert kpis["closure_rate"] == 33.3
    dist = client.post("/tickets/distribution/status", json={}).json()
    assert dist["values"] == [{"name": "Open", "value": 2}, {"name": "Closed", "value": 1}]


def test_unknown_dataset_and_dimension(client: TestClient) -> None:
    assert client.post("/parking/kpis", json={}).status_code == 404
    assert client.post("/tickets/distribution/colour", json={}).status_code == 404


def test_bad_input(client: TestClient) -> None:
    assert client.post("/tickets/kpis", json={"date_start": "not-a-date"}).status_code == 422
    assert client.post("/nes/kpis", json={"dimensions": {"year": ["twenty"]}}).status_code == 400
    assert client.get("/tickets/quick-range/fortnight").status_code == 400


def test_quick_range(client: TestClient) -> None:
    body = client.get("/tickets/quick-range/current-month").json()
    assert body["period"] == "current-month"
    assert body["start"].endswith("T00:00:00")
    assert body["end"].endswith("23:59:59.999000")


def test_timeseries_and_crosstab(client: TestClient) -> None:
    series = client.post("/tickets/timeseries", json={}).json()["series"]
    assert [p["month"] for p in series] == ["2024-01", "2024-02", "2024-03"]

    r = client.post("/tickets/crosstab", json={"row_dimension": "nadi", "column_dimension": "status"})
    body = r.json()
    assert body["columns"] == ["Closed", "Open", "Total"]
    assert body["rows"][-1] == {"row": "Total", "Closed": 1, "Open": 2, "Total": 3}


def test_ticket_overview(client: TestClient) -> None:
    overview = client.post("/tickets/overview", json={}).json()
    assert overview["counts"] == {"filtered": 3, "total": 3, "active_filters": 0}
    assert overview["latest_data_date"].startswith("2024-03-02")
    assert "$schema" in overview["charts"]["status"]

    assert client.post("/tickets/approvals", json={}).status_code in (404, 405)


def test_approval_report(client: TestClient) -> None:
    r = client.post("/approval/overview", json={})
    assert r.status_code == 200
    body = r.json()
    assert body["kpis"] == {"total": 5, "request_approval": 1, "submitted": 2}
    assert {s["name"]: s["value"] for s in body["status"]} == {
        "Submitted": 2,
        "Approved": 1,
        "Request Approval": 1,
        "Unknown": 1,
    }
    assert body["by_site"] == [
        {"name": "Site A", "Request Approval": 1, "Submitted": 1},
        {"name": "Site B", "Request Approval": 0, "Submitted": 1},
        {"name": "Site C", "Request Approval": 0, "Submitted": 0},
    ]
    assert body["totals"]["site"] == {"Request Approval": 1, "Submitted": 2}
    assert body["totals"]["sso"] == {"Request Approval": 1, "Submitted": 2}
    assert [row["name"] for row in body["by_sso"]] == ["SSO One", "SSO Two", "Unknown"]

    scoped = client.post("/approval/overview", json={"dimensions": {"site": ["Site B"]}}).json()
    assert scoped["totals"]["site"] == {"Request Approval": 0, "Submitted": 1}


def test_participation_endpoints(client: TestClient) -> None:
    geo = client.post("/nes/geo", json={}).json()["points"]
    assert len(geo) == 2
    nes = client.post("/nes/overview", json={}).json()
    assert nes["kpis"]["total_participants"] == 3
    assert [s["state"] for s in nes["states"]] == ["Selangor", "Johor"]

    options = client.get("/membership/meta/options").json()["options"]
    assert options["state"] == ["Johor", "Selangor"]
    kpis = client.post("/membership/kpis", json={"dimensions": {"state": ["All"]}}).json()
    assert kpis["member_rate"] == 75.0


def test_membership_source_scope(client: TestClient) -> None:
    assert client.get("/membership/sources").json() == {"sources": ["SSO1", "SSO2"]}

    scoped = client.get("/membership/meta/options", params={"source": "SSO2"}).json()
    assert scoped["source"] == "SSO2"
    assert scoped["options"]["nadi"] == ["NADI B"]
    assert scoped["options"]["sso"] == ["SSO1", "SSO2"]

    kpis = client.post("/membership/kpis", json={"source": "SSO1"}).json()
    assert kpis["total_participants"] == 2

    report = client.post("/membership/program-report", json={"source": "SSO1"}).json()["rows"]
    assert report == [{"program_name": "Prog A", "event_date": "2024-01-10", "participants": 2}]
    assert len(client.post("/membership/program-report?limit=2", json={}).json()["rows"]) == 2

    overview = client.post("/membership/overview", json={"source": "SSO2"}).json()
    assert overview["sso_sources"] == ["SSO1", "SSO2"]
    assert [r["program_name"] for r in overview["program_report"]] == ["Prog B", "Prog B"]


def test_source_scope_rejected_where_unsupported(client: TestClient) -> None:
    assert client.post("/tickets/kpis", json={"source": "SSO1"}).status_code == 400
    assert client.get("/tickets/meta/options", params={"source": "SSO1"}).status_code == 400


def test_export_csv(client: TestClient) -> None:
    r = client.post("/tickets/export", json={"dimensions": {"status": ["Closed"]}})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "tickets_data.csv" in r.headers["content-disposition"]
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("REFID MCMC,NADI,State")
    assert len(lines) == 2
    assert lines[1].startswith("MC-3,")
