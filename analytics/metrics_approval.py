from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from analytics import aggregations
from analytics.charts import distribution_donut, stacked_status_bar, to_vega_spec
from analytics.filters import FilterState
from analytics.session import DashboardSession

APPROVAL_STATUSES = ("Request Approval", "Submitted")


def _totals(rows: List[Dict[str, Any]], statuses: Sequence[str]) -> Dict[str, int]:
    return {status: sum(int(r[status]) for r in rows) for status in statuses}


def compute_approval_report(session: DashboardSession, filters: Optional[FilterState] = None) -> Dict[str, Any]:
    """Status summary plus per-site and per-SSO counts of events awaiting approval.

    Every site and SSO in the filtered rows appears in its table, with zeros
    when none of its events is in ``APPROVAL_STATUSES``.
    """
    state = filters or session.filters
    where = session.predicate(state)
    table = session.dataset.table
    status_column = session.dataset.dimension("status").column
    statuses = list(APPROVAL_STATUSES)

    def breakdown(dimension: str) -> List[Dict[str, Any]]:
        column = session.dataset.dimension(dimension).column
        return aggregations.status_breakdown(session.store, table, column, status_column, statuses, where)

    status = session.distribution("status", state)
    by_site = breakdown("site")
    by_sso = breakdown("sso")
    view = session.view(state, limit=0)

    return {
        "kpis": session.kpis(state),
        "counts": {
            "filtered": view.filtered_count,
            "total": view.total_count,
            "active_filters": state.active_filter_count,
        },
        "statuses": statuses,
        "status": status,
        "by_site": by_site,
        "by_sso": by_sso,
        "totals": {"site": _totals(by_site, statuses), "sso": _totals(by_sso, statuses)},
        "charts": {
            "status": to_vega_spec(distribution_donut(status, title="Event Status")),
            "by_site": to_vega_spec(stacked_status_bar(by_site, statuses, title="By Site Profile")),
            "by_sso": to_vega_spec(stacked_status_bar(by_sso, statuses, title="By SSO")),
        },
    }
