from __future__ import annotations

from typing import Any, Dict, Optional

from analytics.charts import (
    distribution_bar,
    distribution_donut,
    geo_scatter,
    monthly_line,
    state_bar,
    to_vega_spec,
)
from analytics.filters import FilterState
from analytics.session import DashboardSession


def compute_participation_overview(session: DashboardSession, filters: Optional[FilterState] = None) -> Dict[str, Any]:
    state = filters or session.filters
    view = session.view(state, limit=0)
    kpis = session.kpis(state)
    monthly = session.time_series(state, buckets=12)
    membership = session.distribution("membership_status", state)

    payload: Dict[str, Any] = {
        "kpis": kpis,
        "counts": {
            "filtered": view.filtered_count,
            "total": view.total_count,
            "active_filters": state.active_filter_count,
        },
        "membership_status": membership,
        "monthly": monthly,
        "charts": {
            "membership_status": to_vega_spec(distribution_donut(membership, title="Membership Status")),
            "monthly": to_vega_spec(monthly_line(monthly, title="Participation per Month")),
        },
    }

    if session.dataset.name == "nes":
        states = session.state_metrics(state)
        geo = session.geo_points(state)
        categories = session.distribution("category", state, limit=10)
        payload.update({"states": states, "geo": geo, "categories": categories})
        payload["charts"].update(
            {
                "states": to_vega_spec(state_bar(states)),
                "geo": to_vega_spec(geo_scatter(geo)),
                "categories": to_vega_spec(distribution_bar(categories, title="Top Categories")),
            }
        )
    else:
        regions = session.distribution("region", state)
        payload["regions"] = regions
        payload["program_report"] = session.program_report(state)
        payload["sso_sources"] = session.sso_sources()
        payload["charts"]["regions"] = to_vega_spec(distribution_bar(regions, title="Participants by Region"))
    return payload
