from __future__ import annotations

from typing import Any, Dict, Optional

from analytics.charts import TOP_TYPES, distribution_bar, distribution_donut, monthly_line, to_vega_spec
from analytics.filters import FilterState
from analytics.session import DashboardSession

def compute_ticket_overview(session: DashboardSession, filters: Optional[FilterState] = None) -> Dict[str, Any]:
    state = filters or session.filters
    view = session.view(state, limit=0)
    status = session.distribution("status", state)
    types = session.distribution("type", state, limit=TOP_TYPES)
    priority = session.distribution("priority", state)
    monthly = session.time_series(state, buckets=12)

    return {
        "kpis": session.kpis(state),
        "counts": {
            "filtered": view.filtered_count,
            "total": view.total_count,
            "active_filters": state.active_filter_count,
        },
        "latest_data_date": session.latest_data_date(),
        "status": status,
        "types": types,
        "priority": priority,
        "monthly": monthly,
        "charts": {
            "status": to_vega_spec(distribution_donut(status, title="Status")),
            "types": to_vega_spec(distribution_bar(types, title="Top Maintenance Types")),
            "priority": to_vega_spec(distribution_bar(priority, title="Priority")),
            "monthly": to_vega_spec(monthly_line(monthly, title="Tickets per Month")),
        },
    }
