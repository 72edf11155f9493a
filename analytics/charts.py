from __future__ import annotations

from typing import Any, Dict, List, Optional

import altair as alt
import pandas as pd

alt.data_transformers.disable_max_rows()

TOP_TYPES = 8


def to_vega_spec(chart: alt.Chart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()


def distribution_bar(rows: List[Dict[str, Any]], *, title: str, limit: Optional[int] = None) -> alt.Chart:
    df = pd.DataFrame(rows or [], columns=["name", "value"])
    if limit is not None:
        df = df.head(limit)
    return (
        alt.Chart(df, title=title)
        .mark_bar()
        .encode(
            x=alt.X("value:Q", title="Count", axis=alt.Axis(format=",")),
            y=alt.Y("name:N", title=None, sort="-x"),
            tooltip=["name", alt.Tooltip("value:Q", format=",")],
        )
    )


def distribution_donut(rows: List[Dict[str, Any]], *, title: str) -> alt.Chart:
    df = pd.DataFrame(rows or [], columns=["name", "value"])
    return (
        alt.Chart(df, title=title)
        .mark_arc(innerRadius=50)
        .encode(
            theta=alt.Theta("value:Q"),
            color=alt.Color("name:N", title=None),
            tooltip=["name", alt.Tooltip("value:Q", format=",")],
        )
    )


def monthly_line(rows: List[Dict[str, Any]], *, title: str = "Monthly Trend") -> alt.Chart:
    df = pd.DataFrame(rows or [], columns=["month", "value"])
    return (
        alt.Chart(df, title=title)
        .mark_line(point=True)
        .encode(
            x=alt.X("month:O", title="Month"),
            y=alt.Y("value:Q", title="Records", axis=alt.Axis(format=",")),
            tooltip=["month", alt.Tooltip("value:Q", format=",")],
        )
    )


def state_bar(rows: List[Dict[str, Any]]) -> alt.Chart:
    df = pd.DataFrame(rows or [], columns=["state", "participants", "events", "nadi_count", "avg_attendance"])
    return (
        alt.Chart(df, title="Participants by State")
        .mark_bar()
        .encode(
            x=alt.X("state:N", title="State", sort="-y"),
            y=alt.Y("participants:Q", title="Participants", axis=alt.Axis(format=",")),
            tooltip=[
                "state",
                alt.Tooltip("participants:Q", format=","),
                alt.Tooltip("events:Q", format=","),
                alt.Tooltip("avg_attendance:Q", format=".1f"),
            ],
        )
    )


def geo_scatter(rows: List[Dict[str, Any]]) -> alt.Chart:
    df = pd.DataFrame(rows or [], columns=["lat", "lng", "name", "participants", "events", "state"])
    return (
        alt.Chart(df, title="Sites")
        .mark_circle(opacity=0.7)
        .encode(
            longitude="lng:Q",
            latitude="lat:Q",
            size=alt.Size("participants:Q", title="Participants"),
            tooltip=["name", "state", alt.Tooltip("participants:Q", format=","), alt.Tooltip("events:Q", format=",")],
        )
        .project(type="mercator")
    )


def stacked_status_bar(rows: List[Dict[str, Any]], statuses: List[str], *, title: str) -> alt.Chart:
    """One bar per row name, stacked by status; ``rows`` carry a count per status key."""
    df = pd.DataFrame(rows or [], columns=["name"] + statuses)
    long = df.melt(id_vars="name", value_vars=statuses, var_name="status", value_name="value")
    return (
        alt.Chart(long, title=title)
        .mark_bar()
        .encode(
            x=alt.X("value:Q", title="Count", stack="zero", axis=alt.Axis(format=",")),
            y=alt.Y("name:N", title=None, sort="-x"),
            color=alt.Color("status:N", title="Status", sort=statuses),
            tooltip=["name", "status", alt.Tooltip("value:Q", format=",")],
        )
    )
