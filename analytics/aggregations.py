from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from analytics.datasets import DatasetSpec
from analytics.query import quote_ident, sql_literal
from analytics.records import UNKNOWN
from analytics.store import AnalyticalStore, Where, as_predicate

EXCLUDED_STATES = ("", "?", "Unknown")
TOTAL = "Total"


def _num(value: Any, digits: Optional[int] = None) -> float:
    if value is None or pd.isna(value):
        return 0.0
    out = float(value)
    return round(out, digits) if digits is not None else out


def _int(value: Any) -> int:
    if value is None or pd.isna(value):
        return 0
    return int(value)


def _first_row(df: pd.DataFrame) -> Dict[str, Any]:
    return {} if df.empty else df.iloc[0].to_dict()


def _label(column: str) -> str:
    col = quote_ident(column)
    return f"COALESCE(NULLIF(TRIM(CAST({col} AS VARCHAR)), ''), {sql_literal(UNKNOWN)})"


def _distinct_count(column: str) -> str:
    return f"COUNT(DISTINCT NULLIF(TRIM(CAST({quote_ident(column)} AS VARCHAR)), ''))"


def group_counts(
    store: AnalyticalStore,
    table: str,
    column: str,
    where: Where = None,
    *,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Value -> count, largest first; equal counts are ordered alphabetically.

    Null and blank values are counted under "Unknown" so the counts always sum
    to the number of matching rows.
    """
    sql = (
        f"SELECT {_label(column)} AS name, COUNT(*) AS value FROM {quote_ident(table)} "
        f"{as_predicate(where).where_sql} GROUP BY 1 ORDER BY value DESC, name ASC"
    )
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    df = store.execute_read(sql)
    if df.empty:
        return []
    return [{"name": str(r.name), "value": int(r.value)} for r in df.itertuples(index=False)]


def time_series(
    store: AnalyticalStore,
    table: str,
    date_column: str,
    where: Where = None,
    *,
    buckets: Optional[int] = 12,
) -> List[Dict[str, Any]]:
    """Row counts per year-month, oldest first, keeping the most recent ``buckets`` months."""
    ts = f"TRY_CAST({quote_ident(date_column)} AS TIMESTAMP)"
    predicate = as_predicate(where).and_(f"{ts} IS NOT NULL")
    df = store.execute_read(
        f"SELECT strftime({ts}, '%Y-%m') AS month, COUNT(*) AS value FROM {quote_ident(table)} "
        f"{predicate.where_sql} GROUP BY 1 ORDER BY 1"
    )
    if df.empty:
        return []
    rows = [{"month": str(r.month), "value": int(r.value)} for r in df.itertuples(index=False)]
    if buckets is not None and buckets > 0:
        rows = rows[-buckets:]
    return rows


def crosstab(
    store: AnalyticalStore,
    table: str,
    row_column: str,
    column_column: str,
    where: Where = None,
    *,
    columns: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Row x column count matrix with a "Total" column and a trailing "Total" row.

    ``columns`` pins the column set (missing ones appear as zeros) and drops
    rows whose column value is outside it.
    """
    predicate = as_predicate(where)
    if columns:
        predicate = predicate.and_(
            f"{_label(column_column)} IN ({', '.join(sql_literal(c) for c in columns)})"
        )
    df = store.execute_read(
        f"SELECT {_label(row_column)} AS row_key, {_label(column_column)} AS col_key, COUNT(*) AS n "
        f"FROM {quote_ident(table)} {predicate.where_sql} GROUP BY 1, 2"
    )
    if columns:
        col_order: List[str] = list(columns)
    elif not df.empty:
        col_order = sorted(df["col_key"].astype(str).unique())
    else:
        col_order = []

    if df.empty:
        matrix = pd.DataFrame(columns=col_order, dtype="int64")
    else:
        matrix = df.pivot_table(index="row_key", columns="col_key", values="n", aggfunc="sum", fill_value=0)
        matrix = matrix.reindex(columns=col_order, fill_value=0).astype("int64")
    matrix.columns.name = None
    matrix[TOTAL] = matrix.sum(axis=1).astype("int64")
    matrix = matrix.sort_values(TOTAL, ascending=False, kind="mergesort")
    totals = matrix.sum(axis=0).astype("int64")
    totals.name = TOTAL
    out = pd.concat([matrix, totals.to_frame().T])
    out.index.name = row_column
    return out


def geo_points(store: AnalyticalStore, table: str, where: Where = None, *, limit: int = 500) -> List[Dict[str, Any]]:
    present = set(store.columns(table))
    if not {"latitude", "longitude"}.issubset(present):
        return []
    name_parts = [f"NULLIF({quote_ident(c)}, '')" for c in ("nadi_name", "site_name") if c in present]
    name_expr = f"COALESCE({', '.join(name_parts + [sql_literal(UNKNOWN)])})"
    group_cols = ["latitude", "longitude"] + [c for c in ("nadi_name", "site_name", "state_name") if c in present]
    state_expr = "COALESCE(state_name, '')" if "state_name" in present else "''"
    predicate = as_predicate(where).and_(
        "latitude IS NOT NULL",
        "longitude IS NOT NULL",
        "latitude != 0",
        "longitude != 0",
    )
    df = store.execute_read(
        f"SELECT latitude AS lat, longitude AS lng, {name_expr} AS name, "
        f"{_distinct_count('participant_id')} AS participants, {_distinct_count('event_id')} AS events, "
        f"{state_expr} AS state FROM {quote_ident(table)} {predicate.where_sql} "
        f"GROUP BY {', '.join(group_cols)} ORDER BY participants DESC, name ASC LIMIT {int(limit)}"
    )
    if df.empty:
        return []
    return [
        {
            "lat": float(r.lat),
            "lng": float(r.lng),
            "name": str(r.name),
            "participants": int(r.participants),
            "events": int(r.events),
            "state": str(r.state),
        }
        for r in df.itertuples(index=False)
    ]


def state_metrics(store: AnalyticalStore, table: str, where: Where = None) -> List[Dict[str, Any]]:
    present = set(store.columns(table))
    if "state_name" not in present:
        return []
    code_expr = "COALESCE(CAST(state_code AS VARCHAR), '')" if "state_code" in present else "''"
    predicate = as_predicate(where).and_(
        "state_name IS NOT NULL",
        f"state_name NOT IN ({', '.join(sql_literal(s) for s in EXCLUDED_STATES)})",
    )
    df = store.execute_read(
        f"SELECT state_name AS state, {code_expr} AS state_code, "
        f"{_distinct_count('participant_id')} AS participants, {_distinct_count('event_id')} AS events, "
        f"{_distinct_count('nadi_name')} AS nadi_count, "
        f"COALESCE(AVG(attendance_rate_percent), 0) AS avg_attendance "
        f"FROM {quote_ident(table)} {predicate.where_sql} GROUP BY 1, 2 ORDER BY participants DESC, state ASC"
    )
    if df.empty:
        return []
    return [
        {
            "state": str(r.state),
            "state_code": str(r.state_code),
            "participants": int(r.participants),
            "events": int(r.events),
            "nadi_count": int(r.nadi_count),
            "avg_attendance": _num(r.avg_attendance, 1),
        }
        for r in df.itertuples(index=False)
    ]


@dataclass(frozen=True)
class ParticipationKPIs:
    total_participants: int = 0
    unique_members: int = 0
    total_events: int = 0
    total_nadi: int = 0
    avg_attendance_rate: float = 0.0
    avg_target_achievement: float = 0.0
    total_new_members: int = 0
    avg_participant_age: float = 0.0
    male_percent: float = 0.0
    female_percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def participation_kpis(store: AnalyticalStore, table: str, where: Where = None) -> ParticipationKPIs:
    present = set(store.columns(table))
    if not present:
        return ParticipationKPIs()

    def avg(col: str) -> str:
        return f"COALESCE(AVG({quote_ident(col)}), 0)" if col in present else "0"

    def total(col: str) -> str:
        return f"COALESCE(SUM({quote_ident(col)}), 0)" if col in present else "0"

    gendered = {"male_count", "female_count"}.issubset(present)
    male = "COALESCE(SUM(male_count) * 100.0 / NULLIF(SUM(male_count + female_count), 0), 0)" if gendered else "0"
    female = "COALESCE(SUM(female_count) * 100.0 / NULLIF(SUM(male_count + female_count), 0), 0)" if gendered else "0"

    row = _first_row(
        store.execute_read(
            f"SELECT {_distinct_count('participant_id')} AS total_participants, "
            f"{_distinct_count('member_id')} AS unique_members, "
            f"{_distinct_count('event_id')} AS total_events, "
            f"{_distinct_count('nadi_name')} AS total_nadi, "
            f"{avg('attendance_rate_percent')} AS avg_attendance_rate, "
            f"{avg('target_achievement_percent')} AS avg_target_achievement, "
            f"{total('total_new_member')} AS total_new_members, "
            f"{avg('avg_participant_age')} AS avg_participant_age, "
            f"{male} AS male_percent, {female} AS female_percent "
            f"FROM {quote_ident(table)} {as_predicate(where).where_sql}"
        )
    )
    if not row:
        return ParticipationKPIs()
    return ParticipationKPIs(
        total_participants=_int(row.get("total_participants")),
        unique_members=_int(row.get("unique_members")),
        total_events=_int(row.get("total_events")),
        total_nadi=_int(row.get("total_nadi")),
        avg_attendance_rate=_num(row.get("avg_attendance_rate"), 1),
        avg_target_achievement=_num(row.get("avg_target_achievement"), 1),
        total_new_members=int(round(_num(row.get("total_new_members")))),
        avg_participant_age=_num(row.get("avg_participant_age"), 1),
        male_percent=_num(row.get("male_percent"), 1),
        female_percent=_num(row.get("female_percent"), 1),
    )


@dataclass(frozen=True)
class MembershipKPIs:
    total_participants: int = 0
    unique_members: int = 0
    total_events: int = 0
    total_nadi: int = 0
    member_rate: float = 0.0
    avg_participants_per_event: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def membership_kpis(store: AnalyticalStore, table: str, where: Where = None) -> MembershipKPIs:
    row = _first_row(
        store.execute_read(
            f"SELECT {_distinct_count('participant_id')} AS total_participants, "
            f"{_distinct_count('member_id')} AS unique_members, "
            f"{_distinct_count('event_id')} AS total_events, "
            f"{_distinct_count('nadi_name')} AS total_nadi, "
            f"COUNT(*) AS row_count, "
            f"COUNT(*) FILTER (WHERE membership_status = 'Member') AS members "
            f"FROM {quote_ident(table)} {as_predicate(where).where_sql}"
        )
    )
    if not row:
        return MembershipKPIs()
    participants = _int(row.get("total_participants"))
    events = _int(row.get("total_events"))
    rows = _int(row.get("row_count"))
    members = _int(row.get("members"))
    return MembershipKPIs(
        total_participants=participants,
        unique_members=_int(row.get("unique_members")),
        total_events=events,
        total_nadi=_int(row.get("total_nadi")),
        member_rate=round(members * 100.0 / rows, 1) if rows else 0.0,
        avg_participants_per_event=round(participants / events, 1) if events else 0.0,
    )


@dataclass(frozen=True)
class TicketKPIs:
    total: int = 0
    open: int = 0
    in_progress: int = 0
    closed: int = 0
    closure_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def ticket_kpis(store: AnalyticalStore, table: str, where: Where = None) -> TicketKPIs:
    row = _first_row(
        store.execute_read(
            "SELECT COUNT(*) AS total, "
            "COUNT(*) FILTER (WHERE status = 'Open') AS open, "
            "COUNT(*) FILTER (WHERE status = 'In Progress') AS in_progress, "
            "COUNT(*) FILTER (WHERE status = 'Closed') AS closed "
            f"FROM {quote_ident(table)} {as_predicate(where).where_sql}"
        )
    )
    total = _int(row.get("total"))
    closed = _int(row.get("closed"))
    return TicketKPIs(
        total=total,
        open=_int(row.get("open")),
        in_progress=_int(row.get("in_progress")),
        closed=closed,
        closure_rate=round(closed * 100.0 / total, 1) if total else 0.0,
    )


def latest_data_date(
    store: AnalyticalStore,
    table: str,
    columns: Sequence[str] = ("updated_date_parsed", "registered_date_parsed"),
    where: Where = None,
) -> Optional[datetime]:
    """Newest timestamp across ``columns``, preferring the first non-null column per row."""
    present = set(store.columns(table))
    usable = [f"TRY_CAST({quote_ident(c)} AS TIMESTAMP)" for c in columns if c in present]
    if not usable:
        return None
    expr = usable[0] if len(usable) == 1 else f"COALESCE({', '.join(usable)})"
    row = _first_row(
        store.execute_read(f"SELECT MAX({expr}) AS latest FROM {quote_ident(table)} {as_predicate(where).where_sql}")
    )
    latest = row.get("latest")
    if latest is None or pd.isna(latest):
        return None
    return pd.Timestamp(latest).to_pydatetime()


def filter_options(store: AnalyticalStore, dataset: DatasetSpec, where: Where = None) -> Dict[str, List[str]]:
    """Distinct non-blank values per filter dimension.

    ``where`` narrows every dimension except the dataset's source dimension,
    whose options always span the whole table so the scope can be switched.
    """
    present = set(store.columns(dataset.table))
    options: Dict[str, List[str]] = {}
    for dim in dataset.dimensions:
        if dim.column not in present:
            options[dim.name] = []
            continue
        order_by = dim.order_by if dim.order_by in present else None
        options[dim.name] = store.distinct(
            dataset.table,
            dim.column,
            None if dim.name == dataset.source_dimension else where,
            exclude=dim.exclude,
            order_by=order_by,
            descending=dim.descending,
        )
    return options


def program_report(store: AnalyticalStore, table: str, where: Where = None, *, limit: int = 50) -> List[Dict[str, Any]]:
    """Participant rows per (program, event date), newest event date first."""
    present = set(store.columns(table))
    if not {"program_name", "event_date"}.issubset(present):
        return []
    df = store.execute_read(
        f"SELECT {_label('program_name')} AS program_name, {_label('event_date')} AS event_date, "
        f"COUNT(*) AS participants FROM {quote_ident(table)} {as_predicate(where).where_sql} "
        f"GROUP BY 1, 2 ORDER BY event_date DESC, program_name ASC LIMIT {int(limit)}"
    )
    if df.empty:
        return []
    return [
        {"program_name": str(r.program_name), "event_date": str(r.event_date), "participants": int(r.participants)}
        for r in df.itertuples(index=False)
    ]


def status_breakdown(
    store: AnalyticalStore,
    table: str,
    row_column: str,
    status_column: str,
    statuses: Sequence[str],
    where: Where = None,
) -> List[Dict[str, Any]]:
    """Per-row counts of each status in ``statuses``, one entry per row value, by name.

    Rows whose only statuses fall outside ``statuses`` are kept with zero counts.
    """
    counts = ", ".join(
        f"COUNT(*) FILTER (WHERE {_label(status_column)} = {sql_literal(s)}) AS c{i}" for i, s in enumerate(statuses)
    )
    df = store.execute_read(
        f"SELECT {_label(row_column)} AS name, {counts} FROM {quote_ident(table)} "
        f"{as_predicate(where).where_sql} GROUP BY 1 ORDER BY 1"
    )
    if df.empty:
        return []
    out = []
    for record in df.to_dict(orient="records"):
        row: Dict[str, Any] = {"name": str(record["name"])}
        for i, status in enumerate(statuses):
            row[status] = _int(record[f"c{i}"])
        out.append(row)
    return out


@dataclass(frozen=True)
class ApprovalKPIs:
    total: int = 0
    request_approval: int = 0
    submitted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def approval_kpis(store: AnalyticalStore, table: str, where: Where = None) -> ApprovalKPIs:
    row = _first_row(
        store.execute_read(
            "SELECT COUNT(*) AS total, "
            "COUNT(*) FILTER (WHERE event_status_name = 'Request Approval') AS request_approval, "
            "COUNT(*) FILTER (WHERE event_status_name = 'Submitted') AS submitted "
            f"FROM {quote_ident(table)} {as_predicate(where).where_sql}"
        )
    )
    return ApprovalKPIs(
        total=_int(row.get("total")),
        request_approval=_int(row.get("request_approval")),
        submitted=_int(row.get("submitted")),
    )
