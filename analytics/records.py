from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class MaintenanceAction:
    maintenance_action_id: Optional[Union[int, str]]
    action_text: str
    action: str
    files: Tuple[str, ...]
    created_at: str


@dataclass(frozen=True)
class TicketRecord:
    title: str
    maintenance_description: str
    refid_mcmc: str
    nadi: str
    state: str
    tp: str
    dusp: str
    status: str
    requester: str
    maintenance_type: str
    phase: str
    priority: str
    registered_date: str
    updated_date: str
    registered_date_parsed: Optional[datetime]
    updated_date_parsed: Optional[datetime]
    registered_month: str
    image_url: Optional[str] = None
    maintenance_actions: Optional[Tuple[MaintenanceAction, ...]] = None


@dataclass(frozen=True)
class ParticipationRecord:
    participant_id: str
    member_id: str
    event_id: str
    participation_date: str
    program_name: str
    category_name: str
    event_created_at: str
    event_description: str
    sso_name: str
    source_name: str
    site_id: str
    nadi_name: str
    nadi_location: str
    organization_id: str
    organization_name: str
    organization_type: str
    state_id: str
    state_name: str
    region_id: str
    region_name: str
    membership_status: str
    age_group: str
    time_of_day: str
    event_date: str
    event_month_name: str
    event_quarter: str
    event_total_participants: int
    event_duration_hours: float
    attendance_rate_percent: float
    target_achievement_percent: float
    male_count: int
    female_count: int
    latitude: float
    longitude: float
    event_year: int
    event_month: int
    parsed_event_date: Optional[datetime]


@dataclass(frozen=True)
class ApprovalRecord:
    """One TP event awaiting or past approval."""

    event_status_name: str
    site_profile_name_tp: str
    sso_name: str


TICKET_COLUMNS: List[str] = [f.name for f in fields(TicketRecord)]
PARTICIPATION_COLUMNS: List[str] = [f.name for f in fields(ParticipationRecord)]
APPROVAL_COLUMNS: List[str] = [f.name for f in fields(ApprovalRecord)]

TICKET_DATE_COLUMNS = ["registered_date_parsed", "updated_date_parsed"]
PARTICIPATION_DATE_COLUMNS = ["parsed_event_date"]
PARTICIPATION_INT_COLUMNS = ["event_total_participants", "male_count", "female_count", "event_year", "event_month"]
PARTICIPATION_FLOAT_COLUMNS = [
    "event_duration_hours",
    "attendance_rate_percent",
    "target_achievement_percent",
    "latitude",
    "longitude",
]


def actions_to_json(actions: Optional[Sequence[MaintenanceAction]]) -> Optional[str]:
    if actions is None:
        return None
    return json.dumps([{**asdict(a), "files": list(a.files)} for a in actions])


def actions_from_json(value: object) -> List[Dict[str, Any]]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    try:
        parsed = json.loads(str(value))
    except ValueError:
        return []
    return parsed if isinstance(parsed, list) else []


def _empty_frame(columns: Sequence[str], date_cols: Sequence[str]) -> pd.DataFrame:
    df = pd.DataFrame({c: pd.Series(dtype=object) for c in columns})
    for c in date_cols:
        df[c] = pd.Series(dtype="datetime64[ns]")
    return df


def tickets_to_frame(records: Sequence[TicketRecord]) -> pd.DataFrame:
    if not records:
        return _empty_frame(TICKET_COLUMNS, TICKET_DATE_COLUMNS)
    rows = []
    for r in records:
        row = {name: getattr(r, name) for name in TICKET_COLUMNS}
        row["maintenance_actions"] = actions_to_json(r.maintenance_actions)
        rows.append(row)
    df = pd.DataFrame(rows, columns=TICKET_COLUMNS)
    for c in TICKET_DATE_COLUMNS:
        df[c] = pd.to_datetime(df[c], errors="coerce")
    return df


def participation_to_frame(records: Sequence[ParticipationRecord]) -> pd.DataFrame:
    if not records:
        df = _empty_frame(PARTICIPATION_COLUMNS, PARTICIPATION_DATE_COLUMNS)
    else:
        df = pd.DataFrame([asdict(r) for r in records], columns=PARTICIPATION_COLUMNS)
        for c in PARTICIPATION_DATE_COLUMNS:
            df[c] = pd.to_datetime(df[c], errors="coerce")
    for c in PARTICIPATION_INT_COLUMNS:
        df[c] = df[c].astype("int64")
    for c in PARTICIPATION_FLOAT_COLUMNS:
        df[c] = df[c].astype("float64")
    return df


def approval_to_frame(records: Sequence[ApprovalRecord]) -> pd.DataFrame:
    if not records:
        return _empty_frame(APPROVAL_COLUMNS, [])
    return pd.DataFrame([asdict(r) for r in records], columns=APPROVAL_COLUMNS)


def records_to_frame(records: Sequence[Union[TicketRecord, ParticipationRecord, ApprovalRecord]]) -> pd.DataFrame:
    """Frame for a homogeneous batch of canonical records; an empty batch yields an empty ticket frame."""
    if records and isinstance(records[0], ParticipationRecord):
        return participation_to_frame(records)
    if records and isinstance(records[0], ApprovalRecord):
        return approval_to_frame(records)
    return tickets_to_frame(records)
