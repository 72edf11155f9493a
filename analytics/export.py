from __future__ import annotations

from typing import Any, Dict, List, Tuple

import pandas as pd

from analytics.datasets import DatasetSpec

NOT_AVAILABLE = "N/A"

# (source column, label, is_date)
_TICKET_FIELDS: Tuple[Tuple[str, str, bool], ...] = (
    ("refid_mcmc", "REFID MCMC", False),
    ("nadi", "NADI", False),
    ("state", "State", False),
    ("tp", "TP", False),
    ("dusp", "DUSP", False),
    ("phase", "Phase", False),
    ("maintenance_type", "Maintenance Type", False),
    ("title", "Description", False),
    ("status", "Status", False),
    ("priority", "Priority", False),
    ("registered_date_parsed", "Registered Date", True),
    ("updated_date_parsed", "Updated Date", True),
)

_PARTICIPATION_FIELDS: Tuple[Tuple[str, str, bool], ...] = (
    ("participant_id", "Participant ID", False),
    ("member_id", "Member ID", False),
    ("event_id", "Event ID", False),
    ("program_name", "Program", False),
    ("category_name", "Category", False),
    ("nadi_name", "NADI", False),
    ("state_name", "State", False),
    ("region_name", "Region", False),
    ("sso_name", "SSO", False),
    ("organization_name", "Organization", False),
    ("membership_status", "Membership Status", False),
    ("age_group", "Age Group", False),
    ("event_quarter", "Quarter", False),
    ("attendance_rate_percent", "Attendance %", False),
    ("target_achievement_percent", "Target Achievement %", False),
    ("parsed_event_date", "Event Date", True),
)

_APPROVAL_FIELDS: Tuple[Tuple[str, str, bool], ...] = (
    ("event_status_name", "Event Status", False),
    ("site_profile_name_tp", "Site Profile", False),
    ("sso_name", "SSO", False),
)

EXPORT_FIELDS: Dict[str, Tuple[Tuple[str, str, bool], ...]] = {
    "tickets": _TICKET_FIELDS,
    "nes": _PARTICIPATION_FIELDS,
    "membership": _PARTICIPATION_FIELDS,
    "approval": _APPROVAL_FIELDS,
}


def _format_date(value: Any) -> str:
    if value is None or pd.isna(value):
        return NOT_AVAILABLE
    ts = pd.to_datetime(value, errors="coerce")
    if pd.isna(ts):
        return NOT_AVAILABLE
    return ts.strftime("%Y-%m-%d")


def _format_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    if value is pd.NA:
        return ""
    return value


def export_frame(frame: pd.DataFrame, dataset: DatasetSpec) -> pd.DataFrame:
    """Rename and format columns for spreadsheet export; absent source columns export blank."""
    fields = EXPORT_FIELDS[dataset.name]
    out = pd.DataFrame(index=frame.index)
    for column, label, is_date in fields:
        if column not in frame.columns:
            out[label] = NOT_AVAILABLE if is_date else ""
        elif is_date:
            out[label] = frame[column].map(_format_date)
        else:
            out[label] = frame[column].map(_format_value)
    return out.reset_index(drop=True)


def export_rows(frame: pd.DataFrame, dataset: DatasetSpec) -> List[Dict[str, Any]]:
    if frame.empty:
        return []
    return export_frame(frame, dataset).to_dict(orient="records")
