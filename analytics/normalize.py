from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import quote

import pandas as pd

from analytics.columns import APPROVAL_ALIASES, PARTICIPATION_ALIASES, TICKET_ALIASES, resolve_columns
from analytics.records import (
    UNKNOWN,
    ApprovalRecord,
    MaintenanceAction,
    ParticipationRecord,
    TicketRecord,
    approval_to_frame,
    participation_to_frame,
    tickets_to_frame,
)

logger = logging.getLogger(__name__)

# encodeURIComponent leaves these unescaped as well as alphanumerics and "-_.~"
_URI_COMPONENT_SAFE = "!*'()"
_UPLOAD_PREFIXES = ("/upload/", "upload/")
_QUARTER_NAMES = {1: "Q1", 2: "Q2", 3: "Q3", 4: "Q4"}


def clean_text(value: object) -> Optional[str]:
    """Trimmed string, or None for null/NaN/blank values."""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NA or value is pd.NaT:
        return None
    s = str(value).strip()
    return s or None


def parse_date(value: object) -> Optional[datetime]:
    """Parse any common date representation to a naive (UTC) datetime, or None."""
    text = clean_text(value)
    if text is None or text == UNKNOWN:
        return None
    try:
        ts = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def month_bucket(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m") if value is not None else UNKNOWN


def to_int(value: object) -> int:
    text = clean_text(value)
    if text is None:
        return 0
    try:
        return int(float(text))
    except (ValueError, OverflowError):
        return 0


def to_float(value: object) -> float:
    text = clean_text(value)
    if text is None:
        return 0.0
    try:
        out = float(text)
    except ValueError:
        return 0.0
    return out if math.isfinite(out) else 0.0


def rewrite_attachment_url(value: object, base_url: str, token: str) -> str:
    """Turn a stored filename into an absolute attachment URL; absolute URLs pass through."""
    text = clean_text(value) or ""
    if not text or text.startswith("http"):
        return text
    for prefix in _UPLOAD_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
            break
    return f"{base_url}{quote(text, safe=_URI_COMPONENT_SAFE)}&token={token}"


def _action_from_mapping(raw: Mapping[str, Any], base_url: str, token: str) -> MaintenanceAction:
    files = raw.get("files") or []
    if not isinstance(files, (list, tuple)):
        files = []
    rewritten = tuple(rewrite_attachment_url(f, base_url, token) for f in files if clean_text(f))
    return MaintenanceAction(
        maintenance_action_id=raw.get("maintenance_action_id", raw.get("id")),
        action_text=clean_text(raw.get("action_text", raw.get("text"))) or "",
        action=clean_text(raw.get("action")) or "",
        files=rewritten,
        created_at=clean_text(raw.get("created_at")) or "",
    )


def parse_actions(value: object, base_url: str, token: str) -> Tuple[MaintenanceAction, ...]:
    """Decode the nested action log; anything malformed yields an empty tuple."""
    raw = value
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return ()
    if not isinstance(raw, (list, tuple)):
        return ()
    if not all(isinstance(item, Mapping) for item in raw):
        return ()
    try:
        return tuple(_action_from_mapping(item, base_url, token) for item in raw)
    except (TypeError, ValueError, AttributeError):
        return ()


def _has_value(value: object) -> bool:
    if isinstance(value, (list, tuple)):
        return True
    return clean_text(value) is not None


def normalize_ticket(
    raw: Mapping[str, Any],
    columns: Mapping[str, Optional[str]],
    *,
    attachment_base_url: str,
    attachment_token: str,
) -> TicketRecord:
    values: Dict[str, Any] = {}
    for canonical in columns:
        source = columns[canonical]
        value = raw.get(source) if source is not None else None
        if canonical == "maintenance_actions":
            if _has_value(value):
                values[canonical] = parse_actions(value, attachment_base_url, attachment_token)
        elif canonical == "image_url":
            if _has_value(value):
                values[canonical] = rewrite_attachment_url(value, attachment_base_url, attachment_token)
        elif canonical == "requester":
            values[canonical] = clean_text(value) or ""
        else:
            values[canonical] = clean_text(value) or UNKNOWN

    registered = parse_date(values.get("registered_date"))
    updated = parse_date(values.get("updated_date"))
    return TicketRecord(
        title=values.get("title", UNKNOWN),
        maintenance_description=values.get("maintenance_description", UNKNOWN),
        refid_mcmc=values.get("refid_mcmc", UNKNOWN),
        nadi=values.get("nadi", UNKNOWN),
        state=values.get("state", UNKNOWN),
        tp=values.get("tp", UNKNOWN),
        dusp=values.get("dusp", UNKNOWN),
        status=values.get("status", UNKNOWN),
        requester=values.get("requester", ""),
        maintenance_type=values.get("maintenance_type", UNKNOWN),
        phase=values.get("phase", UNKNOWN),
        priority=values.get("priority", UNKNOWN),
        registered_date=values.get("registered_date", UNKNOWN),
        updated_date=values.get("updated_date", UNKNOWN),
        registered_date_parsed=registered,
        updated_date_parsed=updated,
        registered_month=month_bucket(registered),
        image_url=values.get("image_url"),
        maintenance_actions=values.get("maintenance_actions"),
    )


def normalize_participation(raw: Mapping[str, Any], columns: Mapping[str, Optional[str]]) -> ParticipationRecord:
    def get(name: str) -> object:
        source = columns.get(name)
        return raw.get(source) if source is not None else None

    def text(name: str) -> str:
        return clean_text(get(name)) or ""

    event_date = text("event_date")
    parsed = parse_date(event_date) or parse_date(text("participation_date"))
    year = to_int(get("event_year")) or (parsed.year if parsed else 0)
    month = to_int(get("event_month")) or (parsed.month if parsed else 0)
    quarter = text("event_quarter") or (_QUARTER_NAMES[(parsed.month - 1) // 3 + 1] if parsed else "")
    month_name = text("event_month_name") or (parsed.strftime("%B") if parsed else "")
    sso = text("sso_name")

    return ParticipationRecord(
        participant_id=text("participant_id"),
        member_id=text("member_id"),
        event_id=text("event_id"),
        participation_date=text("participation_date"),
        program_name=text("program_name"),
        category_name=text("category_name"),
        event_created_at=text("event_created_at"),
        event_description=text("event_description"),
        sso_name=sso,
        source_name=text("source_name") or sso,
        site_id=text("site_id"),
        nadi_name=text("nadi_name"),
        nadi_location=text("nadi_location"),
        organization_id=text("organization_id"),
        organization_name=text("organization_name"),
        organization_type=text("organization_type"),
        state_id=text("state_id"),
        state_name=text("state_name"),
        region_id=text("region_id"),
        region_name=text("region_name"),
        membership_status=text("membership_status"),
        age_group=text("age_group"),
        time_of_day=text("time_of_day"),
        event_date=event_date,
        event_month_name=month_name,
        event_quarter=quarter,
        event_total_participants=to_int(get("event_total_participants")),
        event_duration_hours=to_float(get("event_duration_hours")),
        attendance_rate_percent=to_float(get("attendance_rate_percent")),
        target_achievement_percent=to_float(get("target_achievement_percent")),
        male_count=to_int(get("male_count")),
        female_count=to_int(get("female_count")),
        latitude=to_float(get("latitude")),
        longitude=to_float(get("longitude")),
        event_year=year,
        event_month=month,
        parsed_event_date=parsed,
    )


def normalize_ticket_rows(
    rows: Iterable[Mapping[str, Any]],
    headers: Iterable[object],
    *,
    attachment_base_url: str,
    attachment_token: str,
) -> List[TicketRecord]:
    columns = resolve_columns(headers, TICKET_ALIASES)
    missing = [k for k, v in columns.items() if v is None]
    if missing:
        logger.info("ticket columns not found, using defaults: %s", ", ".join(missing))
    return [
        normalize_ticket(row, columns, attachment_base_url=attachment_base_url, attachment_token=attachment_token)
        for row in rows
    ]


def normalize_participation_rows(rows: Iterable[Mapping[str, Any]], headers: Iterable[object]) -> List[ParticipationRecord]:
    columns = resolve_columns(headers, PARTICIPATION_ALIASES)
    return [normalize_participation(row, columns) for row in rows]


def normalize_ticket_frame(raw: pd.DataFrame, *, attachment_base_url: str, attachment_token: str) -> pd.DataFrame:
    records = normalize_ticket_rows(
        raw.to_dict(orient="records"),
        list(raw.columns),
        attachment_base_url=attachment_base_url,
        attachment_token=attachment_token,
    )
    return tickets_to_frame(records)


def normalize_participation_frame(raw: pd.DataFrame) -> pd.DataFrame:
    return participation_to_frame(normalize_participation_rows(raw.to_dict(orient="records"), list(raw.columns)))


def normalize_approval(raw: Mapping[str, Any], columns: Mapping[str, Optional[str]]) -> ApprovalRecord:
    def label(name: str) -> str:
        source = columns.get(name)
        return clean_text(raw.get(source) if source is not None else None) or UNKNOWN

    return ApprovalRecord(
        event_status_name=label("event_status_name"),
        site_profile_name_tp=label("site_profile_name_tp"),
        sso_name=label("sso_name"),
    )


def normalize_approval_rows(rows: Iterable[Mapping[str, Any]], headers: Iterable[object]) -> List[ApprovalRecord]:
    columns = resolve_columns(headers, APPROVAL_ALIASES)
    missing = [k for k, v in columns.items() if v is None]
    if missing:
        logger.info("approval columns not found, using defaults: %s", ", ".join(missing))
    return [normalize_approval(row, columns) for row in rows]


def normalize_approval_frame(raw: pd.DataFrame) -> pd.DataFrame:
    return approval_to_frame(normalize_approval_rows(raw.to_dict(orient="records"), list(raw.columns)))
