from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional, Sequence

# Ordered aliases per canonical field; the first alias present in the header wins.
TICKET_ALIASES: Dict[str, Sequence[str]] = {
    "title": ["title", "ticket_title"],
    "maintenance_description": ["maintenance_description", "description", "desc"],
    "refid_mcmc": ["refid_mcmc"],
    "nadi": ["Nadi", "pedi_name", "nadi"],
    "state": ["state"],
    "tp": ["tp"],
    "dusp": ["dusp"],
    "status": ["status", "maintenance_status", "maintenance_status_name"],
    "requester": ["requester", "requested_by", "requestor", "requester_by"],
    "maintenance_type": ["maintenance_type", "maintenance_type_name", "type"],
    "phase": ["phase_by", "phase", "phase_name"],
    "priority": ["priority_name", "priority", "priorities"],
    "registered_date": ["registered_date", "registered", "created_at", "created", "created_date"],
    "updated_date": ["updated_date", "updated", "last_updated"],
    "image_url": ["image_url", "maintenance_image", "image"],
    "maintenance_actions": ["maintenance_actions", "actions"],
}

PARTICIPATION_ALIASES: Dict[str, Sequence[str]] = {
    "participant_id": ["participant_id"],
    "member_id": ["member_id"],
    "event_id": ["event_id"],
    "participation_date": ["participation_date"],
    "program_name": ["program_name"],
    "category_name": ["category_name", "category"],
    "event_created_at": ["event_created_at"],
    "event_description": ["event_description"],
    "event_total_participants": ["event_total_participants"],
    "event_duration_hours": ["event_duration_hours", "duration_hours"],
    "attendance_rate_percent": ["attendance_rate_percent"],
    "target_achievement_percent": ["target_achievement_percent"],
    "sso_name": ["sso_name", "source_name"],
    "source_name": ["source_name", "sso_name"],
    "site_id": ["site_id"],
    "nadi_name": ["nadi_name", "site_name"],
    "nadi_location": ["nadi_location"],
    "organization_id": ["organization_id"],
    "organization_name": ["organization_name"],
    "organization_type": ["organization_type"],
    "state_id": ["state_id"],
    "state_name": ["state_name", "state"],
    "region_id": ["region_id"],
    "region_name": ["region_name", "region"],
    "membership_status": ["membership_status"],
    "age_group": ["age_group"],
    "male_count": ["male_count"],
    "female_count": ["female_count"],
    "time_of_day": ["time_of_day"],
    "latitude": ["latitude", "lat"],
    "longitude": ["longitude", "lng", "lon"],
    "event_date": ["event_date"],
    "event_year": ["event_year"],
    "event_month": ["event_month"],
    "event_month_name": ["event_month_name"],
    "event_quarter": ["event_quarter"],
}


APPROVAL_ALIASES: Dict[str, Sequence[str]] = {
    "event_status_name": ["event_status_name", "event_status", "status"],
    "site_profile_name_tp": ["site_profile_name_tp", "site_profile_name", "site_name"],
    "sso_name": ["sso_name", "sso", "program_name"],
}


def _header_key(header: object) -> str:
    return str(header).strip().lower()


def resolve_column(headers: Iterable[object], aliases: Sequence[str]) -> Optional[str]:
    """Return the raw header matching the first alias (case-insensitive, trimmed), or None."""
    lookup: Dict[str, str] = {}
    for header in headers:
        lookup.setdefault(_header_key(header), header)
    for alias in aliases:
        hit = lookup.get(_header_key(alias))
        if hit is not None:
            return hit
    return None


def resolve_columns(headers: Iterable[object], alias_map: Mapping[str, Sequence[str]]) -> Dict[str, Optional[str]]:
    headers = list(headers)
    return {canonical: resolve_column(headers, aliases) for canonical, aliases in alias_map.items()}
