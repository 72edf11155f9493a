from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from analytics.config import Settings
from analytics.filters import FilterConvention, FilterState


@dataclass(frozen=True)
class Dimension:
    name: str
    column: str
    label: str
    integer: bool = False
    exclude: Tuple[str, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False


@dataclass(frozen=True)
class DatasetSpec:
    name: str
    table: str
    title: str
    source_kind: str  # "csv" or "parquet"
    convention: FilterConvention
    dimensions: Tuple[Dimension, ...]
    date_column: Optional[str]
    order_by: str
    row_cap: Optional[int] = None
    index_columns: Tuple[str, ...] = field(default_factory=tuple)
    cache_bust: bool = False
    # dimension that scopes the whole page to one data source (an SSO)
    source_dimension: Optional[str] = None

    @property
    def dimension_names(self) -> List[str]:
        return [d.name for d in self.dimensions]

    def dimension(self, name: str) -> Dimension:
        for d in self.dimensions:
            if d.name == name:
                return d
        raise KeyError(f"Unknown dimension {name!r} for dataset {self.name!r}")

    def initial_filters(self) -> FilterState:
        return FilterState.initial(self.dimension_names, self.convention)

    def source_location(self, settings: Settings) -> str:
        if self.name == "tickets":
            return settings.tickets_url
        if self.name == "nes":
            return settings.parquet_url
        if self.name == "approval":
            return settings.approval_url
        return settings.membership_csv


TICKETS = DatasetSpec(
    name="tickets",
    table="maintenance_tickets",
    title="Maintenance Tickets",
    source_kind="csv",
    convention=FilterConvention.EMPTY_SET,
    dimensions=(
        Dimension("status", "status", "Status"),
        Dimension("type", "maintenance_type", "Maintenance Type"),
        Dimension("priority", "priority", "Priority"),
        Dimension("phase", "phase", "Phase"),
        Dimension("nadi", "nadi", "NADI"),
        Dimension("state", "state", "State"),
        Dimension("tp", "tp", "TP"),
        Dimension("dusp", "dusp", "DUSP"),
    ),
    date_column="registered_date_parsed",
    order_by="registered_date_parsed DESC NULLS LAST, refid_mcmc",
    index_columns=(
        "status",
        "maintenance_type",
        "priority",
        "phase",
        "nadi",
        "state",
        "tp",
        "dusp",
        "registered_date_parsed",
    ),
)

NES = DatasetSpec(
    name="nes",
    table="nes_data",
    title="NES Programme Participation",
    source_kind="parquet",
    convention=FilterConvention.SENTINEL,
    dimensions=(
        Dimension("state", "state_name", "State", exclude=("?", "Unknown")),
        Dimension("category", "category_name", "Category"),
        Dimension("program", "program_name", "Program"),
        Dimension("organization", "organization_name", "Organization"),
        Dimension("sso", "sso_name", "SSO"),
        Dimension("membership_status", "membership_status", "Membership Status"),
        Dimension("target_status", "target_status", "Target Status"),
        Dimension("time_of_day", "time_of_day", "Time of Day"),
        Dimension("age_group", "age_group", "Age Group"),
        Dimension("quarter", "event_quarter", "Quarter"),
        Dimension("month", "event_month_name", "Month", order_by="event_month"),
        Dimension("year", "event_year", "Year", integer=True, exclude=("0",), descending=True),
    ),
    date_column="parsed_event_date",
    order_by="parsed_event_date DESC, event_id",
    row_cap=2000,
    index_columns=(
        "state_name",
        "category_name",
        "program_name",
        "event_year",
        "parsed_event_date",
        "membership_status",
        "organization_name",
        "sso_name",
    ),
)

MEMBERSHIP = DatasetSpec(
    name="membership",
    table="participants",
    title="Membership & Participation",
    source_kind="csv",
    convention=FilterConvention.SENTINEL,
    dimensions=(
        Dimension("nadi", "nadi_name", "NADI"),
        Dimension("state", "state_name", "State", exclude=("?", "Unknown")),
        Dimension("region", "region_name", "Region"),
        Dimension("sso", "sso_name", "SSO"),
        Dimension("organization", "organization_name", "Organization"),
        Dimension("membership_status", "membership_status", "Membership Status"),
        Dimension("quarter", "event_quarter", "Quarter"),
    ),
    date_column="parsed_event_date",
    order_by="parsed_event_date DESC NULLS LAST, event_id",
    index_columns=("nadi_name", "state_name", "region_name", "sso_name", "membership_status", "parsed_event_date"),
    cache_bust=True,
    source_dimension="sso",
)

APPROVAL = DatasetSpec(
    name="approval",
    table="approval_events",
    title="TP Approval Analysis",
    source_kind="csv",
    convention=FilterConvention.EMPTY_SET,
    dimensions=(
        Dimension("status", "event_status_name", "Status"),
        Dimension("site", "site_profile_name_tp", "Site Profile"),
        Dimension("sso", "sso_name", "SSO"),
    ),
    date_column=None,
    order_by="site_profile_name_tp, sso_name, event_status_name",
    index_columns=("event_status_name", "site_profile_name_tp", "sso_name"),
)

DATASETS: Dict[str, DatasetSpec] = {d.name: d for d in (TICKETS, NES, MEMBERSHIP, APPROVAL)}


def get_dataset(name: str) -> DatasetSpec:
    try:
        return DATASETS[name]
    except KeyError:
        raise KeyError(f"Unknown dataset: {name}. Expected one of {', '.join(DATASETS)}.") from None
