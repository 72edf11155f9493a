from __future__ import annotations

import calendar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence

ALL = "All"


class FilterConvention(str, Enum):
    """How a dimension spells "no restriction".

    EMPTY_SET: the empty set means unrestricted; toggling the last value off leaves it empty.
    SENTINEL: {"All"} means unrestricted; "All" never coexists with a specific value and
    removing the last specific value snaps back to {"All"}.
    """

    EMPTY_SET = "empty_set"
    SENTINEL = "sentinel"


QUICK_RANGE_ALIASES: Dict[str, str] = {
    "7": "last-7-days",
    "30": "last-30-days",
    "90": "last-90-days",
    "365": "trailing-365-days",
    "ytd": "year-to-date",
}
QUICK_RANGES = (
    "last-7-days",
    "last-30-days",
    "last-90-days",
    "year-to-date",
    "current-month",
    "previous-month",
    "trailing-365-days",
)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59, 999000))


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _one_year_earlier(day: date) -> date:
    try:
        return day.replace(year=day.year - 1)
    except ValueError:
        # Feb 29 -> Feb 28
        return day.replace(year=day.year - 1, day=28)


def quick_date_range(period: str, now: Optional[datetime] = None) -> "DateRange":
    """Map a named period to concrete bounds anchored on ``now``; end bounds run through 23:59:59.999."""
    token = QUICK_RANGE_ALIASES.get(period, period)
    today = (now or datetime.now()).date()

    if token in {"last-7-days", "last-30-days", "last-90-days"}:
        days = int(token.split("-")[1])
        return DateRange(start_of_day(today - timedelta(days=days)), end_of_day(today))
    if token == "trailing-365-days":
        return DateRange(start_of_day(_one_year_earlier(today)), end_of_day(today))
    if token == "year-to-date":
        return DateRange(start_of_day(date(today.year, 1, 1)), end_of_day(today))
    if token == "current-month":
        return DateRange(start_of_day(today.replace(day=1)), end_of_day(_month_end(today.year, today.month)))
    if token == "previous-month":
        last_of_prev = today.replace(day=1) - timedelta(days=1)
        return DateRange(start_of_day(last_of_prev.replace(day=1)), end_of_day(last_of_prev))
    raise ValueError(f"Unknown quick date range: {period!r}. Expected one of {', '.join(QUICK_RANGES)}.")


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def is_set(self) -> bool:
        return self.start is not None or self.end is not None

    @property
    def kind(self) -> str:
        if self.start is not None and self.end is not None:
            return "bounded"
        if self.start is not None:
            return "lower-bounded"
        if self.end is not None:
            return "upper-bounded"
        return "unbounded"


@dataclass(frozen=True)
class FilterState:
    """Immutable filter snapshot; every transition returns a new state."""

    dimensions: Mapping[str, FrozenSet[str]] = field(default_factory=dict)
    date_range: DateRange = field(default_factory=DateRange)
    convention: FilterConvention = FilterConvention.EMPTY_SET

    @classmethod
    def initial(cls, dimension_names: Iterable[str], convention: FilterConvention = FilterConvention.EMPTY_SET) -> "FilterState":
        unrestricted = _unrestricted(convention)
        return cls(
            dimensions={name: unrestricted for name in dimension_names},
            date_range=DateRange(),
            convention=convention,
        )

    def _require(self, dimension: str) -> FrozenSet[str]:
        if dimension not in self.dimensions:
            raise KeyError(f"Unknown filter dimension: {dimension}")
        return self.dimensions[dimension]

    def _with(self, dimension: str, values: FrozenSet[str]) -> "FilterState":
        dims = dict(self.dimensions)
        dims[dimension] = values
        return replace(self, dimensions=dims)

    def values(self, dimension: str) -> FrozenSet[str]:
        return self._require(dimension)

    def is_restricted(self, dimension: str) -> bool:
        current = self._require(dimension)
        return bool(current) and current != frozenset({ALL}) if self.convention == FilterConvention.SENTINEL else bool(current)

    def accepted_values(self, dimension: str) -> FrozenSet[str]:
        """Specific accepted values, or an empty set when the dimension is unrestricted."""
        return self._require(dimension) if self.is_restricted(dimension) else frozenset()

    def toggle(self, dimension: str, value: str) -> "FilterState":
        current = self._require(dimension)
        if self.convention == FilterConvention.EMPTY_SET:
            return self._with(dimension, current - {value} if value in current else current | {value})

        if value == ALL:
            return self._with(dimension, frozenset({ALL}))
        if value in current:
            remaining = current - {value}
            return self._with(dimension, remaining or frozenset({ALL}))
        return self._with(dimension, (current - {ALL}) | {value})

    def set_values(self, dimension: str, values: Iterable[str]) -> "FilterState":
        self._require(dimension)
        new_values = frozenset(str(v) for v in values if v is not None and str(v) != "")
        if self.convention == FilterConvention.SENTINEL and (not new_values or ALL in new_values):
            new_values = frozenset({ALL})
        return self._with(dimension, new_values)

    def set_date_range(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> "FilterState":
        return replace(self, date_range=DateRange(start, end))

    def set_quick_date_range(self, period: str, now: Optional[datetime] = None) -> "FilterState":
        return replace(self, date_range=quick_date_range(period, now))

    def reset(self) -> "FilterState":
        return FilterState.initial(self.dimensions.keys(), self.convention)

    @property
    def active_filter_count(self) -> int:
        count = sum(1 for name in self.dimensions if self.is_restricted(name))
        return count + (1 if self.date_range.is_set else 0)


def _unrestricted(convention: FilterConvention) -> FrozenSet[str]:
    return frozenset({ALL}) if convention == FilterConvention.SENTINEL else frozenset()


def _as_datetime(value: object, *, end: bool = False) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return end_of_day(value) if end else start_of_day(value)
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if len(text) == 10:
        return end_of_day(parsed.date()) if end else parsed
    return parsed


def normalize_filters(
    raw: Mapping[str, object],
    *,
    dimension_names: Sequence[str],
    convention: FilterConvention,
    source_dimension: Optional[str] = None,
) -> FilterState:
    """Build a FilterState from loosely-typed request data; unknown keys are ignored.

    A ``source`` value pins ``source_dimension`` to that one value, overriding
    whatever the dimensions mapping asked for it.
    """
    state = FilterState.initial(dimension_names, convention)
    dims = raw.get("dimensions") or {}
    if isinstance(dims, Mapping):
        for name, values in dims.items():
            if name not in state.dimensions or values is None:
                continue
            if isinstance(values, str):
                values = [values]
            state = state.set_values(name, [str(v) for v in values])
    source = raw.get("source")
    if source:
        if source_dimension is None or source_dimension not in state.dimensions:
            raise ValueError("This dataset cannot be scoped to a source.")
        state = state.set_values(source_dimension, [str(source)])
    quick = raw.get("quick_range")
    if quick:
        return state.set_quick_date_range(str(quick))
    start = _as_datetime(raw.get("date_start"))
    end = _as_datetime(raw.get("date_end"), end=True)
    return state.set_date_range(start, end)
