from __future__ import annotations

from datetime import date
from typing import Dict, Mapping, Optional, Union

from analytics.datasets import DatasetSpec
from analytics.filters import FilterState, end_of_day, start_of_day

START_PARAM = "start"
END_PARAM = "end"
# pins the dataset's source dimension, e.g. ?source=SSO%20One
SOURCE_PARAM = "source"

ParamValue = Union[str, list, tuple, None]


def _escape(value: str) -> str:
    return value.replace("%", "%25").replace(",", "%2C")


def _unescape(value: str) -> str:
    return value.replace("%2C", ",").replace("%2c", ",").replace("%25", "%")


def _parse_day(value: str) -> Optional[date]:
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def to_query_params(state: FilterState, dataset: DatasetSpec) -> Dict[str, str]:
    """Restricted dimensions as comma-joined lists; date bounds as YYYY-MM-DD."""
    params: Dict[str, str] = {}
    for name in dataset.dimension_names:
        if name not in state.dimensions:
            continue
        values = state.accepted_values(name)
        if values:
            params[name] = ",".join(_escape(v) for v in sorted(values))
    if state.date_range.start is not None:
        params[START_PARAM] = state.date_range.start.date().isoformat()
    if state.date_range.end is not None:
        params[END_PARAM] = state.date_range.end.date().isoformat()
    return params


def from_query_params(params: Mapping[str, ParamValue], dataset: DatasetSpec) -> FilterState:
    """Seed a filter state from query parameters; unknown keys and bad dates are ignored."""
    state = dataset.initial_filters()
    for name in dataset.dimension_names:
        raw = params.get(name)
        if isinstance(raw, (list, tuple)):
            raw = ",".join(str(v) for v in raw)
        if not raw:
            continue
        values = [_unescape(v) for v in str(raw).split(",") if v]
        if values:
            state = state.set_values(name, values)

    source = params.get(SOURCE_PARAM)
    if isinstance(source, (list, tuple)):
        source = source[0] if source else None
    if source and dataset.source_dimension is not None:
        state = state.set_values(dataset.source_dimension, [str(source)])

    start = _parse_day(str(params.get(START_PARAM) or ""))
    end = _parse_day(str(params.get(END_PARAM) or ""))
    if start is not None or end is not None:
        state = state.set_date_range(
            start_of_day(start) if start else None,
            end_of_day(end) if end else None,
        )
    return state


def has_url_filters(params: Mapping[str, ParamValue], dataset: DatasetSpec) -> bool:
    keys = set(dataset.dimension_names) | {START_PARAM, END_PARAM}
    if dataset.source_dimension is not None:
        keys.add(SOURCE_PARAM)
    return any(params.get(k) for k in keys)
