from __future__ import annotations

from datetime import datetime

import pytest

from analytics.filters import (
    ALL,
    DateRange,
    FilterConvention,
    FilterState,
    normalize_filters,
    quick_date_range,
)

NOW = datetime(2024, 3, 15, 14, 30)


@pytest.fixture()
def plain() -> FilterState:
    return FilterState.initial(["status", "state"], FilterConvention.EMPTY_SET)


@pytest.fixture()
def sentinel() -> FilterState:
    return FilterState.initial(["state", "year"], FilterConvention.SENTINEL)


class TestEmptySetConvention:
    def test_initial_state_is_unrestricted(self, plain: FilterState) -> None:
        assert plain.values("status") == frozenset()
        assert not plain.is_restricted("status")
        assert plain.active_filter_count == 0

    def test_toggle_twice_restores_original(self, plain: FilterState) -> None:
        once = plain.toggle("status", "Open")
        assert once.values("status") == {"Open"}
        assert once.toggle("status", "Open") == plain

    def test_removing_last_value_is_unrestricted(self, plain: FilterState) -> None:
        state = plain.toggle("status", "Open").toggle("status", "Open")
        assert state.values("status") == frozenset()
        assert state.accepted_values("status") == frozenset()

    def test_transitions_do_not_mutate(self, plain: FilterState) -> None:
        plain.toggle("status", "Open")
        assert plain.values("status") == frozenset()

    def test_unknown_dimension_raises(self, plain: FilterState) -> None:
        with pytest.raises(KeyError):
            plain.toggle("colour", "red")


class TestSentinelConvention:
    def test_initial_is_all(self, sentinel: FilterState) -> None:
        assert sentinel.values("state") == {ALL}
        assert not sentinel.is_restricted("state")

    def test_adding_value_drops_all(self, sentinel: FilterState) -> None:
        state = sentinel.toggle("state", "Johor")
        assert state.values("state") == {"Johor"}
        assert state.is_restricted("state")

    def test_toggling_all_clears_specific_values(self, sentinel: FilterState) -> None:
        state = sentinel.toggle("state", "Johor").toggle("state", "Perak").toggle("state", ALL)
        assert state.values("state") == {ALL}

    def test_removing_last_value_snaps_back_to_all(self, sentinel: FilterState) -> None:
        state = sentinel.toggle("state", "Johor").toggle("state", "Johor")
        assert state.values("state") == {ALL}
        assert state == sentinel

    def test_removing_one_of_two_keeps_the_other(self, sentinel: FilterState) -> None:
        state = sentinel.toggle("state", "Johor").toggle("state", "Perak").toggle("state", "Johor")
        assert state.values("state") == {"Perak"}

    @pytest.mark.parametrize("values", [[], ["All"], ["All", "Johor"]])
    def test_set_values_with_all_or_nothing_is_unrestricted(self, sentinel: FilterState, values) -> None:
        assert sentinel.set_values("state", values).values("state") == {ALL}

    def test_set_values_replaces(self, sentinel: FilterState) -> None:
        state = sentinel.set_values("state", ["Johor"]).set_values("state", ["Perak", "Sabah"])
        assert state.values("state") == {"Perak", "Sabah"}


class TestResetAndCount:
    def test_reset_is_idempotent(self, plain: FilterState) -> None:
        busy = plain.toggle("status", "Open").set_values("state", ["Johor"]).set_date_range(NOW, None)
        assert busy.reset() == plain
        assert busy.reset().reset() == plain

    def test_reset_keeps_sentinel_convention(self, sentinel: FilterState) -> None:
        assert sentinel.toggle("state", "Johor").reset() == sentinel

    def test_active_count_adds_one_for_any_date_bound(self, plain: FilterState) -> None:
        state = plain.toggle("status", "Open").toggle("state", "Johor")
        assert state.active_filter_count == 2
        assert state.set_date_range(None, NOW).active_filter_count == 3
        assert state.set_date_range(NOW, NOW).active_filter_count == 3


class TestQuickRanges:
    def test_current_month(self) -> None:
        rng = quick_date_range("current-month", NOW)
        assert rng.start == datetime(2024, 3, 1)
        assert rng.end == datetime(2024, 3, 31, 23, 59, 59, 999000)

    def test_previous_month_in_leap_year(self) -> None:
        rng = quick_date_range("previous-month", NOW)
        assert rng.start == datetime(2024, 2, 1)
        assert rng.end == datetime(2024, 2, 29, 23, 59, 59, 999000)

    def test_previous_month_crosses_year(self) -> None:
        rng = quick_date_range("previous-month", datetime(2024, 1, 10))
        assert rng.start == datetime(2023, 12, 1)
        assert rng.end == datetime(2023, 12, 31, 23, 59, 59, 999000)

    def test_last_n_days_and_aliases(self) -> None:
        assert quick_date_range("last-7-days", NOW).start == datetime(2024, 3, 8)
        assert quick_date_range("30", NOW) == quick_date_range("last-30-days", NOW)
        assert quick_date_range("90", NOW).end == datetime(2024, 3, 15, 23, 59, 59, 999000)

    def test_year_to_date_and_trailing_year(self) -> None:
        assert quick_date_range("ytd", NOW).start == datetime(2024, 1, 1)
        assert quick_date_range("trailing-365-days", datetime(2024, 2, 29)).start == datetime(2023, 2, 28)

    def test_deterministic_for_fixed_now(self) -> None:
        assert quick_date_range("last-90-days", NOW) == quick_date_range("last-90-days", NOW)

    def test_unknown_token_raises(self) -> None:
        with pytest.raises(ValueError):
            quick_date_range("fortnight", NOW)

    def test_state_transition(self, plain: FilterState) -> None:
        state = plain.set_quick_date_range("current-month", NOW)
        assert state.date_range.kind == "bounded"
        assert state.active_filter_count == 1


def test_date_range_kinds() -> None:
    assert DateRange().kind == "unbounded"
    assert DateRange(start=NOW).kind == "lower-bounded"
    assert DateRange(end=NOW).kind == "upper-bounded"


def test_normalize_filters_from_request_data() -> None:
    state = normalize_filters(
        {
            "dimensions": {"status": ["Open"], "ignored": ["x"], "state": "Johor"},
            "date_start": "2024-01-01",
            "date_end": "2024-01-31",
        },
        dimension_names=["status", "state"],
        convention=FilterConvention.EMPTY_SET,
    )
    assert state.values("status") == {"Open"}
    assert state.values("state") == {"Johor"}
    assert state.date_range.start == datetime(2024, 1, 1)
    assert state.date_range.end == datetime(2024, 1, 31, 23, 59, 59, 999000)


def test_normalize_filters_source_pins_the_source_dimension() -> None:
    state = normalize_filters(
        {"dimensions": {"sso": ["A", "B"]}, "source": "C"},
        dimension_names=["sso", "state"],
        convention=FilterConvention.SENTINEL,
        source_dimension="sso",
    )
    assert state.values("sso") == {"C"}
    assert state.values("state") == {ALL}


def test_normalize_filters_source_without_source_dimension_is_rejected() -> None:
    with pytest.raises(ValueError):
        normalize_filters({"source": "C"}, dimension_names=["status"], convention=FilterConvention.EMPTY_SET)
