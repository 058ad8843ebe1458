"""
Time Index Table Tests
======================

Tests for build_time_index() and lookups against the built table.
"""

import itertools
from datetime import date, datetime

import numpy as np
import pandas as pd
import pytest

from time_index import (
    Category,
    Instant,
    LookupMissError,
    Numeric,
    TimeDomainError,
    TimeTypeMismatchError,
    as_time_value,
    build_time_index,
    check_extra_time,
    lookup,
    time_kind,
)


def _columns(table):
    return list(table.indices), list(table.time_values), list(table.is_extra)


class TestBuildTimeIndex:

    def test_extra_time_on_end(self):
        idx, values, extra = _columns(build_time_index({1, 2, 3}, {1, 2, 3, 4}))
        assert idx == [0, 1, 2, 3]
        assert values == [1, 2, 3, 4]
        assert extra == [False, False, False, True]

    def test_no_extra_time(self):
        idx, values, extra = _columns(build_time_index({1, 2, 3}, {1, 2, 3}))
        assert idx == [0, 1, 2]
        assert values == [1, 2, 3]
        assert extra == [False, False, False]

    def test_gap_in_middle(self):
        idx, values, extra = _columns(build_time_index({1, 2, 4}, {1, 2, 3, 4}))
        assert idx == [0, 1, 2, 3]
        assert values == [1, 2, 3, 4]
        assert extra == [False, False, True, False]

    def test_extra_time_at_beginning(self):
        idx, values, extra = _columns(build_time_index({1, 2, 3}, {0, 1, 2, 3}))
        assert idx == [0, 1, 2, 3]
        assert values == [0, 1, 2, 3]
        assert extra == [True, False, False, False]

    def test_extra_time_on_end_with_calendar_gap(self):
        """A gap of two calendar steps still advances the index by one."""
        idx, values, extra = _columns(build_time_index([1, 2, 3], [1, 2, 3, 5]))
        assert idx == [0, 1, 2, 3]
        assert values == [1, 2, 3, 5]
        assert extra == [False, False, False, True]

    def test_scrambled_inputs_match_sorted(self):
        sorted_table = build_time_index([1, 2, 3], [0, 1, 2, 3])
        scrambled = build_time_index([1, 3, 2], [0, 2, 3, 1])
        assert scrambled == sorted_table
        assert _columns(scrambled) == _columns(sorted_table)

    def test_permutations_and_duplicates_give_identical_tables(self):
        observed = [5, 1, 9]
        full = [9, 1, 7, 5, 3]
        reference = build_time_index(sorted(observed), sorted(full))
        for obs_perm in itertools.permutations(observed):
            for full_perm in itertools.permutations(full):
                table = build_time_index(
                    list(obs_perm) + list(obs_perm[:1]),
                    list(full_perm) + list(full_perm[-2:]),
                )
                assert table == reference

    def test_observed_missing_from_full_raises(self):
        with pytest.raises(TimeDomainError) as excinfo:
            build_time_index({1, 2, 3, 4}, {1, 2, 3})
        assert excinfo.value.missing == (4,)
        assert "time" in str(excinfo.value)

    def test_multiple_missing_values_are_reported_sorted(self):
        with pytest.raises(TimeDomainError) as excinfo:
            build_time_index([9, 1, 7], [1])
        assert excinfo.value.missing == (7, 9)

    def test_overlapping_extra_is_not_flagged(self):
        table = build_time_index([2016, 2017], [2016, 2017, 2017, 2018])
        assert list(table.is_extra) == [False, False, True]

    def test_float_years_equal_int_years(self):
        table = build_time_index([2003.0, 2004.0], [2003, 2004, 2005])
        assert list(table.time_values) == [2003, 2004, 2005]
        assert list(table.is_extra) == [False, False, True]

    def test_empty_inputs_rejected(self):
        with pytest.raises(ValueError):
            build_time_index([], [1, 2])
        with pytest.raises(ValueError):
            build_time_index([1], [])

    def test_nan_rejected(self):
        with pytest.raises(ValueError):
            build_time_index([1, float("nan")], [1, 2])

    def test_mixed_kinds_rejected(self):
        with pytest.raises(TimeTypeMismatchError):
            build_time_index([2011, 2012], [2011, 2012, "2013"])

    def test_categorical_time_values(self):
        table = build_time_index(["b", "a"], ["c", "a", "b"])
        assert list(table.time_values) == ["a", "b", "c"]
        assert list(table.is_extra) == [False, False, True]
        assert table.kind == "category"


class TestTableProperties:

    def test_counts(self):
        table = build_time_index([1, 2, 4], [0, 1, 2, 3, 4, 5])
        assert table.n_time == 6
        assert len(table) == 6
        assert table.n_extra == 3
        assert table.extra_indices == (0, 3, 5)
        assert table.observed_indices == (1, 2, 4)

    def test_single_step_has_no_temporal_variance(self):
        assert not build_time_index([2011], [2011]).has_temporal_variance
        assert build_time_index([2011], [2011, 2012]).has_temporal_variance

    def test_to_frame(self):
        frame = build_time_index([1, 3], [1, 2, 3]).to_frame()
        assert list(frame.columns) == ["index", "time_value", "is_extra"]
        assert frame["index"].tolist() == [0, 1, 2]
        assert frame["is_extra"].tolist() == [False, True, False]

    def test_table_is_immutable(self):
        table = build_time_index([1], [1, 2])
        with pytest.raises(AttributeError):
            table.records = ()


class TestLookup:

    def test_lookup_existing_values(self):
        table = build_time_index([2003, 2005], [2003, 2004, 2005, 2006])
        assert lookup(table, 2003) == 0
        assert lookup(table, 2004) == 1
        assert table.lookup(2006) == 3
        assert lookup(table, 2005.0) == 2

    def test_lookup_miss_raises(self):
        table = build_time_index([2003, 2005], [2003, 2004, 2005])
        with pytest.raises(LookupMissError) as excinfo:
            lookup(table, 2010)
        assert excinfo.value.time_value == 2010
        assert "2010" in str(excinfo.value)

    def test_lookup_miss_is_a_key_error(self):
        table = build_time_index([1], [1])
        with pytest.raises(KeyError):
            table.lookup(2)

    def test_lookup_wrong_kind_misses(self):
        table = build_time_index([1, 2], [1, 2])
        with pytest.raises(LookupMissError):
            table.lookup("1")
        assert "1" not in table
        assert 1 in table

    def test_lookup_many(self):
        table = build_time_index([1, 3], [1, 2, 3])
        assert table.lookup_many([3, 1, 1, 2, 3]).tolist() == [2, 0, 0, 1, 2]
        with pytest.raises(LookupMissError):
            table.lookup_many([1, 4])

    def test_lookup_many_does_not_confuse_bool_with_int(self):
        table = build_time_index([1, 2], [1, 2])
        with pytest.raises(LookupMissError):
            table.lookup_many([1, True])
        with pytest.raises(LookupMissError):
            table.lookup_many([2, 1, False])


class TestTimeValues:

    def test_coercion(self):
        assert as_time_value(2003) == Numeric(2003)
        assert as_time_value(2003.0) == Numeric(2003)
        assert as_time_value("2003") == Category("2003")
        assert as_time_value(Category("x")) == Category("x")

    def test_booleans_rejected(self):
        with pytest.raises(TypeError):
            as_time_value(True)

    def test_ordering_within_kind(self):
        assert Numeric(1) < Numeric(2)
        assert Category("a") < Category("b")
        assert Numeric(3) >= Numeric(3)

    def test_cross_kind_comparison_raises(self):
        with pytest.raises(TimeTypeMismatchError):
            Numeric(1) < Category("1")
        assert Numeric(1) != Category("1")

    def test_time_kind(self):
        assert time_kind([1, 2]) == "numeric"
        assert time_kind(["a"]) == "category"
        with pytest.raises(TimeTypeMismatchError):
            time_kind([1, "a"])

    def test_time_kind_reports_the_kinds_found(self):
        with pytest.raises(TimeTypeMismatchError) as excinfo:
            time_kind([date(2020, 1, 1), "a"])
        assert excinfo.value.observed_kind == "datetime"
        assert excinfo.value.extra_kind == "category"
        assert excinfo.value.values == ("a",)
        assert time_kind([date(2020, 1, 1)]) == "datetime"


class TestCheckExtraTime:

    def test_compatible(self):
        assert check_extra_time([2011, 2012], [2030]) is None
        assert check_extra_time(["2011"], ["2030"]) is None

    def test_category_time_with_numeric_extra(self):
        observed = ["2011", "2013"]
        extra = [2030]
        err = check_extra_time(observed, extra)
        assert isinstance(err, TimeTypeMismatchError)
        assert err.observed_kind == "category"
        assert err.extra_kind == "numeric"
        assert err.values == (2030,)
        # Validation never mutates its inputs
        assert observed == ["2011", "2013"]
        assert extra == [2030]


class TestCalendarTimeValues:

    def test_dates(self):
        table = build_time_index(
            [date(2021, 1, 1), date(2020, 1, 1)],
            [date(2022, 1, 1), date(2020, 1, 1), date(2021, 1, 1)],
        )
        assert list(table.indices) == [0, 1, 2]
        assert list(table.time_values) == [
            pd.Timestamp(2020, 1, 1), pd.Timestamp(2021, 1, 1), pd.Timestamp(2022, 1, 1)
        ]
        assert list(table.is_extra) == [False, False, True]
        assert table.kind == "datetime"

    def test_date_forms_are_interchangeable(self):
        table = build_time_index([date(2020, 1, 1)], [pd.Timestamp("2020-01-01"), datetime(2021, 1, 1)])
        assert table.lookup(np.datetime64("2020-01-01")) == 0
        assert table.lookup(date(2021, 1, 1)) == 1
        assert as_time_value(date(2020, 1, 1)) == Instant(pd.Timestamp("2020-01-01"))

    def test_missing_date_raises_time_domain_error(self):
        with pytest.raises(TimeDomainError):
            build_time_index([date(2020, 1, 1), date(2023, 1, 1)], [date(2020, 1, 1)])

    def test_nat_rejected(self):
        with pytest.raises(ValueError):
            as_time_value(pd.NaT)

    def test_dates_do_not_mix_with_numbers(self):
        with pytest.raises(TimeTypeMismatchError):
            build_time_index([date(2020, 1, 1)], [date(2020, 1, 1), 2021])
