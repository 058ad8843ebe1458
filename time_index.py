# ============================================================
# Module: time_index
# ------------------------------------------------------------
# - Tagged time values (Numeric / Category / Instant), ordered per kind
# - Time index table: contiguous 0-based index per distinct time
# - Extra-time flags for steps with no observations
# - Exact lookup of time values at prediction time
# ============================================================

from __future__ import annotations
from dataclasses import dataclass, field
from functools import total_ordering
from collections.abc import Iterable
from typing import Any, Dict, Iterator, List, Optional, Tuple
import datetime
import numbers

import numpy as np
import pandas as pd


# ------------------------------------------------------------
# Errors
# ------------------------------------------------------------

class TimeDomainError(ValueError):
    """Observed time values are missing from the full time set."""

    def __init__(self, missing: Iterable[Any]):
        self.missing = tuple(missing)
        shown = ", ".join(repr(v) for v in self.missing)
        super().__init__(
            f"All observed time values must be present in the full time set; "
            f"missing: {shown}"
        )


class TimeTypeMismatchError(TypeError):
    """
    Time values of different kinds (numeric, category, datetime) were mixed.

    Returned (not raised) by check_extra_time() so the caller decides how
    to resolve the clash; raised when two kinds are actually compared.
    """

    def __init__(
        self,
        observed_kind: str,
        extra_kind: str,
        values: Iterable[Any] = (),
    ):
        self.observed_kind = observed_kind
        self.extra_kind = extra_kind
        self.values = tuple(values)
        msg = (
            f"Time values of kind {extra_kind!r} cannot be combined with a "
            f"time variable of kind {observed_kind!r}."
        )
        if self.values:
            msg += " Offending values: " + ", ".join(repr(v) for v in self.values)
        super().__init__(msg)


class TimeTypeMismatchWarning(UserWarning):
    """Issued by model setup when extra time values clash with the time variable."""


class LookupMissError(KeyError):
    """A time value is not present in a time index table."""

    def __init__(self, time_value: Any):
        self.time_value = time_value
        super().__init__(time_value)

    def __str__(self) -> str:
        return (
            f"Time value {self.time_value!r} is not in the time index table "
            f"built when the model was set up."
        )


# ------------------------------------------------------------
# Tagged time values
# ------------------------------------------------------------

@total_ordering
class TimeValue:
    """Base for the time-value variants; orders within a variant only."""

    kind = "time"

    @property
    def raw(self) -> Any:
        raise NotImplementedError

    def _sort_key(self) -> Any:
        raise NotImplementedError

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, TimeValue):
            return NotImplemented
        if other.kind != self.kind:
            raise TimeTypeMismatchError(self.kind, other.kind, (other.raw,))
        return self._sort_key() < other._sort_key()


@dataclass(frozen=True, eq=True)
class Numeric(TimeValue):
    """Numeric time value, e.g. a survey year."""

    value: Any
    kind = "numeric"

    @property
    def raw(self) -> Any:
        return self.value

    def _sort_key(self) -> Any:
        return self.value

    def __repr__(self) -> str:
        return f"Numeric({self.value!r})"


@dataclass(frozen=True, eq=True)
class Category(TimeValue):
    """Categorical (factor-like) time value, ordered by its label."""

    label: str
    kind = "category"

    @property
    def raw(self) -> Any:
        return self.label

    def _sort_key(self) -> Any:
        return self.label

    def __repr__(self) -> str:
        return f"Category({self.label!r})"


@dataclass(frozen=True, eq=True)
class Instant(TimeValue):
    """Calendar time value (date or timestamp), normalised to pd.Timestamp."""

    stamp: pd.Timestamp
    kind = "datetime"

    @property
    def raw(self) -> Any:
        return self.stamp

    def _sort_key(self) -> Any:
        return self.stamp

    def __repr__(self) -> str:
        return f"Instant({self.stamp!r})"


def as_time_value(x: Any) -> TimeValue:
    """
    Coerce a raw scalar to a tagged time value.

    Integers (Python or numpy) and floats become Numeric; strings become
    Category; dates, datetimes and datetime64 values become Instant.
    NaN, NaT and booleans are rejected.
    """
    if isinstance(x, TimeValue):
        return x
    if isinstance(x, (datetime.date, np.datetime64)):
        stamp = pd.Timestamp(x)
        if pd.isna(stamp):
            raise ValueError("Time values must not be NaT.")
        return Instant(stamp)
    if isinstance(x, (bool, np.bool_)):
        raise TypeError(f"Boolean time values are not supported: {x!r}")
    if isinstance(x, numbers.Integral):
        return Numeric(int(x))
    if isinstance(x, numbers.Real):
        x_float = float(x)
        if np.isnan(x_float):
            raise ValueError("Time values must not be NaN.")
        # Whole floats (e.g. 2003.0 from a float column) compare equal to ints
        return Numeric(int(x_float) if x_float.is_integer() else x_float)
    if isinstance(x, str):
        return Category(x)
    raise TypeError(
        f"Unsupported time value {x!r} of type {type(x).__name__}; "
        f"use numbers, strings or dates."
    )


def _distinct(values: Iterable[Any], what: str) -> List[TimeValue]:
    """Coerce and de-duplicate, keeping first-seen order."""
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        values = [values]
    seen: Dict[TimeValue, None] = {}
    for v in values:
        seen.setdefault(as_time_value(v), None)
    if not seen:
        raise ValueError(f"`{what}` must contain at least one time value.")
    return list(seen)


def time_kind(values: Iterable[Any]) -> str:
    """
    Report whether a collection of time values is 'numeric', 'category'
    or 'datetime'.

    Raises TimeTypeMismatchError if the collection itself mixes kinds.
    """
    distinct = _distinct(values, "values")
    first_kind = distinct[0].kind
    clashing = [tv for tv in distinct if tv.kind != first_kind]
    if clashing:
        raise TimeTypeMismatchError(
            first_kind, clashing[0].kind, [tv.raw for tv in clashing]
        )
    return first_kind


def check_extra_time(
    observed: Iterable[Any],
    extra: Iterable[Any],
) -> Optional[TimeTypeMismatchError]:
    """
    Validation pass for user-declared extra time values.

    Parameters
    ----------
    observed : iterable
        Time values of the fitting data.
    extra : iterable
        Extra time values requested by the user.

    Returns
    -------
    error : TimeTypeMismatchError or None
        None if every extra value has the same kind as the observed
        values; otherwise a structured description of the clash. Inputs
        are never modified.
    """
    observed_kind = time_kind(observed)
    extra_values = _distinct(extra, "extra")
    clashing = [tv.raw for tv in extra_values if tv.kind != observed_kind]
    if not clashing:
        return None
    extra_kind = next(tv.kind for tv in extra_values if tv.kind != observed_kind)
    return TimeTypeMismatchError(observed_kind, extra_kind, clashing)


# ------------------------------------------------------------
# Time index table
# ------------------------------------------------------------

@dataclass(frozen=True)
class TimeIndexRecord:
    index: int
    time_value: TimeValue
    is_extra: bool


@dataclass(frozen=True)
class TimeIndexTable:
    """
    Immutable lookup table from distinct time values to latent-state indices.

    records[k] holds the k-th smallest time value of the full time set,
    with index == k and is_extra True when no observation has that time.
    """

    records: Tuple[TimeIndexRecord, ...]
    _positions: Dict[TimeValue, int] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        positions = {}
        for k, rec in enumerate(self.records):
            if rec.index != k:
                raise ValueError(
                    f"TimeIndexTable: record {k} has index {rec.index}; "
                    f"indices must be contiguous from 0."
                )
            positions[rec.time_value] = k
        object.__setattr__(self, "_positions", positions)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[TimeIndexRecord]:
        return iter(self.records)

    def __getitem__(self, k: int) -> TimeIndexRecord:
        return self.records[k]

    def __contains__(self, time_value: Any) -> bool:
        try:
            return as_time_value(time_value) in self._positions
        except (TypeError, ValueError):
            return False

    # --------------------------------------------------------
    # Columns and counts
    # --------------------------------------------------------

    @property
    def indices(self) -> Tuple[int, ...]:
        return tuple(rec.index for rec in self.records)

    @property
    def time_values(self) -> Tuple[Any, ...]:
        """Raw (untagged) time values in index order."""
        return tuple(rec.time_value.raw for rec in self.records)

    @property
    def is_extra(self) -> Tuple[bool, ...]:
        return tuple(rec.is_extra for rec in self.records)

    @property
    def kind(self) -> str:
        return self.records[0].time_value.kind

    @property
    def n_time(self) -> int:
        """Number of contiguous indices, i.e. latent states to allocate."""
        return len(self.records)

    @property
    def n_extra(self) -> int:
        return sum(self.is_extra)

    @property
    def extra_indices(self) -> Tuple[int, ...]:
        return tuple(rec.index for rec in self.records if rec.is_extra)

    @property
    def observed_indices(self) -> Tuple[int, ...]:
        return tuple(rec.index for rec in self.records if not rec.is_extra)

    @property
    def has_temporal_variance(self) -> bool:
        # A single time step leaves no temporal variation to estimate
        return self.n_time > 1

    # --------------------------------------------------------
    # Lookup
    # --------------------------------------------------------

    def lookup(self, time_value: Any) -> int:
        """Return the index of time_value; raise LookupMissError if absent."""
        try:
            key = as_time_value(time_value)
        except (TypeError, ValueError):
            raise LookupMissError(time_value) from None
        try:
            return self._positions[key]
        except KeyError:
            raise LookupMissError(time_value) from None

    def lookup_many(self, values: Iterable[Any]) -> np.ndarray:
        """Vectorised lookup; the first unseen value raises LookupMissError."""
        values = list(values)
        out = np.empty(len(values), dtype=int)
        for i, v in enumerate(values):
            out[i] = self.lookup(v)
        return out

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "index": list(self.indices),
                "time_value": list(self.time_values),
                "is_extra": list(self.is_extra),
            }
        )


# ------------------------------------------------------------
# Builder
# ------------------------------------------------------------

def build_time_index(observed: Iterable[Any], full: Iterable[Any]) -> TimeIndexTable:
    """
    Build the time index table from observed and full time values.

    Parameters
    ----------
    observed : iterable
        Time values appearing in the data (duplicates allowed).
    full : iterable
        Every time value the latent process must step through
        (duplicates allowed). Must contain every observed value.

    Returns
    -------
    table : TimeIndexTable
        One record per distinct full value, sorted ascending, with
        contiguous indices 0..len-1 and is_extra = value not observed.

    Raises
    ------
    TimeTypeMismatchError
        If numeric and categorical time values are mixed.
    TimeDomainError
        If an observed value is missing from the full set.
    """
    D = _distinct(observed, "observed")
    F = _distinct(full, "full")

    kinds = {tv.kind for tv in D} | {tv.kind for tv in F}
    if len(kinds) > 1:
        observed_kind = D[0].kind
        other_kind = next(k for k in sorted(kinds) if k != observed_kind)
        clashing = [tv.raw for tv in D + F if tv.kind != observed_kind]
        raise TimeTypeMismatchError(observed_kind, other_kind, clashing)

    F_set = set(F)
    missing = sorted(tv for tv in D if tv not in F_set)
    if missing:
        raise TimeDomainError(tv.raw for tv in missing)

    D_set = set(D)
    records = tuple(
        TimeIndexRecord(index=k, time_value=tv, is_extra=tv not in D_set)
        for k, tv in enumerate(sorted(F))
    )
    return TimeIndexTable(records=records)


def lookup(table: TimeIndexTable, time_value: Any) -> int:
    """Index of time_value in table; LookupMissError if it was never allocated."""
    return table.lookup(time_value)
