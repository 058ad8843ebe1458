# ============================================================
# Module: temporal_setup
# ------------------------------------------------------------
# - Merge observed times with user-declared extra time
# - Build the (immutable) time index table once per model
# - Append zero-weight rows so every extra step gets a state
# - Re-derive per-row indices for prediction data
# ============================================================

from __future__ import annotations
from dataclasses import dataclass
from collections.abc import Iterable
from typing import Any, Optional, Sequence, Tuple
import warnings

import numpy as np
import pandas as pd

from time_index import (
    TimeIndexTable,
    TimeTypeMismatchWarning,
    build_time_index,
    check_extra_time,
)


FAKE_COL = "_fake"


# ------------------------------------------------------------
# Setup container
# ------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class TemporalSetup:
    """
    Everything the estimation engine needs about the time dimension.

    Attributes
    ----------
    table : TimeIndexTable
        Built once here; reused unchanged by every prediction.
    time : str
        Name of the time column.
    data : pd.DataFrame
        Fitting data plus one fake row per extra time step
        (flagged in the '_fake' column).
    time_index : np.ndarray, shape (N,)
        Latent-state index of each row of `data`.
    weights : np.ndarray, shape (N,)
        Likelihood weight of each row; 0 for fake rows.
    extra_time : tuple
        Extra time values actually used (after validation).
    """
    table: TimeIndexTable
    time: str
    data: pd.DataFrame
    time_index: np.ndarray
    weights: np.ndarray
    extra_time: Tuple[Any, ...]

    @property
    def n_time(self) -> int:
        return self.table.n_time

    @property
    def n_extra(self) -> int:
        return self.table.n_extra

    @property
    def latent_dim(self) -> int:
        # One latent state per contiguous index
        return len(self.table)

    @property
    def n_real_rows(self) -> int:
        return int((~self.data[FAKE_COL].to_numpy()).sum())


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _as_list(values: Any) -> list:
    if values is None:
        return []
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        return [values]
    return list(values)


def _time_values(column: pd.Series) -> list:
    # Categorical columns are factor-like: their levels are labels, not numbers
    if isinstance(column.dtype, pd.CategoricalDtype):
        return [str(v) for v in column.tolist()]
    return column.tolist()


def _check_weights(weights: Any, n_rows: int) -> np.ndarray:
    if weights is None:
        return np.ones(n_rows, dtype=float)
    w = np.asarray(weights, dtype=float)
    if w.shape != (n_rows,):
        raise ValueError(
            f"`weights` must have one entry per data row ({n_rows}); got shape {w.shape}."
        )
    if not np.all(np.isfinite(w)) or np.any(w < 0):
        raise ValueError("`weights` must be finite and non-negative.")
    return w


def _fake_rows(data: pd.DataFrame, time: str, new_times: Sequence[Any]) -> pd.DataFrame:
    """
    One placeholder row per extra time step.

    Copies the first data row so every column keeps its dtype; only the
    time differs. The rows carry zero likelihood weight, so the copied
    values never enter the fit.
    """
    template = data.iloc[[0] * len(new_times)].copy()
    template[time] = list(new_times)
    return template


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def setup_temporal(
    data: pd.DataFrame,
    time: str,
    extra_time: Optional[Iterable[Any]] = None,
    weights: Optional[Sequence[float]] = None,
) -> TemporalSetup:
    """
    Build the temporal part of a model specification.

    Parameters
    ----------
    data : pd.DataFrame
        Fitting data.
    time : str
        Column holding the time variable (e.g. 'year').
    extra_time : iterable, optional
        Time values to include in the latent process even though they
        are not observed. Values already observed are harmless no-ops.
    weights : sequence of float, optional
        Per-row likelihood weights for the real rows.

    Returns
    -------
    setup : TemporalSetup
    """
    if time not in data.columns:
        raise KeyError(f"Time column {time!r} not found in data.")
    if len(data) == 0:
        raise ValueError("`data` has no rows.")
    if data[time].isna().any():
        raise ValueError(f"Time column {time!r} contains missing values.")
    if FAKE_COL in data.columns:
        raise ValueError(
            f"Column {FAKE_COL!r} is reserved for extra-time placeholder rows; "
            f"rename it before setup."
        )

    observed = list(dict.fromkeys(_time_values(data[time])))
    extra = _as_list(extra_time)

    if extra:
        mismatch = check_extra_time(observed, extra)
        if mismatch is not None:
            warnings.warn(
                f"{mismatch} Extra time values were ignored; please rename or "
                f"re-type the time variable {time!r} so that it matches the "
                f"type of `extra_time`.",
                TimeTypeMismatchWarning,
                stacklevel=2,
            )
            extra = []

    table = build_time_index(observed, observed + extra)

    w = _check_weights(weights, len(data))
    fit_data = data.copy()
    fit_data[FAKE_COL] = False

    extra_values = [table[k].time_value.raw for k in table.extra_indices]
    if extra_values:
        fake = _fake_rows(data, time, extra_values)
        fake[FAKE_COL] = True
        fit_data = pd.concat([fit_data, fake], ignore_index=True)
        w = np.concatenate([w, np.zeros(len(extra_values), dtype=float)])
    else:
        fit_data = fit_data.reset_index(drop=True)

    time_index = np.concatenate([
        table.lookup_many(_time_values(data[time])),
        table.lookup_many(extra_values),
    ]).astype(int)

    return TemporalSetup(
        table=table,
        time=time,
        data=fit_data,
        time_index=time_index,
        weights=w,
        extra_time=tuple(extra),
    )


def row_time_index(
    table: TimeIndexTable,
    newdata: pd.DataFrame,
    time: str,
) -> np.ndarray:
    """
    Per-row latent-state indices for prediction data.

    Uses the fixed table from setup; a time value never allocated at
    setup raises LookupMissError rather than being snapped to a neighbour.
    """
    if time not in newdata.columns:
        raise KeyError(f"Time column {time!r} not found in newdata.")
    return table.lookup_many(_time_values(newdata[time]))


def replicate_by_time(grid: pd.DataFrame, time: str, values: Iterable[Any]) -> pd.DataFrame:
    """Stack one copy of `grid` per time value, filling the `time` column."""
    values = _as_list(values)
    if not values:
        raise ValueError("`values` must contain at least one time value.")
    pieces = []
    for v in values:
        piece = grid.copy()
        piece[time] = v
        pieces.append(piece)
    return pd.concat(pieces, ignore_index=True)
