# ============================================================
# Module: temporal_fit
# ------------------------------------------------------------
# - Fit a latent temporal process to irregular time series,
#   optionally stepping through extra (unobserved) time values
# - Predict for the fitting data or new data via the fixed
#   time index table
# - Per-time-step summary (estimate, SE, confidence interval)
# ============================================================

from __future__ import annotations
from dataclasses import dataclass, field
from statistics import NormalDist
from typing import Any, Dict, Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from latent_process import (
    LatentTemporalProcess,
    ProcessParams,
    StepStatistics,
    step_statistics,
)
from temporal_setup import FAKE_COL, TemporalSetup, row_time_index, setup_temporal


# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

@dataclass
class FitConfig:
    """Settings for fit_temporal_model()."""
    process: str = "ar1"          # 'rw', 'ar1' or 'iid'
    num_iters: int = 200          # maximum EM iterations
    convergence_tol: Optional[float] = 1e-8
    verbose: bool = False


@dataclass
class TemporalFit:
    """
    A fitted model. `setup.table` is the time index table built at
    fit time; predictions always look rows up in it.
    """
    setup: TemporalSetup
    response: str
    model: LatentTemporalProcess
    stats: StepStatistics
    smooth: Dict[str, np.ndarray]
    history: Dict[str, Any] = field(repr=False)
    config: FitConfig = field(default_factory=FitConfig)

    @property
    def params(self) -> ProcessParams:
        return self.model.params

    @property
    def latent_dim(self) -> int:
        return self.smooth["mu_smooth"].shape[0]

    @property
    def log_likelihood(self) -> float:
        return self.model.log_likelihood(self.stats)


# ------------------------------------------------------------
# Fitting
# ------------------------------------------------------------

def fit_temporal_model(
    data: pd.DataFrame,
    response: str,
    time: str,
    extra_time: Optional[Iterable[Any]] = None,
    weights: Optional[Sequence[float]] = None,
    config: Optional[FitConfig] = None,
) -> TemporalFit:
    """
    Fit a latent temporal process with one state per time step.

    Parameters
    ----------
    data : pd.DataFrame
        Fitting data (one row per observation).
    response : str
        Column with the numeric response.
    time : str
        Column with the time variable.
    extra_time : iterable, optional
        Additional time values the process must step through.
    weights : sequence of float, optional
        Likelihood weights for the rows of `data`.
    config : FitConfig, optional

    Returns
    -------
    fit : TemporalFit
    """
    config = config or FitConfig()

    # Setup errors (time domain, weights, columns) surface before any fitting
    setup = setup_temporal(data, time=time, extra_time=extra_time, weights=weights)
    stats = step_statistics(setup, response)

    if config.verbose:
        print(
            f"[fit_temporal_model] {setup.n_real_rows} rows, {setup.n_time} time steps "
            f"({setup.n_extra} extra), process={config.process!r}"
        )
        if not setup.table.has_temporal_variance:
            print("[fit_temporal_model] single time step: temporal variance not estimated")

    model = LatentTemporalProcess(ProcessParams.init_from_data(stats, kind=config.process))
    history = model.em_train(
        stats,
        num_iters=config.num_iters,
        verbose=config.verbose,
        convergence_tol=config.convergence_tol,
    )
    smooth = model.rts_smoother(model.kalman_forward(stats))

    return TemporalFit(
        setup=setup,
        response=response,
        model=model,
        stats=stats,
        smooth=smooth,
        history=history,
        config=config,
    )


# ------------------------------------------------------------
# Prediction and summaries
# ------------------------------------------------------------

def predict(fit: TemporalFit, newdata: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """
    Latent-level estimate for each row.

    Without newdata, predicts for the original rows (fake extra-time
    rows excluded). With newdata, every row's time value must be in
    the table built at fit time; otherwise LookupMissError is raised
    and nothing about the fit is changed.
    """
    setup = fit.setup
    if newdata is None:
        real = ~setup.data[FAKE_COL].to_numpy()
        out = setup.data.loc[real].drop(columns=[FAKE_COL]).reset_index(drop=True)
        time_index = setup.time_index[real]
    else:
        time_index = row_time_index(setup.table, newdata, setup.time)
        out = newdata.reset_index(drop=True).copy()

    est, est_se = fit.model.reconstruct_from_smoother(
        mu_smooth=fit.smooth["mu_smooth"],
        var_smooth=fit.smooth["var_smooth"],
        time_index=time_index,
    )
    out["est"] = est
    out["est_se"] = est_se
    return out


def get_time_series(fit: TemporalFit, conf_level: float = 0.95) -> pd.DataFrame:
    """
    One row per time index: smoothed latent level with a normal CI.

    Extra steps are included (flagged) since they carry a latent state.
    """
    if not 0.0 < conf_level < 1.0:
        raise ValueError("`conf_level` must be between 0 and 1.")
    crit = NormalDist().inv_cdf(1.0 - (1.0 - conf_level) / 2.0)

    out = fit.setup.table.to_frame()
    est = fit.smooth["mu_smooth"]
    se = np.sqrt(fit.smooth["var_smooth"])
    out["est"] = est
    out["se"] = se
    out["conf_low"] = est - crit * se
    out["conf_high"] = est + crit * se
    return out
