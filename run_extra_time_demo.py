from __future__ import annotations
from latent_process import LatentTemporalProcess, step_statistics
from temporal_fit import FitConfig, fit_temporal_model, get_time_series, predict
from temporal_setup import replicate_by_time, setup_temporal
import time
import numpy as np
import pandas as pd

# ---------------------------------------------------------------------
# 1. Helper: simulate an irregular annual survey
# ---------------------------------------------------------------------
def simulate_survey(
    years,
    rows_per_year: int = 40,
    rho: float = 0.7,
    sigma_proc: float = 0.5,
    sigma_obs: float = 1.0,
    mean: float = 3.0,
    seed: int = 0,
) -> pd.DataFrame:
    """
    Draw an AR(1) latent level over consecutive survey years and
    noisy observations around it.

    Returns a long data frame with columns: year, density, latent.
    """
    rng = np.random.default_rng(seed)
    years = sorted(years)
    z = np.empty(len(years), dtype=float)
    z[0] = mean + rng.normal(0.0, sigma_proc / np.sqrt(1.0 - rho**2))
    for t in range(1, len(years)):
        z[t] = mean + rho * (z[t - 1] - mean) + rng.normal(0.0, sigma_proc)

    rows = []
    for year, level in zip(years, z):
        y = level + rng.normal(0.0, sigma_obs, size=rows_per_year)
        for value in y:
            rows.append({"year": year, "density": float(value), "latent": level})
    return pd.DataFrame(rows)


# ---------------------------------------------------------------------
# 2. Helper: check the extra-time invariants on a fitted pair
# ---------------------------------------------------------------------
def check_extra_time_invariants(fit_base, fit_extra, extra_years) -> None:
    """
    Print the checks that extra time should satisfy:
      - one latent state per table entry
      - extra entries flagged, observed entries not
      - at fixed parameters, trailing extra steps leave loglik unchanged
    """
    table = fit_extra.setup.table
    print(f"  table length: {len(table)}  (latent dim {fit_extra.latent_dim})")
    print(f"  extra steps:  {table.n_extra}  -> {list(table.time_values[i] for i in table.extra_indices)}")

    assert fit_extra.latent_dim == len(table)
    for rec in table:
        assert rec.is_extra == (rec.time_value.raw in set(extra_years))

    # Evaluate the base model's parameters on the extended setup
    same_params = LatentTemporalProcess(fit_base.params)
    ll_base = same_params.log_likelihood(fit_base.stats)
    ll_ext = same_params.log_likelihood(fit_extra.stats)
    print(f"  loglik base: {ll_base:.6f}   loglik with extra time: {ll_ext:.6f}")


# ---------------------------------------------------------------------
# 3. Main entry point
# ---------------------------------------------------------------------

def main():
    overall_start = time.time()

    # ------------------------------------------------------------
    # Shared settings
    # ------------------------------------------------------------
    observed_years = [2003, 2004, 2005, 2007, 2009, 2011, 2013, 2015, 2017]
    gap_years = [2006, 2008, 2010, 2012, 2014, 2016]
    future_years = [2018, 2019, 2020]
    rows_per_year = 40
    process = "ar1"

    data = simulate_survey(observed_years, rows_per_year=rows_per_year, seed=1)
    print("Simulated survey:")
    print(f"  rows: {len(data)}, years: {sorted(data['year'].unique().tolist())}")

    # ------------------------------------------------------------
    # Time index tables
    # ------------------------------------------------------------
    setup = setup_temporal(data, time="year", extra_time=gap_years + future_years)
    print("\nTime index table (gaps + future years as extra time):")
    print(setup.table.to_frame().to_string(index=False))

    # ------------------------------------------------------------
    # Fit without and with trailing extra time
    # ------------------------------------------------------------
    config = FitConfig(process=process, verbose=False)

    print("\n========== Fit without extra time ==========")
    start = time.time()
    fit_base = fit_temporal_model(data, response="density", time="year", config=config)
    print(f"  finished in {time.time() - start:.2f} sec, "
          f"EM iters: {len(fit_base.history['loglik'])}")
    print(f"  params: {fit_base.params}")

    print("\n========== Fit with future extra time ==========")
    fit_future = fit_temporal_model(
        data, response="density", time="year",
        extra_time=future_years, config=config,
    )
    print(f"  params: {fit_future.params}")
    check_extra_time_invariants(fit_base, fit_future, future_years)

    # ------------------------------------------------------------
    # Fit with gap + future years and summarise per year
    # ------------------------------------------------------------
    print("\n========== Fit with gap and future extra time ==========")
    fit_all = fit_temporal_model(
        data, response="density", time="year",
        extra_time=gap_years + future_years, config=config,
    )
    series = get_time_series(fit_all)
    truth = data.groupby("year")["latent"].first()
    series["truth"] = series["time_value"].map(truth)
    print(series.to_string(index=False, float_format=lambda v: f"{v:7.3f}"))

    # ------------------------------------------------------------
    # Predict on a grid replicated over every allocated year
    # ------------------------------------------------------------
    grid = pd.DataFrame({"site": ["a", "b"]})
    nd = replicate_by_time(grid, "year", fit_all.setup.table.time_values)
    p = predict(fit_all, newdata=nd)
    print(f"\nGrid prediction rows: {len(p)}  (years: {p['year'].nunique()})")

    stats = step_statistics(fit_all.setup, "density")
    print(f"Observed steps with data: {int(stats.observed.sum())} of {stats.T}")

    total_time = time.time() - overall_start
    print(f"\nTotal script runtime: {total_time:.2f} sec")


if __name__ == "__main__":
    main()
