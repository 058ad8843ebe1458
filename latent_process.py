# ============================================================
# Module: latent_process
# ------------------------------------------------------------
# - Univariate latent temporal process over time-index steps
#   (random walk, AR(1) or independent)
# - Kalman filter where extra (unobserved) steps skip the update
# - Rauch–Tung–Striebel (RTS) smoother and approximate EM
# - Utilities for reconstruction and k-step forecasting
# ============================================================

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, Tuple, Optional
import numpy as np

from temporal_setup import TemporalSetup


PROCESS_KINDS = ("rw", "ar1", "iid")

# Cap on |rho| so the AR(1) stationary variance stays finite
_RHO_MAX = 0.99


# ------------------------------------------------------------
# Per-step sufficient statistics
# ------------------------------------------------------------

@dataclass(frozen=True)
class StepStatistics:
    """
    Observations collapsed to one entry per time index.

    For index t with rows i (weights w_i, responses y_i):
        weight[t] = sum_i w_i
        ybar[t]   = sum_i w_i y_i / weight[t]     (NaN if weight[t] == 0)
        ssw[t]    = sum_i w_i (y_i - ybar[t])^2
    Extra steps have weight 0 and so no likelihood contribution.
    """
    weight: np.ndarray     # (T,)
    ybar: np.ndarray       # (T,)
    ssw: np.ndarray        # (T,)

    @property
    def T(self) -> int:
        return self.weight.shape[0]

    @property
    def observed(self) -> np.ndarray:
        return self.weight > 0


def step_statistics(setup: TemporalSetup, response: str) -> StepStatistics:
    """
    Collapse the setup's rows to per-index statistics.

    Rows with NaN response (fake rows included) are dropped from the sums.
    """
    if response not in setup.data.columns:
        raise KeyError(f"Response column {response!r} not found in data.")

    y = setup.data[response].to_numpy(dtype=float)
    w = setup.weights.copy()
    idx = setup.time_index

    usable = np.isfinite(y) & (w > 0)
    w = np.where(usable, w, 0.0)
    y0 = np.where(usable, y, 0.0)

    T = setup.latent_dim
    weight = np.bincount(idx, weights=w, minlength=T)
    wy = np.bincount(idx, weights=w * y0, minlength=T)

    ybar = np.full(T, np.nan, dtype=float)
    has = weight > 0
    ybar[has] = wy[has] / weight[has]

    # Within-step spread around the step mean
    resid = np.where(usable, y0 - np.nan_to_num(ybar[idx]), 0.0)
    ssw = np.bincount(idx, weights=w * resid**2, minlength=T)

    return StepStatistics(weight=weight, ybar=ybar, ssw=ssw)


# ------------------------------------------------------------
# Parameter container
# ------------------------------------------------------------

@dataclass
class ProcessParams:
    """
    Parameters of the latent temporal process and observation noise.

        rw  : z_0 ~ N(mu0, var0),  z_t = z_{t-1} + eta_t
        ar1 : z_t - mean = rho (z_{t-1} - mean) + eta_t  (stationary start)
        iid : ar1 with rho = 0

        eta_t ~ N(0, sigma_proc^2),   y_i ~ N(z_{t(i)}, sigma_obs^2 / w_i)
    """
    kind: str
    mean: float = 0.0
    rho: float = 0.0
    sigma_proc: float = 1.0
    sigma_obs: float = 1.0
    mu0: float = 0.0
    var0: float = 1e4

    def __post_init__(self) -> None:
        if self.kind not in PROCESS_KINDS:
            raise ValueError(
                f"Unknown process kind {self.kind!r}; expected one of {PROCESS_KINDS}."
            )
        if self.kind == "iid":
            self.rho = 0.0
        if self.kind == "rw":
            self.rho = 1.0
        elif not -1.0 < self.rho < 1.0:
            raise ValueError("AR(1) `rho` must lie strictly between -1 and 1.")
        if self.sigma_proc <= 0 or self.sigma_obs <= 0:
            raise ValueError("Standard deviations must be positive.")
        if self.var0 <= 0:
            raise ValueError("`var0` must be positive.")

    @property
    def transition(self) -> Tuple[float, float]:
        """(a, c) such that z_t = c + a z_{t-1} + eta_t."""
        if self.kind == "rw":
            return 1.0, 0.0
        return self.rho, (1.0 - self.rho) * self.mean

    @property
    def initial(self) -> Tuple[float, float]:
        """Prior mean and variance of z_0."""
        if self.kind == "rw":
            return self.mu0, self.var0
        return self.mean, self.sigma_proc**2 / (1.0 - self.rho**2)

    @staticmethod
    def init_from_data(stats: StepStatistics, kind: str = "ar1") -> "ProcessParams":
        """
        Moment-based starting values.

        Process and observation variances split the spread of the data;
        a stable-ish rho is used for AR(1).
        """
        obs = stats.observed
        if not obs.any():
            raise ValueError("No observed time steps with positive weight.")
        means = stats.ybar[obs]
        w = stats.weight[obs]
        grand_mean = float(np.sum(w * means) / np.sum(w))

        between = float(np.var(means)) if means.size > 1 else 0.0
        within = float(np.sum(stats.ssw) / max(np.sum(w), 1.0))
        total = between + within
        if not np.isfinite(total) or total <= 0:
            total = 1.0

        sigma_proc = np.sqrt(max(between, 0.1 * total))
        sigma_obs = np.sqrt(max(within, 0.1 * total))

        return ProcessParams(
            kind=kind,
            mean=grand_mean,
            rho=0.5 if kind == "ar1" else 0.0,
            sigma_proc=float(sigma_proc),
            sigma_obs=float(sigma_obs),
            mu0=float(means[0]),
            var0=float(max(100.0 * total, 1.0)),
        )


# ------------------------------------------------------------
# Core Kalman filter over time-index steps
# ------------------------------------------------------------

class LatentTemporalProcess:
    """
    Latent temporal process with one state per time-index entry.

    The state dimension equals the number of entries in the time
    index table, including extra steps. Extra steps go through the
    predict step only: their latent state is carried by the dynamics
    (interpolated or extrapolated) but they add nothing to the
    likelihood. Consecutive indices are one step apart regardless of
    the calendar gap between their time values.
    """

    def __init__(self, params: ProcessParams):
        self.params = params

    # --------------------------------------------------------
    # Forward pass
    # --------------------------------------------------------

    def kalman_forward(self, stats: StepStatistics) -> Dict[str, np.ndarray]:
        """
        Run the Kalman filter over all T steps.

        Returns
        -------
        results : dict of np.ndarray
            - 'mu_pred', 'var_pred' : (T,) predictive moments of z_t
            - 'mu_filt', 'var_filt' : (T,) filtered moments of z_t
            - 'loglik_t'            : (T,) per-step log-likelihood (0 for extra steps)
        """
        p = self.params
        s2 = p.sigma_obs**2
        q = p.sigma_proc**2
        a, c = p.transition
        m0, v0 = p.initial

        T = stats.T
        mu_pred = np.zeros(T, dtype=float)
        var_pred = np.zeros(T, dtype=float)
        mu_filt = np.zeros(T, dtype=float)
        var_filt = np.zeros(T, dtype=float)
        loglik_t = np.zeros(T, dtype=float)

        for t in range(T):
            # ------------------------------------------------
            # 1) Predict step (the prior at t = 0)
            # ------------------------------------------------
            if t == 0:
                m, v = m0, v0
            else:
                m = c + a * mu_filt[t - 1]
                v = a * a * var_filt[t - 1] + q
            mu_pred[t] = m
            var_pred[t] = v

            W = stats.weight[t]
            if W <= 0:
                # Extra step: no data, no update, no likelihood weight
                mu_filt[t] = m
                var_filt[t] = v
                continue

            # ------------------------------------------------
            # 2) Update with the step's pseudo-observation
            #    ybar ~ N(z_t, s2 / W)
            # ------------------------------------------------
            r = s2 / W
            S = v + r
            gain = v / S
            innov = stats.ybar[t] - m
            mu_filt[t] = m + gain * innov
            var_filt[t] = (1.0 - gain) * v

            # Exact weighted log-likelihood of all rows at this step:
            #   log N(ybar | m, v + s2/W) + 0.5 log(2 pi s2 / W)
            #   - 0.5 SSW / s2 - 0.5 W log(2 pi s2)
            loglik_t[t] = (
                -0.5 * (np.log(2.0 * np.pi * S) + innov**2 / S)
                + 0.5 * np.log(2.0 * np.pi * r)
                - 0.5 * stats.ssw[t] / s2
                - 0.5 * W * np.log(2.0 * np.pi * s2)
            )

        return {
            "mu_pred": mu_pred,
            "var_pred": var_pred,
            "mu_filt": mu_filt,
            "var_filt": var_filt,
            "loglik_t": loglik_t,
        }

    # --------------------------------------------------------
    # Backward pass: Rauch–Tung–Striebel smoother
    # --------------------------------------------------------

    def rts_smoother(self, kf_results: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """
        RTS smoother on the output of kalman_forward().

        Returns
        -------
        results : dict of np.ndarray
            - 'mu_smooth', 'var_smooth' : (T,) smoothed moments
            - 'cov_lag1'                : (T,) Cov(z_t, z_{t-1} | all data);
                                          entry 0 is unused (0.0)
        """
        a, _ = self.params.transition

        mu_pred = kf_results["mu_pred"]
        var_pred = kf_results["var_pred"]
        mu_filt = kf_results["mu_filt"]
        var_filt = kf_results["var_filt"]

        T = mu_filt.shape[0]
        mu_smooth = mu_filt.copy()
        var_smooth = var_filt.copy()
        cov_lag1 = np.zeros(T, dtype=float)

        for t in range(T - 2, -1, -1):
            # Smoother gain J_t = var_{t|t} a / var_{t+1|t}
            J = var_filt[t] * a / var_pred[t + 1]
            mu_smooth[t] = mu_filt[t] + J * (mu_smooth[t + 1] - mu_pred[t + 1])
            var_smooth[t] = var_filt[t] + J * J * (var_smooth[t + 1] - var_pred[t + 1])
            cov_lag1[t + 1] = J * var_smooth[t + 1]

        return {
            "mu_smooth": mu_smooth,
            "var_smooth": var_smooth,
            "cov_lag1": cov_lag1,
        }

    # --------------------------------------------------------
    # Log-likelihood
    # --------------------------------------------------------

    def log_likelihood(
        self,
        stats: StepStatistics,
        kf_results: Optional[Dict[str, np.ndarray]] = None,
    ) -> float:
        """
        Marginal log-likelihood of the observed rows.

        Extra steps contribute exactly zero, so appending unobserved
        steps after the last observation leaves this value unchanged.
        """
        if kf_results is None:
            kf_results = self.kalman_forward(stats)
        ll = float(np.sum(kf_results["loglik_t"]))
        return ll if np.isfinite(ll) else -np.inf

    # --------------------------------------------------------
    # EM training
    # --------------------------------------------------------

    def em_train(
        self,
        stats: StepStatistics,
        num_iters: int = 50,
        verbose: bool = False,
        convergence_tol: Optional[float] = 1e-6,
    ) -> Dict[str, Any]:
        """
        Approximate EM for the process and observation parameters.

        E-step: Kalman filter + RTS smoother (exact lag-one covariances).
        M-step: closed-form updates of (mean, rho, sigma_proc, sigma_obs,
        mu0). The initial-state term of the stationary AR(1) prior is
        ignored in the M-step, which keeps the updates closed-form.

        With a single time step there is no temporal variation to learn
        from: only sigma_obs and the level are updated.

        Parameters
        ----------
        stats : StepStatistics
            Output of step_statistics().
        num_iters : int
            Maximum number of EM iterations.
        verbose : bool
            If True, print progress each iteration.
        convergence_tol : Optional[float]
            Stop when the relative change of the log-likelihood between
            successive iterations drops below this threshold.

        Returns
        -------
        history : dict
            Per-iteration log-likelihood and parameter snapshots.
        """
        T = stats.T
        kind = self.params.kind
        history = {
            "loglik": [],
            "rho": [],
            "sigma_proc": [],
            "sigma_obs": [],
        }

        obs = stats.observed
        W_total = float(np.sum(stats.weight))
        if W_total <= 0:
            raise ValueError("No observations with positive weight to train on.")

        prev_ll = None
        for it in range(num_iters):
            # -------------------------------
            # E-step
            # -------------------------------
            kf = self.kalman_forward(stats)
            sm = self.rts_smoother(kf)
            ll = self.log_likelihood(stats, kf)

            m = sm["mu_smooth"]            # (T,)
            P = sm["var_smooth"]           # (T,)
            C = sm["cov_lag1"]             # (T,)
            S = P + m * m                  # E[z_t^2]

            # -------------------------------
            # M-step: observation noise
            #   s2 = sum_t [SSW_t + W_t ((ybar_t - m_t)^2 + P_t)] / sum W
            # -------------------------------
            resid = np.where(obs, np.nan_to_num(stats.ybar) - m, 0.0)
            s2_new = float(
                np.sum(stats.ssw + stats.weight * (resid**2 + P)) / W_total
            )
            s2_new = max(s2_new, 1e-8)

            p = self.params
            mean_new, rho_new, q_new = p.mean, p.rho, p.sigma_proc**2
            mu0_new = p.mu0

            if T > 1:
                S_cross = C[1:] + m[1:] * m[:-1]     # E[z_t z_{t-1}]
                n = T - 1
                if kind == "rw":
                    q_new = float(np.mean(S[1:] - 2.0 * S_cross + S[:-1]))
                    mu0_new = float(m[0])
                elif kind == "iid":
                    mean_new = float(np.mean(m))
                    q_new = float(np.mean(S - 2.0 * mean_new * m + mean_new**2))
                else:
                    # Regress z_t on (1, z_{t-1}):  z_t = c + a z_{t-1}
                    G = np.array([
                        [n,              np.sum(m[:-1])],
                        [np.sum(m[:-1]), np.sum(S[:-1])],
                    ])
                    b = np.array([np.sum(m[1:]), np.sum(S_cross)])
                    c_new, a_new = np.linalg.solve(G + 1e-10 * np.eye(2), b)
                    a_new = float(np.clip(a_new, -_RHO_MAX, _RHO_MAX))
                    c_new = float(np.mean(m[1:] - a_new * m[:-1]))
                    q_new = float(np.mean(
                        S[1:] + c_new**2 + a_new**2 * S[:-1]
                        - 2.0 * c_new * m[1:]
                        - 2.0 * a_new * S_cross
                        + 2.0 * a_new * c_new * m[:-1]
                    ))
                    rho_new = a_new
                    mean_new = c_new / (1.0 - a_new)
                q_new = max(q_new, 1e-8)
            else:
                # One time step: level only, temporal variance not identifiable
                if kind == "rw":
                    mu0_new = float(m[0])
                else:
                    mean_new = float(m[0])

            self.params = ProcessParams(
                kind=kind,
                mean=mean_new,
                rho=rho_new,
                sigma_proc=float(np.sqrt(q_new)),
                sigma_obs=float(np.sqrt(s2_new)),
                mu0=mu0_new,
                var0=p.var0,
            )

            history["loglik"].append(ll)
            history["rho"].append(self.params.rho)
            history["sigma_proc"].append(self.params.sigma_proc)
            history["sigma_obs"].append(self.params.sigma_obs)

            if verbose:
                print(
                    f"[em_train] iter {it + 1}/{num_iters}  loglik={ll:.4f}  "
                    f"rho={self.params.rho:.3f}  sigma_proc={self.params.sigma_proc:.3f}  "
                    f"sigma_obs={self.params.sigma_obs:.3f}"
                )

            # -------------------------------
            # Early stopping on log-likelihood change
            # -------------------------------
            if convergence_tol is not None and prev_ll is not None:
                rel = abs(ll - prev_ll) / (abs(prev_ll) + 1e-8)
                if rel < convergence_tol:
                    if verbose:
                        print(
                            f"[em_train] early stopping at iter {it + 1} "
                            f"(Δ={rel:.3e} < tol={convergence_tol:.1e})"
                        )
                    break
            prev_ll = ll

        return history

    # --------------------------------------------------------
    # Reconstruction & forecasting utilities
    # --------------------------------------------------------

    def reconstruct_from_smoother(
        self,
        mu_smooth: np.ndarray,
        var_smooth: np.ndarray,
        time_index: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Expected response and its standard error for each row.

        Parameters
        ----------
        mu_smooth, var_smooth : np.ndarray, shape (T,)
            Smoothed latent moments from rts_smoother().
        time_index : np.ndarray, shape (N,)
            Latent-state index of each row.

        Returns
        -------
        est : np.ndarray, shape (N,)
        est_se : np.ndarray, shape (N,)
            Standard error of the latent level (not of a new observation).
        """
        time_index = np.asarray(time_index, dtype=int)
        return mu_smooth[time_index], np.sqrt(var_smooth[time_index])

    def k_step_forecast(
        self,
        mu: float,
        var: float,
        k: int,
    ) -> Tuple[float, float]:
        """
        Propagate latent moments k index steps forward with the dynamics.

        Returns
        -------
        mean_y, var_y : float
            Moments of a new observation k steps ahead.
        """
        if k < 0:
            raise ValueError("`k` must be non-negative.")
        a, c = self.params.transition
        q = self.params.sigma_proc**2
        for _ in range(k):
            mu = c + a * mu
            var = a * a * var + q
        return mu, var + self.params.sigma_obs**2
