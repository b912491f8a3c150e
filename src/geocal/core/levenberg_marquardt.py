"""
General purpose Levenberg-Marquardt solver for nonlinear least squares.

Subclasses supply the model through `get_model()` and optionally override
`get_jacobian()` (default: finite differences with steps from
`finite_differences_step_size_per_param()`) and `post_parameter_update_callback()`
(called after every parameter mutation, e.g. to renormalize a quaternion).

Usage:

    class Line(LevenbergMarquardtSolver):
        def __init__(self, x):
            super().__init__(n_params=2, n_data=len(x))
            self.x = x

        def get_model(self):
            return self.params[0] + self.params[1] * self.x

    lm = Line(x)
    lm.set_data(y)
    lm.set_variance(sigma**2)
    lm.set_parameters([0.0, 1.0])
    ok = lm.fit(500)
    p, err = lm.get_parameters(), lm.get_asymptotic_standard_error()
"""
from __future__ import annotations

import logging
from typing import Literal

import numpy as np
from scipy import linalg

logger = logging.getLogger(__name__)

ExitReason = Literal["tolerance", "max_iterations", "max_damping", "non_finite"]

# Starting damping is this fraction of the mean diagonal of J^T C^-1 J.
INITIAL_DAMPING_SCALE = 1e-3
# Relative eigenvalue cutoff when inverting the (Jacobi-scaled) normal matrix.
COVARIANCE_RCOND = 1e-10


class ConfigurationError(ValueError):
    pass


class LevenbergMarquardtSolver:
    """
    Damped Gauss-Newton fit of M parameters P to N observations Y with covariance C,
    minimizing chi2 = (Y - f(P))^T C^-1 (Y - f(P)).

    Sizes are fixed at construction; all inputs are checked against them.
    """

    def __init__(self, n_params: int, n_data: int):
        if int(n_params) < 1:
            raise ConfigurationError("n_params must be >= 1")
        if int(n_data) < 0:
            raise ConfigurationError("n_data must be >= 0")
        self.M = int(n_params)
        self.N = int(n_data)

        # Absolute data step for the fourth-order parameter/data Jacobian.
        self.h = 1e-2
        self.exit_tolerance = 1e-32
        # Relative to the starting damping.
        self.max_damping = 1e32
        self.boost_shrink_factor = 10.0
        self.finite_difference: Literal["forward", "fourth_order"] = "forward"

        self.params = np.zeros((self.M,), dtype=np.float64)
        self.data = np.zeros((self.N,), dtype=np.float64)
        self.model = np.zeros((self.N,), dtype=np.float64)
        self.covariance = np.ones((self.N,), dtype=np.float64)
        self.covariance_is_diagonal = True
        self._cov_factor: tuple[np.ndarray, bool] | None = None

        self.damping: float | None = None
        self.chi2_history: list[float] = []
        self.n_iterations = 0
        self.n_accepted = 0
        self.exit_reason: ExitReason | None = None
        self._last_max_iterations = 500

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def set_data(self, data: np.ndarray) -> None:
        data = np.asarray(data, dtype=np.float64).reshape(-1)
        if data.size != self.N:
            raise ConfigurationError(f"data must have {self.N} elements, got {data.size}")
        if not np.all(np.isfinite(data)):
            raise ConfigurationError("data must be finite")
        self.data = data.copy()

    def set_parameters(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64).reshape(-1)
        if params.size != self.M:
            raise ConfigurationError(f"parameters must have {self.M} elements, got {params.size}")
        self.params = params.copy()
        self.post_parameter_update_callback()

    def get_parameters(self) -> np.ndarray:
        return self.params.copy()

    def set_covariance(self, covariance: np.ndarray) -> None:
        """
        Full NxN data covariance, either as an (N,N) array or packed row-major in N*N values.
        """
        cov = np.asarray(covariance, dtype=np.float64)
        if cov.size != self.N * self.N:
            raise ConfigurationError(f"covariance must have {self.N}x{self.N} elements, got {cov.size}")
        cov = cov.reshape(self.N, self.N)
        if not np.all(np.isfinite(cov)):
            raise ConfigurationError("covariance must be finite")
        if not np.allclose(cov, cov.T, rtol=1e-10, atol=0.0):
            raise ConfigurationError("covariance must be symmetric")
        try:
            factor = linalg.cho_factor(cov, lower=True)
        except linalg.LinAlgError as e:
            raise ConfigurationError("covariance must be positive definite") from e
        self.covariance = cov.copy()
        self.covariance_is_diagonal = False
        self._cov_factor = factor

    def set_variance(self, variance: np.ndarray) -> None:
        """Diagonal covariance: one variance per data point."""
        var = np.asarray(variance, dtype=np.float64).reshape(-1)
        if var.size != self.N:
            raise ConfigurationError(f"variance must have {self.N} elements, got {var.size}")
        if not np.all(np.isfinite(var)) or np.any(var <= 0.0):
            raise ConfigurationError("variance must be finite and > 0")
        self.covariance = var.copy()
        self.covariance_is_diagonal = True
        self._cov_factor = None

    def data_covariance_matrix(self) -> np.ndarray:
        if self.covariance_is_diagonal:
            return np.diag(self.covariance)
        return self.covariance.copy()

    # ------------------------------------------------------------------
    # Extension points
    # ------------------------------------------------------------------

    def get_model(self) -> np.ndarray:
        """f(P): N model values for the current parameters. Must be overridden."""
        raise NotImplementedError

    def get_jacobian(self) -> np.ndarray:
        """
        (N,M) Jacobian df_i/dp_j at the current parameters.

        The default is a finite difference approximation ("forward" or "fourth_order"
        central differences, see `finite_difference`) with the steps returned by
        `finite_differences_step_size_per_param()`. Override for an analytic Jacobian.
        """
        steps = np.asarray(self.finite_differences_step_size_per_param(), dtype=np.float64).reshape(-1)
        if steps.size != self.M:
            raise ConfigurationError(f"finite difference steps must have {self.M} elements, got {steps.size}")
        if not np.all(np.isfinite(steps)) or np.any(steps <= 0.0):
            raise ConfigurationError("finite difference steps must be finite and > 0")

        p0 = self.params.copy()
        jac = np.empty((self.N, self.M), dtype=np.float64)
        try:
            if self.finite_difference == "forward":
                f0 = self._model_at(p0)
                for k in range(self.M):
                    p = p0.copy()
                    p[k] += steps[k]
                    jac[:, k] = (self._model_at(p) - f0) / steps[k]
            elif self.finite_difference == "fourth_order":
                for k in range(self.M):
                    f = {}
                    for m in (-2, -1, 1, 2):
                        p = p0.copy()
                        p[k] += m * steps[k]
                        f[m] = self._model_at(p)
                    jac[:, k] = (f[-2] - 8.0 * f[-1] + 8.0 * f[1] - f[2]) / (12.0 * steps[k])
            else:
                raise ConfigurationError(f"unknown finite difference scheme: {self.finite_difference}")
        finally:
            self.params = p0
            self.post_parameter_update_callback()
        return jac

    def finite_differences_step_size_per_param(self) -> np.ndarray:
        """Per-parameter steps for the finite difference Jacobian; override with physical scales."""
        return np.sqrt(np.finfo(np.float64).eps) * np.maximum(np.abs(self.params), 1.0)

    def post_parameter_update_callback(self) -> None:
        """Called after every parameter update (fit steps, restores, finite difference trials)."""
        return None

    # ------------------------------------------------------------------
    # Fit
    # ------------------------------------------------------------------

    def fit(self, max_iterations: int = 500, verbose: bool = False) -> bool:
        """
        Run the Levenberg-Marquardt loop.

        Stops when the relative chi2 change of an accepted step falls below
        `exit_tolerance`, after `max_iterations` trial steps, or when the damping exceeds
        `max_damping` times its starting value. Returns False when no valid solution was
        reached: non-finite chi2, or damping overflow without a single accepted step.
        """
        if self.N < self.M:
            raise ConfigurationError(
                f"need at least as many data points as parameters (N={self.N} < M={self.M})"
            )
        max_iterations = int(max_iterations)
        if max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        self._check_settings()
        self._last_max_iterations = max_iterations
        log = logger.info if verbose else logger.debug

        self.chi2_history = []
        self.n_iterations = 0
        self.n_accepted = 0
        self.exit_reason = None

        self.post_parameter_update_callback()
        residuals = self._residuals()
        chi2 = self._chi2(residuals)
        self.chi2_history.append(chi2)
        if not np.isfinite(chi2):
            self.exit_reason = "non_finite"
            logger.warning("initial chi2 is not finite; fit not attempted")
            return False
        if chi2 == 0.0:
            self.exit_reason = "tolerance"
            self.model = self._evaluate_model()
            log("initial parameters reproduce the data exactly")
            return True

        jac = self._checked_jacobian()
        alpha, beta = self._normal_equations(jac, residuals)
        if not (np.all(np.isfinite(alpha)) and np.all(np.isfinite(beta))):
            self.exit_reason = "non_finite"
            logger.warning("Jacobian is not finite at the initial parameters; fit not attempted")
            return False

        mean_diag = float(np.mean(np.diag(alpha)))
        if np.isfinite(mean_diag) and mean_diag > 0.0:
            lam0 = INITIAL_DAMPING_SCALE * mean_diag
        else:
            lam0 = INITIAL_DAMPING_SCALE
        lam = lam0
        max_lam = self.max_damping * lam0
        scale = _damping_scale(alpha)

        log("LM start: N=%d M=%d chi2=%.10g lambda=%.3g", self.N, self.M, chi2, lam)

        self.exit_reason = "max_iterations"
        while self.n_iterations < max_iterations:
            self.n_iterations += 1
            p_old = self.params.copy()

            trial_chi2 = np.inf
            trial_res = residuals
            try:
                delta = linalg.solve(alpha + lam * np.diag(scale), beta, assume_a="pos")
            except linalg.LinAlgError:
                delta = None
            if delta is not None and np.all(np.isfinite(delta)):
                self.params = p_old + delta
                self.post_parameter_update_callback()
                trial_res = self._residuals()
                trial_chi2 = self._chi2(trial_res)

            if np.isfinite(trial_chi2) and trial_chi2 < chi2:
                rel = (chi2 - trial_chi2) / chi2
                chi2 = trial_chi2
                residuals = trial_res
                self.chi2_history.append(chi2)
                self.n_accepted += 1
                lam /= self.boost_shrink_factor
                log("iter %d: accepted chi2=%.10g rel=%.3g lambda=%.3g", self.n_iterations, chi2, rel, lam)
                if chi2 == 0.0 or rel < self.exit_tolerance:
                    self.exit_reason = "tolerance"
                    break
                jac = self._checked_jacobian()
                alpha, beta = self._normal_equations(jac, residuals)
                if not (np.all(np.isfinite(alpha)) and np.all(np.isfinite(beta))):
                    self.exit_reason = "non_finite"
                    logger.warning("Jacobian became non-finite at iteration %d", self.n_iterations)
                    break
                scale = _damping_scale(alpha)
            else:
                self.params = p_old
                self.post_parameter_update_callback()
                lam *= self.boost_shrink_factor
                log("iter %d: rejected chi2=%.10g lambda=%.3g", self.n_iterations, trial_chi2, lam)
                if lam > max_lam:
                    self.exit_reason = "max_damping"
                    break

        self.damping = lam
        self.model = self._evaluate_model()

        if self.exit_reason == "non_finite":
            return False
        if self.exit_reason == "max_damping" and self.n_accepted == 0:
            logger.warning("damping exceeded its limit without improving chi2=%.10g", chi2)
            return False
        if self.exit_reason == "max_iterations":
            logger.warning("no convergence within %d iterations (chi2=%.10g)", max_iterations, chi2)
        else:
            log(
                "LM stop (%s) after %d iterations (%d accepted): chi2=%.10g",
                self.exit_reason,
                self.n_iterations,
                self.n_accepted,
                chi2,
            )
        return bool(np.isfinite(chi2))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_residuals(self) -> np.ndarray:
        """Y - f(P) for the current parameters."""
        return self._residuals()

    def get_chi2(self) -> float:
        return self._chi2(self._residuals())

    def get_dof(self) -> int:
        return self.N - self.M

    def get_reduced_chi2(self) -> float:
        dof = self.get_dof()
        if dof <= 0:
            return float("nan")
        return self.get_chi2() / dof

    def get_parameter_covariance(self) -> np.ndarray:
        """
        Asymptotic parameter covariance: reduced chi2 x (J^T C^-1 J)^-1 at the current
        parameters. A pseudo-inverse is used so that gauge directions (e.g. the norm of a
        quaternion) get zero variance instead of failing the inversion.
        """
        jac = self._checked_jacobian()
        alpha = jac.T @ self._weighted(jac)
        return self.get_reduced_chi2() * _pinv_normal_matrix(alpha)

    def get_asymptotic_standard_error(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.get_parameter_covariance()), 0.0, None))

    def get_parameter_correlation(self) -> np.ndarray:
        cov = self.get_parameter_covariance()
        sigma = np.sqrt(np.clip(np.diag(cov), 0.0, None))
        denom = np.outer(sigma, sigma)
        with np.errstate(divide="ignore", invalid="ignore"):
            corr = np.where(denom > 0.0, cov / denom, 0.0)
        return corr

    def get_fourth_order_covariance(self) -> np.ndarray:
        """
        Parameter covariance obtained by propagating the data covariance:

          S_p = (dp/dy)^T S_y (dp/dy)

        with dp/dy (N,M) from a fourth-order central difference on each data value (step
        `h`), re-fitting from the current solution for every perturbation.

        This fails for models that are significantly non-linear within a standard
        deviation or two of the current solution. Near the optimum it matches
        `get_parameter_covariance()` divided by the reduced chi2.
        """
        p_fit = self.params.copy()
        y_fit = self.data.copy()
        saved = (list(self.chi2_history), self.n_iterations, self.n_accepted, self.exit_reason, self.damping)
        max_iterations = self._last_max_iterations
        dpdy = np.zeros((self.N, self.M), dtype=np.float64)
        try:
            for i in range(self.N):
                p = {}
                for m in (-2, -1, 1, 2):
                    y = y_fit.copy()
                    y[i] += m * self.h
                    self.data = y
                    self.params = p_fit.copy()
                    self.fit(max_iterations, verbose=False)
                    p[m] = self.params.copy()
                dpdy[i] = (p[-2] - 8.0 * p[-1] + 8.0 * p[1] - p[2]) / (12.0 * self.h)
        finally:
            self.data = y_fit
            self.params = p_fit
            self.post_parameter_update_callback()
            self.model = self._evaluate_model()
            self.chi2_history, self.n_iterations, self.n_accepted, self.exit_reason, self.damping = saved
        return dpdy.T @ self.data_covariance_matrix() @ dpdy

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_settings(self) -> None:
        if not (np.isfinite(self.exit_tolerance) and self.exit_tolerance >= 0.0):
            raise ConfigurationError("exit_tolerance must be >= 0")
        if not (self.max_damping > 1.0):
            raise ConfigurationError("max_damping must be > 1")
        if not (np.isfinite(self.boost_shrink_factor) and self.boost_shrink_factor > 1.0):
            raise ConfigurationError("boost_shrink_factor must be > 1")
        if not (np.isfinite(self.h) and self.h > 0.0):
            raise ConfigurationError("h must be > 0")

    def _evaluate_model(self) -> np.ndarray:
        model = np.asarray(self.get_model(), dtype=np.float64).reshape(-1)
        if model.size != self.N:
            raise ConfigurationError(f"model must have {self.N} elements, got {model.size}")
        return model

    def _model_at(self, params: np.ndarray) -> np.ndarray:
        self.params = np.asarray(params, dtype=np.float64).copy()
        self.post_parameter_update_callback()
        return self._evaluate_model()

    def _residuals(self) -> np.ndarray:
        return self.data - self._evaluate_model()

    def _weighted(self, x: np.ndarray) -> np.ndarray:
        """C^-1 x for x of shape (N,) or (N,K)."""
        if self.covariance_is_diagonal:
            if x.ndim == 1:
                return x / self.covariance
            return x / self.covariance[:, None]
        return linalg.cho_solve(self._cov_factor, x)

    def _chi2(self, residuals: np.ndarray) -> float:
        return float(residuals @ self._weighted(residuals))

    def _checked_jacobian(self) -> np.ndarray:
        jac = np.asarray(self.get_jacobian(), dtype=np.float64)
        if jac.size != self.N * self.M:
            raise ConfigurationError(f"Jacobian must have {self.N}x{self.M} elements, got {jac.size}")
        return jac.reshape(self.N, self.M)

    def _normal_equations(self, jac: np.ndarray, residuals: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        wj = self._weighted(jac)
        return jac.T @ wj, wj.T @ residuals


def _damping_scale(alpha: np.ndarray) -> np.ndarray:
    """Marquardt scaling diag(alpha) / mean(diag(alpha)); non-positive entries use 1."""
    d = np.diag(alpha).copy()
    mean = float(np.mean(d))
    if not np.isfinite(mean) or mean <= 0.0:
        return np.ones_like(d)
    return np.where(d > 0.0, d / mean, 1.0)


def _pinv_normal_matrix(alpha: np.ndarray) -> np.ndarray:
    d = np.diag(alpha)
    s = np.where(d > 0.0, 1.0 / np.sqrt(np.where(d > 0.0, d, 1.0)), 1.0)
    scaled = alpha * np.outer(s, s)
    return np.outer(s, s) * linalg.pinvh(scaled, rtol=COVARIANCE_RCOND)
