"""Linear latent growth curve model fitted by full-information maximum likelihood."""

import logging
import numpy as np
import pandas as pd
from scipy.linalg import solve_triangular
from scipy.optimize import minimize

from src.pipeline.simulation.data_generators import OUTCOMES, TIME_SCORES
from src.pipeline.simulation.exceptions import ModelFittingError

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2 * np.pi)

# Estimable parameter blocks, in parameter order
PARAM_BLOCKS = ('factor_means', 'factor_covariance', 'residual_variances')


def missing_pattern_groups(Y):
    """Group row indices of ``Y`` by their pattern of observed columns.

    Rows without any observed value are dropped; they carry no likelihood.
    """
    observed = ~np.isnan(Y)
    patterns, inverse = np.unique(observed, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    groups = []
    for k, pattern in enumerate(patterns):
        if pattern.any():
            groups.append((np.flatnonzero(inverse == k), pattern))
    return groups


class GrowthCurveFit:
    """Estimates of a fitted growth curve model."""

    def __init__(self, model, params, loglik, n_obs, converged=True, message=''):
        self.model = model
        self.params = pd.Series(params, index=model.param_names)
        self.loglik = loglik
        self.n_obs = n_obs
        self.converged = converged
        self.message = message

    def __repr__(self):
        return f"GrowthCurveFit(n_obs={self.n_obs}, loglik={self.loglik:.3f}, converged={self.converged})"


class GrowthCurveModel:
    """
    Latent growth curve model with a random intercept and a random linear slope.

    The model is a declarative object: loadings are fixed (intercept 1 on every
    occasion, slope equal to the time score) and the observed intercepts are
    fixed at 0 so the mean structure runs entirely through the factors. The
    ``free`` flags decide which of the three parameter blocks are estimated:

    factor_means
        mean_i, mean_s
    factor_covariance
        var_i, cov_is, var_s
    residual_variances
        resvar_<y> for each outcome

    A block that is not free is held at its entry in ``fixed_values``. By default
    every block is free, giving 9 parameters.
    """

    def __init__(self, outcomes=OUTCOMES, time_scores=TIME_SCORES, free=None, fixed_values=None):
        self.outcomes = list(outcomes)
        self.time_scores = np.asarray(time_scores, dtype=float)
        if len(self.outcomes) != len(self.time_scores):
            raise ValueError("outcomes and time_scores must have the same length")
        self.loadings = pd.DataFrame(
            {'intercept': np.ones(len(self.outcomes)), 'slope': self.time_scores},
            index=self.outcomes,
        )
        self.free = {
            'loadings': False,
            'observed_intercepts': False,
            'factor_means': True,
            'factor_covariance': True,
            'residual_variances': True,
        }
        if free is not None:
            unknown = [key for key in free if key not in self.free]
            if unknown:
                raise ValueError(f"Unknown parameter blocks {unknown}. Expected a subset of {list(self.free)}.")
            self.free.update(free)
        if self.free['loadings'] or self.free['observed_intercepts']:
            raise ValueError("Loadings and observed intercepts must stay fixed for the model to be identified.")
        if not any(self.free[block] for block in PARAM_BLOCKS):
            raise ValueError("At least one parameter block must be free.")

        self.blocks = {
            'factor_means': ['mean_i', 'mean_s'],
            'factor_covariance': ['var_i', 'cov_is', 'var_s'],
            'residual_variances': [f'resvar_{y}' for y in self.outcomes],
        }
        self.fixed_values = {
            'factor_means': np.zeros(2),
            'factor_covariance': np.array([1.0, 0.0, 1.0]),
            'residual_variances': np.ones(len(self.outcomes)),
        }
        for block, values in (fixed_values or {}).items():
            values = np.asarray(values, dtype=float)
            if block not in self.blocks or len(values) != len(self.blocks[block]):
                raise ValueError(f"Fixed values for '{block}' must have {len(self.blocks.get(block, []))} entries.")
            self.fixed_values[block] = values
        self.param_names = [name for block in PARAM_BLOCKS if self.free[block]
                            for name in self.blocks[block]]

    @property
    def n_params(self):
        return len(self.param_names)

    def _free_slices(self):
        pos = 0
        for block in PARAM_BLOCKS:
            if self.free[block]:
                size = len(self.blocks[block])
                yield block, slice(pos, pos + size)
                pos += size

    def full_params(self, params):
        """Complete parameter vector in block order, fixed blocks filled from ``fixed_values``."""
        params = np.asarray(params, dtype=float)
        free = dict(self._free_slices())
        return np.concatenate([params[free[block]] if block in free else self.fixed_values[block]
                               for block in PARAM_BLOCKS])

    def implied_moments(self, params):
        """Model-implied mean vector and covariance matrix of the outcomes."""
        params = self.full_params(params)
        lam = self.loadings.to_numpy()
        phi = np.array([[params[2], params[3]],
                        [params[3], params[4]]])
        mu = lam @ params[:2]
        sigma = lam @ phi @ lam.T + np.diag(params[5:])
        return mu, sigma

    # Log-Cholesky parameterization keeps the factor covariance and residual
    # variances positive definite during optimization.
    def _to_natural(self, theta):
        pieces = []
        for block, part in self._free_slices():
            t = theta[part]
            if block == 'factor_covariance':
                l11, l21, l22 = np.exp(t[0]), t[1], np.exp(t[2])
                pieces.append([l11 ** 2, l11 * l21, l21 ** 2 + l22 ** 2])
            elif block == 'residual_variances':
                pieces.append(np.exp(t))
            else:
                pieces.append(t)
        return np.concatenate(pieces)

    def _to_internal(self, params):
        pieces = []
        for block, part in self._free_slices():
            p = params[part]
            if block == 'factor_covariance':
                var_i, cov_is, var_s = p
                l11 = np.sqrt(var_i)
                l21 = cov_is / l11
                l22 = np.sqrt(max(var_s - l21 ** 2, 1e-6))
                pieces.append([np.log(l11), l21, np.log(l22)])
            elif block == 'residual_variances':
                pieces.append(np.log(p))
            else:
                pieces.append(p)
        return np.concatenate(pieces)

    def outcome_matrix(self, data):
        return data[self.outcomes].to_numpy(dtype=float)

    def casewise_loglik(self, params, Y, groups=None):
        """Per-row log-likelihood using only each row's observed outcomes."""
        if groups is None:
            groups = missing_pattern_groups(Y)
        mu, sigma = self.implied_moments(params)
        ll = np.zeros(len(Y))
        for rows, obs in groups:
            chol = np.linalg.cholesky(sigma[np.ix_(obs, obs)])
            dev = Y[np.ix_(rows, obs)] - mu[obs]
            z = solve_triangular(chol, dev.T, lower=True)
            ll[rows] = -0.5 * (obs.sum() * LOG_2PI
                               + 2 * np.log(np.diag(chol)).sum()
                               + (z ** 2).sum(axis=0))
        return ll

    def start_values(self, Y):
        means = np.nan_to_num(np.nanmean(Y, axis=0))
        variances = np.nan_to_num(np.nanvar(Y, axis=0), nan=1.0)
        variances = np.clip(variances, 1e-2, None)
        slope, intercept = np.polyfit(self.time_scores, means, 1)
        t_max = max(self.time_scores.max(), 1.0)
        var_i = 0.8 * variances[0]
        var_s = max((variances[-1] - variances[0]) / t_max ** 2, 0.05 * var_i)
        full = np.concatenate([[intercept, slope, var_i, 0.0, var_s], 0.3 * variances])
        return np.concatenate([full[start:start + len(self.blocks[block])]
                               for block, start in zip(PARAM_BLOCKS, (0, 2, 5))
                               if self.free[block]])

    def fit(self, data):
        """Fit the model by FIML. Raises ModelFittingError on failure."""
        Y = self.outcome_matrix(data)
        groups = missing_pattern_groups(Y)
        n_obs = sum(len(rows) for rows, _ in groups)
        if n_obs <= self.n_params:
            raise ModelFittingError(f"Too few rows with observed outcomes to fit the growth model ({n_obs}).")

        def objective(theta):
            try:
                value = -self.casewise_loglik(self._to_natural(theta), Y, groups).sum() / n_obs
            except np.linalg.LinAlgError:
                return 1e10
            return value if np.isfinite(value) else 1e10

        x0 = self._to_internal(self.start_values(Y))
        result = minimize(objective, x0, method='L-BFGS-B')
        if not np.isfinite(result.fun) or result.fun >= 1e10:
            raise ModelFittingError(f"Growth model optimization failed: {result.message}")
        if not result.success:
            logger.debug(f"Growth model optimizer stopped early: {result.message}")
        params = self._to_natural(result.x)
        return GrowthCurveFit(self, params, loglik=-result.fun * n_obs, n_obs=n_obs,
                              converged=bool(result.success), message=str(result.message))

    def casewise_scores(self, params, data):
        """Per-row gradient of the log-likelihood with respect to the free parameters."""
        Y = self.outcome_matrix(data)
        groups = missing_pattern_groups(Y)
        params = np.asarray(params, dtype=float)
        scores = np.empty((len(Y), self.n_params))
        try:
            for j in range(self.n_params):
                h = 1e-5 * max(1.0, abs(params[j]))
                up, down = params.copy(), params.copy()
                up[j] += h
                down[j] -= h
                scores[:, j] = (self.casewise_loglik(up, Y, groups)
                                - self.casewise_loglik(down, Y, groups)) / (2 * h)
        except np.linalg.LinAlgError as e:
            raise ModelFittingError(f"Casewise scores undefined at the estimates: {e}") from e
        return scores


GROWTH_MODEL = GrowthCurveModel()
