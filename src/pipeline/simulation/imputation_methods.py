"""Imputation method classes for simulation studies."""

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.impute import KNNImputer
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor
import logging
from abc import ABC, abstractmethod
from numpy.random import default_rng

from src.pipeline.simulation.exceptions import ImputationError

logger = logging.getLogger(__name__)


def _seed(rng):
    return int(rng.integers(0, 2**32))


def _check_observed(data, method):
    empty = [col for col in data.columns if data[col].isna().all()]
    if empty:
        raise ImputationError(f"{method}: columns {empty} have no observed values to learn from.")


class ImputationMethod(ABC):
    """Abstract base class for imputation methods.

    All imputation methods must implement:
    - impute(data, categorical=(), rng=None): Return one completed DataFrame
    - name: Property for descriptive name

    ``categorical`` names the columns holding category codes. Their imputed
    values are always one of the observed levels.
    """

    @abstractmethod
    def impute(self, data, categorical=(), rng=None):
        pass

    @property
    @abstractmethod
    def name(self):
        pass


class IgnoreMissing(ImputationMethod):
    """Leave the missing cells in place. The growth model's FIML likelihood uses
    whatever is observed in each row."""

    def impute(self, data, categorical=(), rng=None):
        return data.copy()

    @property
    def name(self):
        return 'Ignore'


class MissForestImputation(ImputationMethod):
    """Iterative random forest imputation (missForest).

    Starts from mean/mode imputation, visits the incomplete columns in order of
    increasing missingness and refits a forest per column on all other columns.
    Stops when the change between iterations grows for the first time and
    returns the previous iteration, or after ``max_iter`` iterations.
    """

    def __init__(self, n_estimators=100, max_iter=10):
        self.n_estimators = n_estimators
        self.max_iter = max_iter

    def impute(self, data, categorical=(), rng=None):
        if rng is None:
            rng = default_rng(123)
        miss = data.isna()
        dat_imputed = data.copy()
        if not miss.any().any():
            return dat_imputed
        _check_observed(data, self.name)

        order = [col for col in miss.sum().sort_values(kind='mergesort').index if miss[col].any()]
        numeric = [col for col in data.columns if col not in categorical]
        for col in order:
            if col in categorical:
                dat_imputed[col] = dat_imputed[col].fillna(data[col].mode().iloc[0])
            else:
                dat_imputed[col] = dat_imputed[col].fillna(data[col].mean())

        prev_diff = {'numeric': np.inf, 'categorical': np.inf}
        for iteration in range(self.max_iter):
            old_imputed = dat_imputed.copy()
            for col in order:
                predictors = [c for c in data.columns if c != col]
                mask = ~miss[col]
                if col in categorical:
                    model = RandomForestClassifier(n_estimators=self.n_estimators, random_state=_seed(rng))
                else:
                    model = RandomForestRegressor(n_estimators=self.n_estimators, random_state=_seed(rng))
                model.fit(dat_imputed.loc[mask, predictors], data.loc[mask, col])
                dat_imputed.loc[miss[col], col] = model.predict(dat_imputed.loc[miss[col], predictors])

            diff = {}
            num_cols = [c for c in order if c in numeric]
            cat_cols = [c for c in order if c in categorical]
            if num_cols:
                new = dat_imputed[num_cols].to_numpy(dtype=float)
                old = old_imputed[num_cols].to_numpy(dtype=float)
                diff['numeric'] = ((new - old) ** 2).sum() / max((new ** 2).sum(), 1e-12)
            if cat_cols:
                changed = (dat_imputed[cat_cols] != old_imputed[cat_cols]).to_numpy().sum()
                diff['categorical'] = changed / max(miss[cat_cols].to_numpy().sum(), 1)
            logger.debug(f"missForest iteration {iteration + 1}: {diff}")

            if iteration > 0 and all(diff[k] > prev_diff[k] for k in diff):
                return old_imputed
            prev_diff.update(diff)
        return dat_imputed

    @property
    def name(self):
        return 'missForest'


class KNNImputation(ImputationMethod):
    """k-nearest-neighbour imputation on standardized columns, every column is
    both a target and a distance feature."""

    def __init__(self, n_neighbors=5):
        self.n_neighbors = n_neighbors

    def impute(self, data, categorical=(), rng=None):
        miss = data.isna()
        if not miss.any().any():
            return data.copy()
        X = data.to_numpy(dtype=float)
        center = np.nanmean(X, axis=0)
        scale = np.nanstd(X, axis=0)
        scale[scale == 0] = 1.0
        imputer = KNNImputer(n_neighbors=self.n_neighbors)
        X_imputed = imputer.fit_transform((X - center) / scale) * scale + center
        filled = pd.DataFrame(X_imputed, columns=data.columns, index=data.index)
        dat_imputed = data.astype(float).where(~miss, filled)
        for col in categorical:
            levels = np.sort(data[col].dropna().unique()).astype(float)
            nearest = np.abs(dat_imputed[col].to_numpy()[:, None] - levels[None, :]).argmin(axis=1)
            dat_imputed[col] = levels[nearest]
        return dat_imputed

    @property
    def name(self):
        return 'kNN'


class FAMDImputation(ImputationMethod):
    """Iterative regularized FAMD imputation for mixed data.

    Continuous columns are standardized, each categorical column becomes a
    block of indicator columns centered and divided by the square root of the
    level proportion. Missing cells are refilled from a rank-``ncp``
    reconstruction whose singular values are shrunk by the noise variance
    estimated from the discarded dimensions. Categorical cells take the level
    with the largest reconstructed indicator.
    """

    def __init__(self, ncp=2, threshold=1e-6, maxiter=1000):
        self.ncp = ncp
        self.threshold = threshold
        self.maxiter = maxiter

    def impute(self, data, categorical=(), rng=None):
        if rng is None:
            rng = default_rng(123)
        dat_imputed = data.copy()
        if not data.isna().any().any():
            return dat_imputed

        numeric = [c for c in data.columns if c not in categorical]
        blocks = [data[numeric].to_numpy(dtype=float)]
        is_dummy = [False] * len(numeric)
        cat_slices = {}
        for col in categorical:
            levels = np.sort(data[col].dropna().unique())
            dummies = (data[col].to_numpy()[:, None] == levels[None, :]).astype(float)
            dummies[data[col].isna().to_numpy()] = np.nan
            start = sum(b.shape[1] for b in blocks)
            cat_slices[col] = (slice(start, start + len(levels)), levels)
            blocks.append(dummies)
            is_dummy.extend([True] * len(levels))
        X = np.hstack(blocks)
        is_dummy = np.array(is_dummy)
        missing = np.isnan(X)
        n, p = X.shape

        p_eff = p - len(categorical)
        ncp = min(self.ncp, p_eff - 1, n - 2)
        if ncp < 1:
            raise ImputationError(f"FAMD needs at least 2 effective dimensions, got {p_eff}.")

        col_mean = np.nanmean(X, axis=0)
        col_sd = np.nanstd(X, axis=0)
        init = np.where(is_dummy, col_mean, rng.normal(col_mean, col_sd, size=X.shape))
        X_hat = np.where(missing, init, X)

        for iteration in range(self.maxiter):
            mean = X_hat.mean(axis=0)
            scale = np.where(is_dummy, np.sqrt(np.clip(mean, 1e-12, None)), X_hat.std(axis=0))
            scale[scale == 0] = 1.0
            Z = (X_hat - mean) / scale
            U, d, Vt = np.linalg.svd(Z / np.sqrt(n), full_matrices=False)
            eig = d ** 2
            sigma2 = eig[ncp:p_eff].sum() / (p_eff - ncp)
            shrink = np.clip((eig[:ncp] - sigma2) / eig[:ncp], 0.0, None)
            Z_rec = np.sqrt(n) * (U[:, :ncp] * (d[:ncp] * shrink)) @ Vt[:ncp]
            X_new = Z_rec * scale + mean

            change = ((X_hat[missing] - X_new[missing]) ** 2).sum()
            crit = change / max((X_hat[missing] ** 2).sum(), 1e-12)
            X_hat[missing] = X_new[missing]
            if crit < self.threshold:
                logger.debug(f"FAMD converged after {iteration + 1} iterations")
                break
        else:
            logger.warning(f"FAMD imputation did not converge in {self.maxiter} iterations")

        for j, col in enumerate(numeric):
            dat_imputed[col] = X_hat[:, j]
        for col, (cols, levels) in cat_slices.items():
            rows = data[col].isna().to_numpy()
            picked = levels[X_hat[rows, cols].argmax(axis=1)]
            dat_imputed.loc[rows, col] = picked
        return dat_imputed

    @property
    def name(self):
        return 'FAMD'


class CARTImputation(ImputationMethod):
    """Sequential single-pass CART imputation.

    Missing cells are first filled with random draws from the observed values
    of their column. Each incomplete column is then regressed on all other
    columns in their current state with a decision tree, and every missing
    cell receives a random observed donor from the leaf it falls into.
    """

    def __init__(self, min_samples_leaf=5):
        self.min_samples_leaf = min_samples_leaf

    def impute(self, data, categorical=(), rng=None):
        if rng is None:
            rng = default_rng(123)
        _check_observed(data, self.name)
        miss = data.isna()
        dat_imputed = data.copy()
        incomplete = [col for col in data.columns if miss[col].any()]
        for col in incomplete:
            observed = data.loc[~miss[col], col].to_numpy()
            dat_imputed.loc[miss[col], col] = rng.choice(observed, size=int(miss[col].sum()))

        for col in incomplete:
            predictors = [c for c in data.columns if c != col]
            mask = ~miss[col]
            tree_cls = DecisionTreeClassifier if col in categorical else DecisionTreeRegressor
            tree = tree_cls(min_samples_leaf=self.min_samples_leaf, random_state=_seed(rng))
            X_obs = dat_imputed.loc[mask, predictors]
            y_obs = data.loc[mask, col].to_numpy()
            tree.fit(X_obs, y_obs)

            leaves_obs = tree.apply(X_obs)
            leaves_mis = tree.apply(dat_imputed.loc[miss[col], predictors])
            donors = np.empty(len(leaves_mis), dtype=y_obs.dtype)
            for leaf in np.unique(leaves_mis):
                at_leaf = leaves_mis == leaf
                donors[at_leaf] = rng.choice(y_obs[leaves_obs == leaf], size=int(at_leaf.sum()))
            dat_imputed.loc[miss[col], col] = donors
        return dat_imputed

    @property
    def name(self):
        return 'CART'


# Closed set of strategies, in canonical order. The position in this mapping is
# the method index used for seed derivation.
IMPUTATION_METHODS = {
    'Ignore': IgnoreMissing,
    'missForest': MissForestImputation,
    'kNN': KNNImputation,
    'FAMD': FAMDImputation,
    'CART': CARTImputation,
}

METHOD_NAMES = tuple(IMPUTATION_METHODS)


def get_imputation_method(name, **kwargs):
    """Instantiate a strategy by name."""
    try:
        method_cls = IMPUTATION_METHODS[name]
    except KeyError:
        raise ValueError(f"Unknown imputation method '{name}'. Expected one of {METHOD_NAMES}.") from None
    return method_cls(**kwargs)


def build_imputation_methods(names=METHOD_NAMES):
    """Instantiate the strategies in ``names``, keeping canonical order."""
    unknown = [name for name in names if name not in IMPUTATION_METHODS]
    if unknown:
        raise ValueError(f"Unknown imputation methods {unknown}. Expected a subset of {METHOD_NAMES}.")
    return [IMPUTATION_METHODS[name]() for name in METHOD_NAMES if name in names]
