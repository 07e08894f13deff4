"""SEM Tree: recursive partitioning of a growth curve model on covariates.

The tree is grown from a shared, unfit ``GrowthCurveModel``. At each node the
model is fitted by FIML, every candidate cut of every covariate is scored, the
best cut is tested with a likelihood-ratio test, and the node is split only when
the test is significant.

Two split-selection methods are available:

score
    One fit per node. Casewise score contributions of the node model are
    ordered by the covariate and cumulated; the cut with the largest
    Lagrange-multiplier statistic ``B(t)' I^-1 B(t) / (n t (1 - t))`` wins.
naive
    Fits the model on both sides of every candidate cut and takes the cut with
    the largest likelihood-ratio statistic.

Leaf ids follow heap numbering: the root is 1 and the children of node ``k``
are ``2k`` (covariate <= threshold) and ``2k + 1``.
"""

import logging
import numpy as np
from scipy.stats import chi2

from src.pipeline.simulation.exceptions import ModelFittingError

logger = logging.getLogger(__name__)

SPLIT_METHODS = ('score', 'naive')


class Split:
    """Chosen cut of a node."""

    def __init__(self, covariate, threshold, statistic, lr_statistic, p_value, n_candidates,
                 n_left, n_right, method):
        self.covariate = covariate
        self.threshold = threshold
        self.statistic = statistic
        self.lr_statistic = lr_statistic
        self.p_value = p_value
        self.n_candidates = n_candidates
        self.n_left = n_left
        self.n_right = n_right
        self.method = method

    @property
    def missing_goes_left(self):
        return self.n_left >= self.n_right

    def __repr__(self):
        return (f"Split({self.covariate} <= {self.threshold:.4g}, LR={self.lr_statistic:.2f}, "
                f"p={self.p_value:.3g}, method={self.method})")


class TreeNode:
    def __init__(self, node_id, depth, fit, n_obs):
        self.node_id = node_id
        self.depth = depth
        self.fit = fit
        self.n_obs = n_obs
        self.split = None
        self.rejected_split = None
        self.left = None
        self.right = None

    @property
    def is_leaf(self):
        return self.split is None

    def leaves(self):
        if self.is_leaf:
            return [self]
        return self.left.leaves() + self.right.leaves()

    def __repr__(self):
        if self.is_leaf:
            return f"TreeNode(id={self.node_id}, n={self.n_obs}, leaf)"
        return f"TreeNode(id={self.node_id}, n={self.n_obs}, {self.split})"


def candidate_thresholds(values, min_bucket):
    """
    Midpoints between consecutive distinct sorted values that leave at least
    ``min_bucket`` rows on each side.

    Returns:
    - thresholds: array of cut values
    - n_left: array with the number of rows at or below each cut
    """
    v = np.sort(values[~np.isnan(values)], kind='mergesort')
    n = len(v)
    change = np.flatnonzero(v[1:] != v[:-1])
    n_left = change + 1
    keep = (n_left >= min_bucket) & (n - n_left >= min_bucket)
    thresholds = (v[change] + v[change + 1]) / 2
    return thresholds[keep], n_left[keep]


def _lr_test(model, null_loglik, left, right):
    fit_left = model.fit(left)
    fit_right = model.fit(right)
    lr = max(2 * (fit_left.loglik + fit_right.loglik - null_loglik), 0.0)
    return lr, chi2.sf(lr, df=model.n_params)


def _score_statistics(model, fit, sub, xs, n_left):
    order = np.argsort(xs, kind='mergesort')
    scores = model.casewise_scores(fit.params, sub)[order]
    n = len(scores)
    info = scores.T @ scores / n
    info_inv = np.linalg.pinv(info)
    cumulative = np.cumsum(scores, axis=0)[n_left - 1]
    t = n_left / n
    return np.einsum('ij,jk,ik->i', cumulative, info_inv, cumulative) / n / (t * (1 - t))


def _search_covariate(model, fit, data, covariate, method, min_bucket, bonferroni):
    x = data[covariate].to_numpy(dtype=float)
    observed = ~np.isnan(x)
    sub = data[observed]
    xs = x[observed]
    thresholds, n_left = candidate_thresholds(xs, min_bucket)
    if len(thresholds) == 0:
        logger.debug(f"No admissible cut on {covariate} with min_bucket={min_bucket}")
        return None

    # Null log-likelihood over the rows that take part in the split
    null_loglik = model.casewise_loglik(fit.params, model.outcome_matrix(sub)).sum()

    if method == 'score':
        statistics = _score_statistics(model, fit, sub, xs, n_left)
        best = int(np.argmax(statistics))
        threshold = thresholds[best]
        lr, p_value = _lr_test(model, null_loglik, sub[xs <= threshold], sub[xs > threshold])
        statistic = statistics[best]
    else:
        best_lr, best_p, threshold = -np.inf, 1.0, None
        for candidate in thresholds:
            lr, p_value = _lr_test(model, null_loglik, sub[xs <= candidate], sub[xs > candidate])
            if lr > best_lr:
                best_lr, best_p, threshold = lr, p_value, candidate
        best = int(np.flatnonzero(thresholds == threshold)[0])
        lr, p_value, statistic = best_lr, best_p, best_lr

    if bonferroni:
        p_value = min(1.0, p_value * len(thresholds))
    return Split(covariate, float(threshold), float(statistic), float(lr), float(p_value),
                 len(thresholds), int(n_left[best]), int(len(xs) - n_left[best]), method)


def _grow(model, data, covariates, node_id, depth, max_depth, method, min_bucket, alpha, bonferroni):
    fit = model.fit(data)
    node = TreeNode(node_id, depth, fit, len(data))
    if depth >= max_depth or len(data) < 2 * min_bucket:
        return node

    candidates = [s for s in (_search_covariate(model, fit, data, cov, method, min_bucket, bonferroni)
                              for cov in covariates) if s is not None]
    if not candidates:
        return node
    split = min(candidates, key=lambda s: (s.p_value, -s.lr_statistic))
    if split.p_value >= alpha:
        logger.debug(f"Node {node_id}: best split not significant, {split}")
        node.rejected_split = split
        return node

    logger.debug(f"Node {node_id}: {split}")
    node.split = split
    x = data[split.covariate].to_numpy(dtype=float)
    go_left = np.where(np.isnan(x), split.missing_goes_left, x <= split.threshold)
    node.left = _grow(model, data[go_left], covariates, 2 * node_id, depth + 1,
                      max_depth, method, min_bucket, alpha, bonferroni)
    node.right = _grow(model, data[~go_left], covariates, 2 * node_id + 1, depth + 1,
                       max_depth, method, min_bucket, alpha, bonferroni)
    return node


def fit_and_split(model, data, covariates, max_depth=1, method='score', min_bucket=20,
                  alpha=0.05, bonferroni=True):
    """
    Grow an SEM Tree.

    Parameters:
    - model: GrowthCurveModel (unfit, shared)
    - data: DataFrame with the model's outcomes and the covariates
    - covariates: Names of the candidate splitting variables
    - max_depth: Maximum number of splits from root to leaf
    - method: 'score' or 'naive' split selection
    - min_bucket: Minimum rows on each side of a cut
    - alpha: Significance level of the split test
    - bonferroni: Correct the split p-value for the number of candidate cuts

    Returns:
    - TreeNode: the root
    """
    if method not in SPLIT_METHODS:
        raise ValueError(f"Unknown split method '{method}'. Expected one of {SPLIT_METHODS}.")
    if not covariates:
        raise ValueError("At least one covariate is required to grow a tree.")
    try:
        return _grow(model, data, list(covariates), 1, 0, max_depth, method, min_bucket, alpha, bonferroni)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise ModelFittingError(f"Tree search failed: {e}") from e


def assign_leaves(tree, data):
    """Leaf id of every row of ``data``."""
    labels = np.empty(len(data), dtype=int)

    def route(node, idx):
        if node.is_leaf:
            labels[idx] = node.node_id
            return
        x = data[node.split.covariate].to_numpy(dtype=float)[idx]
        go_left = np.where(np.isnan(x), node.split.missing_goes_left, x <= node.split.threshold)
        route(node.left, idx[go_left])
        route(node.right, idx[~go_left])

    route(tree, np.arange(len(data)))
    return labels
