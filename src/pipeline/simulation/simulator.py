"""Simulation study orchestration."""

import logging
import numpy as np
from collections import namedtuple
from itertools import product
from numpy.random import SeedSequence, default_rng

from src.pipeline.simulation.data_generators import (
    COVARIATE, COVARIATE_TYPES, CUTPOINT_LOCATIONS, draw_cutpoint, generate_data
)
from src.pipeline.simulation.evaluator import evaluate_subgroup_recovery
from src.pipeline.simulation.exceptions import (
    DataGenerationError, MissingnessInjectionError, ModelFittingError
)
from src.pipeline.simulation.growth_model import GROWTH_MODEL
from src.pipeline.simulation.imputation_methods import METHOD_NAMES, build_imputation_methods
from src.pipeline.simulation.missingness_patterns import MECHANISMS, get_missingness_pattern
from src.pipeline.simulation.sem_tree import SPLIT_METHODS

logger = logging.getLogger(__name__)

LOCATIONS = tuple(CUTPOINT_LOCATIONS)

# Independent random streams within one replication
DATA_STREAM = 0
MISSINGNESS_STREAM = 1
IMPUTATION_STREAM = 2

RESULT_COLUMNS = ['replication', 'n', 'cutpoint_location', 'cutpoint',
                  'mechanism', 'rate', 'method', 'ari']

SimulationCondition = namedtuple('SimulationCondition', ['n', 'cutpoint_location', 'mechanism', 'rate'])


def condition_key(condition):
    """Integer key of a condition: (N, location index, mechanism index, rate in percent).

    Indices refer to the canonical level orders, so a condition keeps its key
    whatever subset of the grid is run.
    """
    return (int(condition.n),
            LOCATIONS.index(condition.cutpoint_location),
            MECHANISMS.index(condition.mechanism),
            int(round(condition.rate * 100)))


def derive_rng(seed, *key):
    """Generator seeded by hashing ``seed`` together with the integer tuple ``key``.

    Identical (seed, key) pairs give identical streams; distinct keys give
    statistically independent streams.
    """
    return default_rng(SeedSequence(seed, spawn_key=tuple(int(k) for k in key)))


def enumerate_conditions(sample_sizes, cutpoint_locations, mechanisms, rates):
    """Full factorial grid, ordered N -> location -> mechanism -> rate."""
    return [SimulationCondition(n, loc, mech, rate)
            for n, loc, mech, rate in product(sample_sizes, cutpoint_locations, mechanisms, rates)]


def describe(condition, replication, method=None):
    text = (f"N={condition.n}, location={condition.cutpoint_location}, mechanism={condition.mechanism}, "
            f"rate={condition.rate}, replication={replication}")
    if method is not None:
        text += f", method={method}"
    return text


class SimulationStudy:
    def __init__(self, seed=2024, covariate_type='continuous', effect_size=0.5, intercept_mean=50.0,
                 slope_mean=5.0, tree_method='score', min_bucket=20, alpha=0.05, model=GROWTH_MODEL):
        if covariate_type not in COVARIATE_TYPES:
            raise ValueError(f"covariate_type must be one of {COVARIATE_TYPES}. Got {covariate_type}.")
        if tree_method not in SPLIT_METHODS:
            raise ValueError(f"tree_method must be one of {SPLIT_METHODS}. Got {tree_method}.")
        if not (0 < alpha < 1):
            raise ValueError(f"alpha must be between 0 and 1. Got {alpha}.")
        self.seed = seed
        self.covariate_type = covariate_type
        self.effect_size = effect_size
        self.intercept_mean = intercept_mean
        self.slope_mean = slope_mean
        self.tree_method = tree_method
        self.min_bucket = min_bucket
        self.alpha = alpha
        self.model = model
        self.categorical = [COVARIATE] if covariate_type == 'dichotomous' else []

    def generate_replication(self, condition, replication):
        """
        Generate the complete and observed datasets of one replication.

        Every method of the replication sees these same datasets.

        Returns:
        - complete: DataFrame without missing values
        - observed: DataFrame with missing values
        - labels: true subgroup labels
        - cutpoint: realized subgroup split index
        """
        key = condition_key(condition)
        data_rng = derive_rng(self.seed, *key, replication, DATA_STREAM)
        try:
            cutpoint = draw_cutpoint(condition.n, condition.cutpoint_location, data_rng)
            complete, labels = generate_data(
                condition.n, cutpoint, covariate_type=self.covariate_type, effect_size=self.effect_size,
                intercept_mean=self.intercept_mean, slope_mean=self.slope_mean, rng=data_rng
            )
        except DataGenerationError as e:
            raise DataGenerationError(f"{describe(condition, replication)}: {e}") from e

        miss_rng = derive_rng(self.seed, *key, replication, MISSINGNESS_STREAM)
        try:
            observed = get_missingness_pattern(condition.mechanism).apply(complete, condition.rate, rng=miss_rng)
        except MissingnessInjectionError as e:
            raise MissingnessInjectionError(f"{describe(condition, replication)}: {e}") from e
        return complete, observed, labels, cutpoint

    def score_method(self, method, observed, labels, condition, replication, cutpoint):
        """Impute with one strategy, fit the tree and return the result row.

        Failures inside the strategy or the model fit give a missing ARI.
        """
        row = {
            'replication': replication,
            'n': condition.n,
            'cutpoint_location': condition.cutpoint_location,
            'cutpoint': cutpoint,
            'mechanism': condition.mechanism,
            'rate': condition.rate,
            'method': method.name,
            'ari': np.nan,
        }
        context = describe(condition, replication, method.name)
        method_rng = derive_rng(self.seed, *condition_key(condition), replication,
                                IMPUTATION_STREAM, METHOD_NAMES.index(method.name))
        try:
            imputed = method.impute(observed, categorical=self.categorical, rng=method_rng)
        except Exception as e:
            logger.warning(f"Imputation failed ({context}): {type(e).__name__}: {e}")
            return row

        try:
            evaluation = evaluate_subgroup_recovery(
                imputed, labels, model=self.model, covariates=(COVARIATE,), max_depth=1,
                method=self.tree_method, min_bucket=self.min_bucket, alpha=self.alpha
            )
        except (ModelFittingError, np.linalg.LinAlgError, ValueError) as e:
            logger.warning(f"Model fitting failed ({context}): {type(e).__name__}: {e}")
            return row

        row['ari'] = evaluation['ari']
        logger.debug(f"{context}: ARI={row['ari']:.4f}, leaves={evaluation['n_leaves']}")
        return row

    def run_replication(self, condition, replication, methods=None):
        """Run every method on one replication. Returns one row per method."""
        if methods is None:
            methods = build_imputation_methods()
        _, observed, labels, cutpoint = self.generate_replication(condition, replication)
        return [self.score_method(method, observed, labels, condition, replication, cutpoint)
                for method in methods]

    def run_cell(self, condition, replication, method_name):
        """Reproduce the row of a single (condition, replication, method) cell."""
        method = build_imputation_methods([method_name])[0]
        return self.run_replication(condition, replication, [method])[0]
