"""Missingness pattern classes for simulation studies."""

import logging
import numpy as np
import pandas as pd
from abc import ABC, abstractmethod
from numpy.random import default_rng
from scipy.special import expit

from src.pipeline.simulation.data_generators import COLUMNS
from src.pipeline.simulation.exceptions import MissingnessInjectionError

logger = logging.getLogger(__name__)

# 0 marks a column deleted by the pattern. y1 and cov1 always stay observed.
PATTERN_CATALOG = pd.DataFrame(
    [[1, 0, 0, 0, 1],
     [1, 1, 0, 0, 1],
     [1, 1, 1, 0, 1],
     [1, 0, 1, 0, 1],
     [1, 1, 1, 1, 1]],
    index=['p1', 'p2', 'p3', 'p4', 'p5'],
    columns=COLUMNS,
)

MECHANISMS = ('MCAR', 'MAR')


def max_missing_rate(patterns=PATTERN_CATALOG):
    """Largest cell-level missing rate reachable when every row is amputated."""
    return float((patterns == 0).to_numpy().sum(axis=1).mean() / patterns.shape[1])


def assign_patterns(n, rng, n_patterns=len(PATTERN_CATALOG)):
    """Balanced pattern assignment: each pattern gets an equal share of rows, shuffled."""
    return rng.permutation(np.resize(np.arange(n_patterns), n))


class MissingnessPattern(ABC):
    """Abstract base class for missingness mechanisms.

    All mechanisms must implement:
    - row_weights(block, observed_cols): Relative amputation weights for a pattern group
    - name: Property for descriptive name

    ``apply`` assigns every row one pattern from the catalog, works out how many
    rows of each pattern group to amputate so that the overall share of missing
    cells matches ``rate``, and picks those rows by the mechanism's weights.
    """

    def __init__(self, patterns=None):
        self.patterns = PATTERN_CATALOG if patterns is None else patterns

    @abstractmethod
    def row_weights(self, block, observed_cols):
        """Return positive amputation weights for the rows in ``block``."""
        pass

    @property
    @abstractmethod
    def name(self):
        """Return descriptive name of the mechanism."""
        pass

    def apply(self, data, rate, rng=None):
        """Apply missingness to the data.

        Parameters:
        - data: Complete DataFrame with the catalog's columns
        - rate: Target proportion of missing cells in [0, 1)
        - rng: numpy Generator

        Returns:
        - dat_miss: DataFrame with missing values
        """
        if rng is None:
            rng = default_rng(123)
        if not 0 <= rate < 1:
            raise MissingnessInjectionError(f"Missing rate must be in [0, 1). Got {rate}.")
        dat_miss = data.copy()
        dat_miss[list(self.patterns.columns)] = dat_miss[list(self.patterns.columns)].astype(float)
        n = len(data)

        pattern_ids = assign_patterns(n, rng, len(self.patterns))
        masks = self.patterns.to_numpy() == 0
        cells_per_pattern = masks.sum(axis=1)
        group_sizes = np.bincount(pattern_ids, minlength=len(self.patterns))

        target_cells = int(round(rate * n * self.patterns.shape[1]))
        capacity = int((group_sizes * cells_per_pattern).sum())
        if target_cells == 0:
            return dat_miss
        if target_cells > capacity:
            raise MissingnessInjectionError(
                f"{self.name}: rate {rate} needs {target_cells} missing cells but the pattern "
                f"catalog can delete at most {capacity} of {n * self.patterns.shape[1]} "
                f"(max rate {max_missing_rate(self.patterns):.3f})."
            )
        fraction = target_cells / capacity

        for p, pattern in enumerate(self.patterns.index):
            if cells_per_pattern[p] == 0:
                continue
            rows = np.flatnonzero(pattern_ids == p)
            n_amputate = int(round(fraction * len(rows)))
            if n_amputate == 0:
                continue
            observed_cols = list(self.patterns.columns[~masks[p]])
            weights = self.row_weights(data.iloc[rows], observed_cols)
            chosen = rng.choice(rows, size=n_amputate, replace=False, p=weights / weights.sum())
            missing_cols = list(self.patterns.columns[masks[p]])
            dat_miss.iloc[chosen, [dat_miss.columns.get_loc(c) for c in missing_cols]] = np.nan
            logger.debug(f"{self.name}: pattern {pattern} amputated {n_amputate}/{len(rows)} rows")
        return dat_miss


class MCARPattern(MissingnessPattern):
    def row_weights(self, block, observed_cols):
        return np.ones(len(block))

    @property
    def name(self):
        return 'MCAR'


class MARPattern(MissingnessPattern):
    """Right-tailed MAR: rows with high weighted sum scores on the observed
    columns of their pattern are more likely to be amputated."""

    def __init__(self, patterns=None, weights=None):
        super().__init__(patterns)
        self.weights = weights

    def row_weights(self, block, observed_cols):
        values = block[observed_cols].to_numpy(dtype=float)
        sd = values.std(axis=0)
        sd[sd == 0] = 1.0
        standardized = (values - values.mean(axis=0)) / sd
        if self.weights is None:
            coef = np.ones(len(observed_cols))
        else:
            coef = np.array([self.weights.get(c, 0.0) for c in observed_cols])
        scores = standardized @ coef
        if scores.std() > 0:
            scores = (scores - scores.mean()) / scores.std()
        return expit(scores)

    @property
    def name(self):
        return 'MAR'


def get_missingness_pattern(name):
    """Return the mechanism instance for 'MCAR' or 'MAR'."""
    if name == 'MCAR':
        return MCARPattern()
    if name == 'MAR':
        return MARPattern()
    raise ValueError(f"Unknown missingness mechanism '{name}'. Expected one of {MECHANISMS}.")
