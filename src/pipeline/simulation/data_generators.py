"""Data generation for simulation studies."""

import numpy as np
import pandas as pd
from numpy.random import default_rng

from src.pipeline.simulation.exceptions import DataGenerationError

OUTCOMES = ['y1', 'y2', 'y3', 'y4']
COVARIATE = 'cov1'
COLUMNS = OUTCOMES + [COVARIATE]

TIME_SCORES = np.arange(4, dtype=float)

# Latent (intercept, slope) covariance, shared by both subgroups
LATENT_COV = np.array([[33.913, 10.238],
                       [10.238, 10.749]])
# Residual variances grow over occasions
RESIDUAL_VARIANCES = np.array([2.942, 15.084, 44.858, 85.200])

COVARIATE_TYPES = ('continuous', 'dichotomous')

# Candidate split proportions per cutpoint location
CUTPOINT_LOCATIONS = {
    '1/2': (1 / 2,),
    '1/3': (1 / 3, 2 / 3),
    '1/6': (1 / 6, 5 / 6),
}

GROUP_LABELS = (2, 3)


def subgroup_means(effect_size=0.5, intercept_mean=50.0, slope_mean=5.0):
    """
    Latent factor means for the two subgroups.

    Subgroup 1 sits ``effect_size`` intercept standard deviations below the
    population intercept mean and subgroup 2 the same distance above it. The
    slope mean is shared.
    """
    offset = effect_size * np.sqrt(LATENT_COV[0, 0])
    means1 = np.array([intercept_mean - offset, slope_mean])
    means2 = np.array([intercept_mean + offset, slope_mean])
    return means1, means2


def _growth_block(n, means, rng):
    latent = rng.multivariate_normal(means, LATENT_COV, size=n)
    noise = rng.normal(0.0, np.sqrt(RESIDUAL_VARIANCES), size=(n, len(TIME_SCORES)))
    return latent[:, [0]] + latent[:, [1]] * TIME_SCORES + noise


def generate_growth_data(n1, n2, means1, means2, covariate_type='continuous', rng=None):
    """
    Generate repeated measures for two latent subgroups plus a covariate.

    Parameters:
    - n1, n2: Subgroup sizes. Subgroup 1 rows come first.
    - means1, means2: Latent (intercept, slope) means per subgroup
    - covariate_type: 'continuous' (sorted standard normal draws) or
      'dichotomous' (0 for subgroup 1, 1 for subgroup 2)
    - rng: numpy Generator

    Returns:
    - data: DataFrame with y1..y4 and cov1
    """
    if n1 < 1 or n2 < 1:
        raise DataGenerationError(f"Subgroup sizes must be positive. Got n1={n1}, n2={n2}.")
    if covariate_type not in COVARIATE_TYPES:
        raise DataGenerationError(f"Unknown covariate_type '{covariate_type}'. Expected one of {COVARIATE_TYPES}.")
    if rng is None:
        rng = default_rng(123)

    y = np.vstack([_growth_block(n1, means1, rng), _growth_block(n2, means2, rng)])
    data = pd.DataFrame(y, columns=OUTCOMES)

    n = n1 + n2
    if covariate_type == 'continuous':
        # Sorted so that covariate rank follows subgroup membership
        data[COVARIATE] = np.sort(rng.standard_normal(n))
    else:
        data[COVARIATE] = np.repeat([0, 1], [n1, n2])
    return data


def draw_cutpoint(n, location, rng):
    """Return the subgroup split index for a cutpoint location ('1/2', '1/3' or '1/6')."""
    if location not in CUTPOINT_LOCATIONS:
        raise DataGenerationError(f"Unknown cutpoint location '{location}'. Expected one of {list(CUTPOINT_LOCATIONS)}.")
    candidates = CUTPOINT_LOCATIONS[location]
    if len(candidates) == 1:
        proportion = candidates[0]
    else:
        proportion = candidates[rng.integers(len(candidates))]
    return int(round(n * proportion))


def true_labels(n, cutpoint):
    """Ground-truth subgroup labels: 2 for the first ``cutpoint`` rows, 3 after."""
    if not 0 < cutpoint < n:
        raise DataGenerationError(f"Cutpoint must lie strictly between 0 and n={n}. Got {cutpoint}.")
    return np.repeat(GROUP_LABELS, [cutpoint, n - cutpoint])


def generate_data(n, cutpoint, covariate_type='continuous', effect_size=0.5,
                  intercept_mean=50.0, slope_mean=5.0, rng=None):
    """
    Generate one complete dataset and its true labeling.

    Returns:
    - data: DataFrame with y1..y4 and cov1
    - labels: int array of length n with values 2 and 3
    """
    labels = true_labels(n, cutpoint)
    means1, means2 = subgroup_means(effect_size, intercept_mean, slope_mean)
    data = generate_growth_data(cutpoint, n - cutpoint, means1, means2,
                                covariate_type=covariate_type, rng=rng)
    return data, labels
