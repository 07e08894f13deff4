"""Simulation study framework for SEM Tree subgroup recovery under missing data.

This package generates two-subgroup longitudinal growth data, injects MCAR or
MAR missingness, completes the data with one of five strategies, fits a
one-split SEM Tree on a latent growth curve model and scores the recovered
partition against the true subgroups with the Adjusted Rand Index.

Basic Usage
-----------
>>> from src.pipeline.simulation import SimulationStudy, SimulationCondition
>>>
>>> study = SimulationStudy(seed=2024, covariate_type='continuous')
>>> condition = SimulationCondition(n=500, cutpoint_location='1/2', mechanism='MCAR', rate=0.05)
>>> rows = study.run_replication(condition, replication=1)
>>> print(rows[0])

Modules
-------
data_generators : Complete data generation and true labels
missingness_patterns : Missingness mechanisms and the pattern catalog
imputation_methods : Imputation strategy classes
growth_model : Latent growth curve model and FIML estimation
sem_tree : SEM Tree growth and leaf assignment
evaluator : Adjusted Rand Index scoring
simulator : Seed derivation and study orchestration
"""

from .exceptions import (
    SimulationError,
    DataGenerationError,
    MissingnessInjectionError,
    ImputationError,
    ModelFittingError
)
from .data_generators import generate_data, generate_growth_data, draw_cutpoint, true_labels
from .missingness_patterns import (
    PATTERN_CATALOG,
    MissingnessPattern,
    MCARPattern,
    MARPattern,
    get_missingness_pattern
)
from .imputation_methods import (
    ImputationMethod,
    IgnoreMissing,
    MissForestImputation,
    KNNImputation,
    FAMDImputation,
    CARTImputation,
    IMPUTATION_METHODS,
    build_imputation_methods
)
from .growth_model import GrowthCurveModel, GrowthCurveFit, GROWTH_MODEL
from .sem_tree import fit_and_split, assign_leaves
from .evaluator import score_recovery, evaluate_subgroup_recovery
from .simulator import SimulationCondition, SimulationStudy, derive_rng, enumerate_conditions

__version__ = '1.0.0'

__all__ = [
    # Errors
    'SimulationError',
    'DataGenerationError',
    'MissingnessInjectionError',
    'ImputationError',
    'ModelFittingError',

    # Data generation
    'generate_data',
    'generate_growth_data',
    'draw_cutpoint',
    'true_labels',

    # Missingness
    'PATTERN_CATALOG',
    'MissingnessPattern',
    'MCARPattern',
    'MARPattern',
    'get_missingness_pattern',

    # Imputation strategies
    'ImputationMethod',
    'IgnoreMissing',
    'MissForestImputation',
    'KNNImputation',
    'FAMDImputation',
    'CARTImputation',
    'IMPUTATION_METHODS',
    'build_imputation_methods',

    # Model and tree
    'GrowthCurveModel',
    'GrowthCurveFit',
    'GROWTH_MODEL',
    'fit_and_split',
    'assign_leaves',

    # Evaluation and simulation
    'score_recovery',
    'evaluate_subgroup_recovery',
    'SimulationCondition',
    'SimulationStudy',
    'derive_rng',
    'enumerate_conditions',
]
