"""
Tests for the growth curve model, the SEM Tree and ARI scoring.
"""

import pytest
import numpy as np
import pandas as pd
from scipy.stats import multivariate_normal
import sys
import os
from numpy.random import default_rng

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.pipeline.simulation.data_generators import (
    COVARIATE, LATENT_COV, RESIDUAL_VARIANCES, generate_data
)
from src.pipeline.simulation.evaluator import evaluate_subgroup_recovery, score_recovery
from src.pipeline.simulation.exceptions import ModelFittingError
from src.pipeline.simulation.growth_model import GROWTH_MODEL, GrowthCurveModel, missing_pattern_groups
from src.pipeline.simulation.missingness_patterns import MCARPattern
from src.pipeline.simulation.sem_tree import assign_leaves, candidate_thresholds, fit_and_split

class TestGrowthCurveModel:
    """Growth curve model and FIML estimation."""

    @pytest.fixture(scope="class")
    def single_group(self):
        # effect_size=0 puts both subgroups on the same latent means
        data, _ = generate_data(2000, 1000, effect_size=0.0, rng=default_rng(42))
        return data

    def test_parameter_names(self):
        assert GROWTH_MODEL.n_params == 9
        assert GROWTH_MODEL.param_names[:5] == ['mean_i', 'mean_s', 'var_i', 'cov_is', 'var_s']
        assert list(GROWTH_MODEL.loadings['slope']) == [0.0, 1.0, 2.0, 3.0]

    def test_implied_moments(self):
        params = np.concatenate([[50.0, 5.0, LATENT_COV[0, 0], LATENT_COV[0, 1], LATENT_COV[1, 1]],
                                 RESIDUAL_VARIANCES])
        mu, sigma = GROWTH_MODEL.implied_moments(params)
        np.testing.assert_allclose(mu, [50.0, 55.0, 60.0, 65.0])
        assert sigma[0, 0] == pytest.approx(LATENT_COV[0, 0] + RESIDUAL_VARIANCES[0])
        np.testing.assert_allclose(sigma, sigma.T)

    def test_casewise_loglik_matches_multivariate_normal(self, single_group):
        params = np.concatenate([[50.0, 5.0, 30.0, 8.0, 10.0], RESIDUAL_VARIANCES])
        Y = GROWTH_MODEL.outcome_matrix(single_group.head(20))
        mu, sigma = GROWTH_MODEL.implied_moments(params)
        expected = multivariate_normal(mu, sigma).logpdf(Y)
        np.testing.assert_allclose(GROWTH_MODEL.casewise_loglik(params, Y), expected, rtol=1e-8)

    def test_casewise_loglik_uses_observed_outcomes_only(self):
        params = np.concatenate([[50.0, 5.0, 30.0, 8.0, 10.0], RESIDUAL_VARIANCES])
        Y = np.array([[49.0, np.nan, np.nan, np.nan]])
        mu, sigma = GROWTH_MODEL.implied_moments(params)
        expected = multivariate_normal(mu[0], sigma[0, 0]).logpdf(49.0)
        assert GROWTH_MODEL.casewise_loglik(params, Y)[0] == pytest.approx(expected)

    def test_missing_pattern_groups_drop_empty_rows(self):
        Y = np.array([[1.0, 2.0], [np.nan, np.nan], [3.0, np.nan]])
        groups = missing_pattern_groups(Y)
        rows = sorted(int(r) for idx, _ in groups for r in idx)
        assert rows == [0, 2]

    def test_fiml_recovers_population_values(self, single_group):
        fit = GROWTH_MODEL.fit(single_group)
        assert fit.n_obs == 2000
        assert fit.params['mean_i'] == pytest.approx(50.0, abs=1.0)
        assert fit.params['mean_s'] == pytest.approx(5.0, abs=0.5)
        assert fit.params['var_i'] == pytest.approx(LATENT_COV[0, 0], rel=0.25)
        assert fit.params['resvar_y1'] > 0

    def test_fiml_with_missing_outcomes(self, single_group):
        dat_miss = MCARPattern().apply(single_group, 0.20, rng=default_rng(1))
        fit = GROWTH_MODEL.fit(dat_miss)
        assert np.isfinite(fit.loglik)
        assert fit.params['mean_i'] == pytest.approx(50.0, abs=1.5)

    def test_fit_raises_with_too_few_rows(self, single_group):
        with pytest.raises(ModelFittingError):
            GROWTH_MODEL.fit(single_group.head(5))

    def test_casewise_scores_sum_near_zero_at_estimates(self, single_group):
        subset = single_group.head(300)
        fit = GROWTH_MODEL.fit(subset)
        scores = GROWTH_MODEL.casewise_scores(fit.params, subset)
        assert scores.shape == (300, 9)
        # Mean score at the MLE is small relative to its spread
        ratio = np.abs(scores.mean(axis=0)) / scores.std(axis=0)
        assert (ratio < 0.1).all()

    def test_fixed_factor_means(self, single_group):
        model = GrowthCurveModel(free={'factor_means': False}, fixed_values={'factor_means': [50.0, 5.0]})
        assert model.n_params == 7
        assert 'mean_i' not in model.param_names
        mu, _ = model.implied_moments(np.concatenate([[30.0, 8.0, 10.0], RESIDUAL_VARIANCES]))
        np.testing.assert_allclose(mu, [50.0, 55.0, 60.0, 65.0])

        fit = model.fit(single_group.head(500))
        assert list(fit.params.index) == model.param_names
        assert fit.params['var_i'] == pytest.approx(LATENT_COV[0, 0], rel=0.3)

    def test_full_params_fill_fixed_blocks(self):
        model = GrowthCurveModel(free={'residual_variances': False})
        full = model.full_params([50.0, 5.0, 30.0, 8.0, 10.0])
        np.testing.assert_allclose(full, [50.0, 5.0, 30.0, 8.0, 10.0, 1.0, 1.0, 1.0, 1.0])

    def test_invalid_free_flags(self):
        with pytest.raises(ValueError):
            GrowthCurveModel(free={'loadings': True})
        with pytest.raises(ValueError):
            GrowthCurveModel(free={'thresholds': True})
        with pytest.raises(ValueError):
            GrowthCurveModel(free={'factor_means': False, 'factor_covariance': False,
                                   'residual_variances': False})

    def test_mismatched_time_scores(self):
        with pytest.raises(ValueError):
            GrowthCurveModel(outcomes=['y1', 'y2'], time_scores=[0, 1, 2])

class TestSEMTree:
    """Split search, leaf assignment and ARI."""

    @pytest.fixture(scope="class")
    def two_groups(self):
        data, labels = generate_data(500, 250, effect_size=1.0, rng=default_rng(3))
        return data, labels

    def test_candidate_thresholds_respect_min_bucket(self):
        values = np.arange(100, dtype=float)
        thresholds, n_left = candidate_thresholds(values, 20)
        assert n_left.min() == 20
        assert n_left.max() == 80
        assert thresholds[0] == pytest.approx(19.5)

    def test_candidate_thresholds_binary(self):
        values = np.repeat([0.0, 1.0], [30, 70])
        thresholds, n_left = candidate_thresholds(values, 20)
        np.testing.assert_allclose(thresholds, [0.5])
        np.testing.assert_array_equal(n_left, [30])

    def test_score_split_found_near_cutpoint(self, two_groups):
        data, labels = two_groups
        tree = fit_and_split(GROWTH_MODEL, data, [COVARIATE], method='score')
        assert not tree.is_leaf
        assert tree.split.p_value < 0.05
        assert abs(tree.split.n_left - 250) <= 50
        assert [leaf.node_id for leaf in tree.leaves()] == [2, 3]

    def test_leaf_assignment_recovers_subgroups(self, two_groups):
        data, labels = two_groups
        evaluation = evaluate_subgroup_recovery(data, labels)
        assert evaluation['n_leaves'] == 2
        assert evaluation['ari'] > 0.5
        assert set(assign_leaves(evaluation['tree'], data)) == {2, 3}

    def test_naive_split_on_small_sample(self):
        data, labels = generate_data(80, 40, effect_size=2.0, rng=default_rng(4))
        tree = fit_and_split(GROWTH_MODEL, data, [COVARIATE], method='naive', min_bucket=20)
        assert not tree.is_leaf
        assert tree.split.method == 'naive'
        assert tree.split.n_candidates == 41

    def test_no_admissible_cut_gives_single_leaf(self, two_groups):
        data, labels = two_groups
        evaluation = evaluate_subgroup_recovery(data, labels, min_bucket=300)
        assert evaluation['n_leaves'] == 1
        assert np.isnan(evaluation['threshold'])
        assert evaluation['ari'] == 0.0
        assert set(assign_leaves(evaluation['tree'], data)) == {1}

    def test_missing_covariate_follows_larger_child(self, two_groups):
        data, labels = two_groups
        tree = fit_and_split(GROWTH_MODEL, data, [COVARIATE])
        routed = data.copy()
        routed.loc[0, COVARIATE] = np.nan
        larger = 2 if tree.split.n_left >= tree.split.n_right else 3
        assert assign_leaves(tree, routed)[0] == larger

    def test_numerical_errors_become_model_fitting_errors(self, two_groups):
        class UnstableModel(GrowthCurveModel):
            def fit(self, data):
                raise ValueError("array must not contain infs or NaNs")

        data, _ = two_groups
        with pytest.raises(ModelFittingError):
            fit_and_split(UnstableModel(), data, [COVARIATE])

    def test_unknown_split_method(self, two_groups):
        data, _ = two_groups
        with pytest.raises(ValueError):
            fit_and_split(GROWTH_MODEL, data, [COVARIATE], method='exhaustive')

class TestScoreRecovery:
    def test_identical_partition(self):
        labels = np.repeat([2, 3], [10, 10])
        assert score_recovery(labels, labels) == pytest.approx(1.0)

    def test_label_permutation_invariant(self):
        truth = np.repeat([2, 3], [10, 10])
        induced = np.repeat([3, 2], [10, 10])
        assert score_recovery(induced, truth) == pytest.approx(1.0)

    def test_single_leaf_scores_zero(self):
        truth = np.repeat([2, 3], [10, 10])
        assert score_recovery(np.ones(20, dtype=int), truth) == 0.0

    def test_independent_labelings_average_zero(self):
        rng = default_rng(1)
        truth = np.repeat([2, 3], [50, 50])
        scores = [score_recovery(rng.integers(2, 4, size=100), truth) for _ in range(500)]
        assert abs(np.mean(scores)) < 0.01

    def test_bounds(self):
        rng = default_rng(0)
        truth = np.repeat([2, 3], [50, 50])
        induced = rng.integers(2, 4, size=100)
        assert -1.0 <= score_recovery(induced, truth) <= 1.0

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            score_recovery([1, 2, 3], [1, 2])
