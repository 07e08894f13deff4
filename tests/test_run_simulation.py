import os
import sys
import json
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))  # Add the project root to path

import pytest
import numpy as np
from run_simulation import load_config, run_simulation, validate_grid
import logging

# Configure logging for testing
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

SMALL_GRID = {
    'replications': 2,
    'seed': 7,
    'sample_sizes': [100],
    'cutpoint_locations': ['1/2'],
    'mechanisms': ['MCAR'],
    'rates': [0.05],
    'methods': ['Ignore', 'kNN'],
}

def write_config(path, config):
    with open(path, 'w') as f:
        json.dump(config, f)
    return path

# Test loading a complete configuration file
def test_load_config(tmp_path):
    config_path = write_config(tmp_path / 'config.json', dict(SMALL_GRID, rates=0.05))
    config = load_config(config_path)
    assert config['replications'] == 2
    assert config['rates'] == [0.05]  # Scalars become single-level factors

# Test ValueError for a configuration without all grid factors
def test_missing_config_keys(tmp_path):
    config = dict(SMALL_GRID)
    del config['mechanisms']
    del config['seed']
    config_path = write_config(tmp_path / 'config.json', config)
    with pytest.raises(ValueError) as exc_info:
        load_config(config_path)
    assert "Missing required configuration keys" in str(exc_info.value)
    assert "mechanisms" in str(exc_info.value)

def test_config_file_not_found(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / 'missing.json')

def test_unknown_config_keys_warn(tmp_path, caplog):
    config_path = write_config(tmp_path / 'config.json', dict(SMALL_GRID, num_runs=5))
    with caplog.at_level(logging.WARNING):
        config = load_config(config_path)
    assert 'num_runs' not in config
    assert "Ignoring unknown configuration keys" in caplog.text

# Test grid validation
@pytest.mark.parametrize("override, message", [
    ({'rates': [0.05, 0.40]}, "infeasible"),
    ({'sample_sizes': [4]}, "at least 6"),
    ({'cutpoint_locations': ['1/4']}, "cutpoint_locations"),
    ({'mechanisms': ['MNAR']}, "mechanisms"),
    ({'methods': ['mean']}, "methods"),
    ({'replications': 0}, "replications"),
])
def test_invalid_grid(override, message):
    grid = {k: v for k, v in SMALL_GRID.items() if k != 'seed'}
    grid.update(override)
    with pytest.raises(ValueError) as exc_info:
        validate_grid(**grid)
    assert message in str(exc_info.value)

def test_invalid_covariate_type(tmp_path):
    with pytest.raises(ValueError):
        run_simulation(**SMALL_GRID, covariate_type='ordinal', output_dir=str(tmp_path))

# Test a small full run end to end
def test_small_run(tmp_path, caplog):
    with caplog.at_level(logging.INFO):
        results_all, results_summary = run_simulation(**SMALL_GRID, n_processes=1, output_dir=str(tmp_path))

    # 1 condition x 2 replications x 2 methods
    assert len(results_all) == 4
    assert list(results_all['method']) == ['Ignore', 'kNN', 'Ignore', 'kNN']
    assert list(results_all['replication']) == [1, 1, 2, 2]
    assert (results_all['cutpoint'] == 50).all()
    assert results_all['ari'].notna().all()
    assert results_all['ari'].between(-1, 1).all()

    assert len(results_summary) == 2
    assert set(results_summary['rank']) == {1, 2}

    report_dir = tmp_path / 'continuous_reps_2_seed_7'
    assert (report_dir / 'results_all_runs.csv').exists()
    assert (report_dir / 'results_summary.csv').exists()
    assert (report_dir / 'simulation.log.txt').exists()
    assert "Full factorial simulation complete" in caplog.text

def test_run_from_config(tmp_path):
    config_path = write_config(tmp_path / 'config.json',
                               dict(SMALL_GRID, replications=1, covariate_type='dichotomous',
                                    output_dir=str(tmp_path / 'report')))
    results_all, _ = run_simulation(config_file=config_path)
    assert len(results_all) == 2
    assert (tmp_path / 'report' / 'dichotomous_reps_1_seed_7' / 'results_all_runs.csv').exists()

def test_zero_rate_methods_agree(tmp_path):
    """Without missing cells every strategy sees the same complete data."""
    grid = dict(SMALL_GRID, replications=1, rates=[0.0], methods=['Ignore', 'kNN', 'CART'])
    results_all, _ = run_simulation(**grid, output_dir=str(tmp_path))
    assert np.allclose(results_all['ari'], results_all['ari'].iloc[0])
