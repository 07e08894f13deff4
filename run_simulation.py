from multiprocessing import Pool
import os
import json
import logging
from tqdm import tqdm
import pandas as pd
from pathlib import Path
from src.analysis.summarize_results import failure_rates, summarize_results
from src.pipeline.simulation.data_generators import COVARIATE_TYPES
from src.pipeline.simulation.imputation_methods import METHOD_NAMES, build_imputation_methods
from src.pipeline.simulation.missingness_patterns import MECHANISMS, max_missing_rate
from src.pipeline.simulation.simulator import (
    LOCATIONS, RESULT_COLUMNS, SimulationStudy, enumerate_conditions
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger()

REQUIRED_KEYS = ['replications', 'seed', 'sample_sizes', 'cutpoint_locations',
                 'mechanisms', 'rates', 'methods']
LIST_KEYS = ['sample_sizes', 'cutpoint_locations', 'mechanisms', 'rates', 'methods']
OPTIONAL_KEYS = ['covariate_type', 'effect_size', 'intercept_mean', 'slope_mean',
                 'tree_method', 'min_bucket', 'alpha', 'n_processes', 'output_dir']

def load_config(config_path):
    """
    Load simulation configuration from a JSON file.

    Parameters:
    -----------
    config_path : str or Path
        Path to the JSON configuration file

    Returns:
    --------
    dict : Configuration dictionary with simulation parameters

    Example JSON structure:
    {
        "replications": 100,
        "seed": 2024,
        "sample_sizes": [500, 1000],
        "cutpoint_locations": ["1/2", "1/3", "1/6"],
        "mechanisms": ["MCAR", "MAR"],
        "rates": [0.05, 0.10, 0.20, 0.30],
        "methods": ["Ignore", "missForest", "kNN", "FAMD", "CART"],
        "covariate_type": "continuous"
    }
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = json.load(f)

    missing_keys = [key for key in REQUIRED_KEYS if key not in config]
    if missing_keys:
        raise ValueError(f"Missing required configuration keys: {missing_keys}")
    unknown_keys = [key for key in config if key not in REQUIRED_KEYS + OPTIONAL_KEYS]
    if unknown_keys:
        logger.warning(f"Ignoring unknown configuration keys: {unknown_keys}")
        config = {key: value for key, value in config.items() if key not in unknown_keys}

    # Grid factors are always lists
    for param in LIST_KEYS:
        if not isinstance(config[param], list):
            config[param] = [config[param]]

    logger.info(f"Loaded configuration from {config_path}")
    return config

def validate_grid(replications, sample_sizes, cutpoint_locations, mechanisms, rates, methods):
    """Raise ValueError for grid levels the study cannot run."""
    if replications < 1:
        raise ValueError(f"replications must be at least 1. Got {replications}.")
    bad_sizes = [n for n in sample_sizes if int(n) != n or n < 6]
    if bad_sizes:
        raise ValueError(f"sample_sizes must be integers of at least 6. Got {bad_sizes}.")
    bad_locations = [loc for loc in cutpoint_locations if loc not in LOCATIONS]
    if bad_locations:
        raise ValueError(f"Unknown cutpoint_locations {bad_locations}. Expected a subset of {list(LOCATIONS)}.")
    bad_mechanisms = [mech for mech in mechanisms if mech not in MECHANISMS]
    if bad_mechanisms:
        raise ValueError(f"Unknown mechanisms {bad_mechanisms}. Expected a subset of {list(MECHANISMS)}.")
    bad_methods = [method for method in methods if method not in METHOD_NAMES]
    if bad_methods:
        raise ValueError(f"Unknown methods {bad_methods}. Expected a subset of {list(METHOD_NAMES)}.")
    limit = max_missing_rate()
    bad_rates = [rate for rate in rates if not 0 <= rate <= limit]
    if bad_rates:
        raise ValueError(f"Missing rates {bad_rates} are infeasible: each rate must lie in [0, {limit:.2f}].")

def run_single_replication(args):
    """Run all methods on one (condition, replication). Used for parallelization."""
    study_params, condition, replication, method_names = args

    # Strategies are built inside the worker so nothing stateful crosses processes
    study = SimulationStudy(**study_params)
    methods = build_imputation_methods(method_names)
    return study.run_replication(condition, replication, methods)

def run_simulation(
    config_file=None,
    replications=100,
    seed=2024,
    sample_sizes=[500, 1000],
    cutpoint_locations=['1/2', '1/3', '1/6'],
    mechanisms=['MCAR', 'MAR'],
    rates=[0.05, 0.10, 0.20, 0.30],
    methods=list(METHOD_NAMES),
    covariate_type='continuous',
    effect_size=0.5,
    intercept_mean=50.0,
    slope_mean=5.0,
    tree_method='score',
    min_bucket=20,
    alpha=0.05,
    n_processes=None,
    output_dir='results/report'
):
    """
    Run the full factorial SEM Tree subgroup recovery study.

    Parameters can be provided either via a JSON config file or directly as function arguments.
    If config_file is provided, its values override the direct arguments.

    Parameters:
    -----------
    config_file : str or Path, optional
        Path to JSON configuration file
    replications : int, default=100
        Replications per condition
    seed : int, default=2024
        Global seed; every grid cell derives its own streams from it
    sample_sizes, cutpoint_locations, mechanisms, rates : list
        Grid factor levels
    methods : list
        Imputation strategies to compare
    covariate_type : str, default='continuous'
        'continuous' or 'dichotomous' covariate variant
    effect_size : float, default=0.5
        Subgroup intercept offset in intercept standard deviations
    tree_method : str, default='score'
        Split selection of the SEM Tree ('score' or 'naive')
    min_bucket : int, default=20
        Minimum rows per leaf
    alpha : float, default=0.05
        Significance level of the split test
    n_processes : int, optional
        Worker processes; defaults to SLURM_CPUS_PER_TASK, NUM_PROCESSES or 1
    output_dir : str, default='results/report'
        Base directory of the report directory

    Returns:
    --------
    results_all : DataFrame
        One row per (condition, replication, method)
    results_summary : DataFrame
        Mean/std ARI per (condition, method), ranked within condition

    Example:
    --------
    results_all, results_summary = run_simulation(config_file='configs/simulation_config.json')
    results_all, results_summary = run_simulation(replications=2, sample_sizes=[500], rates=[0.05])
    """
    if config_file is not None:
        config = load_config(config_file)
        replications = config['replications']
        seed = config['seed']
        sample_sizes = config['sample_sizes']
        cutpoint_locations = config['cutpoint_locations']
        mechanisms = config['mechanisms']
        rates = config['rates']
        methods = config['methods']
        covariate_type = config.get('covariate_type', covariate_type)
        effect_size = config.get('effect_size', effect_size)
        intercept_mean = config.get('intercept_mean', intercept_mean)
        slope_mean = config.get('slope_mean', slope_mean)
        tree_method = config.get('tree_method', tree_method)
        min_bucket = config.get('min_bucket', min_bucket)
        alpha = config.get('alpha', alpha)
        n_processes = config.get('n_processes', n_processes)
        output_dir = config.get('output_dir', output_dir)

    validate_grid(replications, sample_sizes, cutpoint_locations, mechanisms, rates, methods)
    if covariate_type not in COVARIATE_TYPES:
        raise ValueError(f"covariate_type must be one of {COVARIATE_TYPES}. Got {covariate_type}.")

    report_dir = os.path.join(output_dir, f'{covariate_type}_reps_{replications}_seed_{seed}')
    os.makedirs(report_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(report_dir, 'simulation.log.txt'))
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    logger.addHandler(file_handler)

    try:
        logger.info(f"Starting full factorial simulation with seed={seed}, covariate_type={covariate_type}")
        study_params = {
            'seed': seed,
            'covariate_type': covariate_type,
            'effect_size': effect_size,
            'intercept_mean': intercept_mean,
            'slope_mean': slope_mean,
            'tree_method': tree_method,
            'min_bucket': min_bucket,
            'alpha': alpha,
        }
        conditions = enumerate_conditions(sample_sizes, cutpoint_locations, mechanisms, rates)
        args_list = [(study_params, condition, replication, methods)
                     for condition in conditions
                     for replication in range(1, replications + 1)]
        logger.info(f"{len(conditions)} conditions x {replications} replications x {len(methods)} methods "
                    f"= {len(args_list) * len(methods)} result rows")

        if n_processes is None:
            n_processes = int(os.environ.get('SLURM_CPUS_PER_TASK', os.environ.get('NUM_PROCESSES', 1)))

        if n_processes > 1:
            logger.info(f"Parallelizing {len(args_list)} replications across {n_processes} processes")
            # imap keeps grid order, so the merged table does not depend on scheduling
            with Pool(processes=n_processes) as pool:
                run_results = list(tqdm(pool.imap(run_single_replication, args_list),
                                        total=len(args_list), desc="Replications"))
        else:
            run_results = [run_single_replication(args) for args in tqdm(args_list, desc="Replications")]

        results_all = pd.DataFrame([row for rows in run_results for row in rows], columns=RESULT_COLUMNS)
        results_all.to_csv(os.path.join(report_dir, 'results_all_runs.csv'), index=False)
        logger.info(f"Saved all runs results to {os.path.join(report_dir, 'results_all_runs.csv')}")

        results_summary = summarize_results(results_all)
        results_summary.to_csv(os.path.join(report_dir, 'results_summary.csv'), index=False)
        logger.info(f"Saved summary results to {os.path.join(report_dir, 'results_summary.csv')}")

        for _, failure in failure_rates(results_all).iterrows():
            if failure['n_failed'] > 0:
                logger.warning(f"{failure['method']}: {failure['n_failed']}/{failure['n_cells']} cells failed")

        logger.info(f"Full factorial simulation complete. Results saved in {report_dir}")
    finally:
        logger.removeHandler(file_handler)
        file_handler.close()
    return results_all, results_summary

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Run the SEM Tree subgroup recovery simulation')
    parser.add_argument('--config', '-c', type=str, default=None,
                        help='Path to a JSON configuration file')
    parser.add_argument('--replications', '-r', type=int, default=100,
                        help='Replications per condition (ignored with --config)')
    parser.add_argument('--seed', type=int, default=2024,
                        help='Global seed (ignored with --config)')
    parser.add_argument('--covariate-type', choices=COVARIATE_TYPES, default='continuous',
                        help='Covariate variant (ignored with --config)')
    parser.add_argument('--processes', '-p', type=int, default=None,
                        help='Number of worker processes')
    parser.add_argument('--output-dir', type=str, default='results/report',
                        help='Base output directory (ignored with --config)')

    args = parser.parse_args()
    run_simulation(config_file=args.config, replications=args.replications, seed=args.seed,
                   covariate_type=args.covariate_type, n_processes=args.processes,
                   output_dir=args.output_dir)
