import os
import pandas as pd
import logging
from pathlib import Path
import numpy as np

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

CONDITION_KEYS = ['n', 'cutpoint_location', 'mechanism', 'rate']
GROUPBY_KEYS = CONDITION_KEYS + ['method']

# --- Helper Functions ---

def discover_report_dirs(base_dir='results/report/', use_latest_only=False):
    """
    Dynamically find all report directories.

    Parameters:
    -----------
    base_dir : str
        Base directory to search for report directories
    use_latest_only : bool, default=False
        If True, return only the most recently modified directory.
        If False, return all directories holding results_all_runs.csv.

    Returns:
    --------
    list : List of report directory paths
    """
    base_path = Path(base_dir)
    if not base_path.exists():
        logger.error(f"Base directory does not exist: {base_dir}")
        return []

    report_dirs = []
    for d in base_path.iterdir():
        results_file = d / 'results_all_runs.csv'
        if d.is_dir() and results_file.exists() and results_file.stat().st_size > 0:
            report_dirs.append(d)

    if not report_dirs:
        logger.error(f"No valid report directories found in {base_dir} (all are empty or missing results_all_runs.csv)")
        return []

    if use_latest_only:
        report_dirs = sorted(report_dirs, key=lambda p: (p / 'results_all_runs.csv').stat().st_mtime, reverse=True)
        latest_dir = report_dirs[0]
        logger.info(f"Using only the most recent directory: {latest_dir.name}")
        return [str(latest_dir)]
    logger.info(f"Found {len(report_dirs)} report directories: {sorted(d.name for d in report_dirs)}")
    return sorted(str(d) for d in report_dirs)

def load_results(report_dir):
    """Load results_all_runs.csv from a report directory."""
    results_all_path = os.path.join(report_dir, 'results_all_runs.csv')
    if not os.path.exists(results_all_path):
        logger.warning(f"Missing results_all_runs.csv in {report_dir}")
        return None
    results_all = pd.read_csv(results_all_path)
    missing = [col for col in GROUPBY_KEYS + ['ari'] if col not in results_all.columns]
    if missing:
        logger.warning(f"Results file in {report_dir} is missing columns {missing}.")
    return results_all

# --- Aggregation ---

def summarize_results(results_all):
    """
    Summarize per-replication ARI into per-condition statistics.

    Groups by (n, cutpoint_location, mechanism, rate, method), ignores missing
    ARI values from failed cells, and ranks methods within each condition by
    descending mean ARI.

    Returns:
    --------
    DataFrame with columns n, cutpoint_location, mechanism, rate, method,
    ari_mean, ari_std, n_valid, n_failed, rank
    """
    grouped = results_all.groupby(GROUPBY_KEYS, sort=False)['ari']
    summary = grouped.agg(
        ari_mean='mean',
        ari_std='std',
        n_valid='count',
        n_failed=lambda s: int(s.isna().sum()),
    ).reset_index()

    # Condition groups in grid order, methods by descending mean ARI
    condition_order = results_all[CONDITION_KEYS].drop_duplicates().reset_index(drop=True)
    condition_order['_condition'] = np.arange(len(condition_order))
    summary = summary.merge(condition_order, on=CONDITION_KEYS, how='left')
    summary = summary.sort_values(['_condition', 'ari_mean'], ascending=[True, False],
                                  na_position='last', kind='mergesort')
    summary['rank'] = summary.groupby('_condition').cumcount() + 1
    return summary.drop(columns='_condition').reset_index(drop=True)

def failure_rates(results_all):
    """Share of failed (missing ARI) cells per method, for auditing."""
    rates = results_all.groupby('method', sort=False)['ari'].agg(
        n_cells='size',
        n_failed=lambda s: int(s.isna().sum()),
    ).reset_index()
    rates['failure_rate'] = rates['n_failed'] / rates['n_cells']
    return rates

def summarize_report_dirs(report_dirs, tables_dir='results/tables/'):
    """Summarize every report directory and write the combined tables."""
    summaries = []
    failures = []
    for report_dir in report_dirs:
        results_all = load_results(report_dir)
        if results_all is None:
            logger.warning(f"Skipping {report_dir} due to missing or invalid data")
            continue
        source = os.path.basename(os.path.normpath(report_dir))
        summaries.append(summarize_results(results_all).assign(source=source))
        failures.append(failure_rates(results_all).assign(source=source))

    if not summaries:
        logger.error("No valid results found.")
        return None

    combined = pd.concat(summaries, ignore_index=True)
    os.makedirs(tables_dir, exist_ok=True)
    combined.to_csv(os.path.join(tables_dir, 'combined_results_summary.csv'), index=False)
    pd.concat(failures, ignore_index=True).to_csv(os.path.join(tables_dir, 'failure_rates.csv'), index=False)

    best = combined[combined['rank'] == 1]
    for method, count in best['method'].value_counts().items():
        logger.info(f"{method} ranks first in {count} condition(s)")
    logger.info(f"Summary tables written to {tables_dir}")
    return combined

if __name__ == "__main__":
    import sys
    import argparse

    parser = argparse.ArgumentParser(description='Summarize SEM Tree subgroup recovery results')
    parser.add_argument('--latest', '-l', action='store_true',
                       help='Summarize only the most recent report directory')
    parser.add_argument('--dir', '-d', type=str, default=None, nargs='+',
                       help='Summarize specific report directory(ies) (relative to the base dir or absolute path).')
    parser.add_argument('--base-dir', type=str, default='results/report/',
                       help='Base directory to search for report directories (default: results/report/)')
    parser.add_argument('--tables-dir', type=str, default='results/tables/',
                       help='Directory for the combined tables (default: results/tables/)')

    args = parser.parse_args()

    if args.dir:
        report_dirs = []
        for dir_arg in args.dir:
            if os.path.isabs(dir_arg) or os.path.exists(dir_arg):
                report_dir = dir_arg
            elif os.path.exists(os.path.join(args.base_dir, dir_arg)):
                report_dir = os.path.join(args.base_dir, dir_arg)
            else:
                logger.error(f"Directory not found: {dir_arg}")
                sys.exit(1)
            report_dirs.append(report_dir)
    else:
        report_dirs = discover_report_dirs(args.base_dir, use_latest_only=args.latest)

    if report_dirs:
        summarize_report_dirs(report_dirs, tables_dir=args.tables_dir)
    else:
        logger.error("Summary aborted: No report directories found")
