#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Biotype Analysis Pipeline: Connectivity-Symptom Linkage and Subtyping.

This pipeline performs the full biotype analysis:

1. Load connectivity, clinical and covariate tables; clean and residualize
2. Spearman feature screen + canonical correlation analysis
3. Site-blocked permutation test of every canonical dimension
4. Site-stratified k-fold cross-validation
5. Leave-one-out jackknife of loadings and predictions
6. Ward clustering of subjects on the leading connectivity variates,
   cluster-index significance against a Gaussian null, cluster stability
   and clinical profiles
7. Figures

Usage:
    python pipelines/run_biotypes_analysis.py [--n-permutations N] [--verbose]

    Default: 999 permutations, 10 folds, 1000 cluster simulations
    For quick testing: --n-permutations 99 --n-cluster-sims 99
"""

import sys
import logging
from pathlib import Path
from datetime import datetime
import argparse

from biotypes import config
from biotypes.analyzer import BiotypesAnalyzer
from biotypes.data_loader import BiotypesDataLoader
from biotypes.projector import first_clinical_loadings
from biotypes.visualizer import BiotypesVisualizer


def setup_logging(output_dir: Path, verbose: bool = False) -> logging.Logger:
    """Configure logging for the pipeline."""
    output_dir.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if verbose else logging.INFO

    # Package logger, so messages of every biotypes module are captured
    logger = logging.getLogger('biotypes')
    logger.setLevel(level)
    logger.handlers = []

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter('%(message)s'))
    logger.addHandler(console)

    # File handler with UTF-8 encoding
    log_file = output_dir / 'biotypes_analysis.log'
    file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    )
    logger.addHandler(file_handler)

    return logger


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Run connectivity-symptom biotype analysis'
    )
    parser.add_argument(
        '--connectivity', default=config.CONNECTIVITY_PATH,
        help='Connectivity CSV (one row per subject)'
    )
    parser.add_argument(
        '--clinical', default=config.CLINICAL_PATH,
        help='Clinical scores CSV (one row per subject)'
    )
    parser.add_argument(
        '--covariates', default=config.COVARIATES_PATH,
        help='Covariates CSV (age, site, motion)'
    )
    parser.add_argument(
        '--output-dir', default=config.RESULTS_DIR,
        help=f'Output directory (default: {config.RESULTS_DIR})'
    )
    parser.add_argument(
        '--n-features', type=int, default=config.N_FEATURES,
        help=f'Connectivity features kept by the screen (default: {config.N_FEATURES})'
    )
    parser.add_argument(
        '--n-permutations', type=int, default=config.N_PERMUTATIONS,
        help=f'Number of permutations (default: {config.N_PERMUTATIONS})'
    )
    parser.add_argument(
        '--n-folds', type=int, default=config.N_FOLDS,
        help=f'Cross-validation folds (default: {config.N_FOLDS})'
    )
    parser.add_argument(
        '--n-clusters', type=int, default=config.N_CLUSTERS,
        help=f'Number of biotypes (default: {config.N_CLUSTERS})'
    )
    parser.add_argument(
        '--n-cluster-sims', type=int, default=config.N_CLUSTER_SIMS,
        help=f'Gaussian null simulations (default: {config.N_CLUSTER_SIMS})'
    )
    parser.add_argument(
        '--seed', type=int, default=config.RANDOM_SEED,
        help=f'Random seed (default: {config.RANDOM_SEED})'
    )
    parser.add_argument(
        '--n-jobs', type=int, default=config.N_JOBS,
        help='joblib workers (-1 = all cores)'
    )
    parser.add_argument(
        '--skip-jackknife', action='store_true',
        help='Skip the leave-one-out refits and cluster stability'
    )
    parser.add_argument(
        '--no-figures', action='store_true',
        help='Do not generate figures'
    )
    parser.add_argument(
        '--verbose', action='store_true',
        help='Enable verbose logging'
    )
    return parser.parse_args(argv)


def run_analysis(args, logger: logging.Logger) -> BiotypesAnalyzer:
    """Run every stage of the analysis and export its tables."""
    output_dir = Path(args.output_dir)

    # Step 1: Load data
    logger.info("\n[1/6] Loading data...")
    loader = BiotypesDataLoader(args.connectivity, args.clinical, args.covariates)
    data = loader.load_data()

    analyzer = BiotypesAnalyzer.from_data(
        data,
        n_features=args.n_features,
        random_seed=args.seed,
        n_jobs=args.n_jobs,
    )

    # Step 2: CCA
    logger.info("\n[2/6] Fitting feature screen + CCA...")
    analyzer.fit_cca()

    # Step 3: Permutation test
    logger.info(f"\n[3/6] Permutation test ({args.n_permutations} permutations)...")
    analyzer.permutation_test(n_permutations=args.n_permutations)

    # Step 4: Cross-validation
    logger.info(f"\n[4/6] {args.n_folds}-fold cross-validation...")
    analyzer.cross_validation(n_folds=args.n_folds)
    analyzer.summarize_cv_results()
    analyzer.compute_cv_significance()

    # Step 5: Jackknife
    if not args.skip_jackknife:
        logger.info("\n[5/6] Leave-one-out jackknife...")
        analyzer.jackknife()
    else:
        logger.info("\n[5/6] Jackknife skipped")

    # Step 6: Clustering
    logger.info(f"\n[6/6] Clustering subjects into {args.n_clusters} biotypes...")
    analyzer.cluster_subjects(n_clusters=args.n_clusters)
    analyzer.test_cluster_significance(n_sims=args.n_cluster_sims)
    if analyzer.jackknife_results is not None:
        analyzer.cluster_stability()

    analyzer.export_results(str(output_dir))
    return analyzer


def generate_visualizations(analyzer: BiotypesAnalyzer, output_dir: Path, logger: logging.Logger):
    """Generate pipeline figures."""
    logger.info("\nGenerating figures...")
    figures_dir = output_dir / 'figures'
    visualizer = BiotypesVisualizer()

    visualizer.plot_permutation_distributions(
        analyzer.null_distribution, analyzer.permutation_results, str(figures_dir)
    )
    visualizer.plot_cv_folds(analyzer.cv_result.fold_table, str(figures_dir))
    if analyzer.cluster_scores.shape[1] >= 2:
        visualizer.plot_canonical_scores(analyzer.cluster_table, str(figures_dir))
    visualizer.plot_cluster_null(analyzer.cluster_significance, str(figures_dir))
    if analyzer.jackknife_results is not None:
        visualizer.plot_jackknife_loadings(
            analyzer.jackknife_loadings(),
            str(figures_dir),
            reference=first_clinical_loadings(analyzer.model),
        )
    logger.info(f"Saved {len(visualizer.figure_paths)} figures to {figures_dir}")


def main(argv=None):
    """Main pipeline execution."""
    args = parse_args(argv)
    output_dir = Path(args.output_dir)
    logger = setup_logging(output_dir, args.verbose)

    start_time = datetime.now()

    logger.info("=" * 80)
    logger.info("BIOTYPE ANALYSIS PIPELINE")
    logger.info("Connectivity-Symptom Linkage and Subtyping")
    logger.info("=" * 80)
    logger.info(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Features: {args.n_features}, permutations: {args.n_permutations}, "
                f"folds: {args.n_folds}, seed: {args.seed}")

    try:
        analyzer = run_analysis(args, logger)

        if not args.no_figures:
            generate_visualizations(analyzer, output_dir, logger)

        # Done
        end_time = datetime.now()
        duration = (end_time - start_time).total_seconds()

        logger.info("\n" + "=" * 80)
        logger.info("PIPELINE COMPLETED SUCCESSFULLY")
        logger.info("=" * 80)
        logger.info(f"Duration: {duration:.1f} seconds")
        logger.info(f"Results saved to: {output_dir}")

    except Exception as e:
        logger.error(f"\nPIPELINE FAILED: {e}")
        import traceback
        logger.error(traceback.format_exc())
        sys.exit(1)


if __name__ == '__main__':
    main()
