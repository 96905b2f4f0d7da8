"""
Visualization module for the connectivity-symptom biotype analysis.

This module provides the BiotypesVisualizer class for figures of the
permutation nulls, canonical score space coloured by cluster, jackknife
loading distributions and the Gaussian null of the cluster indices.

Classes:
    BiotypesVisualizer: Generate diagnostic and publication figures.
"""

from pathlib import Path
from typing import List, Optional
import logging

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns

from biotypes.cluster_analyzer import CLUSTER_INDICES, ClusterSignificance
from biotypes.permutation_tester import NullDistribution


class BiotypesVisualizer:
    """
    Visualizer for biotype analysis results.

    Attributes:
        figure_paths (List[str]): List of generated figure file paths
        dpi (int): Resolution of saved figures
        logger (logging.Logger): Logger instance for status messages

    Example:
        >>> visualizer = BiotypesVisualizer()
        >>> visualizer.plot_permutation_distributions(
        ...     analyzer.null_distribution, analyzer.permutation_results, 'figures'
        ... )
        >>> visualizer.plot_canonical_scores(assignments_df, 'figures')
    """

    def __init__(self, dpi: int = 300):
        """Initialize the visualizer."""
        self.figure_paths: List[str] = []
        self.dpi = dpi
        self.logger = logging.getLogger(__name__)

        sns.set_style('whitegrid')
        plt.rcParams['font.size'] = 10
        plt.rcParams['axes.labelsize'] = 11
        plt.rcParams['axes.titlesize'] = 12
        plt.rcParams['legend.fontsize'] = 9

    def _save(self, fig: plt.Figure, output_dir: str, filename: str) -> str:
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        fig_path = output_path / filename
        fig.savefig(fig_path, dpi=self.dpi, bbox_inches='tight')
        plt.close(fig)

        self.figure_paths.append(str(fig_path))
        self.logger.info(f"Saved figure to {fig_path}")
        return str(fig_path)

    def plot_permutation_distributions(
        self,
        null: NullDistribution,
        permutation_results: pd.DataFrame,
        output_dir: str,
        alpha: float = 0.05
    ) -> str:
        """
        Histogram of permuted canonical correlations per dimension.

        The observed correlation is marked with a dashed line and the top
        alpha of the null is shaded as the rejection region.

        Args:
            null: NullDistribution from the permutation test
            permutation_results: Output of ``compute_permutation_p_values``
            output_dir: Directory to save the figure
            alpha: Significance level for the rejection region

        Returns:
            Path of the saved figure
        """
        n_components = len(permutation_results)
        fig, axes = plt.subplots(1, n_components, figsize=(5 * n_components, 4), squeeze=False)

        for i in range(n_components):
            ax = axes[0, i]
            row = permutation_results.iloc[i]
            values = null.values('canonical_correlation', i + 1)
            values = values[~np.isnan(values)]

            sns.histplot(values, bins=30, color='lightgray', edgecolor='black', ax=ax)
            ax.axvline(row['observed_r'], color='red', linewidth=2, linestyle='--',
                       label=f"Observed (r={row['observed_r']:.3f})")
            if len(values):
                threshold = np.percentile(values, (1 - alpha) * 100)
                ax.axvspan(threshold, max(values.max(), row['observed_r']), alpha=0.2,
                           color='red', label=f'Rejection region (α={alpha})')

            ax.text(0.05, 0.95, f"p = {row['permutation_p_value']:.3f}",
                    transform=ax.transAxes, verticalalignment='top',
                    bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))
            ax.set_xlabel('Canonical Correlation')
            ax.set_ylabel('Frequency')
            ax.set_title(f'Canonical Variate {i + 1}', fontweight='bold')
            ax.legend()

        fig.suptitle('Permutation Null Distributions', fontweight='bold')
        fig.tight_layout()
        return self._save(fig, output_dir, 'permutation_null_distributions.png')

    def plot_canonical_scores(
        self,
        assignments_df: pd.DataFrame,
        output_dir: str,
        x: str = 'U1',
        y: str = 'U2'
    ) -> str:
        """Scatter of two connectivity variates coloured by cluster."""
        fig, ax = plt.subplots(figsize=(6, 5))
        sns.scatterplot(data=assignments_df, x=x, y=y, hue='cluster',
                        palette='tab10', s=40, ax=ax)
        ax.set_xlabel(f'Connectivity variate {x[1:]}')
        ax.set_ylabel(f'Connectivity variate {y[1:]}')
        ax.set_title('Subjects in canonical space', fontweight='bold')
        ax.legend(title='Cluster')
        return self._save(fig, output_dir, 'canonical_scores_by_cluster.png')

    def plot_jackknife_loadings(
        self,
        loadings_df: pd.DataFrame,
        output_dir: str,
        reference: Optional[pd.Series] = None
    ) -> str:
        """
        Distribution of first clinical-variate loadings across jackknife refits.

        Args:
            loadings_df: Wide table from ``jackknife_loadings``
            output_dir: Directory to save the figure
            reference: Full-data loadings, drawn as red markers
        """
        long_df = loadings_df.melt(var_name='variable_name', value_name='loading').dropna()
        fig, ax = plt.subplots(figsize=(max(6, 0.6 * loadings_df.shape[1]), 4))

        sns.boxplot(data=long_df, x='variable_name', y='loading', color='lightgray',
                    showfliers=False, ax=ax)
        sns.stripplot(data=long_df, x='variable_name', y='loading', color='black',
                      size=2, alpha=0.4, ax=ax)
        if reference is not None:
            positions = np.arange(len(loadings_df.columns))
            ax.scatter(positions, reference.reindex(loadings_df.columns).to_numpy(),
                       color='red', marker='D', zorder=3, label='Full sample')
            ax.legend()

        ax.axhline(0, color='black', linewidth=0.8)
        ax.set_xlabel('')
        ax.set_ylabel('Loading on clinical variate 1')
        ax.set_title('Jackknife loading stability', fontweight='bold')
        ax.tick_params(axis='x', rotation=45)
        return self._save(fig, output_dir, 'jackknife_loadings.png')

    def plot_cluster_null(
        self,
        significance: ClusterSignificance,
        output_dir: str
    ) -> str:
        """Observed max-over-k cluster indices against the Gaussian null."""
        fig, axes = plt.subplots(1, len(CLUSTER_INDICES), figsize=(10, 4), squeeze=False)
        titles = {'calinski_harabasz': 'Calinski-Harabasz', 'silhouette': 'Silhouette'}

        for ax, name in zip(axes[0], CLUSTER_INDICES):
            values = significance.null[name].dropna().to_numpy()
            observed = significance.observed_best[name]
            sns.histplot(values, bins=30, color='lightgray', edgecolor='black', ax=ax)
            ax.axvline(observed, color='red', linewidth=2, linestyle='--',
                       label=f"Observed (k={significance.best_k[name]})")
            ax.text(0.05, 0.95, f"p = {significance.p_values[name]:.3f}",
                    transform=ax.transAxes, verticalalignment='top',
                    bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))
            ax.set_xlabel(f'Max {titles[name]} over k')
            ax.set_ylabel('Frequency')
            ax.set_title(titles[name], fontweight='bold')
            ax.legend()

        fig.suptitle('Cluster indices vs. Gaussian null', fontweight='bold')
        fig.tight_layout()
        return self._save(fig, output_dir, 'cluster_index_null.png')

    def plot_cv_folds(self, fold_table: pd.DataFrame, output_dir: str) -> str:
        """Out-of-sample correlation per fold and canonical variate."""
        fig, ax = plt.subplots(figsize=(6, 4))
        data = fold_table.dropna(subset=['r_oos'])
        sns.stripplot(data=data, x='canonical_variate', y='r_oos', color='black',
                      size=5, ax=ax)
        sns.pointplot(data=data, x='canonical_variate', y='r_oos', color='red',
                      linestyle='none', markers='D', errorbar=('ci', 95), ax=ax)
        ax.axhline(0, color='black', linewidth=0.8, linestyle='--')
        ax.set_xlabel('Canonical variate')
        ax.set_ylabel('Out-of-sample r')
        ax.set_title('Cross-validated canonical correlations', fontweight='bold')
        return self._save(fig, output_dir, 'cross_validation_folds.png')
