#!/usr/bin/env python
# scripts/03_diversity_analysis.py

"""
Community analysis of the denoised feature table.

This script:
1. Loads the feature, taxonomy and sample tables exported by 02_denoise_dada2.py
2. Calculates alpha diversity metrics and compares them between conditions
3. Calculates Bray-Curtis beta diversity, ordinates samples and runs PERMANOVA
4. Plots taxonomic composition at the configured ranks
5. Tests taxa for differential abundance between the two conditions

Usage:
    python scripts/03_diversity_analysis.py [--config CONFIG_FILE]
"""

import os
import sys
import argparse
import logging
import traceback
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root))

# Add tools directory to Python path
tools_dir = project_root / 'tools'
sys.path.append(str(tools_dir))

from amplicon_tools import (
    setup_logger,
    log_print,
    load_config,
    AmpliconExperiment,
    calculate_alpha_diversity,
    calculate_beta_diversity,
    ordinate,
    perform_permanova,
    compare_conditions,
    differential_abundance_analysis,
)
from amplicon_tools.amplicon_viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_stacked_bar,
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Diversity and composition analysis of amplicon data')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory with the exported tables (override config)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def run_diversity_analysis(args):
    """Alpha, beta and composition analysis of the exported experiment."""
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path)
    analysis = config['analysis']
    group_var = analysis['condition_variable']
    dpi = config['visualization']['figure_dpi']
    fmt = config['visualization']['figure_format']

    output_dir = Path(args.output_dir or config['output']['output_dir'])
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        os.makedirs(dir_path, exist_ok=True)

    otu_file = tables_dir / 'otu_table.csv'
    if not otu_file.exists():
        log_print(f"Feature table not found at {otu_file}. Please run 02_denoise_dada2.py first.",
                  level='error')
        sys.exit(1)

    experiment = AmpliconExperiment.from_files(
        otu_file,
        tables_dir / 'taxonomy_table.csv',
        tables_dir / 'sample_data.csv',
        refseq_file=tables_dir / 'refseqs.fasta',
    )
    log_print(f"Loaded {experiment}", level='info')

    if analysis['conditions']:
        experiment = experiment.subset_samples(group_var, analysis['conditions'])

    empty = experiment.sample_sums() == 0
    if empty.any():
        log_print(f"Dropping samples with no reads: {', '.join(experiment.sample_sums().index[empty])}",
                  level='warning')
    experiment = experiment.prune_empty_samples().prune_taxa_absent()
    metadata_df = experiment.sample_data

    # Alpha diversity
    log_print("\nCalculating alpha diversity metrics...", level='info')
    alpha_df = calculate_alpha_diversity(experiment.otu_table, analysis['alpha_metrics'])
    alpha_file = tables_dir / 'alpha_diversity.csv'
    alpha_df.join(metadata_df).to_csv(alpha_file)
    log_print(f"Alpha diversity results saved to {alpha_file}", level='info')

    for metric, fig in plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var).items():
        output_file = figures_dir / f'alpha_{metric}_by_{group_var}.{fmt}'
        fig.savefig(output_file, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        log_print(f"  {metric} diversity plot saved to {output_file}", level='info')

    alpha_comparison = compare_conditions(alpha_df, metadata_df, group_var, analysis['conditions'])
    alpha_comparison.to_csv(tables_dir / 'alpha_diversity_comparison.csv', index=False)

    # Beta diversity and ordination
    log_print("\nCalculating beta diversity...", level='info')
    beta_dm = calculate_beta_diversity(experiment.otu_table, metric=analysis['beta_metric'])
    beta_dm.to_data_frame().to_csv(tables_dir / f'beta_{analysis["beta_metric"]}.csv')

    coordinates = []
    for method in analysis['ordination_methods']:
        log_print(f"  Creating {method} ordination for {group_var}", level='info')
        coords, fit_stats = ordinate(beta_dm, method=method)
        coordinates.append(coords)

        fig = plot_ordination(coords, metadata_df, group_var, method=method, fit_stats=fit_stats)
        fig.savefig(figures_dir / f'{method.lower()}_{group_var}.{fmt}', dpi=dpi, bbox_inches='tight')
        plt.close(fig)

    if coordinates:
        pd.concat(coordinates, axis=1).join(metadata_df).to_csv(tables_dir / 'ordination_coordinates.csv')

    log_print(f"\nPerforming PERMANOVA for {group_var}", level='info')
    permanova_result = perform_permanova(beta_dm, metadata_df, group_var,
                                         permutations=analysis['permutations'])
    for key, value in permanova_result.items():
        log_print(f"  {key}: {value}", level='info')
    permanova_file = tables_dir / 'permanova_results.csv'
    pd.DataFrame.from_dict({group_var: permanova_result}, orient='index').to_csv(permanova_file)
    log_print(f"PERMANOVA results saved to {permanova_file}", level='info')

    # Taxonomic composition
    log_print("\nSummarising taxonomic composition...", level='info')
    for rank in analysis['bar_ranks']:
        if rank not in experiment.ranks:
            log_print(f"Rank {rank} not in taxonomy table, skipping", level='warning')
            continue

        rank_abundance = experiment.aggregate_rank(rank, relative=True)
        rank_abundance.to_csv(tables_dir / f'relative_abundance_{rank.lower()}.csv')

        fig = plot_stacked_bar(rank_abundance, metadata_df, group_var,
                               top_n=analysis['top_n'], rank=rank)
        fig.savefig(figures_dir / f'barplot_{rank.lower()}.{fmt}', dpi=dpi, bbox_inches='tight')
        plt.close(fig)

        results_df = differential_abundance_analysis(rank_abundance, metadata_df, group_var,
                                                     analysis['conditions'])
        results_file = tables_dir / f'differential_abundance_{rank.lower()}.csv'
        results_df.to_csv(results_file, index=False)

        if not results_df.empty:
            significant = results_df[results_df['Adjusted P-value'] < analysis['p_value_threshold']]
            log_print(f"  {rank}: {len(significant)} of {len(results_df)} taxa differ between "
                      f"conditions (adjusted p < {analysis['p_value_threshold']})", level='info')


def main():
    """Main function to run the diversity analysis."""
    args = parse_args()
    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    try:
        run_diversity_analysis(args)
    except Exception as e:
        log_print(f"Error during diversity analysis: {str(e)}", level='error')
        log_print(traceback.format_exc(), level='debug')
        sys.exit(1)


if __name__ == "__main__":
    main()
