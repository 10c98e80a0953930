#!/usr/bin/env python
# scripts/04_family_ratio_analysis.py

"""
Two-family ratio analysis.

This script:
1. Loads the exported experiment tables
2. Computes per-sample totals and proportions of the two focal families and
   everything else, and the ratio of the two family proportions
3. Compares proportions and ratio between the two conditions
4. Exports the ratio tables and plots

Usage:
    python scripts/04_family_ratio_analysis.py [--config CONFIG_FILE]
"""

import os
import sys
import argparse
import logging
import traceback
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
    calculate_family_ratios,
    compare_conditions,
)
from amplicon_tools.amplicon_viz import plot_ratio_boxplot, plot_stacked_bar


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Ratio of two bacterial families per sample')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory with the exported tables (override config)')
    parser.add_argument('--numerator', type=str, default=None,
                        help='Numerator family (override config)')
    parser.add_argument('--denominator', type=str, default=None,
                        help='Denominator family (override config)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def run_ratio_analysis(args):
    """Compute, compare and plot the two-family ratios."""
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path)
    analysis = config['analysis']
    group_var = analysis['condition_variable']
    numerator = args.numerator or analysis['numerator_family']
    denominator = args.denominator or analysis['denominator_family']
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
    )
    if analysis['conditions']:
        experiment = experiment.subset_samples(group_var, analysis['conditions'])
    metadata_df = experiment.sample_data

    log_print(f"Calculating {numerator}/{denominator} ratios at rank {analysis['ratio_rank']}", level='info')
    ratio_df = calculate_family_ratios(experiment, numerator, denominator, rank=analysis['ratio_rank'])

    undefined = ratio_df['Ratio'].isna()
    if undefined.any():
        log_print(f"Ratio undefined (no {denominator} reads) for: "
                  f"{', '.join(ratio_df.index[undefined])}", level='warning')

    ratio_file = tables_dir / 'family_ratios.csv'
    ratio_df.join(metadata_df).to_csv(ratio_file)
    log_print(f"Family ratio table saved to {ratio_file}", level='info')

    proportion_columns = [f'{numerator}_proportion', f'{denominator}_proportion', 'Other_proportion']
    comparison = compare_conditions(ratio_df[proportion_columns + ['Ratio']], metadata_df,
                                    group_var, analysis['conditions'])
    comparison_file = tables_dir / 'ratio_comparison.csv'
    comparison.to_csv(comparison_file, index=False)
    log_print(f"Condition comparison saved to {comparison_file}", level='info')

    for _, row in comparison.iterrows():
        log_print(f"  {row['Variable']}: {row['Group1']} mean={row['Mean in Group1']:.4g}, "
                  f"{row['Group2']} mean={row['Mean in Group2']:.4g}, "
                  f"Mann-Whitney p={row['P-value']:.4g}", level='info')

    fig = plot_ratio_boxplot(ratio_df, metadata_df, group_var, column='Ratio', log_scale=True)
    fig.savefig(figures_dir / f'family_ratio_by_{group_var}.{fmt}', dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    proportions = ratio_df[proportion_columns].dropna()
    proportions.columns = [numerator, denominator, 'Other']
    fig = plot_stacked_bar(proportions, metadata_df, group_var, top_n=3, other_category=False,
                           rank=analysis['ratio_rank'])
    fig.savefig(figures_dir / f'family_proportions.{fmt}', dpi=dpi, bbox_inches='tight')
    plt.close(fig)


def main():
    """Main function to compute and compare family ratios."""
    args = parse_args()
    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    try:
        run_ratio_analysis(args)
    except Exception as e:
        log_print(f"Error during ratio analysis: {str(e)}", level='error')
        log_print(traceback.format_exc(), level='debug')
        sys.exit(1)


if __name__ == "__main__":
    main()
