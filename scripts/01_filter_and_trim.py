#!/usr/bin/env python
# scripts/01_filter_and_trim.py

"""
Discover paired-end reads, inspect quality and filter/trim every sample.

This script:
1. Finds the paired FASTQ files and derives sample names, conditions and replicates
2. Plots per-cycle quality profiles for the first samples
3. Reads the primer metadata and checks that primer lengths are consistent
4. Filters and trims each read pair, removing the primers
5. Saves the sample sheet and the filtering summary

Usage:
    python scripts/01_filter_and_trim.py [--config CONFIG_FILE]
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
    discover_samples,
    load_primer_metadata,
    resolve_primer_lengths,
    quality_profile,
    suggest_truncation_length,
    filter_and_trim,
    PrimerLengthError,
)
from amplicon_tools.amplicon_viz import plot_quality_profile


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Filter and trim paired-end amplicon reads')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--fastq-dir', type=str, default=None,
                        help='Directory with raw FASTQ files (override config)')
    parser.add_argument('--primer-metadata', type=str, default=None,
                        help='Tab-separated primer metadata file (override config)')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory to save results (override config)')
    parser.add_argument('--skip-quality-plots', action='store_true',
                        help='Do not plot quality profiles')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def plot_quality(samples_df, config, figures_dir):
    """Plot forward and reverse quality profiles for the first samples."""
    quality_config = config['quality']
    dpi = config['visualization']['figure_dpi']
    fmt = config['visualization']['figure_format']

    subset = samples_df.head(quality_config['n_samples_plotted'])
    for direction, column in (('forward', 'raw_forward'), ('reverse', 'raw_reverse')):
        profiles = {sample: quality_profile(path, n_reads=quality_config['n_reads'])
                    for sample, path in subset[column].items()}

        for sample, profile in profiles.items():
            suggestion = suggest_truncation_length(profile, quality_config['min_median_quality'])
            log_print(f"  {sample} {direction}: median quality stays >= "
                      f"{quality_config['min_median_quality']} up to cycle {suggestion}", level='info')

        fig = plot_quality_profile(profiles, title=f'{direction.capitalize()} read quality')
        output_file = figures_dir / f'quality_profile_{direction}.{fmt}'
        fig.savefig(output_file, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        log_print(f"Quality profile saved to {output_file}", level='info')


def run_filtering(args):
    """Discover, inspect and filter the raw reads."""
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path)
    input_config = config['input']
    meta_config = config['metadata']
    filter_config = config['filter']

    if args.output_dir:
        output_dir = Path(args.output_dir)
        filtered_dir = output_dir / 'filtered'
    else:
        output_dir = Path(config['output']['output_dir'])
        filtered_dir = Path(config['output']['filtered_dir'])
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [output_dir, figures_dir, tables_dir]:
        os.makedirs(dir_path, exist_ok=True)

    fastq_dir = args.fastq_dir or input_config['fastq_dir']
    log_print(f"Discovering paired reads in {fastq_dir}", level='info')
    samples_df = discover_samples(
        fastq_dir,
        filtered_dir=filtered_dir,
        forward_suffix=input_config['forward_suffix'],
        reverse_suffix=input_config['reverse_suffix'],
        name_pattern=meta_config['sample_name_pattern'],
        condition_column=meta_config['condition_column'],
        replicate_column=meta_config['replicate_column'],
    )

    if not args.skip_quality_plots:
        log_print("\nInspecting read quality...", level='info')
        plot_quality(samples_df, config, figures_dir)

    trim_left = (0, 0)
    if filter_config['trim_primers']:
        primer_file = args.primer_metadata or input_config['primer_metadata']
        log_print(f"Loading primer metadata from {primer_file}", level='info')
        primer_df = load_primer_metadata(primer_file, meta_config['sample_id_column'])

        try:
            trim_left = resolve_primer_lengths(
                primer_df,
                forward_column=meta_config['forward_primer_column'],
                reverse_column=meta_config['reverse_primer_column'],
                samples=samples_df.index,
            )
        except PrimerLengthError as e:
            log_print(f"Primer metadata check failed: {e}", level='error')
            log_print("Fix the primer metadata before filtering; no reads were processed", level='error')
            sys.exit(1)

    log_print(f"\nFiltering reads (truncLen={filter_config['trunc_len']}, trimLeft={list(trim_left)}, "
              f"maxEE={filter_config['max_ee']}, truncQ={filter_config['trunc_q']})", level='info')
    filter_summary = filter_and_trim(
        samples_df,
        trunc_len=filter_config['trunc_len'],
        trim_left=trim_left,
        trunc_q=filter_config['trunc_q'],
        min_len=filter_config['min_len'],
        max_n=filter_config['max_n'],
        max_ee=filter_config['max_ee'],
    )

    samples_file = tables_dir / 'samples.csv'
    samples_df.to_csv(samples_file)
    log_print(f"Sample sheet saved to {samples_file}", level='info')

    summary_file = tables_dir / 'filter_summary.csv'
    filter_summary.to_csv(summary_file)
    log_print(f"Filtering summary saved to {summary_file}", level='info')

    retained = filter_summary['reads.out'].sum() / max(filter_summary['reads.in'].sum(), 1)
    log_print(f"Retained {retained:.1%} of read pairs across {len(filter_summary)} samples", level='info')


def main():
    """Main function to filter and trim the raw reads."""
    args = parse_args()
    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    try:
        run_filtering(args)
    except Exception as e:
        log_print(f"Error during filtering: {str(e)}", level='error')
        log_print(traceback.format_exc(), level='debug')
        sys.exit(1)


if __name__ == "__main__":
    main()
