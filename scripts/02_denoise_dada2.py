#!/usr/bin/env python
# scripts/02_denoise_dada2.py

"""
Denoise filtered reads with DADA2 and assign taxonomy.

This script:
1. Loads the sample sheet and filtering summary written by 01_filter_and_trim.py
2. Learns forward and reverse error models
3. Infers sequence variants per sample and merges read pairs
4. Builds the sequence table and removes chimeras
5. Writes the read-tracking report
6. Assigns taxonomy and exports the combined experiment tables

Usage:
    python scripts/02_denoise_dada2.py [--config CONFIG_FILE]
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
    Dada2Backend,
    run_dada2_workflow,
    assign_taxonomy_table,
    sequence_length_distribution,
    AmpliconExperiment,
    export_biom_format,
)
from amplicon_tools.amplicon_viz import plot_read_track


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Denoise amplicon reads with DADA2')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory with results of the filtering step (override config)')
    parser.add_argument('--reference-db', type=str, default=None,
                        help='Taxonomy training set (override config)')
    parser.add_argument('--biom', action='store_true',
                        help='Also export the feature table in BIOM format')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def run_denoising(args):
    """Denoise the filtered reads, assign taxonomy and export the experiment."""

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path)
    dada2_config = config['dada2']
    tax_config = config['taxonomy']
    meta_config = config['metadata']
    dpi = config['visualization']['figure_dpi']
    fmt = config['visualization']['figure_format']

    output_dir = Path(args.output_dir or config['output']['output_dir'])
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    for dir_path in [figures_dir, tables_dir]:
        os.makedirs(dir_path, exist_ok=True)

    samples_file = tables_dir / 'samples.csv'
    summary_file = tables_dir / 'filter_summary.csv'
    for path in (samples_file, summary_file):
        if not path.exists():
            log_print(f"{path} not found. Please run 01_filter_and_trim.py first.", level='error')
            sys.exit(1)

    samples_df = pd.read_csv(samples_file, index_col=0, dtype=str)
    filter_summary = pd.read_csv(summary_file, index_col=0, dtype={'Sample': str})
    log_print(f"Loaded {len(samples_df)} samples from {samples_file}", level='info')

    backend = Dada2Backend(multithread=dada2_config['multithread'], seed=dada2_config['seed'])

    result = run_dada2_workflow(
        samples_df,
        backend,
        filter_summary=filter_summary,
        nbases=dada2_config['nbases'],
        randomize=dada2_config['randomize'],
        pool=dada2_config['pool'],
        min_overlap=dada2_config['min_overlap'],
        max_mismatch=dada2_config['max_mismatch'],
        chimera_method=dada2_config['chimera_method'],
        error_plot_dir=figures_dir,
        figure_format=fmt,
    )

    seqtab_file = tables_dir / 'seqtab.csv'
    result.seqtab_nochim.to_csv(seqtab_file, index_label='Sample')
    log_print(f"Chimera-free sequence table saved to {seqtab_file}", level='info')

    lengths_file = tables_dir / 'sequence_lengths.csv'
    sequence_length_distribution(result.seqtab_nochim).to_csv(lengths_file)
    log_print(f"Sequence length distribution saved to {lengths_file}", level='info')

    track_file = tables_dir / 'read_tracking.csv'
    result.track.to_csv(track_file)
    log_print(f"Read tracking table saved to {track_file}", level='info')
    log_print(f"\n{result.track.to_string()}", level='info')

    fig = plot_read_track(result.track)
    fig.savefig(figures_dir / f'read_tracking.{fmt}', dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    reference_db = args.reference_db or tax_config['reference_db']
    taxonomy_df = assign_taxonomy_table(
        result.seqtab_nochim,
        backend,
        reference_db,
        species_db=tax_config['species_db'],
        min_boot=tax_config['min_boot'],
        try_rc=tax_config['try_rc'],
    )

    sample_columns = [meta_config['condition_column'], meta_config['replicate_column']]
    sample_data = samples_df.loc[result.seqtab_nochim.index, sample_columns]

    experiment = AmpliconExperiment(result.seqtab_nochim, taxonomy_df, sample_data).rename_variants()
    log_print(f"Built {experiment}", level='info')

    paths = experiment.export(tables_dir)
    for name, path in paths.items():
        log_print(f"  {name} saved to {path}", level='info')

    if args.biom:
        export_biom_format(experiment.otu_table, tables_dir / 'otu_table.biom', experiment.tax_table)


def main():
    """Main function to run the DADA2 workflow."""
    args = parse_args()
    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    try:
        run_denoising(args)
    except Exception as e:
        log_print(f"Error during denoising: {str(e)}", level='error')
        log_print(traceback.format_exc(), level='debug')
        sys.exit(1)


if __name__ == "__main__":
    main()
