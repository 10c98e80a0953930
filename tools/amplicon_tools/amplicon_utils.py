"""
Utility functions for amplicon data handling: configuration, sample
discovery, primer metadata and the read-tracking report.
"""

import copy
import os
import re
from pathlib import Path

import pandas as pd
import numpy as np
import yaml

from .logger import get_logger

logger = get_logger('utils')

DEFAULT_CONFIG = {
    'input': {
        'fastq_dir': 'data/raw',
        'forward_suffix': '_R1_001.fastq.gz',
        'reverse_suffix': '_R2_001.fastq.gz',
        'primer_metadata': 'data/primer_metadata.tsv',
    },
    'metadata': {
        'sample_id_column': '#SampleID',
        'forward_primer_column': 'LinkerPrimerSequence',
        'reverse_primer_column': 'ReversePrimer',
        'sample_name_pattern': r'^(?P<condition>.+?)[-_.]?(?P<replicate>\d+)$',
        'condition_column': 'Condition',
        'replicate_column': 'Replicate',
    },
    'quality': {
        'n_reads': 5000,
        'n_samples_plotted': 2,
        'min_median_quality': 30,
    },
    'filter': {
        'trunc_len': [240, 160],
        'trim_primers': True,
        'max_n': 0,
        'max_ee': [2, 2],
        'trunc_q': 2,
        'min_len': 20,
    },
    'dada2': {
        'multithread': True,
        'nbases': 100000000,
        'randomize': False,
        'pool': False,
        'min_overlap': 12,
        'max_mismatch': 0,
        'chimera_method': 'consensus',
        'seed': 100,
    },
    'taxonomy': {
        'reference_db': 'data/silva_nr99_v138.1_train_set.fa.gz',
        'species_db': None,
        'min_boot': 50,
        'try_rc': False,
    },
    'analysis': {
        'condition_variable': 'Condition',
        'conditions': None,
        'alpha_metrics': ['shannon', 'simpson', 'observed_otus', 'chao1'],
        'beta_metric': 'braycurtis',
        'ordination_methods': ['NMDS', 'PCoA'],
        'permutations': 999,
        'bar_ranks': ['Phylum', 'Family', 'Genus'],
        'top_n': 10,
        'ratio_rank': 'Family',
        'numerator_family': 'Acetobacteraceae',
        'denominator_family': 'Lactobacillaceae',
        'p_value_threshold': 0.05,
    },
    'visualization': {
        'figure_dpi': 300,
        'figure_format': 'pdf',
    },
    'output': {
        'output_dir': 'results',
        'filtered_dir': 'results/filtered',
    },
}


class PrimerLengthError(ValueError):
    """Raised when primers of one orientation do not share a single length."""


class ReadTrackError(ValueError):
    """Raised when read counts increase between pipeline stages."""


def _deep_update(base, updates):
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path=None):
    """
    Load the YAML analysis configuration on top of the built-in defaults.

    Parameters:
    -----------
    config_path : str or Path, optional
        Path to a YAML configuration file

    Returns:
    --------
    dict
        Configuration dictionary; sections missing from the file keep their
        default values
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is None:
        return config

    if not os.path.exists(config_path):
        logger.warning(f"Config file not found at {config_path}, using default parameters")
        return config

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping at the top level")

    return _deep_update(config, user_config)


def parse_sample_name(sample_name, pattern=DEFAULT_CONFIG['metadata']['sample_name_pattern']):
    """
    Split a sample name into condition and replicate labels.

    Returns a (condition, replicate) tuple. Names that do not match the
    pattern are returned whole as the condition with an empty replicate.
    """
    match = re.match(pattern, sample_name)
    if match is None:
        return sample_name, ''

    groups = match.groupdict()
    condition = groups.get('condition') or sample_name
    replicate = groups.get('replicate') or ''
    return condition, replicate


def discover_samples(fastq_dir, filtered_dir=None, forward_suffix='_R1_001.fastq.gz',
                     reverse_suffix='_R2_001.fastq.gz', name_pattern=None,
                     condition_column='Condition', replicate_column='Replicate'):
    """
    Enumerate paired-end read files and build a sample sheet.

    The sample name is the part of the forward filename before the first
    underscore, e.g. ``WT-1_S1_L001_R1_001.fastq.gz`` -> ``WT-1``.

    Parameters:
    -----------
    fastq_dir : str or Path
        Directory holding the raw FASTQ files
    filtered_dir : str or Path, optional
        Directory where filtered reads will be written
        (default: ``<fastq_dir>/filtered``)
    forward_suffix, reverse_suffix : str
        Filename endings identifying forward and reverse reads
    name_pattern : str, optional
        Regular expression with ``condition`` and ``replicate`` groups

    Returns:
    --------
    pandas.DataFrame
        Sample sheet indexed by sample name with columns raw_forward,
        raw_reverse, filtered_forward, filtered_reverse and the condition and
        replicate columns
    """
    fastq_dir = Path(fastq_dir)
    if not fastq_dir.is_dir():
        raise FileNotFoundError(f"FASTQ directory not found: {fastq_dir}")

    filtered_dir = Path(filtered_dir) if filtered_dir is not None else fastq_dir / 'filtered'
    if name_pattern is None:
        name_pattern = DEFAULT_CONFIG['metadata']['sample_name_pattern']

    forward_files = sorted(p for p in fastq_dir.iterdir() if p.name.endswith(forward_suffix))
    reverse_files = sorted(p for p in fastq_dir.iterdir() if p.name.endswith(reverse_suffix))

    if not forward_files:
        raise FileNotFoundError(f"No files ending in '{forward_suffix}' found in {fastq_dir}")

    # Pair mates on the filename stem that precedes the read suffix
    forward_by_stem = {p.name[:-len(forward_suffix)]: p for p in forward_files}
    reverse_by_stem = {p.name[:-len(reverse_suffix)]: p for p in reverse_files}

    unpaired = sorted(set(forward_by_stem).symmetric_difference(reverse_by_stem))
    if unpaired:
        raise FileNotFoundError(f"Missing mate files for: {', '.join(unpaired)}")

    rows = []
    for stem in sorted(forward_by_stem):
        sample_name = stem.split('_')[0]
        condition, replicate = parse_sample_name(sample_name, name_pattern)
        rows.append({
            'Sample': sample_name,
            'raw_forward': str(forward_by_stem[stem]),
            'raw_reverse': str(reverse_by_stem[stem]),
            'filtered_forward': str(filtered_dir / f'{sample_name}_F_filt.fastq.gz'),
            'filtered_reverse': str(filtered_dir / f'{sample_name}_R_filt.fastq.gz'),
            condition_column: condition,
            replicate_column: replicate,
        })

    samples_df = pd.DataFrame(rows).set_index('Sample')

    if samples_df.index.duplicated().any():
        duplicates = samples_df.index[samples_df.index.duplicated()].unique().tolist()
        raise ValueError(f"Sample names are not unique after parsing filenames: {duplicates}")

    logger.info(f"Found {len(samples_df)} paired samples in {fastq_dir}")
    return samples_df


def load_primer_metadata(filepath, sample_id_column='#SampleID'):
    """
    Load the tab-separated primer metadata file.

    Parameters:
    -----------
    filepath : str or Path
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = pd.read_csv(filepath, sep='\t', dtype=str)

    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in {filepath}")

    metadata_df = metadata_df.set_index(sample_id_column)
    if metadata_df.index.duplicated().any():
        logger.warning(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in primer metadata")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    return metadata_df


def resolve_primer_lengths(primer_df, forward_column='LinkerPrimerSequence',
                           reverse_column='ReversePrimer', samples=None):
    """
    Confirm that all forward primers share one length and all reverse
    primers share one length.

    Parameters:
    -----------
    primer_df : pandas.DataFrame
        Per-sample primer metadata with samples as index
    forward_column, reverse_column : str
        Columns holding the primer sequences
    samples : list, optional
        Samples in the run. Only their rows are checked, and every one of
        them must have a row.

    Returns:
    --------
    tuple of int
        (forward primer length, reverse primer length)

    Raises:
    -------
    PrimerLengthError
        If either orientation has more than one primer length, or a sample
        in the run has no primer metadata
    """
    if samples is not None:
        samples = [str(s) for s in samples]
        known = set(primer_df.index.astype(str))
        missing_samples = [s for s in samples if s not in known]
        if missing_samples:
            raise PrimerLengthError(
                f"Samples without primer metadata: {', '.join(missing_samples)}"
            )
        primer_df = primer_df[primer_df.index.astype(str).isin(samples)]

    if primer_df.empty:
        raise PrimerLengthError("Primer metadata contains no samples")

    lengths = []
    for column in (forward_column, reverse_column):
        if column not in primer_df.columns:
            raise PrimerLengthError(f"Primer column '{column}' not found in metadata")

        primers = primer_df[column]
        missing = primers[primers.isna() | (primers.astype(str).str.strip() == '')]
        if not missing.empty:
            raise PrimerLengthError(
                f"Samples without a primer in '{column}': {', '.join(map(str, missing.index))}"
            )

        primer_lengths = primers.astype(str).str.strip().str.len()
        unique_lengths = sorted(primer_lengths.unique())
        if len(unique_lengths) != 1:
            by_length = {
                int(length): primer_lengths.index[primer_lengths == length].tolist()
                for length in unique_lengths
            }
            raise PrimerLengthError(
                f"Inconsistent primer lengths in '{column}': {by_length}"
            )
        lengths.append(int(unique_lengths[0]))

    logger.info(f"Primer lengths resolved: forward={lengths[0]}, reverse={lengths[1]}")
    return lengths[0], lengths[1]


def build_read_track(stage_counts, check=True):
    """
    Join per-stage read counts into one table indexed by sample.

    Parameters:
    -----------
    stage_counts : dict
        Ordered mapping of stage name -> {sample: count} (or pandas.Series)
    check : bool
        Raise ReadTrackError when a sample gains reads between stages

    Returns:
    --------
    pandas.DataFrame
        Track table with samples as index and one column per stage
    """
    track = pd.DataFrame({stage: pd.Series(counts, dtype='float64')
                          for stage, counts in stage_counts.items()})
    # A sample absent from a later stage lost all of its reads there
    track = track.fillna(0).astype(np.int64)
    track.index.name = 'Sample'

    if check:
        violations = find_read_track_violations(track)
        if violations:
            raise ReadTrackError(
                f"Read counts increase between stages for samples: {', '.join(violations)}"
            )

    return track


# Forward and reverse reads are denoised side by side, so neither bounds the other
PARALLEL_STAGES = [('denoisedF', 'denoisedR')]


def _stage_levels(stages):
    levels = []
    for stage in stages:
        if levels and any(stage in group and levels[-1][0] in group for group in PARALLEL_STAGES):
            levels[-1].append(stage)
        else:
            levels.append([stage])
    return levels


def find_read_track_violations(track):
    """
    Return the samples whose read counts increase from one stage to the next.

    Parallel stages (forward and reverse denoising) are each compared with
    the stage before them, and the stage after them must not exceed the
    smaller of the two.
    """
    levels = _stage_levels(list(track.columns))
    if len(levels) < 2:
        return []

    increased = pd.Series(False, index=track.index)
    for previous, current in zip(levels, levels[1:]):
        ceiling = track[previous].min(axis=1)
        increased |= track[current].max(axis=1) > ceiling
    return [str(sample) for sample in track.index[increased]]


def export_biom_format(counts_df, output_file, taxonomy_df=None):
    """
    Export a feature table to BIOM format.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Feature table with samples as index, sequence variants as columns
    output_file : str
        Path to save BIOM file
    taxonomy_df : pandas.DataFrame, optional
        Taxonomy table used as observation metadata

    Returns:
    --------
    str
        Path of the written file
    """
    from biom import Table
    from biom.util import biom_open

    observation_metadata = None
    if taxonomy_df is not None:
        observation_metadata = [
            {'taxonomy': [str(v) for v in taxonomy_df.loc[variant].fillna('NA')]}
            for variant in counts_df.columns
        ]

    table = Table(
        counts_df.T.values,
        observation_ids=list(counts_df.columns),
        sample_ids=list(counts_df.index),
        observation_metadata=observation_metadata
    )

    with biom_open(str(output_file), 'w') as f:
        table.to_hdf5(f, "amplicon_tools feature table")

    logger.info(f"Exported feature table to BIOM format: {output_file}")
    return str(output_file)
