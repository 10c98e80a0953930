"""
FASTQ handling: per-cycle quality profiles and paired filter-and-trim.
"""

import gzip
from itertools import zip_longest
from pathlib import Path

import numpy as np
import pandas as pd
from Bio import SeqIO

from .logger import get_logger

logger = get_logger('reads')


def open_fastq(path, mode='rt'):
    """Open a FASTQ file, transparently handling gzip compression."""
    path = str(path)
    if path.endswith('.gz'):
        return gzip.open(path, mode)
    return open(path, mode)


def count_reads(path):
    """Count the records in a FASTQ file."""
    with open_fastq(path) as handle:
        return sum(1 for _ in SeqIO.parse(handle, 'fastq'))


def quality_profile(path, n_reads=5000):
    """
    Summarise per-cycle quality scores for the first reads of a FASTQ file.

    Parameters:
    -----------
    path : str or Path
        FASTQ file (plain or gzip)
    n_reads : int
        Number of reads to sample from the start of the file

    Returns:
    --------
    pandas.DataFrame
        One row per cycle with columns Mean, Q25, Median, Q75 and Count
    """
    qualities = []
    with open_fastq(path) as handle:
        for i, record in enumerate(SeqIO.parse(handle, 'fastq')):
            if i >= n_reads:
                break
            qualities.append(record.letter_annotations['phred_quality'])

    if not qualities:
        return pd.DataFrame(columns=['Mean', 'Q25', 'Median', 'Q75', 'Count'],
                            index=pd.Index([], name='Cycle'))

    max_len = max(len(q) for q in qualities)
    matrix = np.full((len(qualities), max_len), np.nan)
    for row, quals in enumerate(qualities):
        matrix[row, :len(quals)] = quals

    profile = pd.DataFrame({
        'Mean': np.nanmean(matrix, axis=0),
        'Q25': np.nanpercentile(matrix, 25, axis=0),
        'Median': np.nanmedian(matrix, axis=0),
        'Q75': np.nanpercentile(matrix, 75, axis=0),
        'Count': (~np.isnan(matrix)).sum(axis=0),
    }, index=pd.RangeIndex(1, max_len + 1, name='Cycle'))

    return profile


def suggest_truncation_length(profile, min_quality=30):
    """
    Suggest a truncation length from a quality profile.

    Returns the last cycle before the median quality first drops below
    ``min_quality``, or the full read length if it never does. This is a
    hint for the operator; the truncation length used is always the one set
    in the configuration.
    """
    if profile.empty:
        return 0
    below = profile.index[profile['Median'] < min_quality]
    if len(below) == 0:
        return int(profile.index.max())
    return int(below[0]) - 1


def _expected_errors(quals):
    return float(np.sum(np.power(10.0, -np.asarray(quals, dtype=float) / 10.0)))


def filter_read(record, trunc_len=0, trim_left=0, trunc_q=2, min_len=20, max_n=0, max_ee=np.inf):
    """
    Apply DADA2-style truncation and filters to a single read.

    Order of operations: truncate at the first base with quality <= trunc_q,
    discard reads shorter than trunc_len and truncate to trunc_len, remove
    trim_left bases from the start, then filter on min_len, max_n and max_ee.

    Returns:
    --------
    Bio.SeqRecord.SeqRecord or None
        The trimmed read, or None if it fails a filter
    """
    quals = record.letter_annotations['phred_quality']
    end = len(record)

    if trunc_q is not None:
        for i, q in enumerate(quals):
            if q <= trunc_q:
                end = i
                break

    if trunc_len:
        if end < trunc_len:
            return None
        end = trunc_len

    if end <= trim_left:
        return None

    trimmed = record[trim_left:end]

    if len(trimmed) < min_len:
        return None
    if max_n is not None and str(trimmed.seq).upper().count('N') > max_n:
        return None
    if max_ee is not None and _expected_errors(trimmed.letter_annotations['phred_quality']) > max_ee:
        return None

    return trimmed


def _pair_values(value, name):
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValueError(f"'{name}' must be a single value or a forward/reverse pair")
        return value[0], value[1]
    return value, value


def filter_and_trim_pair(forward_in, reverse_in, forward_out, reverse_out, trunc_len=(0, 0),
                         trim_left=(0, 0), trunc_q=2, min_len=20, max_n=0, max_ee=(np.inf, np.inf)):
    """
    Filter one pair of FASTQ files, keeping only pairs where both mates pass.

    Returns:
    --------
    tuple of int
        (reads in, reads out)
    """
    trunc_f, trunc_r = _pair_values(trunc_len, 'trunc_len')
    trim_f, trim_r = _pair_values(trim_left, 'trim_left')
    ee_f, ee_r = _pair_values(max_ee, 'max_ee')
    q_f, q_r = _pair_values(trunc_q, 'trunc_q')
    len_f, len_r = _pair_values(min_len, 'min_len')
    n_f, n_r = _pair_values(max_n, 'max_n')

    Path(forward_out).parent.mkdir(parents=True, exist_ok=True)
    Path(reverse_out).parent.mkdir(parents=True, exist_ok=True)

    reads_in = 0
    reads_out = 0
    with open_fastq(forward_in) as fwd_handle, open_fastq(reverse_in) as rev_handle, \
            open_fastq(forward_out, 'wt') as fwd_out, open_fastq(reverse_out, 'wt') as rev_out:
        pairs = zip_longest(SeqIO.parse(fwd_handle, 'fastq'), SeqIO.parse(rev_handle, 'fastq'))
        for forward_record, reverse_record in pairs:
            if forward_record is None or reverse_record is None:
                raise ValueError(
                    f"Mismatched number of reads between {forward_in} and {reverse_in}"
                )
            reads_in += 1

            forward_kept = filter_read(forward_record, trunc_f, trim_f, q_f, len_f, n_f, ee_f)
            if forward_kept is None:
                continue
            reverse_kept = filter_read(reverse_record, trunc_r, trim_r, q_r, len_r, n_r, ee_r)
            if reverse_kept is None:
                continue

            SeqIO.write(forward_kept, fwd_out, 'fastq')
            SeqIO.write(reverse_kept, rev_out, 'fastq')
            reads_out += 1

    return reads_in, reads_out


def filter_and_trim(samples_df, trunc_len=(240, 160), trim_left=(0, 0), trunc_q=2,
                    min_len=20, max_n=0, max_ee=(2, 2)):
    """
    Filter and trim every sample in a sample sheet.

    Parameters:
    -----------
    samples_df : pandas.DataFrame
        Sample sheet from discover_samples()
    trunc_len : int or pair
        Truncation lengths for forward and reverse reads (0 disables)
    trim_left : int or pair
        Bases removed from the start of forward and reverse reads, normally
        the primer lengths
    trunc_q : int
        Truncate reads at the first base with quality <= trunc_q
    min_len : int
        Minimum read length after trimming
    max_n : int
        Maximum number of ambiguous bases
    max_ee : float or pair
        Maximum expected errors for forward and reverse reads

    Returns:
    --------
    pandas.DataFrame
        reads.in and reads.out per sample
    """
    results = {}
    for sample, row in samples_df.iterrows():
        reads_in, reads_out = filter_and_trim_pair(
            row['raw_forward'], row['raw_reverse'],
            row['filtered_forward'], row['filtered_reverse'],
            trunc_len=trunc_len, trim_left=trim_left, trunc_q=trunc_q,
            min_len=min_len, max_n=max_n, max_ee=max_ee
        )
        results[sample] = {'reads.in': reads_in, 'reads.out': reads_out}
        logger.info(f"{sample}: {reads_out}/{reads_in} read pairs passed filtering")

        if reads_out == 0:
            logger.warning(f"{sample}: no reads passed the filter")

    summary = pd.DataFrame.from_dict(results, orient='index', columns=['reads.in', 'reads.out'])
    summary.index.name = 'Sample'
    return summary
