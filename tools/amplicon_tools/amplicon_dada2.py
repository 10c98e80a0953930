"""
Bridge to the R dada2 package for error learning, denoising, pair merging,
chimera removal and taxonomy assignment.

The R side is reached through rpy2 and is imported lazily, so everything
else in amplicon_tools works on machines without R. run_dada2_workflow()
and assign_taxonomy_table() accept any backend object exposing the same
methods as Dada2Backend.
"""

from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd

from .amplicon_utils import build_read_track
from .logger import get_logger

logger = get_logger('dada2')

TRACK_STAGES = ['input', 'filtered', 'denoisedF', 'denoisedR', 'merged', 'nonchim']


class Dada2Backend:
    """
    Thin wrapper around the dada2 R package.

    Parameters:
    -----------
    multithread : bool or int
        Passed to the dada2 functions that support multithreading
    seed : int, optional
        Seed for R's random number generator
    """

    def __init__(self, multithread=True, seed=None):
        from rpy2 import robjects
        from rpy2.robjects.packages import importr

        self._ro = robjects
        self._base = importr('base')
        self._dada2 = importr('dada2')
        self.multithread = multithread

        if seed is not None:
            robjects.r['set.seed'](int(seed))

    # -- conversions ---------------------------------------------------

    def _matrix_to_frame(self, matrix):
        from rpy2.rinterface import NA_Character, NA_Integer

        nrow = int(self._base.nrow(matrix)[0])
        ncol = int(self._base.ncol(matrix)[0])
        rownames = list(self._base.rownames(matrix))
        colnames = list(self._base.colnames(matrix))

        values = [None if v is NA_Character or v is NA_Integer else v for v in matrix]
        array = np.array(values, dtype=object).reshape((nrow, ncol), order='F')
        return pd.DataFrame(array, index=rownames, columns=colnames)

    def _frame_to_int_matrix(self, df):
        ro = self._ro
        return ro.r['matrix'](
            ro.IntVector(df.values.astype(int).ravel(order='F')),
            nrow=df.shape[0], ncol=df.shape[1],
            dimnames=ro.r['list'](ro.StrVector([str(i) for i in df.index]),
                                  ro.StrVector([str(c) for c in df.columns]))
        )

    def _frame_to_str_matrix(self, df):
        from rpy2.rinterface import NA_Character

        ro = self._ro
        values = [NA_Character if pd.isna(v) else str(v) for v in df.values.ravel(order='F')]
        return ro.r['matrix'](
            ro.StrVector(values),
            nrow=df.shape[0], ncol=df.shape[1],
            dimnames=ro.r['list'](ro.StrVector([str(i) for i in df.index]),
                                  ro.StrVector([str(c) for c in df.columns]))
        )

    # -- dada2 calls ---------------------------------------------------

    def learn_errors(self, files, nbases=1e8, randomize=False):
        """Learn an error model from a set of filtered FASTQ files."""
        return self._dada2.learnErrors(
            self._ro.StrVector([str(f) for f in files]),
            nbases=float(nbases), randomize=randomize, multithread=self.multithread
        )

    def plot_errors(self, error_model, output_file):
        """Save the dada2 error-rate diagnostic plot."""
        from rpy2.robjects.packages import importr

        ggplot2 = importr('ggplot2')
        plot = self._dada2.plotErrors(error_model, nominalQ=True)
        ggplot2.ggsave(filename=str(output_file), plot=plot, width=8, height=8)

    def denoise(self, files, error_model, pool=False):
        """Run sample inference; returns one dada object per file."""
        result = self._dada2.dada(
            self._ro.StrVector([str(f) for f in files]),
            err=error_model, pool=pool, multithread=self.multithread
        )
        # dada() returns a bare dada object rather than a list for one file
        if self._ro.r['inherits'](result, 'dada')[0]:
            return [result]
        return list(result)

    def count_denoised(self, dada_result):
        return int(self._base.sum(self._dada2.getUniques(dada_result))[0])

    def merge_pairs(self, dada_forward, forward_file, dada_reverse, reverse_file,
                    min_overlap=12, max_mismatch=0):
        return self._dada2.mergePairs(
            dada_forward, str(forward_file), dada_reverse, str(reverse_file),
            minOverlap=min_overlap, maxMismatch=max_mismatch
        )

    def count_merged(self, merged):
        return int(self._base.sum(merged.rx2('abundance'))[0])

    def make_sequence_table(self, merged_by_sample):
        """Build the samples x sequences abundance table."""
        merged_list = self._ro.vectors.ListVector(list(merged_by_sample.items()))
        seqtab = self._dada2.makeSequenceTable(merged_list)
        return self._matrix_to_frame(seqtab).astype(np.int64)

    def remove_chimeras(self, seqtab, method='consensus'):
        result = self._dada2.removeBimeraDenovo(
            self._frame_to_int_matrix(seqtab), method=method, multithread=self.multithread
        )
        return self._matrix_to_frame(result).astype(np.int64)

    def assign_taxonomy(self, sequences, reference_db, min_boot=50, try_rc=False):
        result = self._dada2.assignTaxonomy(
            self._ro.StrVector(list(sequences)), str(reference_db),
            minBoot=min_boot, tryRC=try_rc, multithread=self.multithread
        )
        return self._matrix_to_frame(result)

    def add_species(self, taxonomy_df, species_db):
        result = self._dada2.addSpecies(self._frame_to_str_matrix(taxonomy_df), str(species_db))
        return self._matrix_to_frame(result)


@dataclass
class DenoisingResult:
    """Outputs of the denoising workflow."""
    seqtab: pd.DataFrame
    seqtab_nochim: pd.DataFrame
    stage_counts: dict
    error_models: tuple = (None, None)
    track: pd.DataFrame = None


def check_chimera_removal(seqtab, seqtab_nochim):
    """
    Verify that chimera removal only ever removes reads.

    Raises ValueError if a sample gains reads or a new sequence variant
    appears in the chimera-free table.
    """
    new_variants = set(seqtab_nochim.columns) - set(seqtab.columns)
    if new_variants:
        raise ValueError(f"{len(new_variants)} sequence variants appeared during chimera removal")

    before = seqtab.sum(axis=1)
    after = seqtab_nochim.sum(axis=1).reindex(before.index, fill_value=0)
    increased = before.index[after > before]
    if len(increased) > 0:
        raise ValueError(f"Chimera removal increased read counts for: {', '.join(map(str, increased))}")

    if before.sum() > 0:
        logger.info(f"Chimera removal kept {after.sum() / before.sum():.1%} of merged reads "
                    f"({seqtab_nochim.shape[1]} of {seqtab.shape[1]} variants)")


def run_dada2_workflow(samples_df, backend, filter_summary=None, nbases=1e8, randomize=False,
                       pool=False, min_overlap=12, max_mismatch=0, chimera_method='consensus',
                       error_plot_dir=None, figure_format='pdf'):
    """
    Learn error models, denoise, merge pairs and build the chimera-free
    sequence table.

    Parameters:
    -----------
    samples_df : pandas.DataFrame
        Sample sheet from discover_samples()
    backend : Dada2Backend
        Object implementing the dada2 calls
    filter_summary : pandas.DataFrame, optional
        Output of filter_and_trim(); samples with no surviving reads are
        skipped and its counts seed the read-tracking table
    error_plot_dir : str or Path, optional
        Directory to save the error-model plots
    figure_format : str
        File extension for the error-model plots (default: pdf)

    Returns:
    --------
    DenoisingResult
    """
    samples = samples_df
    if filter_summary is not None:
        kept = filter_summary.index[filter_summary['reads.out'] > 0]
        dropped = [s for s in samples_df.index if s not in kept]
        if dropped:
            logger.warning(f"Skipping samples with no filtered reads: {', '.join(dropped)}")
        samples = samples_df.loc[[s for s in samples_df.index if s in kept]]

    if samples.empty:
        raise ValueError("No samples with filtered reads to denoise")

    sample_names = list(samples.index)
    filts_forward = list(samples['filtered_forward'])
    filts_reverse = list(samples['filtered_reverse'])

    logger.info("Learning forward error model")
    error_forward = backend.learn_errors(filts_forward, nbases=nbases, randomize=randomize)
    logger.info("Learning reverse error model")
    error_reverse = backend.learn_errors(filts_reverse, nbases=nbases, randomize=randomize)

    if error_plot_dir is not None:
        error_plot_dir = Path(error_plot_dir)
        error_plot_dir.mkdir(parents=True, exist_ok=True)
        backend.plot_errors(error_forward, error_plot_dir / f'error_rates_forward.{figure_format}')
        backend.plot_errors(error_reverse, error_plot_dir / f'error_rates_reverse.{figure_format}')

    logger.info(f"Denoising {len(sample_names)} samples")
    dada_forward = dict(zip(sample_names, backend.denoise(filts_forward, error_forward, pool=pool)))
    dada_reverse = dict(zip(sample_names, backend.denoise(filts_reverse, error_reverse, pool=pool)))

    merged = {}
    for sample, forward_file, reverse_file in zip(sample_names, filts_forward, filts_reverse):
        merged[sample] = backend.merge_pairs(
            dada_forward[sample], forward_file, dada_reverse[sample], reverse_file,
            min_overlap=min_overlap, max_mismatch=max_mismatch
        )

    seqtab = backend.make_sequence_table(merged)
    logger.info(f"Sequence table: {seqtab.shape[0]} samples, {seqtab.shape[1]} sequence variants")

    seqtab_nochim = backend.remove_chimeras(seqtab, method=chimera_method)
    check_chimera_removal(seqtab, seqtab_nochim)

    stage_counts = {}
    if filter_summary is not None:
        stage_counts['input'] = filter_summary['reads.in'].to_dict()
        stage_counts['filtered'] = filter_summary['reads.out'].to_dict()
    stage_counts['denoisedF'] = {s: backend.count_denoised(d) for s, d in dada_forward.items()}
    stage_counts['denoisedR'] = {s: backend.count_denoised(d) for s, d in dada_reverse.items()}
    stage_counts['merged'] = {s: backend.count_merged(m) for s, m in merged.items()}
    stage_counts['nonchim'] = seqtab_nochim.sum(axis=1).to_dict()

    track = build_read_track(stage_counts)

    return DenoisingResult(
        seqtab=seqtab,
        seqtab_nochim=seqtab_nochim,
        stage_counts=stage_counts,
        error_models=(error_forward, error_reverse),
        track=track,
    )


def assign_taxonomy_table(seqtab, backend, reference_db, species_db=None, min_boot=50, try_rc=False):
    """
    Assign taxonomy to every sequence variant in a sequence table.

    Returns:
    --------
    pandas.DataFrame
        Taxonomy table with the sequences as index, in the column order of
        the sequence table, and one column per rank
    """
    if not Path(reference_db).exists():
        raise FileNotFoundError(f"Taxonomy reference database not found: {reference_db}")

    sequences = list(seqtab.columns)
    logger.info(f"Assigning taxonomy to {len(sequences)} sequence variants using {reference_db}")
    taxonomy_df = backend.assign_taxonomy(sequences, reference_db, min_boot=min_boot, try_rc=try_rc)

    if species_db:
        if not Path(species_db).exists():
            raise FileNotFoundError(f"Species reference database not found: {species_db}")
        taxonomy_df = backend.add_species(taxonomy_df, species_db)

    missing = set(sequences) - set(taxonomy_df.index)
    if missing or len(taxonomy_df) != len(sequences):
        raise ValueError(
            f"Taxonomy table has {len(taxonomy_df)} rows for {len(sequences)} sequence variants"
        )

    return taxonomy_df.reindex(sequences)


def sequence_length_distribution(seqtab):
    """Count sequence variants and reads per merged sequence length."""
    lengths = pd.Series([len(s) for s in seqtab.columns], index=seqtab.columns)
    reads = seqtab.sum(axis=0)
    distribution = pd.DataFrame({
        'Variants': lengths.value_counts(),
        'Reads': reads.groupby(lengths).sum(),
    }).fillna(0).astype(np.int64).sort_index()
    distribution.index.name = 'Length'
    return distribution
