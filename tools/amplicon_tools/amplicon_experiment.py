"""
Combined experiment object holding the feature table, taxonomy table,
sample metadata and reference sequences of an amplicon study.
"""

from pathlib import Path

import numpy as np
import pandas as pd
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from .logger import get_logger

logger = get_logger('experiment')

UNASSIGNED = 'Unassigned'


class ExperimentError(ValueError):
    """Raised when the tables of an experiment do not agree with each other."""


class AmpliconExperiment:
    """
    Feature table, taxonomy and sample metadata for one amplicon study.

    Parameters:
    -----------
    otu_table : pandas.DataFrame
        Abundance counts with samples as index, sequence variants as columns
    tax_table : pandas.DataFrame
        Taxonomy with sequence variants as index, ranks as columns
    sample_data : pandas.DataFrame
        Sample metadata with samples as index
    refseqs : dict, optional
        Mapping of variant identifier -> nucleotide sequence
    """

    def __init__(self, otu_table, tax_table, sample_data, refseqs=None):
        self.otu_table = otu_table.copy()
        self.tax_table = tax_table.copy()
        self.sample_data = sample_data.copy()
        self.refseqs = dict(refseqs) if refseqs is not None else None

        self.otu_table.index = self.otu_table.index.astype(str)
        self.sample_data.index = self.sample_data.index.astype(str)
        self.otu_table.index.name = 'Sample'
        self.sample_data.index.name = 'Sample'

        self._validate()

        # Metadata and taxonomy follow the feature table ordering
        self.sample_data = self.sample_data.loc[self.otu_table.index]
        self.tax_table = self.tax_table.loc[self.otu_table.columns]

    def _validate(self):
        if self.otu_table.isna().any().any():
            raise ExperimentError("Feature table contains missing values")

        values = self.otu_table.values
        if not np.issubdtype(values.dtype, np.number):
            raise ExperimentError("Feature table must be numeric")
        if (values < 0).any():
            raise ExperimentError("Feature table contains negative counts")
        if not np.all(np.mod(values, 1) == 0):
            raise ExperimentError("Feature table must contain integer counts")
        self.otu_table = self.otu_table.astype(np.int64)

        otu_samples = set(self.otu_table.index)
        meta_samples = set(self.sample_data.index)
        if otu_samples != meta_samples:
            only_otu = sorted(otu_samples - meta_samples)
            only_meta = sorted(meta_samples - otu_samples)
            raise ExperimentError(
                f"Sample identifiers differ between feature table and metadata "
                f"(only in feature table: {only_otu}; only in metadata: {only_meta})"
            )

        if self.otu_table.columns.duplicated().any():
            raise ExperimentError("Feature table has duplicated sequence variants")
        if self.tax_table.index.duplicated().any():
            raise ExperimentError("Taxonomy table has duplicated sequence variants")

        if len(self.tax_table) != self.otu_table.shape[1] or \
                set(self.tax_table.index) != set(self.otu_table.columns):
            raise ExperimentError(
                f"Taxonomy table has {len(self.tax_table)} rows but the feature table has "
                f"{self.otu_table.shape[1]} sequence variants"
            )

        if self.refseqs is not None and set(self.refseqs) != set(self.otu_table.columns):
            raise ExperimentError("Reference sequences do not match the feature table variants")

    def __repr__(self):
        return (f"AmpliconExperiment({self.nsamples} samples, {self.ntaxa} taxa, "
                f"ranks={list(self.ranks)})")

    @property
    def nsamples(self):
        return self.otu_table.shape[0]

    @property
    def ntaxa(self):
        return self.otu_table.shape[1]

    @property
    def sample_names(self):
        return list(self.otu_table.index)

    @property
    def taxa_names(self):
        return list(self.otu_table.columns)

    @property
    def ranks(self):
        return list(self.tax_table.columns)

    def sample_sums(self):
        return self.otu_table.sum(axis=1)

    def relative_abundance(self):
        """
        Convert counts to per-sample proportions.

        Samples with a total of zero are left as all-zero rows.
        """
        totals = self.sample_sums()
        return self.otu_table.div(totals.replace(0, np.nan), axis=0).fillna(0.0)

    def aggregate_rank(self, rank, relative=False):
        """
        Sum abundances of all variants sharing a label at the given rank.

        Variants with no assignment at the rank are pooled as 'Unassigned'.

        Returns:
        --------
        pandas.DataFrame
            Samples as index, taxa at the rank as columns
        """
        if rank not in self.tax_table.columns:
            raise ValueError(f"Rank '{rank}' not found in taxonomy table (ranks: {self.ranks})")

        labels = self.tax_table[rank].fillna(UNASSIGNED).replace('', UNASSIGNED)
        table = self.relative_abundance() if relative else self.otu_table
        aggregated = table.T.groupby(labels).sum().T
        aggregated.columns.name = rank
        return aggregated

    def prune_taxa_absent(self):
        """Return a new experiment without variants that have zero total count."""
        present = self.otu_table.columns[self.otu_table.sum(axis=0) > 0]
        return self._subset(self.otu_table.index, present)

    def prune_empty_samples(self):
        """Return a new experiment without samples that have zero total count."""
        nonempty = self.otu_table.index[self.sample_sums() > 0]
        return self._subset(nonempty, self.otu_table.columns)

    def subset_samples(self, column, values):
        """Return a new experiment restricted to samples whose metadata column is in values."""
        if column not in self.sample_data.columns:
            raise ValueError(f"Column '{column}' not found in sample data")
        if isinstance(values, str):
            values = [values]
        keep = self.sample_data.index[self.sample_data[column].astype(str).isin([str(v) for v in values])]
        return self._subset(keep, self.otu_table.columns)

    def _subset(self, samples, taxa):
        refseqs = None
        if self.refseqs is not None:
            refseqs = {t: self.refseqs[t] for t in taxa}
        return AmpliconExperiment(
            self.otu_table.loc[samples, taxa],
            self.tax_table.loc[taxa],
            self.sample_data.loc[samples],
            refseqs=refseqs,
        )

    def rename_variants(self, prefix='ASV'):
        """
        Replace sequence identifiers with short names (ASV1, ASV2, ...).

        The original sequences are kept as reference sequences.
        """
        new_names = [f'{prefix}{i}' for i in range(1, self.ntaxa + 1)]
        mapping = dict(zip(self.otu_table.columns, new_names))

        if self.refseqs is not None:
            refseqs = {mapping[old]: seq for old, seq in self.refseqs.items()}
        else:
            refseqs = {new: old for old, new in mapping.items()}

        otu_table = self.otu_table.rename(columns=mapping)
        tax_table = self.tax_table.rename(index=mapping)
        return AmpliconExperiment(otu_table, tax_table, self.sample_data, refseqs=refseqs)

    @classmethod
    def from_files(cls, otu_file, tax_file, sample_file, refseq_file=None):
        """Load an experiment from the CSV files written by export()."""
        otu_table = pd.read_csv(otu_file, dtype={'Sample': str}).set_index('Sample')
        tax_table = pd.read_csv(tax_file, index_col=0, dtype=str)
        sample_data = pd.read_csv(sample_file, index_col=0, dtype=str)

        refseqs = None
        if refseq_file is not None and Path(refseq_file).exists():
            refseqs = {record.id: str(record.seq) for record in SeqIO.parse(str(refseq_file), 'fasta')}

        return cls(otu_table, tax_table, sample_data, refseqs=refseqs)

    def export(self, output_dir):
        """
        Write the feature, taxonomy and sample tables as CSV and the reference
        sequences as FASTA.

        Returns:
        --------
        dict
            Paths of the written files keyed by table name
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        paths = {
            'otu_table': output_dir / 'otu_table.csv',
            'tax_table': output_dir / 'taxonomy_table.csv',
            'sample_data': output_dir / 'sample_data.csv',
        }
        self.otu_table.to_csv(paths['otu_table'])
        self.tax_table.to_csv(paths['tax_table'], index_label='ASV')
        self.sample_data.to_csv(paths['sample_data'])

        if self.refseqs is not None:
            paths['refseqs'] = output_dir / 'refseqs.fasta'
            records = [SeqRecord(Seq(seq), id=name, description='')
                       for name, seq in self.refseqs.items()]
            SeqIO.write(records, str(paths['refseqs']), 'fasta')

        logger.info(f"Exported experiment tables to {output_dir}")
        return paths
