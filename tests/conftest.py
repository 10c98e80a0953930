import gzip

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from amplicon_tools import AmpliconExperiment


def make_read(read_id, sequence, qualities):
    """Build a FASTQ SeqRecord; a single int quality is repeated along the read."""
    if isinstance(qualities, int):
        qualities = [qualities] * len(sequence)
    record = SeqRecord(Seq(sequence), id=read_id, description='')
    record.letter_annotations['phred_quality'] = list(qualities)
    return record


def write_fastq(path, records):
    with gzip.open(str(path), 'wt') as handle:
        SeqIO.write(records, handle, 'fastq')
    return path


@pytest.fixture
def fastq_dir(tmp_path):
    """Two conditions with two replicates each, five read pairs per sample."""
    raw_dir = tmp_path / 'raw'
    raw_dir.mkdir()
    rng = np.random.default_rng(0)

    for i, sample in enumerate(['KO1', 'KO2', 'WT1', 'WT2']):
        forward, reverse = [], []
        for n in range(5):
            fwd_seq = ''.join(rng.choice(list('ACGT'), 250))
            rev_seq = ''.join(rng.choice(list('ACGT'), 200))
            forward.append(make_read(f'{sample}.{n}', fwd_seq, 38))
            # The last pair of every sample has a poor reverse read
            rev_quality = 38 if n < 4 else [38] * 50 + [2] * 150
            reverse.append(make_read(f'{sample}.{n}', rev_seq, rev_quality))

        write_fastq(raw_dir / f'{sample}_S{i + 1}_L001_R1_001.fastq.gz', forward)
        write_fastq(raw_dir / f'{sample}_S{i + 1}_L001_R2_001.fastq.gz', reverse)

    return raw_dir


@pytest.fixture
def experiment():
    """Six samples in two conditions over five variants from three families."""
    otu_table = pd.DataFrame(
        [[30, 10, 50, 10, 0],
         [20, 20, 40, 20, 0],
         [40, 0, 40, 10, 10],
         [5, 5, 10, 70, 10],
         [10, 0, 10, 60, 20],
         [0, 10, 20, 60, 10]],
        index=['WT1', 'WT2', 'WT3', 'KO1', 'KO2', 'KO3'],
        columns=['ACGT', 'ACGA', 'CCGT', 'GGTA', 'TTAA'],
    )
    tax_table = pd.DataFrame(
        {
            'Kingdom': ['Bacteria'] * 5,
            'Phylum': ['Proteobacteria', 'Proteobacteria', 'Firmicutes', 'Firmicutes', 'Bacteroidota'],
            'Family': ['Acetobacteraceae', 'Acetobacteraceae', 'Lactobacillaceae',
                       'Lactobacillaceae', np.nan],
            'Genus': ['Acetobacter', 'Gluconobacter', 'Lactiplantibacillus',
                      'Levilactobacillus', np.nan],
        },
        index=otu_table.columns,
    )
    sample_data = pd.DataFrame(
        {'Condition': ['WT', 'WT', 'WT', 'KO', 'KO', 'KO'],
         'Replicate': ['1', '2', '3', '1', '2', '3']},
        index=otu_table.index,
    )
    return AmpliconExperiment(otu_table, tax_table, sample_data)
