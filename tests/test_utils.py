import numpy as np
import pandas as pd
import pytest

from amplicon_tools import (
    load_config,
    parse_sample_name,
    discover_samples,
    load_primer_metadata,
    resolve_primer_lengths,
    build_read_track,
    find_read_track_violations,
    PrimerLengthError,
    ReadTrackError,
    export_biom_format,
)


def test_load_config_defaults_without_file():
    config = load_config(None)
    assert config['filter']['trunc_len'] == [240, 160]
    assert config['analysis']['numerator_family'] == 'Acetobacteraceae'


def test_load_config_missing_file_falls_back(tmp_path):
    config = load_config(tmp_path / 'missing.yml')
    assert config['dada2']['min_overlap'] == 12


def test_load_config_merges_sections(tmp_path):
    config_file = tmp_path / 'config.yml'
    config_file.write_text("filter:\n  trunc_len: [200, 150]\nanalysis:\n  conditions: [WT, KO]\n")

    config = load_config(config_file)

    assert config['filter']['trunc_len'] == [200, 150]
    # Untouched keys in a partially given section keep their defaults
    assert config['filter']['max_ee'] == [2, 2]
    assert config['analysis']['conditions'] == ['WT', 'KO']
    assert config['analysis']['permutations'] == 999


def test_load_config_rejects_non_mapping(tmp_path):
    config_file = tmp_path / 'config.yml'
    config_file.write_text("- just\n- a list\n")
    with pytest.raises(ValueError):
        load_config(config_file)


@pytest.mark.parametrize('name, expected', [
    ('WT1', ('WT', '1')),
    ('mutant-12', ('mutant', '12')),
    ('ctrl_3', ('ctrl', '3')),
    ('blank', ('blank', '')),
])
def test_parse_sample_name(name, expected):
    assert parse_sample_name(name) == expected


def test_discover_samples(fastq_dir, tmp_path):
    samples = discover_samples(fastq_dir, filtered_dir=tmp_path / 'filtered')

    assert list(samples.index) == ['KO1', 'KO2', 'WT1', 'WT2']
    assert samples.loc['WT2', 'Condition'] == 'WT'
    assert samples.loc['WT2', 'Replicate'] == '2'
    assert samples.loc['KO1', 'raw_forward'].endswith('KO1_S1_L001_R1_001.fastq.gz')
    assert samples.loc['KO1', 'filtered_reverse'] == str(tmp_path / 'filtered' / 'KO1_R_filt.fastq.gz')


def test_discover_samples_missing_mate(fastq_dir):
    next(fastq_dir.glob('WT1_*_R2_001.fastq.gz')).unlink()
    with pytest.raises(FileNotFoundError, match='WT1'):
        discover_samples(fastq_dir)


def test_discover_samples_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        discover_samples(tmp_path / 'nowhere')


def _write_primers(path, forward, reverse):
    rows = ['#SampleID\tLinkerPrimerSequence\tReversePrimer']
    rows += [f'S{i}\t{f}\t{r}' for i, (f, r) in enumerate(zip(forward, reverse))]
    path.write_text('\n'.join(rows) + '\n')
    return path


def test_resolve_primer_lengths_consistent(tmp_path):
    primer_file = _write_primers(tmp_path / 'primers.tsv',
                                 ['GTGCCAGCMGCCGCGGTAA'] * 3, ['GGACTACHVGGGTWTCTAAT'] * 3)
    primers = load_primer_metadata(primer_file)
    assert resolve_primer_lengths(primers) == (19, 20)


def test_resolve_primer_lengths_inconsistent(tmp_path):
    primer_file = _write_primers(tmp_path / 'primers.tsv',
                                 ['GTGCCAGCMGCCGCGGTAA', 'GTGCCAGCMGCCGCGGTAAT'],
                                 ['GGACTACHVGGGTWTCTAAT'] * 2)
    primers = load_primer_metadata(primer_file)
    with pytest.raises(PrimerLengthError, match='LinkerPrimerSequence'):
        resolve_primer_lengths(primers)


def test_resolve_primer_lengths_missing_column(tmp_path):
    primers = pd.DataFrame({'LinkerPrimerSequence': ['ACGT']}, index=['S1'])
    with pytest.raises(PrimerLengthError):
        resolve_primer_lengths(primers)


def test_build_read_track_fills_missing_stages():
    track = build_read_track({
        'input': {'A': 100, 'B': 50},
        'filtered': {'A': 90, 'B': 0},
        'nonchim': {'A': 80},
    })
    assert track.loc['B', 'nonchim'] == 0
    assert track.dtypes.unique().tolist() == [np.dtype('int64')]
    assert track.index.name == 'Sample'


def test_build_read_track_rejects_increase():
    with pytest.raises(ReadTrackError, match='B'):
        build_read_track({'input': {'A': 100, 'B': 50}, 'filtered': {'A': 90, 'B': 60}})


def test_parallel_denoising_stages_are_not_compared():
    track = pd.DataFrame(
        {'filtered': [90, 90], 'denoisedF': [85, 85], 'denoisedR': [87, 87], 'merged': [80, 86]},
        index=['A', 'B'],
    )
    # Only B merges more reads than its forward reads kept
    assert find_read_track_violations(track) == ['B']


def test_resolve_primer_lengths_empty_cell(tmp_path):
    primer_file = _write_primers(tmp_path / 'primers.tsv',
                                 ['GTGCCAGCMGCCGCGGTAA', ''],
                                 ['GGACTACHVGGGTWTCTAAT'] * 2)
    primers = load_primer_metadata(primer_file)
    with pytest.raises(PrimerLengthError, match='S1'):
        resolve_primer_lengths(primers)


def test_resolve_primer_lengths_partial_sheet(tmp_path):
    primer_file = _write_primers(tmp_path / 'primers.tsv',
                                 ['GTGCCAGCMGCCGCGGTAA'], ['GGACTACHVGGGTWTCTAAT'])
    primers = load_primer_metadata(primer_file)
    with pytest.raises(PrimerLengthError, match='S1, S2'):
        resolve_primer_lengths(primers, samples=['S0', 'S1', 'S2'])


def test_resolve_primer_lengths_ignores_samples_outside_run(tmp_path):
    primer_file = _write_primers(tmp_path / 'primers.tsv',
                                 ['GTGCCAGCMGCCGCGGTAA', 'GTGCCAGCMGCCGCGGTAAT', 'GTGCCAGCMGCCGCGGTAA'],
                                 ['GGACTACHVGGGTWTCTAAT'] * 3)
    primers = load_primer_metadata(primer_file)
    # S1 has a longer forward primer but is not part of this run
    assert resolve_primer_lengths(primers, samples=['S0', 'S2']) == (19, 20)


def test_export_biom_format_round_trip(experiment, tmp_path):
    from biom import load_table

    output_file = tmp_path / 'otu_table.biom'
    export_biom_format(experiment.otu_table, output_file, experiment.tax_table)
    table = load_table(str(output_file))

    assert list(table.ids(axis='sample')) == experiment.sample_names
    assert list(table.ids(axis='observation')) == experiment.taxa_names
    assert table.get_value_by_ids('GGTA', 'KO1') == 70
    taxonomy = table.metadata('CCGT', axis='observation')['taxonomy']
    assert 'Lactobacillaceae' in list(taxonomy)
    assert table.sum(axis='whole') == experiment.otu_table.values.sum()
