import pytest

from amplicon_tools import (
    count_reads,
    discover_samples,
    filter_and_trim,
    filter_read,
    quality_profile,
    suggest_truncation_length,
)
from conftest import make_read, write_fastq


def test_filter_read_truncates_and_trims():
    record = make_read('r1', 'A' * 10 + 'C' * 40, 38)
    kept = filter_read(record, trunc_len=45, trim_left=10, min_len=20)
    assert str(kept.seq) == 'C' * 35
    assert len(kept.letter_annotations['phred_quality']) == 35


def test_filter_read_discards_reads_shorter_than_trunc_len():
    record = make_read('r1', 'A' * 100, 38)
    assert filter_read(record, trunc_len=150) is None


def test_filter_read_truncates_at_low_quality():
    record = make_read('r1', 'A' * 100, [38] * 60 + [2] + [38] * 39)
    kept = filter_read(record, trunc_len=0, trunc_q=2, min_len=20)
    assert len(kept) == 60
    # Same read fails once a fixed length beyond the low-quality base is required
    assert filter_read(record, trunc_len=80, trunc_q=2) is None


def test_filter_read_ambiguous_bases():
    record = make_read('r1', 'ACGTN' * 10, 38)
    assert filter_read(record, max_n=0) is None
    assert filter_read(record, max_n=10) is not None


def test_filter_read_expected_errors():
    # Q10 means one expected error per ten bases
    record = make_read('r1', 'A' * 50, 10)
    assert filter_read(record, max_ee=2) is None
    assert filter_read(record, max_ee=6) is not None


def test_filter_read_min_len_after_trim():
    record = make_read('r1', 'A' * 40, 38)
    assert filter_read(record, trim_left=25, min_len=20) is None


def test_filter_and_trim_keeps_pairs(fastq_dir, tmp_path):
    samples = discover_samples(fastq_dir, filtered_dir=tmp_path / 'filtered')
    summary = filter_and_trim(samples, trunc_len=(240, 160), trim_left=(19, 20))

    assert list(summary.columns) == ['reads.in', 'reads.out']
    assert (summary['reads.in'] == 5).all()
    assert (summary['reads.out'] == 4).all()
    assert (summary['reads.out'] <= summary['reads.in']).all()

    for sample, row in samples.iterrows():
        assert count_reads(row['filtered_forward']) == summary.loc[sample, 'reads.out']
        assert count_reads(row['filtered_reverse']) == summary.loc[sample, 'reads.out']

    profile = quality_profile(samples.loc['WT1', 'filtered_forward'])
    # 240 cycles kept, 19 primer bases removed
    assert profile.index.max() == 221


def test_filter_and_trim_mismatched_mates(tmp_path):
    raw = tmp_path / 'raw'
    raw.mkdir()
    write_fastq(raw / 'A1_R1_001.fastq.gz', [make_read(f'r{i}', 'A' * 50, 38) for i in range(3)])
    write_fastq(raw / 'A1_R2_001.fastq.gz', [make_read(f'r{i}', 'A' * 50, 38) for i in range(2)])
    samples = discover_samples(raw, filtered_dir=tmp_path / 'filtered')

    with pytest.raises(ValueError, match='Mismatched'):
        filter_and_trim(samples, trunc_len=0)


def test_quality_profile_and_suggestion(tmp_path):
    path = write_fastq(tmp_path / 'reads.fastq.gz', [
        make_read(f'r{i}', 'A' * 100, [36] * 70 + [20] * 30) for i in range(10)
    ])
    profile = quality_profile(path, n_reads=5)

    assert list(profile.columns) == ['Mean', 'Q25', 'Median', 'Q75', 'Count']
    assert profile.index[0] == 1
    assert (profile['Count'] == 5).all()
    assert profile.loc[70, 'Median'] == 36
    assert profile.loc[71, 'Median'] == 20
    assert suggest_truncation_length(profile, min_quality=30) == 70
    assert suggest_truncation_length(profile, min_quality=10) == 100


def test_quality_profile_empty_file(tmp_path):
    path = write_fastq(tmp_path / 'empty.fastq.gz', [])
    profile = quality_profile(path)
    assert profile.empty
    assert suggest_truncation_length(profile) == 0
