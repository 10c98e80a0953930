import subprocess
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SCRIPTS_DIR = PROJECT_ROOT / 'scripts'


def run_script(script, *args, cwd):
    return subprocess.run(
        [sys.executable, str(SCRIPTS_DIR / script), *map(str, args)],
        cwd=str(cwd), capture_output=True, text=True,
    )


def write_config(path, output_dir, **sections):
    config = {
        'output': {'output_dir': str(output_dir), 'filtered_dir': str(Path(output_dir) / 'filtered')},
        'analysis': {'permutations': 99},
        'visualization': {'figure_dpi': 50, 'figure_format': 'png'},
    }
    for section, values in sections.items():
        config.setdefault(section, {}).update(values)
    path.write_text(yaml.safe_dump(config))
    return path


def write_primer_sheet(path, samples):
    rows = ['#SampleID\tLinkerPrimerSequence\tReversePrimer']
    rows += [f'{s}\tGTGCCAGCMGCCGCGGTAA\tGGACTACHVGGGTWTCTAAT' for s in samples]
    path.write_text('\n'.join(rows) + '\n')
    return path


@pytest.fixture
def exported_experiment(experiment, tmp_path):
    output_dir = tmp_path / 'results'
    experiment.rename_variants().export(output_dir / 'tables')
    return output_dir


def test_filtering_aborts_on_partial_primer_sheet(fastq_dir, tmp_path):
    output_dir = tmp_path / 'results'
    config = write_config(
        tmp_path / 'config.yml', output_dir,
        input={'fastq_dir': str(fastq_dir),
               'primer_metadata': str(write_primer_sheet(tmp_path / 'primers.tsv', ['KO1']))},
    )

    result = run_script('01_filter_and_trim.py', '--config', config, '--skip-quality-plots', cwd=tmp_path)

    assert result.returncode == 1
    assert 'Samples without primer metadata: KO2, WT1, WT2' in result.stderr
    assert not (output_dir / 'tables' / 'filter_summary.csv').exists()
    assert not (output_dir / 'filtered').exists()


def test_filtering_writes_under_output_dir_override(fastq_dir, tmp_path):
    primers = write_primer_sheet(tmp_path / 'primers.tsv', ['KO1', 'KO2', 'WT1', 'WT2', 'OTHER9'])
    config = write_config(
        tmp_path / 'config.yml', tmp_path / 'configured',
        input={'fastq_dir': str(fastq_dir), 'primer_metadata': str(primers)},
    )
    override = tmp_path / 'override'

    result = run_script('01_filter_and_trim.py', '--config', config, '--output-dir', override,
                        cwd=tmp_path)

    assert result.returncode == 0, result.stderr
    summary = pd.read_csv(override / 'tables' / 'filter_summary.csv', index_col=0)
    assert summary['reads.out'].tolist() == [4, 4, 4, 4]
    assert (override / 'filtered' / 'WT1_F_filt.fastq.gz').exists()
    assert (override / 'figures' / 'quality_profile_forward.png').exists()
    assert not (tmp_path / 'configured').exists()


def test_pipeline_runs_diversity_and_ratio_steps(exported_experiment, tmp_path):
    config = write_config(tmp_path / 'config.yml', exported_experiment)
    log_file = tmp_path / 'pipeline.log'

    result = subprocess.run(
        [sys.executable, str(PROJECT_ROOT / 'run_pipeline.py'), '--config', str(config),
         '--start-at', '3', '--log-file', str(log_file)],
        cwd=str(tmp_path), capture_output=True, text=True,
    )
    assert result.returncode == 0, result.stdout + result.stderr

    tables_dir = exported_experiment / 'tables'
    for name in ['alpha_diversity.csv', 'alpha_diversity_comparison.csv', 'beta_braycurtis.csv',
                 'ordination_coordinates.csv', 'permanova_results.csv',
                 'relative_abundance_family.csv', 'differential_abundance_genus.csv',
                 'family_ratios.csv', 'ratio_comparison.csv']:
        assert (tables_dir / name).exists(), name

    alpha = pd.read_csv(tables_dir / 'alpha_diversity.csv', index_col=0)
    assert {'shannon', 'observed_otus', 'Condition'} <= set(alpha.columns)

    coords = pd.read_csv(tables_dir / 'ordination_coordinates.csv', index_col=0)
    assert {'NMDS1', 'NMDS2', 'PC1', 'PC2'} <= set(coords.columns)

    permanova = pd.read_csv(tables_dir / 'permanova_results.csv', index_col=0)
    assert permanova.loc['Condition', 'number of groups'] == 2

    ratios = pd.read_csv(tables_dir / 'family_ratios.csv', index_col=0)
    proportions = ratios[['Acetobacteraceae_proportion', 'Lactobacillaceae_proportion',
                          'Other_proportion']]
    assert np.allclose(proportions.sum(axis=1), 1.0)
    assert pd.api.types.is_integer_dtype(ratios['Total'])

    comparison = pd.read_csv(tables_dir / 'ratio_comparison.csv')
    assert 'Ratio' in set(comparison['Variable'])

    log = log_file.read_text()
    assert 'Alpha diversity results saved' in log
    assert 'Family ratio table saved' in log


def test_diversity_step_logs_error_and_exits(exported_experiment, tmp_path):
    sample_file = exported_experiment / 'tables' / 'sample_data.csv'
    sample_data = pd.read_csv(sample_file, index_col=0, dtype=str)
    sample_data.loc['KO3', 'Condition'] = 'HET'
    sample_data.to_csv(sample_file)
    config = write_config(tmp_path / 'config.yml', exported_experiment)

    result = run_script('03_diversity_analysis.py', '--config', config, cwd=tmp_path)

    assert result.returncode == 1
    assert 'ERROR - Error during diversity analysis: Exactly two groups' in result.stderr
    assert 'Traceback' not in result.stderr
