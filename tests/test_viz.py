import matplotlib.pyplot as plt
import pandas as pd
import pytest

from amplicon_tools import calculate_alpha_diversity, calculate_beta_diversity, ordinate
from amplicon_tools import calculate_family_ratios, build_read_track
from amplicon_tools.amplicon_viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_quality_profile,
    plot_ratio_boxplot,
    plot_read_track,
    plot_stacked_bar,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


def test_alpha_boxplots_per_metric(experiment):
    alpha = calculate_alpha_diversity(experiment.otu_table, ['shannon', 'observed_otus'])
    figures = plot_alpha_diversity_boxplot(alpha, experiment.sample_data, 'Condition')
    assert set(figures) == {'shannon', 'observed_otus'}

    with pytest.raises(ValueError):
        plot_alpha_diversity_boxplot(alpha, experiment.sample_data, 'Condition', metric='chao1')


def test_ordination_plot_labels_variance(experiment):
    coords, fit_stats = ordinate(calculate_beta_diversity(experiment.otu_table), method='PCoA')
    fig = plot_ordination(coords, experiment.sample_data, 'Condition', method='PCoA',
                          fit_stats=fit_stats)
    assert 'variance explained' in fig.axes[0].get_xlabel()


def test_stacked_bar_adds_other(experiment):
    genera = experiment.aggregate_rank('Genus', relative=True)
    fig = plot_stacked_bar(genera, experiment.sample_data, 'Condition', top_n=2, rank='Genus')
    labels = [text.get_text() for text in fig.axes[0].get_legend().get_texts()]
    assert len(labels) == 3
    assert labels[-1] == 'Other'


def test_ratio_and_track_plots(experiment):
    ratios = calculate_family_ratios(experiment)
    assert plot_ratio_boxplot(ratios, experiment.sample_data, 'Condition', log_scale=True)

    track = build_read_track({'input': {'A': 10, 'B': 8}, 'filtered': {'A': 9, 'B': 8}})
    assert plot_read_track(track)

    profile = pd.DataFrame({'Mean': [30.0, 28.0], 'Q25': [25.0, 20.0], 'Median': [31.0, 29.0],
                            'Q75': [35.0, 33.0], 'Count': [10, 10]},
                           index=pd.RangeIndex(1, 3, name='Cycle'))
    assert plot_quality_profile({'A': profile})
