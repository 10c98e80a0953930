"""
Visualization functions for amplicon data.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


def plot_quality_profile(profiles, title='Quality profile'):
    """
    Plot per-cycle quality summaries for one or more FASTQ files.

    Parameters:
    -----------
    profiles : dict
        Mapping of label -> DataFrame from quality_profile()

    Returns:
    --------
    matplotlib.figure.Figure
        One panel per file
    """
    n_panels = max(len(profiles), 1)
    fig, axes = plt.subplots(1, n_panels, figsize=(6 * n_panels, 5), squeeze=False)

    for ax, (label, profile) in zip(axes[0], profiles.items()):
        cycles = profile.index.values
        ax.fill_between(cycles, profile['Q25'], profile['Q75'], color='grey', alpha=0.3,
                        label='Interquartile range')
        ax.plot(cycles, profile['Mean'], color='green', label='Mean')
        ax.plot(cycles, profile['Median'], color='orange', label='Median')

        ax.set_title(f'{label} (n = {int(profile["Count"].max()) if len(profile) else 0})')
        ax.set_xlabel('Cycle')
        ax.set_ylabel('Quality score')
        ax.set_ylim(0, 42)

    axes[0][0].legend(loc='lower left')
    fig.suptitle(title)
    plt.tight_layout()

    return fig


def plot_read_track(track):
    """
    Plot read counts per sample across pipeline stages.

    Parameters:
    -----------
    track : pandas.DataFrame
        Read-tracking table, samples as index and stages as columns

    Returns:
    --------
    matplotlib.figure.Figure
        Line plot with one line per sample
    """
    fig, ax = plt.subplots(figsize=(10, 6))

    plot_df = track.reset_index().melt(id_vars=track.index.name or 'index',
                                       var_name='Stage', value_name='Reads')
    sns.lineplot(data=plot_df, x='Stage', y='Reads', hue=track.index.name or 'index',
                 marker='o', ax=ax)

    ax.set_title('Reads retained at each processing stage')
    ax.set_ylabel('Reads')
    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    plt.tight_layout()

    return fig


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    metric : str, optional
        Alpha diversity metric to plot (if None, plots all metrics)

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    common_samples = [s for s in alpha_df.index if s in set(metadata_df.index)]
    alpha_subset = alpha_df.loc[common_samples]
    metadata_subset = metadata_df.loc[common_samples]

    if metric is None:
        return {m: _create_boxplot(alpha_subset[m], metadata_subset, group_var,
                                   f'{m} Diversity by {group_var}', f'{m} Diversity')
                for m in alpha_df.columns}

    if metric not in alpha_df.columns:
        raise ValueError(f"Metric '{metric}' not found in alpha diversity data")

    return _create_boxplot(alpha_subset[metric], metadata_subset, group_var,
                           f'{metric} Diversity by {group_var}', f'{metric} Diversity')


def _create_boxplot(values, metadata_df, group_var, title, ylabel):
    """Helper function to create a boxplot with points."""
    fig, ax = plt.subplots(figsize=(8, 6))

    plot_data = pd.DataFrame({
        'Value': values,
        group_var: metadata_df.loc[values.index, group_var].astype(str)
    })

    sns.boxplot(x=group_var, y='Value', data=plot_data, ax=ax)
    sns.stripplot(x=group_var, y='Value', data=plot_data,
                  color='black', size=4, alpha=0.5, ax=ax)

    ax.set_title(title)
    ax.set_xlabel(group_var)
    ax.set_ylabel(ylabel)
    plt.tight_layout()

    return fig


def plot_ordination(coords, metadata_df, variable, method='NMDS', fit_stats=None):
    """
    Scatter plot of ordination coordinates coloured by a metadata variable.

    Parameters:
    -----------
    coords : pandas.DataFrame
        Two-column coordinates from ordinate(), samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    method : str
        Ordination method used, for labelling ('PCoA' or 'NMDS')
    fit_stats : dict, optional
        Statistics returned by ordinate()

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    fit_stats = fit_stats or {}
    x_axis, y_axis = coords.columns[:2]

    plot_df = coords.copy()
    plot_df[variable] = metadata_df.loc[coords.index, variable].astype(str)

    fig, ax = plt.subplots(figsize=(10, 8))
    sns.scatterplot(data=plot_df.reset_index(), x=x_axis, y=y_axis, hue=variable, s=100, ax=ax)

    if method.upper() == 'PCOA' and 'PC1_explained' in fit_stats:
        ax.set_xlabel(f'{x_axis} ({fit_stats["PC1_explained"] * 100:.1f}% variance explained)')
        ax.set_ylabel(f'{y_axis} ({fit_stats["PC2_explained"] * 100:.1f}% variance explained)')

    ax.set_title(f'{method} of Beta Diversity ({variable})')

    stress = fit_stats.get('stress')
    if stress is not None and not np.isnan(stress):
        ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                transform=ax.transAxes, va='top', ha='left',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    plt.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    plt.tight_layout()

    return fig


def plot_stacked_bar(rank_abundance_df, metadata_df, group_var, top_n=10, other_category=True,
                     rank='Taxa'):
    """
    Create a per-sample stacked bar plot of the most abundant taxa.

    Parameters:
    -----------
    rank_abundance_df : pandas.DataFrame
        Relative abundances aggregated at a rank, samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Variable used to order samples along the x axis
    top_n : int
        Number of top taxa to include
    other_category : bool
        Whether to include an "Other" category for remaining taxa
    rank : str
        Rank name, used for the legend title

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    mean_abundance = rank_abundance_df.mean(axis=0)
    top_taxa = mean_abundance.nlargest(top_n).index.tolist()

    plot_data = rank_abundance_df[top_taxa].copy()
    if other_category:
        plot_data['Other'] = rank_abundance_df.drop(columns=top_taxa).sum(axis=1)

    # Group samples by condition along the x axis
    order = metadata_df.loc[plot_data.index, group_var].astype(str).sort_values(kind='stable').index
    plot_data = plot_data.loc[order] * 100

    fig, ax = plt.subplots(figsize=(max(8, 0.5 * len(plot_data) + 4), 8))
    plot_data.plot(kind='bar', stacked=True, ax=ax, colormap='tab20', width=0.85)

    ax.set_title(f'Relative abundance of top {len(top_taxa)} {rank} by sample')
    ax.set_xlabel(f'Sample (ordered by {group_var})')
    ax.set_ylabel('Relative Abundance (%)')
    ax.legend(title=rank, bbox_to_anchor=(1.05, 1), loc='upper left')
    plt.tight_layout()

    return fig


def plot_ratio_boxplot(ratio_df, metadata_df, group_var, column='Ratio', log_scale=False):
    """
    Boxplot of a ratio-table column by condition.

    Samples with an undefined ratio are left out.
    """
    values = ratio_df[column].replace([np.inf, -np.inf], np.nan).dropna()
    fig = _create_boxplot(values, metadata_df, group_var, f'{column} by {group_var}', column)
    if log_scale and (values > 0).all() and len(values) > 0:
        fig.axes[0].set_yscale('log')
    return fig
