"""
Statistical analysis functions for amplicon experiments: the two-family
ratio table, two-condition comparisons and differential abundance.
"""

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .amplicon_experiment import UNASSIGNED
from .logger import get_logger

logger = get_logger('stats')


def calculate_family_ratios(experiment, numerator_family='Acetobacteraceae',
                            denominator_family='Lactobacillaceae', rank='Family'):
    """
    Per-sample abundance of two focal families, everything else, and the
    ratio of the two family proportions.

    Parameters:
    -----------
    experiment : AmpliconExperiment
        Combined experiment object
    numerator_family, denominator_family : str
        Taxon labels at `rank`
    rank : str
        Taxonomic rank holding the family labels

    Returns:
    --------
    pandas.DataFrame
        Samples as index with columns <numerator>, <denominator>, Other,
        Total, <numerator>_proportion, <denominator>_proportion,
        Other_proportion and Ratio.

    Notes:
    ------
    Samples with zero total abundance get NaN proportions and ratio.
    The ratio is NaN whenever the denominator family is absent.
    """
    if numerator_family == denominator_family:
        raise ValueError("Numerator and denominator families must differ")

    by_rank = experiment.aggregate_rank(rank)
    total = by_rank.sum(axis=1)

    families = {}
    for family in (numerator_family, denominator_family):
        if family in by_rank.columns:
            families[family] = by_rank[family]
        else:
            logger.warning(f"{family} not found at rank {rank}; counting it as zero")
            families[family] = pd.Series(0, index=by_rank.index, dtype=np.int64)

    ratio_df = pd.DataFrame(index=by_rank.index)
    ratio_df[numerator_family] = families[numerator_family]
    ratio_df[denominator_family] = families[denominator_family]
    ratio_df['Other'] = total - families[numerator_family] - families[denominator_family]
    ratio_df['Total'] = total

    safe_total = total.replace(0, np.nan)
    for column in (numerator_family, denominator_family, 'Other'):
        ratio_df[f'{column}_proportion'] = ratio_df[column] / safe_total

    denominator = ratio_df[f'{denominator_family}_proportion'].replace(0, np.nan)
    ratio_df['Ratio'] = ratio_df[f'{numerator_family}_proportion'] / denominator

    ratio_df.index.name = 'Sample'
    return ratio_df


def _calculate_cliffs_delta(group1, group2):
    """
    Calculate Cliff's Delta effect size.

    Parameters:
    -----------
    group1 : array-like
        Values for first group
    group2 : array-like
        Values for second group

    Returns:
    --------
    float
        Cliff's Delta effect size
    """
    x = np.asarray(group1, dtype=float)
    y = np.asarray(group2, dtype=float)
    if len(x) == 0 or len(y) == 0:
        return np.nan

    diff = x[:, None] - y[None, :]
    return float(((diff > 0).sum() - (diff < 0).sum()) / (len(x) * len(y)))


def _adjust_p_values(p_values):
    p_values = pd.Series(p_values, dtype=float)
    adjusted = pd.Series(np.nan, index=p_values.index)
    valid = p_values.notna()
    if valid.sum() > 1:
        adjusted[valid] = multipletests(p_values[valid], method='fdr_bh')[1]
    else:
        adjusted[valid] = p_values[valid]
    return adjusted


def _resolve_two_groups(metadata_df, samples, variable, groups):
    if variable not in metadata_df.columns:
        raise ValueError(f"Variable '{variable}' not found in metadata")

    labels = metadata_df.loc[samples, variable].astype(str)
    if groups is None:
        groups = sorted(labels.unique())
    groups = [str(g) for g in groups]

    if len(groups) != 2:
        raise ValueError(f"Exactly two groups are required for {variable}, found {len(groups)}: {groups}")

    for group in groups:
        if group not in set(labels):
            raise ValueError(f"Group '{group}' not found in {variable}")

    return labels, groups


def compare_conditions(values_df, metadata_df, variable, groups=None):
    """
    Compare every column of a per-sample table between two conditions.

    Parameters:
    -----------
    values_df : pandas.DataFrame
        Per-sample values (e.g. ratio table, alpha diversity) with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata column holding the condition label
    groups : list, optional
        The two condition labels to compare (default: the two labels present)

    Returns:
    --------
    pandas.DataFrame
        One row per column of values_df with group sizes, means, medians,
        Mann-Whitney U and Welch t-test p-values, Cliff's delta and
        BH-adjusted p-values
    """
    common_samples = [s for s in values_df.index if s in set(metadata_df.index)]
    labels, groups = _resolve_two_groups(metadata_df, common_samples, variable, groups)

    group1_samples = labels.index[labels == groups[0]]
    group2_samples = labels.index[labels == groups[1]]

    results = []
    for column in values_df.columns:
        if not pd.api.types.is_numeric_dtype(values_df[column]):
            continue

        # NaN ratios (e.g. denominator family absent) are left out of the test
        values1 = values_df.loc[group1_samples, column].dropna()
        values2 = values_df.loc[group2_samples, column].dropna()

        mw_p = np.nan
        mw_stat = np.nan
        t_p = np.nan
        if len(values1) > 0 and len(values2) > 0:
            try:
                mw_stat, mw_p = stats.mannwhitneyu(values1, values2, alternative='two-sided')
            except ValueError as e:
                logger.warning(f"Mann-Whitney U failed for {column}: {e}")
        if len(values1) > 1 and len(values2) > 1:
            t_stat, t_p = stats.ttest_ind(values1, values2, equal_var=False)

        results.append({
            'Variable': column,
            'Group1': groups[0],
            'Group2': groups[1],
            'N Group1': len(values1),
            'N Group2': len(values2),
            'Mean in Group1': values1.mean() if len(values1) else np.nan,
            'Mean in Group2': values2.mean() if len(values2) else np.nan,
            'SD in Group1': values1.std() if len(values1) > 1 else np.nan,
            'SD in Group2': values2.std() if len(values2) > 1 else np.nan,
            'Median in Group1': values1.median() if len(values1) else np.nan,
            'Median in Group2': values2.median() if len(values2) else np.nan,
            'Mann-Whitney U': mw_stat,
            'P-value': mw_p,
            'Welch t-test P-value': t_p,
            'Cliff Delta': _calculate_cliffs_delta(values1, values2),
        })

    results_df = pd.DataFrame(results)
    if not results_df.empty:
        results_df['Adjusted P-value'] = _adjust_p_values(results_df['P-value']).values
    return results_df


def differential_abundance_analysis(abundance_df, metadata_df, variable, groups=None,
                                    pseudocount=1e-5):
    """
    Identify taxa differentially abundant between two conditions.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Relative abundances with samples as index, taxa as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    groups : list, optional
        The two condition labels to compare

    Returns:
    --------
    pandas.DataFrame
        Results of differential abundance testing sorted by adjusted p-value
    """
    common_samples = [s for s in abundance_df.index if s in set(metadata_df.index)]
    labels, groups = _resolve_two_groups(metadata_df, common_samples, variable, groups)

    group1_samples = labels.index[labels == groups[0]]
    group2_samples = labels.index[labels == groups[1]]

    results = []
    for taxon in abundance_df.columns:
        if taxon == UNASSIGNED:
            continue

        values1 = abundance_df.loc[group1_samples, taxon]
        values2 = abundance_df.loc[group2_samples, taxon]
        mean1 = values1.mean()
        mean2 = values2.mean()

        # log2 fold change of group2 over group1
        fold_change = np.log2((mean2 + pseudocount) / (mean1 + pseudocount))

        try:
            _, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')
        except ValueError:
            # Identical values in both groups
            p_value = 1.0

        results.append({
            'Taxon': taxon,
            'P-value': p_value,
            'Group1': groups[0],
            'Group2': groups[1],
            'Mean in Group1': mean1,
            'Mean in Group2': mean2,
            'Log2 Fold Change': fold_change,
            'Cliff Delta': _calculate_cliffs_delta(values1, values2),
            'Test': 'Mann-Whitney U'
        })

    results_df = pd.DataFrame(results)
    if results_df.empty:
        return results_df

    results_df['Adjusted P-value'] = _adjust_p_values(results_df['P-value']).values
    return results_df.sort_values('Adjusted P-value').reset_index(drop=True)
