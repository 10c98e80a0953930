"""
Alpha and beta diversity, ordination and PERMANOVA for amplicon feature tables.

All functions take feature tables with samples as index and sequence
variants (or aggregated taxa) as columns.
"""

import numpy as np
import pandas as pd
from skbio.diversity import alpha_diversity, beta_diversity
from skbio.stats.distance import permanova
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS

from .logger import get_logger

logger = get_logger('diversity')

SKBIO_ALPHA_METRICS = ['shannon', 'simpson', 'chao1']


def calculate_alpha_diversity(counts_df, metrics=None):
    """
    Calculate alpha diversity metrics for each sample.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Integer counts with samples as index, sequence variants as columns
    metrics : list, optional
        List of diversity metrics to calculate
        Default: ['shannon', 'simpson', 'observed_otus']
        Also supported: 'chao1', 'evenness'

    Returns:
    --------
    pandas.DataFrame
        DataFrame with alpha diversity metrics for each sample
    """
    if metrics is None:
        metrics = ['shannon', 'simpson', 'observed_otus']

    alpha_div = pd.DataFrame(index=counts_df.index)
    counts = counts_df.fillna(0).values.astype(np.int64)
    sample_ids = list(counts_df.index)
    richness = (counts_df > 0).sum(axis=1)

    for metric in metrics:
        name = metric.lower()
        if name == 'observed_otus':
            alpha_div[metric] = richness
        elif name == 'shannon':
            # Natural log, as in vegan and phyloseq
            alpha_div[metric] = alpha_diversity('shannon', counts, ids=sample_ids, base=np.e).values
        elif name in SKBIO_ALPHA_METRICS:
            alpha_div[metric] = alpha_diversity(name, counts, ids=sample_ids).values
        elif name == 'evenness':
            # Pielou's evenness: Shannon / ln(richness)
            shannon = alpha_diversity('shannon', counts, ids=sample_ids, base=np.e).values
            log_richness = np.log(richness.values.astype(float))
            with np.errstate(divide='ignore', invalid='ignore'):
                alpha_div[metric] = np.where(richness.values > 1, shannon / log_richness, np.nan)
        else:
            raise ValueError(f"Unknown alpha diversity metric: {metric}")

    alpha_div.index.name = 'Sample'
    return alpha_div


def calculate_beta_diversity(counts_df, metric='braycurtis'):
    """
    Calculate a beta diversity distance matrix on relative abundances.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Counts with samples as index, sequence variants as columns
    metric : str
        Distance metric to use

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    totals = counts_df.sum(axis=1)
    empty = totals.index[totals == 0]
    if len(empty) > 0:
        raise ValueError(f"Samples with zero total abundance cannot be compared: {', '.join(map(str, empty))}")

    rel_abundance = counts_df.div(totals, axis=0)
    return beta_diversity(metric, rel_abundance.values, ids=[str(i) for i in rel_abundance.index])


def ordinate(beta_dm, method='NMDS', random_state=42):
    """
    Ordinate samples from a distance matrix.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Beta diversity distance matrix
    method : str
        Ordination method ('PCoA' or 'NMDS')

    Returns:
    --------
    tuple
        (coordinates DataFrame with two axes, dict of fit statistics)
    """
    if method.upper() == 'PCOA':
        pcoa_results = pcoa(beta_dm)
        coords = pcoa_results.samples[['PC1', 'PC2']].copy()
        coords.index = list(beta_dm.ids)
        variance_explained = pcoa_results.proportion_explained
        stats = {
            'PC1_explained': float(variance_explained.iloc[0]),
            'PC2_explained': float(variance_explained.iloc[1]),
        }

    elif method.upper() == 'NMDS':
        # Non-metric MDS on the precomputed dissimilarities
        mds = MDS(n_components=2, dissimilarity='precomputed', random_state=random_state,
                  metric=False, n_init=10, max_iter=500)
        points = mds.fit_transform(beta_dm.data)
        coords = pd.DataFrame(points, index=list(beta_dm.ids), columns=['NMDS1', 'NMDS2'])
        stats = {'stress': float(getattr(mds, 'stress_', np.nan))}

    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    coords.index.name = 'Sample'
    return coords, stats


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999, min_samples=4):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use

    Returns:
    --------
    dict
        PERMANOVA results
    """
    common_samples = [s for s in distance_matrix.ids if s in set(metadata_df.index)]

    def _skipped(note):
        return {
            'test-statistic': np.nan,
            'p-value': np.nan,
            'sample size': len(common_samples),
            'number of groups': np.nan,
            'note': note
        }

    if len(common_samples) < min_samples:
        return _skipped('Insufficient samples for PERMANOVA')

    filtered_dm = distance_matrix.filter(common_samples)
    grouping = metadata_df.loc[common_samples, variable].astype(str).values

    unique_groups = np.unique(grouping)
    if len(unique_groups) < 2:
        return _skipped(f'Only one group found in {variable}')

    for group in unique_groups:
        if np.sum(grouping == group) < 2:
            return _skipped(f'At least one group in {variable} has fewer than 2 samples')

    results = permanova(filtered_dm, grouping, permutations=permutations)
    logger.info(f"PERMANOVA for {variable}: pseudo-F={results['test statistic']:.3f}, "
                f"p={results['p-value']:.4f}")

    return {
        'test-statistic': results['test statistic'],
        'p-value': results['p-value'],
        'sample size': len(common_samples),
        'number of groups': len(unique_groups),
        'note': 'Successful test'
    }
