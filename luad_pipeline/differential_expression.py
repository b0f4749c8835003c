"""
Differential Expression Module
==============================

Two-group, per-gene testing on pseudo-bulk profiles:
- Welch's t-test (unequal variances)
- log2 fold change and Cohen's d effect size
- Benjamini-Hochberg FDR correction
- Significance annotation and summaries

Testing on one profile per sample (rather than per cell) avoids treating
cells from the same sample as independent replicates.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Any, Union

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .utils import get_logger, ensure_dir


def cohens_d(group1: np.ndarray, group2: np.ndarray) -> np.ndarray:
    """
    Cohen's d with pooled standard deviation, computed per column.

    Parameters
    ----------
    group1, group2 : np.ndarray
        Samples x genes arrays (a 1-D array is treated as one gene)

    Returns
    -------
    np.ndarray
        Effect size per gene. Where the pooled SD is zero the result is 0
        if the means are equal and +/-inf otherwise.
    """
    group1 = np.asarray(group1, dtype=float)
    group2 = np.asarray(group2, dtype=float)
    if group1.ndim == 1:
        group1 = group1[:, None]
        group2 = group2[:, None]

    n1, n2 = group1.shape[0], group2.shape[0]
    if n1 + n2 <= 2:
        raise ValueError("Cohen's d needs more than 2 observations in total")

    diff = group1.mean(axis=0) - group2.mean(axis=0)
    var1 = group1.var(axis=0, ddof=1) if n1 > 1 else np.zeros(group1.shape[1])
    var2 = group2.var(axis=0, ddof=1) if n2 > 1 else np.zeros(group2.shape[1])

    pooled_sd = np.sqrt(((n1 - 1) * var1 + (n2 - 1) * var2) / (n1 + n2 - 2))

    with np.errstate(divide='ignore', invalid='ignore'):
        d = diff / pooled_sd

    zero_sd = pooled_sd == 0
    d[zero_sd] = np.where(diff[zero_sd] == 0, 0.0, np.sign(diff[zero_sd]) * np.inf)

    return d


def welch_ttest(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    group_key: str,
    group1: str,
    group2: str,
    min_samples: int = 2,
    is_log: bool = True,
    log_base: Union[float, str] = 2,
    pseudocount: float = 1.0,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Per-gene Welch t-test of `group1` versus `group2`.

    Parameters
    ----------
    expression : pd.DataFrame
        Samples x genes
    metadata : pd.DataFrame
        Sample metadata, same index as `expression`
    group_key : str
        Metadata column holding group labels (e.g. 'condition')
    group1 : str
        Test group; positive fold changes mean higher in this group
    group2 : str
        Reference group
    min_samples : int, default 2
        Minimum samples required in each group
    is_log : bool, default True
        Whether `expression` is log-scale. Log data give the fold change as
        a difference of means; linear data as log2 of the mean ratio.
    log_base : float, default 2
        Base of the log scale, used to express fold changes in log2
    pseudocount : float, default 1.0
        Added to both means for the linear-scale fold change
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Indexed by gene, columns: mean_<group1>, mean_<group2>,
        log2FoldChange, cohens_d, t_stat, pvalue, padj

    Raises
    ------
    KeyError
        If `group_key` is not a metadata column
    ValueError
        If a group label is absent or has fewer than `min_samples` samples

    Examples
    --------
    >>> results = welch_ttest(expression, metadata, 'condition', 'tumor', 'normal')
    >>> results.nsmallest(10, 'pvalue')
    """
    logger = get_logger(logger)

    if group_key not in metadata.columns:
        raise KeyError(
            f"Group key '{group_key}' not found in metadata. "
            f"Available columns: {list(metadata.columns)}"
        )

    labels = metadata[group_key].reindex(expression.index).astype(str)

    for group in (group1, group2):
        if group not in set(labels):
            raise ValueError(
                f"Group '{group}' not found in metadata['{group_key}']. "
                f"Available groups: {sorted(labels.dropna().unique())}"
            )

    values1 = expression.loc[(labels == group1).to_numpy()].to_numpy(dtype=float)
    values2 = expression.loc[(labels == group2).to_numpy()].to_numpy(dtype=float)
    n1, n2 = values1.shape[0], values2.shape[0]

    if n1 < min_samples or n2 < min_samples or n1 + n2 <= 2:
        raise ValueError(
            f"Insufficient samples for {group1} vs {group2}: "
            f"{n1} vs {n2} (minimum {min_samples} per group, more than 2 in total)"
        )

    logger.info(
        f"Welch t-test: {group1} (n={n1}) vs {group2} (n={n2}) "
        f"across {expression.shape[1]:,} genes"
    )

    mean1 = values1.mean(axis=0)
    mean2 = values2.mean(axis=0)

    if is_log:
        base = np.e if log_base == 'e' else float(log_base)
        log2_fc = (mean1 - mean2) * np.log2(base)
    else:
        with np.errstate(divide='ignore', invalid='ignore'):
            log2_fc = np.log2((mean1 + pseudocount) / (mean2 + pseudocount))

    with np.errstate(divide='ignore', invalid='ignore'):
        t_stat, pvalues = stats.ttest_ind(values1, values2, axis=0, equal_var=False)

    # No within-group spread in either group: the t statistic is undefined
    var1 = values1.var(axis=0, ddof=1) if n1 > 1 else np.zeros(values1.shape[1])
    var2 = values2.var(axis=0, ddof=1) if n2 > 1 else np.zeros(values2.shape[1])
    no_spread = (var1 == 0) & (var2 == 0)
    t_stat = np.where(no_spread, np.nan, t_stat)
    pvalues = np.where(no_spread, np.nan, pvalues)

    results = pd.DataFrame({
        f'mean_{group1}': mean1,
        f'mean_{group2}': mean2,
        'log2FoldChange': log2_fc,
        'cohens_d': cohens_d(values1, values2),
        't_stat': t_stat,
        'pvalue': pvalues,
    }, index=expression.columns)
    results.index.name = 'gene'

    results['padj'] = np.nan
    tested = results['pvalue'].notna()
    if tested.any():
        _, padj, _, _ = multipletests(results.loc[tested, 'pvalue'], method='fdr_bh')
        results.loc[tested, 'padj'] = padj

    n_untested = int((~tested).sum())
    if n_untested > 0:
        logger.info(f"  {n_untested:,} genes without a test statistic (no within-group variance)")

    return results


def annotate_significance(
    results: pd.DataFrame,
    lfc_threshold: float = 1.0,
    fdr_threshold: float = 0.05
) -> pd.DataFrame:
    """
    Add ``significant`` and ``direction`` (up / down / ns) columns.

    A gene is significant when padj < `fdr_threshold` and
    |log2FoldChange| > `lfc_threshold`.
    """
    results = results.copy()

    results['significant'] = (
        (results['padj'] < fdr_threshold) &
        (results['log2FoldChange'].abs() > lfc_threshold)
    )

    results['direction'] = 'ns'
    results.loc[results['significant'] & (results['log2FoldChange'] > 0), 'direction'] = 'up'
    results.loc[results['significant'] & (results['log2FoldChange'] < 0), 'direction'] = 'down'

    return results


def top_genes(
    results: pd.DataFrame,
    n: int = 50,
    by: str = "pvalue",
    significant_only: bool = False
) -> pd.Index:
    """
    Top `n` genes ranked by `by`.

    p-value-like columns are ranked ascending, anything else by absolute
    value descending. Untested genes (NaN) are never returned.
    """
    if by not in results.columns:
        raise KeyError(f"Column '{by}' not found in DE results")

    ranked = results.dropna(subset=[by])
    if significant_only and 'significant' in ranked.columns:
        ranked = ranked[ranked['significant']]

    if by in ('pvalue', 'padj'):
        ranked = ranked.sort_values(by)
    else:
        ranked = ranked.reindex(ranked[by].abs().sort_values(ascending=False).index)

    return ranked.index[:n]


def summarize_de(results: pd.DataFrame) -> Dict[str, int]:
    """Counts of tested, significant, up and down genes."""
    summary = {
        'n_genes': int(len(results)),
        'n_tested': int(results['pvalue'].notna().sum()),
    }
    if 'direction' in results.columns:
        summary['n_significant'] = int(results['significant'].sum())
        summary['n_up'] = int((results['direction'] == 'up').sum())
        summary['n_down'] = int((results['direction'] == 'down').sum())
    return summary


def run_differential_expression(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Run the configured comparison and return annotated, sorted results.

    Parameters
    ----------
    expression : pd.DataFrame
        Samples x genes (log scale)
    metadata : pd.DataFrame
        Sample metadata
    config : dict
        Configuration from analysis_params.yaml; uses the
        ``differential_expression`` and ``pseudobulk`` sections
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        DE results sorted by p-value (untested genes last)
    """
    logger = get_logger(logger)

    de_params = config['differential_expression']
    pb_params = config.get('pseudobulk', {})

    logger.info("="*60)
    logger.info(
        f"Differential expression: {de_params['group1']} vs {de_params['group2']} "
        f"({de_params['group_key']})"
    )
    logger.info("="*60)

    results = welch_ttest(
        expression,
        metadata,
        group_key=de_params['group_key'],
        group1=de_params['group1'],
        group2=de_params['group2'],
        min_samples=de_params.get('min_samples', 2),
        is_log=de_params.get('is_log', True),
        log_base=pb_params.get('log_base', 2),
        logger=logger
    )

    results = annotate_significance(
        results,
        lfc_threshold=de_params.get('lfc_threshold', 1.0),
        fdr_threshold=de_params.get('fdr_threshold', 0.05)
    )

    results = results.sort_values('pvalue', na_position='last')

    summary = summarize_de(results)
    logger.info(
        f"Tested {summary['n_tested']:,} / {summary['n_genes']:,} genes; "
        f"significant: {summary['n_significant']:,} "
        f"(up {summary['n_up']:,}, down {summary['n_down']:,})"
    )

    return results


def save_de_results(
    results: pd.DataFrame,
    output_path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """Write DE results as CSV with a ``gene`` column."""
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    results.to_csv(output_path, index_label='gene')

    logger.info(f"DE results saved to: {output_path} ({len(results):,} genes)")

    return output_path
