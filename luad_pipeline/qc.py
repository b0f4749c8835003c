"""
Quality Control Module
======================

Cell and gene QC for the LUAD count matrix, Seurat style:
- per-cell metrics with mitochondrial / ribosomal / haemoglobin fractions
- hard cut-offs from ``qc_thresholds.yaml``, optionally MAD outliers on top
- Scrublet doublet calls (scanpy implementation), per capture
- gene filtering, per-sample summaries and QC figures
"""

import logging
from typing import Dict, List, Optional, Any
from pathlib import Path

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
import matplotlib.pyplot as plt
from scipy.stats import median_abs_deviation

from .utils import get_logger, ensure_dir, log_memory_usage, cleanup_memory


# (obs column, qc_metrics key, comparison); a cell passes when
# `value >= threshold` for 'min' and `value <= threshold` for 'max'
THRESHOLDS = [
    ('n_genes_by_counts', 'min_genes', 'min'),
    ('n_genes_by_counts', 'max_genes', 'max'),
    ('total_counts', 'min_counts', 'min'),
    ('pct_counts_mt', 'max_pct_mt', 'max'),
    ('pct_counts_ribo', 'max_pct_ribo', 'max'),
    ('pct_counts_hb', 'max_pct_hb', 'max'),
]

# Metrics screened for MAD outliers
OUTLIER_METRICS = {
    'outlier_genes': 'n_genes_by_counts',
    'outlier_counts': 'total_counts',
    'outlier_mt': 'pct_counts_mt',
}


def calculate_qc_metrics(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Annotate gene classes and compute per-cell QC metrics.

    Gene classes in ``adata.var``: ``mt`` (``MT-``), ``ribo`` (``RPS``/``RPL``)
    and ``hb`` (``HB*`` except ``HBP*``). scanpy then adds
    ``n_genes_by_counts``, ``total_counts`` and ``pct_counts_{mt,ribo,hb}``
    to ``adata.obs``.

    Examples
    --------
    >>> adata = calculate_qc_metrics(adata)
    >>> adata.obs[['n_genes_by_counts', 'pct_counts_mt']].describe()
    """
    logger = get_logger(logger)

    names = adata.var_names.str.upper()
    adata.var['mt'] = names.str.startswith('MT-')
    adata.var['ribo'] = names.str.match(r'^RP[SL]')
    adata.var['hb'] = names.str.match(r'^HB[^P]')

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=['mt', 'ribo', 'hb'],
        percent_top=None,
        log1p=False,
        inplace=True
    )

    obs = adata.obs
    logger.info(
        f"QC metrics on {adata.n_obs:,} cells: median {obs['n_genes_by_counts'].median():.0f} genes, "
        f"{obs['total_counts'].median():.0f} UMIs, MT {obs['pct_counts_mt'].median():.1f}%, "
        f"ribo {obs['pct_counts_ribo'].median():.1f}%, HB {obs['pct_counts_hb'].median():.2f}%"
    )

    return adata


def detect_outliers_mad(
    values: np.ndarray,
    n_mads: float = 5.0
) -> np.ndarray:
    """
    Flag values more than `n_mads` median absolute deviations from the median.

    A MAD of zero (constant input) flags nothing.
    """
    values = np.asarray(values, dtype=float)
    mad = median_abs_deviation(values)
    if mad == 0:
        return np.zeros(values.shape, dtype=bool)

    return np.abs(values - np.median(values)) > n_mads * mad


def filter_cells_qc(
    adata: ad.AnnData,
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Drop cells failing the ``qc_metrics`` cut-offs or flagged as MAD outliers.

    Parameters
    ----------
    adata : AnnData
        Cells with metrics from `calculate_qc_metrics`
    config : dict
        ``qc_metrics`` holds the cut-offs (each optional); the
        ``outlier_detection`` section enables the MAD screen (``n_mads``)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Passing cells; ``pass_*``, ``outlier_*`` and ``pass_qc`` columns
        are kept in ``.obs``

    Raises
    ------
    ValueError
        If no cell passes
    """
    logger = get_logger(logger)

    cutoffs = config['qc_metrics']
    outliers = config.get('outlier_detection', {})
    obs = adata.obs
    n_before = adata.n_obs

    passed = np.ones(n_before, dtype=bool)
    for column, key, kind in THRESHOLDS:
        if key not in cutoffs:
            continue
        values = obs[column].to_numpy()
        ok = values >= cutoffs[key] if kind == 'min' else values <= cutoffs[key]
        obs[f'pass_{key}'] = ok
        passed &= ok
        logger.info(f"  {key} = {cutoffs[key]}: {int((~ok).sum()):,} cells fail")

    n_mads = outliers.get('n_mads', 5.0)
    for flag, column in OUTLIER_METRICS.items():
        if outliers.get('enabled', True):
            obs[flag] = detect_outliers_mad(obs[column].to_numpy(), n_mads)
            logger.info(f"  {column} beyond {n_mads} MADs: {int(obs[flag].sum()):,} cells")
        else:
            obs[flag] = False
        passed &= ~obs[flag].to_numpy(dtype=bool)

    obs['pass_qc'] = passed
    n_after = int(passed.sum())

    if n_after == 0:
        raise ValueError(
            f"No cells passed QC out of {n_before:,}; check qc_thresholds.yaml"
        )

    logger.info(f"Cells kept after QC: {n_after:,} / {n_before:,} ({n_after/n_before*100:.1f}%)")

    return adata[passed].copy()


def detect_doublets(
    adata: ad.AnnData,
    config: Dict[str, Any],
    batch_key: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Score doublets with scanpy's Scrublet.

    Doublets only form within one capture, so simulation runs per
    `batch_key` (the sample column) when one is given. Settings come from
    ``doublet_detection.scrublet``; a missing ``threshold`` lets Scrublet
    pick one from the bimodal score histogram.

    Returns
    -------
    AnnData
        With ``doublet_score`` and ``predicted_doublet`` in ``.obs``
    """
    logger = get_logger(logger)

    params = config['doublet_detection']['scrublet']

    sc.pp.scrublet(
        adata,
        batch_key=batch_key,
        expected_doublet_rate=params.get('expected_doublet_rate', 0.06),
        n_prin_comps=params.get('n_prin_comps', 30),
        threshold=params.get('threshold'),
        random_state=params.get('random_state', 0)
    )

    # Scrublet leaves no calls when it cannot place a threshold
    adata.obs['predicted_doublet'] = (
        adata.obs['predicted_doublet'].fillna(False).astype(bool)
    )
    n_doublets = int(adata.obs['predicted_doublet'].sum())
    logger.info(
        f"Scrublet{' per ' + batch_key if batch_key else ''}: "
        f"{n_doublets:,} predicted doublets ({n_doublets/adata.n_obs*100:.2f}%)"
    )

    return adata


def remove_doublets(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Drop cells with ``obs['predicted_doublet']``; no-op if it was never computed."""
    logger = get_logger(logger)

    if 'predicted_doublet' not in adata.obs.columns:
        logger.warning("predicted_doublet not in adata.obs; keeping all cells")
        return adata

    singlets = ~adata.obs['predicted_doublet'].to_numpy(dtype=bool)
    logger.info(f"Removing {int((~singlets).sum()):,} doublets of {adata.n_obs:,} cells")

    return adata[singlets].copy()


def filter_genes(
    adata: ad.AnnData,
    min_cells: int = 3,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    logger = get_logger(logger)

    n_before = adata.n_vars
    sc.pp.filter_genes(adata, min_cells=min_cells)
    logger.info(f"Genes detected in >= {min_cells} cells: {adata.n_vars:,} / {n_before:,}")

    return adata


def qc_summary_by_sample(
    adata: ad.AnnData,
    sample_key: str = "sample_id"
) -> pd.DataFrame:
    """
    Per-sample cell counts and median QC metrics.

    Returns
    -------
    pd.DataFrame
        Indexed by sample, columns: n_cells, median_genes, median_counts,
        median_pct_mt
    """
    if sample_key not in adata.obs.columns:
        raise KeyError(f"Sample key '{sample_key}' not found in adata.obs")

    grouped = adata.obs.groupby(sample_key, observed=True)

    summary = pd.DataFrame({
        'n_cells': grouped.size(),
        'median_genes': grouped['n_genes_by_counts'].median(),
        'median_counts': grouped['total_counts'].median(),
        'median_pct_mt': grouped['pct_counts_mt'].median(),
    })
    summary.index.name = sample_key

    return summary


def plot_qc_metrics(
    adata: ad.AnnData,
    output_dir: Path,
    groupby: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> List[Path]:
    """
    Violin plots of the five QC metrics per `groupby`, plus counts-vs-genes
    and counts-vs-MT% scatters.

    Returns
    -------
    list of Path
        ``qc_violin_plots.pdf`` and ``qc_scatter_plots.pdf`` in `output_dir`
    """
    logger = get_logger(logger)

    output_dir = ensure_dir(output_dir)
    metrics = [
        m for m in (
            'n_genes_by_counts', 'total_counts',
            'pct_counts_mt', 'pct_counts_ribo', 'pct_counts_hb'
        )
        if m in adata.obs.columns
    ]

    fig, axes = plt.subplots(1, len(metrics), figsize=(4 * len(metrics), 5), squeeze=False)
    for ax, metric in zip(axes[0], metrics):
        sc.pl.violin(adata, keys=metric, groupby=groupby, ax=ax, show=False, rotation=90)
        ax.set_title(metric)
    fig.tight_layout()
    violin_path = output_dir / "qc_violin_plots.pdf"
    fig.savefig(violin_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    sc.pl.scatter(
        adata, x='total_counts', y='n_genes_by_counts',
        color='pct_counts_mt', ax=axes[0], show=False
    )
    sc.pl.scatter(adata, x='total_counts', y='pct_counts_mt', ax=axes[1], show=False)
    fig.tight_layout()
    scatter_path = output_dir / "qc_scatter_plots.pdf"
    fig.savefig(scatter_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"QC figures saved to: {output_dir}")

    return [violin_path, scatter_path]


def run_qc_pipeline(
    adata: ad.AnnData,
    config: Dict[str, Any],
    sample_key: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Metrics -> cell filter -> (Scrublet, per `sample_key`) -> gene filter.

    Parameters
    ----------
    adata : AnnData
        Raw counts of the target samples
    config : dict
        Merged configuration; reads the ``qc_thresholds.yaml`` sections
    sample_key : str, optional
        Sample column, used as the Scrublet batch key
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        QC-filtered AnnData
    """
    logger = get_logger(logger)

    logger.info("="*60)
    logger.info(f"QC: {adata.n_obs:,} cells x {adata.n_vars:,} genes")
    logger.info("="*60)

    adata = calculate_qc_metrics(adata, logger=logger)
    adata = filter_cells_qc(adata, config, logger=logger)

    if config.get('doublet_detection', {}).get('enabled', False):
        adata = detect_doublets(adata, config, batch_key=sample_key, logger=logger)
        adata = remove_doublets(adata, logger=logger)
    else:
        logger.info("Doublet detection disabled")

    adata = filter_genes(
        adata,
        min_cells=config.get('gene_filtering', {}).get('min_cells', 3),
        logger=logger
    )

    cleanup_memory(logger)
    log_memory_usage(logger)

    return adata
