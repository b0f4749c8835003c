"""
Preprocessing Module
====================

Optional cell-level pass run before pseudo-bulk aggregation. It places
every QC-passing cell on a common embedding so that tumour and normal
captures can be compared by cell-state composition:

- library-size normalization and log1p (raw counts stay in ``layers['counts']``)
- highly variable genes, always including the LUAD marker panel
- scaling, PCA, neighbour graph / UMAP, Leiden clusters
- per-sample cluster composition
"""

import logging
from typing import Dict, Optional, Any

import pandas as pd
import scanpy as sc
import anndata as ad

from .utils import get_logger, log_memory_usage


def normalize_total(
    adata: ad.AnnData,
    target_sum: float = 1e4,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Scale each cell to `target_sum` total counts.

    The untouched matrix is copied to ``layers['counts']`` on first call;
    `aggregate_pseudobulk` reads that layer, so later transforms of ``X``
    never leak into the pseudo-bulk profiles.
    """
    logger = get_logger(logger)

    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    logger.info(f"Cells scaled to {target_sum:,.0f} counts (raw kept in layers['counts'])")

    return adata


def log_transform(
    adata: ad.AnnData,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """Apply log1p once; a second call is a no-op."""
    logger = get_logger(logger)

    if 'log1p' in adata.uns:
        logger.warning("adata.uns['log1p'] present; X is already log-scaled")
        return adata

    sc.pp.log1p(adata)
    logger.info("X log1p-transformed")

    return adata


def scale_data(
    adata: ad.AnnData,
    max_value: float = 10.0,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    logger = get_logger(logger)

    sc.pp.scale(adata, max_value=max_value)
    logger.info(f"Genes z-scored, clipped at +/-{max_value}")

    return adata


def select_highly_variable_genes(
    adata: ad.AnnData,
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Flag highly variable genes in ``adata.var['highly_variable']``.

    Parameters
    ----------
    adata : AnnData
        Log-normalized cells
    config : dict
        Uses the ``feature_selection`` section: ``n_top_genes``, ``flavor``,
        ``batch_aware`` / ``batch_key`` and ``marker_genes``. Markers present
        in the data are flagged regardless of their dispersion, so epithelial
        and immune panels (EPCAM, NKX2-1, PTPRC, ...) always reach the PCA.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Same object, annotated in place
    """
    logger = get_logger(logger)

    params = config['feature_selection']
    n_top_genes = min(params['n_top_genes'], adata.n_vars)

    batch_key = params.get('batch_key') if params.get('batch_aware', False) else None
    if batch_key is not None and batch_key not in adata.obs.columns:
        logger.warning(f"HVG batch key '{batch_key}' not in adata.obs; selecting without batches")
        batch_key = None

    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=n_top_genes,
        flavor=params.get('flavor', 'seurat'),
        batch_key=batch_key
    )

    markers = params.get('marker_genes', [])
    found = adata.var_names.intersection(markers)
    if params.get('force_include_markers', True) and len(found) > 0:
        adata.var.loc[found, 'highly_variable'] = True
    if len(found) < len(markers):
        absent = [g for g in markers if g not in found]
        logger.warning(f"Marker genes absent from data: {', '.join(absent)}")

    logger.info(
        f"{int(adata.var['highly_variable'].sum()):,} HVGs flagged "
        f"({len(found)} LUAD markers forced{', per ' + batch_key if batch_key else ''})"
    )

    return adata


def run_pca(
    adata: ad.AnnData,
    n_comps: int = 50,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    PCA on the HVG subset (all genes if none are flagged).

    `n_comps` is lowered to fit below both the cell and gene counts.
    """
    logger = get_logger(logger)

    if 'highly_variable' in adata.var.columns:
        mask_var = 'highly_variable'
        n_features = int(adata.var['highly_variable'].sum())
    else:
        mask_var = None
        n_features = adata.n_vars

    n_comps = min(n_comps, adata.n_obs - 1, n_features - 1)

    sc.tl.pca(adata, n_comps=n_comps, mask_var=mask_var, svd_solver='arpack', random_state=42)

    explained = adata.uns['pca']['variance_ratio'].sum()
    logger.info(f"Cell PCA: {n_comps} PCs over {n_features:,} genes, {explained*100:.1f}% variance")

    return adata


def run_umap(
    adata: ad.AnnData,
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """kNN graph on the PCA space, then UMAP, from ``dimensionality_reduction.umap``."""
    logger = get_logger(logger)

    params = config['dimensionality_reduction']['umap']
    n_pcs = params.get('n_pcs')
    if n_pcs is not None:
        n_pcs = min(n_pcs, adata.obsm['X_pca'].shape[1])

    sc.pp.neighbors(
        adata,
        n_neighbors=params['n_neighbors'],
        n_pcs=n_pcs,
        metric=params['metric'],
        random_state=params['random_state']
    )
    sc.tl.umap(
        adata,
        min_dist=params['min_dist'],
        spread=params['spread'],
        random_state=params['random_state']
    )
    logger.info(f"UMAP computed ({params['n_neighbors']} neighbours)")

    return adata


def run_leiden_clustering(
    adata: ad.AnnData,
    resolution: float = 0.5,
    key_added: str = 'leiden',
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    logger = get_logger(logger)

    sc.tl.leiden(
        adata,
        resolution=resolution,
        key_added=key_added,
        flavor='igraph',
        n_iterations=2,
        random_state=42
    )

    sizes = adata.obs[key_added].value_counts().sort_index()
    logger.info(
        f"Leiden (resolution={resolution}): {len(sizes)} clusters, "
        f"sizes {', '.join(f'{c}:{n}' for c, n in sizes.items())}"
    )

    return adata


def cluster_composition(
    adata: ad.AnnData,
    sample_key: str = 'sample_id',
    cluster_key: str = 'leiden',
    normalize: bool = True
) -> pd.DataFrame:
    """
    Cells per cluster in each sample.

    Parameters
    ----------
    adata : AnnData
        Clustered cells
    sample_key, cluster_key : str
        ``adata.obs`` columns to cross-tabulate
    normalize : bool, default True
        Return per-sample fractions (rows sum to 1) instead of counts

    Returns
    -------
    pd.DataFrame
        Samples x clusters

    Raises
    ------
    KeyError
        If either column is missing from ``adata.obs``
    """
    for key in (sample_key, cluster_key):
        if key not in adata.obs.columns:
            raise KeyError(f"Column '{key}' not found in adata.obs")

    table = pd.crosstab(
        adata.obs[sample_key],
        adata.obs[cluster_key],
        normalize='index' if normalize else False
    )
    table.columns = table.columns.astype(str)
    table.columns.name = cluster_key

    return table


def preprocess_pipeline(
    adata: ad.AnnData,
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Normalize -> log1p -> HVGs -> (scale) -> PCA -> UMAP -> Leiden.

    Driven by the ``normalization``, ``feature_selection``,
    ``dimensionality_reduction`` and ``clustering`` config sections.
    ``X`` ends up scaled; counts remain in ``layers['counts']``.
    """
    logger = get_logger(logger)

    logger.info("="*60)
    logger.info(f"Cell-level preprocessing: {adata.n_obs:,} cells x {adata.n_vars:,} genes")
    logger.info("="*60)

    norm = config['normalization']

    adata = normalize_total(adata, target_sum=norm['target_sum'], logger=logger)
    if norm.get('log_transform', True):
        adata = log_transform(adata, logger=logger)

    adata = select_highly_variable_genes(adata, config, logger=logger)

    if norm.get('scale', True):
        adata = scale_data(adata, max_value=norm.get('max_value', 10.0), logger=logger)

    adata = run_pca(
        adata,
        n_comps=config['dimensionality_reduction']['pca']['n_comps'],
        logger=logger
    )
    adata = run_umap(adata, config, logger=logger)
    adata = run_leiden_clustering(
        adata,
        resolution=config['clustering']['resolution'],
        logger=logger
    )

    log_memory_usage(logger)

    return adata
