"""
Pseudo-bulk Module
==================

Aggregates single cells into one expression profile per sample and
writes the flat sample x gene table used by the downstream analysis:
- Aggregation (mean or sum of counts per sample)
- CPM normalization and log transformation
- Low-expression gene filtering
- Metadata attachment and CSV round-trip
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Any, Union

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import sparse

from .data_loading import filter_samples
from .utils import get_logger, ensure_dir


AGGREGATION_METHODS = ('mean', 'sum')


def aggregate_pseudobulk(
    adata: ad.AnnData,
    sample_key: str = "sample_id",
    method: str = "mean",
    layer: Optional[str] = None,
    min_cells: int = 1,
    logger: Optional[logging.Logger] = None
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Aggregate cells to sample-level pseudo-bulk profiles.

    Parameters
    ----------
    adata : AnnData
        Cell-level AnnData
    sample_key : str, default "sample_id"
        Column in .obs defining the pseudo-bulk groups
    method : {"mean", "sum"}, default "mean"
        Aggregation applied to each gene within a sample
    layer : str, optional
        Layer to aggregate. Defaults to ``layers['counts']`` when present,
        otherwise ``X``.
    min_cells : int, default 1
        Samples with fewer cells are dropped
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pseudobulk : pd.DataFrame
        Samples x genes matrix
    n_cells : pd.Series
        Number of cells aggregated per sample

    Raises
    ------
    KeyError
        If `sample_key` or `layer` does not exist
    ValueError
        If `method` is unknown or no sample has enough cells

    Examples
    --------
    >>> pseudobulk, n_cells = aggregate_pseudobulk(adata, sample_key='sample_id')
    >>> pseudobulk.shape
    (20, 29634)
    """
    logger = get_logger(logger)

    if method not in AGGREGATION_METHODS:
        raise ValueError(
            f"Unknown aggregation method '{method}'. "
            f"Choose from: {', '.join(AGGREGATION_METHODS)}"
        )

    if sample_key not in adata.obs.columns:
        raise KeyError(
            f"Sample key '{sample_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    if layer is None and 'counts' in adata.layers:
        layer = 'counts'
    if layer is not None and layer not in adata.layers:
        raise KeyError(
            f"Layer '{layer}' not found. Available layers: {list(adata.layers.keys())}"
        )

    groups = adata.obs[sample_key].astype('category').cat.remove_unused_categories()
    counts = groups.value_counts()
    n_cells = counts.reindex(groups.cat.categories).astype(int)

    too_small = n_cells[n_cells < min_cells]
    if len(too_small) > 0:
        logger.warning(
            f"Dropping {len(too_small)} samples with < {min_cells} cells: "
            f"{', '.join(map(str, too_small.index))}"
        )
    n_cells = n_cells[n_cells >= min_cells]

    if n_cells.empty:
        raise ValueError(f"No sample has at least {min_cells} cells")

    keep = groups.isin(n_cells.index).to_numpy()
    subset = adata[keep].copy()
    subset.obs[sample_key] = pd.Categorical(
        groups[keep].astype(str),
        categories=[str(s) for s in n_cells.index]
    )

    logger.info(
        f"Aggregating {subset.n_obs:,} cells into {len(n_cells)} pseudo-bulk samples "
        f"(method={method}, layer={layer or 'X'})"
    )

    aggregated = sc.get.aggregate(subset, by=sample_key, func=method, layer=layer)

    values = aggregated.layers[method]
    if sparse.issparse(values):
        values = values.toarray()

    pseudobulk = pd.DataFrame(
        np.asarray(values, dtype=float),
        index=aggregated.obs_names.astype(str),
        columns=aggregated.var_names
    )
    n_cells.index = n_cells.index.astype(str)
    pseudobulk = pseudobulk.reindex(n_cells.index)
    pseudobulk.index.name = sample_key
    n_cells.index.name = sample_key
    n_cells.name = 'n_cells'

    logger.info(
        f"Pseudo-bulk matrix: {pseudobulk.shape[0]} samples x {pseudobulk.shape[1]:,} genes"
    )
    for sample, n in n_cells.items():
        logger.debug(f"  {sample}: {n:,} cells")

    return pseudobulk, n_cells


def normalize_cpm(pseudobulk: pd.DataFrame) -> pd.DataFrame:
    """Scale each sample to counts per million; empty samples stay zero."""
    library_sizes = pseudobulk.sum(axis=1)
    library_sizes = library_sizes.replace(0, np.nan)
    cpm = pseudobulk.div(library_sizes, axis=0) * 1e6
    return cpm.fillna(0.0)


def log_transform_pseudobulk(
    pseudobulk: pd.DataFrame,
    base: Union[float, str] = 2,
    pseudocount: float = 1.0
) -> pd.DataFrame:
    """
    Log-transform pseudo-bulk values: log_base(x + pseudocount).

    Parameters
    ----------
    pseudobulk : pd.DataFrame
        Non-negative samples x genes matrix
    base : float or "e", default 2
        Logarithm base
    pseudocount : float, default 1.0
        Added before taking the log

    Raises
    ------
    ValueError
        If the input contains negative values or the pseudocount is not
        positive
    """
    if pseudocount <= 0:
        raise ValueError(f"pseudocount must be positive, got {pseudocount}")

    if (pseudobulk.to_numpy() < 0).any():
        raise ValueError("Cannot log-transform negative expression values")

    logged = np.log(pseudobulk + pseudocount)
    if base != 'e':
        logged = logged / np.log(float(base))

    return logged


def filter_expressed_genes(
    expression: pd.DataFrame,
    min_expression: float = 0.0,
    min_samples: int = 1,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Keep genes above `min_expression` in at least `min_samples` samples.
    """
    logger = get_logger(logger)

    expressed = (expression > min_expression).sum(axis=0) >= min_samples
    filtered = expression.loc[:, expressed]

    logger.info(
        f"Genes expressed (> {min_expression} in >= {min_samples} samples): "
        f"{filtered.shape[1]:,} / {expression.shape[1]:,}"
    )

    return filtered


def attach_metadata(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Prepend sample metadata columns to the expression table.

    Parameters
    ----------
    expression : pd.DataFrame
        Samples x genes
    metadata : pd.DataFrame
        Indexed by sample ID
    columns : list of str, optional
        Metadata columns to attach; all by default

    Returns
    -------
    pd.DataFrame
        Metadata columns followed by gene columns, in expression row order

    Raises
    ------
    ValueError
        If a sample has no metadata or a metadata column clashes with a gene
    KeyError
        If a requested metadata column does not exist
    """
    if columns is None:
        columns = list(metadata.columns)

    missing_columns = [c for c in columns if c not in metadata.columns]
    if missing_columns:
        raise KeyError(f"Metadata columns not found: {', '.join(missing_columns)}")

    clashes = [c for c in columns if c in expression.columns]
    if clashes:
        raise ValueError(
            f"Metadata columns clash with gene names: {', '.join(clashes)}"
        )

    missing_samples = [s for s in expression.index if s not in metadata.index]
    if missing_samples:
        raise ValueError(
            f"No metadata for samples: {', '.join(map(str, missing_samples))}"
        )

    sample_metadata = metadata.loc[expression.index, columns]
    return pd.concat([sample_metadata, expression], axis=1)


def split_expression_metadata(
    table: pd.DataFrame,
    metadata_columns: Optional[List[str]] = None
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split a pseudo-bulk table into (expression, metadata).

    Without `metadata_columns`, every non-numeric column plus ``n_cells`` is
    treated as metadata.
    """
    if metadata_columns is None:
        metadata_columns = [
            c for c in table.columns
            if not pd.api.types.is_numeric_dtype(table[c]) or c == 'n_cells'
        ]
    else:
        metadata_columns = [c for c in metadata_columns if c in table.columns]

    metadata = table[metadata_columns]
    expression = table.drop(columns=metadata_columns).astype(float)

    return expression, metadata


def write_pseudobulk_csv(
    table: pd.DataFrame,
    output_path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """Write the pseudo-bulk table with a ``sample_id`` index column."""
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    table.to_csv(output_path, index_label='sample_id')

    logger.info(
        f"Pseudo-bulk table saved to: {output_path} "
        f"({table.shape[0]} samples x {table.shape[1]:,} columns)"
    )

    return output_path


def read_pseudobulk_csv(
    path: Union[str, Path],
    metadata_columns: Optional[List[str]] = None,
    logger: Optional[logging.Logger] = None
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Read a table written by `write_pseudobulk_csv`.

    Returns
    -------
    expression : pd.DataFrame
        Samples x genes (float)
    metadata : pd.DataFrame
        Samples x metadata columns
    """
    logger = get_logger(logger)

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pseudo-bulk table not found: {path}")

    table = pd.read_csv(path, index_col=0)
    table.index = table.index.astype(str)

    expression, metadata = split_expression_metadata(table, metadata_columns)

    logger.info(
        f"Loaded pseudo-bulk table: {expression.shape[0]} samples x "
        f"{expression.shape[1]:,} genes, metadata: {', '.join(metadata.columns)}"
    )

    return expression, metadata


def build_pseudobulk(
    adata: ad.AnnData,
    metadata: pd.DataFrame,
    config: Dict[str, Any],
    sample_key: str = "sample_id",
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Run the pseudo-bulk stage end to end.

    Steps:
    1. Filter cells to the samples listed in `metadata`
    2. Aggregate per sample
    3. CPM-normalize (optional)
    4. Log-transform
    5. Drop unexpressed genes
    6. Attach metadata (including ``n_cells``)

    Parameters
    ----------
    adata : AnnData
        Cell-level AnnData (post-QC)
    metadata : pd.DataFrame
        Sample sheet indexed by sample ID; its order defines row order
    config : dict
        Configuration from analysis_params.yaml (``pseudobulk`` section)
    sample_key : str, default "sample_id"
        Sample column in .obs
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Metadata + log expression table, one row per sample
    """
    logger = get_logger(logger)

    params = config.get('pseudobulk', {})

    logger.info("="*60)
    logger.info("Building pseudo-bulk profiles")
    logger.info("="*60)

    adata = filter_samples(adata, list(metadata.index), sample_key=sample_key, logger=logger)

    pseudobulk, n_cells = aggregate_pseudobulk(
        adata,
        sample_key=sample_key,
        method=params.get('method', 'mean'),
        layer=params.get('layer'),
        min_cells=params.get('min_cells', 1),
        logger=logger
    )

    if params.get('normalize_cpm', False):
        logger.info("Normalizing pseudo-bulk profiles to CPM")
        pseudobulk = normalize_cpm(pseudobulk)

    log_base = params.get('log_base', 2)
    pseudocount = params.get('pseudocount', 1.0)
    logger.info(f"Log-transforming: log{log_base}(x + {pseudocount})")
    expression = log_transform_pseudobulk(pseudobulk, base=log_base, pseudocount=pseudocount)

    expression = filter_expressed_genes(
        expression,
        min_expression=params.get('min_expression', 0.0),
        min_samples=params.get('min_samples', 1),
        logger=logger
    )

    sample_metadata = metadata.loc[expression.index].copy()
    sample_metadata['n_cells'] = n_cells.loc[expression.index].to_numpy()

    return attach_metadata(expression, sample_metadata)
