"""
Data Loading Module
===================

This module reads raw single-cell count matrices and sample sheets.

Key functions:
- load_count_matrix: Read H5AD, 10x H5, 10x MTX or delimited text into AnnData
- load_sample_matrices: Read one matrix per sample and concatenate
- assign_samples_from_barcodes: Recover sample IDs from barcode suffixes
- filter_samples: Restrict cells to the target samples
- load_sample_metadata: Build the per-sample metadata table
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad
from scipy import sparse
from tqdm import tqdm

from .utils import get_logger, load_config


TEXT_SUFFIXES = {'.csv': ',', '.tsv': '\t', '.txt': '\t'}


def _text_delimiter(path: Path) -> Optional[str]:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] == '.gz':
        suffixes = suffixes[:-1]
    if not suffixes:
        return None
    return TEXT_SUFFIXES.get(suffixes[-1])


def _read_text_matrix(
    path: Path,
    delimiter: str,
    transpose: bool
) -> ad.AnnData:
    table = pd.read_csv(path, sep=delimiter, index_col=0)

    if transpose:
        table = table.T

    adata = ad.AnnData(
        X=sparse.csr_matrix(table.to_numpy(dtype=np.float32)),
        obs=pd.DataFrame(index=table.index.astype(str)),
        var=pd.DataFrame(index=table.columns.astype(str))
    )
    return adata


def load_count_matrix(
    path: Union[str, Path],
    transpose: Optional[bool] = None,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Load a raw UMI count matrix as AnnData (cells x genes).

    Supported inputs:
    - ``.h5ad`` AnnData files
    - ``.h5`` Cell Ranger feature-barcode matrices
    - Cell Ranger MTX directories (matrix.mtx[.gz], features/genes, barcodes)
    - Delimited text (``.csv``, ``.tsv``, ``.txt``, optionally gzipped)

    Parameters
    ----------
    path : str or Path
        Input file or directory
    transpose : bool, optional
        Only used for delimited text. Text matrices from GEO are stored
        genes x cells, so they are transposed unless ``transpose=False``.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Count matrix with unique gene names

    Raises
    ------
    FileNotFoundError
        If `path` does not exist
    ValueError
        If the format is not recognised

    Examples
    --------
    >>> adata = load_count_matrix("data/raw/GSE131907_Lung_Cancer_raw_UMI_matrix.txt.gz")
    >>> print(adata.shape)
    """
    logger = get_logger(logger)
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Count matrix not found: {path}")

    logger.info(f"Loading count matrix: {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names='gene_symbols', cache=False)
    elif path.suffix == '.h5ad':
        adata = ad.read_h5ad(path)
    elif path.suffix == '.h5':
        adata = sc.read_10x_h5(path)
    else:
        delimiter = _text_delimiter(path)
        if delimiter is None:
            raise ValueError(
                f"Unrecognised count matrix format: {path}. "
                f"Expected .h5ad, .h5, an MTX directory or "
                f"{', '.join(TEXT_SUFFIXES)} (optionally .gz)"
            )
        adata = _read_text_matrix(
            path,
            delimiter,
            transpose=True if transpose is None else transpose
        )

    adata.var_names_make_unique()

    logger.info(f"Loaded {adata.n_obs:,} cells x {adata.n_vars:,} genes")

    return adata


def load_sample_matrices(
    paths: Dict[str, Union[str, Path]],
    sample_key: str = "sample_id",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Load one count matrix per sample and concatenate them.

    Cell barcodes get a ``_<sample_id>`` suffix so they stay unique across
    samples, and ``obs[sample_key]`` records the origin of each cell. Only
    genes shared by every sample are kept.

    Parameters
    ----------
    paths : dict
        Mapping sample_id -> matrix path
    sample_key : str, default "sample_id"
        Column created in .obs
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Concatenated count matrix

    Examples
    --------
    >>> adata = load_sample_matrices({
    ...     'LUNG_N06': 'data/raw/LUNG_N06/filtered_feature_bc_matrix',
    ...     'LUNG_T06': 'data/raw/LUNG_T06/filtered_feature_bc_matrix',
    ... })
    """
    logger = get_logger(logger)

    if not paths:
        raise ValueError("No sample matrices given")

    logger.info(f"Loading {len(paths)} per-sample count matrices")

    adatas = {}
    for sample_id, path in tqdm(paths.items(), total=len(paths), desc="Loading samples"):
        adatas[sample_id] = load_count_matrix(path, logger=logger)

    adata = ad.concat(adatas, label=sample_key, index_unique='_')

    logger.info(
        f"Combined matrix: {adata.n_obs:,} cells x {adata.n_vars:,} shared genes"
    )

    return adata


def assign_samples_from_barcodes(
    adata: ad.AnnData,
    sample_key: str = "sample_id",
    separator: str = "_",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Derive sample IDs from barcodes of the form ``<barcode><sep><sample>``.

    Everything after the first separator is taken as the sample ID, so
    ``AAACCTGAGAAACCGC_LUNG_N01`` maps to ``LUNG_N01``.

    Raises
    ------
    ValueError
        If any barcode lacks the separator
    """
    logger = get_logger(logger)

    parts = adata.obs_names.to_series().str.split(separator, n=1)
    samples = parts.str[1]

    n_missing = samples.isna().sum()
    if n_missing > 0:
        examples = ', '.join(adata.obs_names[samples.isna().to_numpy()][:3])
        raise ValueError(
            f"{n_missing} barcodes have no '{separator}' sample suffix "
            f"(e.g. {examples})"
        )

    adata.obs[sample_key] = pd.Categorical(samples.to_numpy())

    logger.info(
        f"Assigned {adata.obs[sample_key].nunique()} samples from barcode suffixes"
    )

    return adata


def filter_samples(
    adata: ad.AnnData,
    samples: List[str],
    sample_key: str = "sample_id",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Keep only cells belonging to the target samples.

    Parameters
    ----------
    adata : AnnData
        Input AnnData
    samples : list of str
        Target sample IDs, in the order they should be reported
    sample_key : str, default "sample_id"
        Column in .obs holding sample IDs
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData
        Subset AnnData whose ``obs[sample_key]`` is categorical with the
        found samples as categories, in requested order

    Raises
    ------
    KeyError
        If `sample_key` is not in .obs
    ValueError
        If none of the target samples are present
    """
    logger = get_logger(logger)

    if sample_key not in adata.obs.columns:
        raise KeyError(
            f"Sample key '{sample_key}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    observed = set(adata.obs[sample_key].astype(str))
    present = [s for s in samples if s in observed]
    missing = [s for s in samples if s not in observed]

    if missing:
        logger.warning(
            f"{len(missing)} target samples not found in data: {', '.join(missing)}"
        )

    if not present:
        raise ValueError(
            f"None of the {len(samples)} target samples are present in "
            f"adata.obs['{sample_key}']"
        )

    mask = adata.obs[sample_key].astype(str).isin(present).to_numpy()
    subset = adata[mask].copy()
    subset.obs[sample_key] = pd.Categorical(
        subset.obs[sample_key].astype(str),
        categories=present
    )

    logger.info(
        f"Filtered to {len(present)} samples: {subset.n_obs:,} / {adata.n_obs:,} cells "
        f"({subset.n_obs/adata.n_obs*100:.1f}%)"
    )

    return subset


def load_sample_metadata(
    source: Union[str, Path, Dict[str, Any]],
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Build the per-sample metadata table.

    Parameters
    ----------
    source : dict, str or Path
        Either a configuration dict with a ``samples`` list (as in
        ``config/samples.yaml``), a path to such a YAML file, or a CSV
        with a ``sample_id`` column.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Metadata indexed by ``sample_id``, in sheet order

    Examples
    --------
    >>> metadata = load_sample_metadata("config/samples.yaml")
    >>> metadata['condition'].value_counts()
    """
    logger = get_logger(logger)

    if isinstance(source, dict):
        records = source.get('samples')
    else:
        path = Path(source)
        if path.suffix.lower() in ('.yaml', '.yml'):
            records = load_config(path).get('samples')
        elif path.suffix.lower() == '.csv':
            if not path.exists():
                raise FileNotFoundError(f"Sample sheet not found: {path}")
            records = pd.read_csv(path).to_dict(orient='records')
        else:
            raise ValueError(f"Unsupported sample sheet format: {path}")

    if not records:
        raise ValueError("Sample sheet contains no samples")

    metadata = pd.DataFrame(records)

    if 'sample_id' not in metadata.columns:
        raise KeyError("Sample sheet is missing the 'sample_id' column")

    metadata['sample_id'] = metadata['sample_id'].astype(str)
    duplicated = metadata['sample_id'][metadata['sample_id'].duplicated()]
    if len(duplicated) > 0:
        raise ValueError(
            f"Duplicate sample IDs in sample sheet: {', '.join(duplicated.unique())}"
        )

    metadata = metadata.set_index('sample_id')

    logger.info(
        f"Loaded metadata for {len(metadata)} samples "
        f"(columns: {', '.join(metadata.columns)})"
    )

    return metadata
