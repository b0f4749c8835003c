"""
Sample-level PCA on pseudo-bulk profiles.
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from .utils import get_logger


def select_variable_genes(
    expression: pd.DataFrame,
    n_top_genes: Optional[int] = None
) -> pd.DataFrame:
    """
    Restrict a samples x genes matrix to its most variable genes.

    Genes with zero variance are always removed. With `n_top_genes=None`
    all remaining genes are kept.
    """
    variances = expression.var(axis=0)
    variances = variances[variances > 0]

    if n_top_genes is not None:
        variances = variances.nlargest(n_top_genes)

    return expression.loc[:, variances.index]


def run_sample_pca(
    expression: pd.DataFrame,
    n_components: int = 10,
    n_top_genes: Optional[int] = None,
    scale: bool = True,
    random_state: int = 42,
    logger: Optional[logging.Logger] = None
) -> Tuple[pd.DataFrame, pd.Series, pd.DataFrame]:
    """
    Run PCA over samples.

    Parameters
    ----------
    expression : pd.DataFrame
        Samples x genes, log scale
    n_components : int, default 10
        Requested components; capped at min(n_samples, n_genes)
    n_top_genes : int, optional
        Use only the most variable genes
    scale : bool, default True
        Standardize genes to unit variance before PCA (centering is
        always applied)
    random_state : int, default 42
        Seed for the randomized SVD solver
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    scores : pd.DataFrame
        Samples x PCs
    explained_variance : pd.Series
        Explained variance ratio per PC
    loadings : pd.DataFrame
        Genes x PCs

    Raises
    ------
    ValueError
        If fewer than 2 samples or no variable genes remain

    Examples
    --------
    >>> scores, explained, loadings = run_sample_pca(expression, n_components=5)
    >>> explained.round(3)
    """
    logger = get_logger(logger)

    if expression.shape[0] < 2:
        raise ValueError(f"PCA needs at least 2 samples, got {expression.shape[0]}")

    data = select_variable_genes(expression, n_top_genes)
    if data.shape[1] == 0:
        raise ValueError("No genes with non-zero variance for PCA")

    n_components = min(n_components, data.shape[0], data.shape[1])

    logger.info(
        f"Running sample PCA: {data.shape[0]} samples x {data.shape[1]:,} genes, "
        f"{n_components} components (scale={scale})"
    )

    values = StandardScaler(with_std=scale).fit_transform(data.to_numpy())

    pca = PCA(n_components=n_components, random_state=random_state)
    embedding = pca.fit_transform(values)

    pc_names = [f"PC{i + 1}" for i in range(n_components)]

    scores = pd.DataFrame(embedding, index=data.index, columns=pc_names)
    explained_variance = pd.Series(
        pca.explained_variance_ratio_,
        index=pc_names,
        name='explained_variance_ratio'
    )
    loadings = pd.DataFrame(pca.components_.T, index=data.columns, columns=pc_names)

    cumulative = np.cumsum(pca.explained_variance_ratio_)
    for name, ratio, cum in zip(pc_names[:5], pca.explained_variance_ratio_, cumulative):
        logger.info(f"  {name}: {ratio*100:.1f}% (cumulative {cum*100:.1f}%)")

    return scores, explained_variance, loadings


def top_loading_genes(
    loadings: pd.DataFrame,
    component: str = "PC1",
    n: int = 20
) -> pd.DataFrame:
    """Genes with the largest absolute loading on `component`."""
    if component not in loadings.columns:
        raise KeyError(f"Component '{component}' not found in loadings")

    order = loadings[component].abs().sort_values(ascending=False).index[:n]
    top = loadings.loc[order, [component]].rename(columns={component: 'loading'})
    top['direction'] = np.where(top['loading'] >= 0, 'positive', 'negative')

    return top
