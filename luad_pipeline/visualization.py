"""
Visualization Module
====================

This module provides publication-quality plotting functions:
- Sample PCA and scree plots
- Volcano plots
- Hierarchically clustered heatmaps of pseudo-bulk expression
- Cell-level UMAP grids and marker heatmaps
"""

import logging
from typing import Dict, List, Optional, Tuple, Sequence
from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
import seaborn as sns
import scanpy as sc
import anndata as ad

from .utils import get_logger, ensure_dir


# Set publication-quality defaults
sc.set_figure_params(
    dpi=100,
    dpi_save=300,
    frameon=False,
    vector_friendly=True,
    fontsize=10,
    figsize=(6, 6),
    format='pdf'
)


def _category_colors(values: pd.Series, palette: str = 'Set2') -> Dict[str, Tuple]:
    categories = list(pd.unique(values.astype(str)))
    colors = sns.color_palette(palette, len(categories))
    return dict(zip(categories, colors))


def plot_pca(
    scores: pd.DataFrame,
    explained_variance: pd.Series,
    metadata: pd.DataFrame,
    output_path: Path,
    color_by: str = 'condition',
    pcs: Tuple[str, str] = ('PC1', 'PC2'),
    label_samples: bool = True,
    figsize: Tuple[int, int] = (7, 6),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Scatter plot of sample PCA scores coloured by a metadata column.

    Parameters
    ----------
    scores : pd.DataFrame
        Samples x PCs, from `run_sample_pca`
    explained_variance : pd.Series
        Explained variance ratio per PC
    metadata : pd.DataFrame
        Sample metadata indexed like `scores`
    output_path : Path
        Output file path
    color_by : str, default 'condition'
        Metadata column used for colours
    pcs : tuple of str, default ('PC1', 'PC2')
        Components on the x and y axes
    label_samples : bool, default True
        Annotate each point with its sample ID
    figsize : tuple, default (7, 6)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_pca(scores, explained, metadata,
    ...          output_path=Path("results/figures/pca_condition.pdf"))
    """
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    x_pc, y_pc = pcs
    for pc in pcs:
        if pc not in scores.columns:
            raise KeyError(f"Component '{pc}' not in PCA scores")
    if color_by not in metadata.columns:
        raise KeyError(f"Metadata column '{color_by}' not found")

    logger.info(f"Generating PCA plot: {output_path}")

    df = scores[[x_pc, y_pc]].join(metadata[[color_by]].astype(str))

    fig, ax = plt.subplots(figsize=figsize)

    sns.scatterplot(
        data=df,
        x=x_pc,
        y=y_pc,
        hue=color_by,
        palette=_category_colors(df[color_by]),
        s=80,
        edgecolor='black',
        ax=ax
    )

    if label_samples:
        for sample, row in df.iterrows():
            ax.annotate(
                sample,
                (row[x_pc], row[y_pc]),
                fontsize=7,
                alpha=0.8,
                xytext=(3, 3),
                textcoords='offset points'
            )

    ax.set_xlabel(f"{x_pc} ({explained_variance[x_pc]*100:.1f}%)", fontsize=12)
    ax.set_ylabel(f"{y_pc} ({explained_variance[y_pc]*100:.1f}%)", fontsize=12)
    ax.set_title('Pseudo-bulk PCA', fontsize=14)
    ax.legend(title=color_by, loc='best', frameon=True)
    ax.grid(alpha=0.3, linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"PCA plot saved to: {output_path}")

    return output_path


def plot_scree(
    explained_variance: pd.Series,
    output_path: Path,
    figsize: Tuple[int, int] = (8, 5),
    logger: Optional[logging.Logger] = None
) -> Path:
    """Bar plot of explained variance per PC with the cumulative curve."""
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating scree plot: {output_path}")

    fig, ax = plt.subplots(figsize=figsize)

    positions = np.arange(len(explained_variance))
    ax.bar(positions, explained_variance.values * 100, color='#3498DB', edgecolor='black')
    ax.plot(
        positions,
        np.cumsum(explained_variance.values) * 100,
        color='#E74C3C',
        marker='o',
        label='Cumulative'
    )
    ax.set_xticks(positions)
    ax.set_xticklabels(explained_variance.index, rotation=45)
    ax.set_ylabel('Variance explained (%)', fontsize=12)
    ax.set_title('Scree Plot', fontsize=14)
    ax.legend(loc='center right')
    ax.grid(alpha=0.3, axis='y')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Scree plot saved to: {output_path}")

    return output_path


def plot_volcano(
    de_results: pd.DataFrame,
    output_path: Path,
    lfc_threshold: float = 1.0,
    fdr_threshold: float = 0.05,
    top_n_labels: int = 20,
    figsize: Tuple[int, int] = (10, 8),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Generate volcano plot for differential expression results.

    Parameters
    ----------
    de_results : pd.DataFrame
        DE results indexed by gene, with log2FoldChange and padj columns
    output_path : Path
        Output file path
    lfc_threshold : float, default 1.0
        Log2 fold change threshold for significance
    fdr_threshold : float, default 0.05
        FDR threshold for significance
    top_n_labels : int, default 20
        Number of top genes to label
    figsize : tuple, default (10, 8)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_volcano(
    ...     de_results,
    ...     output_path=Path("results/figures/volcano_tumor_vs_normal.pdf")
    ... )
    """
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating volcano plot: {output_path}")

    df = de_results.replace([np.inf, -np.inf], np.nan)
    df = df.dropna(subset=['log2FoldChange', 'padj']).copy()

    df['-log10(padj)'] = -np.log10(df['padj'].clip(lower=1e-300))

    df['significant'] = (
        (df['padj'] < fdr_threshold) &
        (np.abs(df['log2FoldChange']) > lfc_threshold)
    )

    up_label = f'Up (LFC > {lfc_threshold})'
    down_label = f'Down (LFC < -{lfc_threshold})'

    df['direction'] = 'Not significant'
    df.loc[df['significant'] & (df['log2FoldChange'] > 0), 'direction'] = up_label
    df.loc[df['significant'] & (df['log2FoldChange'] < 0), 'direction'] = down_label

    fig, ax = plt.subplots(figsize=figsize)

    colors = {
        'Not significant': '#CCCCCC',
        up_label: '#E74C3C',
        down_label: '#3498DB'
    }

    for direction, color in colors.items():
        subset = df[df['direction'] == direction]
        ax.scatter(
            subset['log2FoldChange'],
            subset['-log10(padj)'],
            c=color,
            label=f"{direction} (n={len(subset)})",
            alpha=0.6,
            s=10
        )

    ax.axhline(
        -np.log10(fdr_threshold),
        color='black',
        linestyle='--',
        linewidth=1,
        alpha=0.5,
        label=f'FDR = {fdr_threshold}'
    )
    ax.axvline(lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)
    ax.axvline(-lfc_threshold, color='black', linestyle='--', linewidth=1, alpha=0.5)

    if top_n_labels > 0:
        top_up = df[df['direction'] == up_label].nlargest(top_n_labels // 2, 'log2FoldChange')
        top_down = df[df['direction'] == down_label].nsmallest(top_n_labels // 2, 'log2FoldChange')

        for gene, row in pd.concat([top_up, top_down]).iterrows():
            ax.text(
                row['log2FoldChange'],
                row['-log10(padj)'],
                gene,
                fontsize=8,
                alpha=0.7
            )

    ax.set_xlabel('Log2 Fold Change', fontsize=12)
    ax.set_ylabel('-Log10(Adjusted P-value)', fontsize=12)
    ax.set_title('Differential Expression Volcano Plot', fontsize=14)
    ax.legend(loc='upper right', frameon=True, fontsize=10)
    ax.grid(alpha=0.3, linestyle=':')

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Volcano plot saved to: {output_path}")

    return output_path


def plot_clustered_heatmap(
    expression: pd.DataFrame,
    genes: Sequence[str],
    metadata: pd.DataFrame,
    output_path: Path,
    annotation_cols: Optional[List[str]] = None,
    z_score: bool = True,
    method: str = 'average',
    metric: str = 'correlation',
    cmap: str = 'RdBu_r',
    figsize: Tuple[int, int] = (10, 12),
    logger: Optional[logging.Logger] = None
) -> List[str]:
    """
    Hierarchically clustered heatmap of selected genes across samples.

    Rows are genes, columns samples. Both axes are clustered with SciPy
    linkage (`method`, `metric`) via seaborn's clustermap.

    Parameters
    ----------
    expression : pd.DataFrame
        Samples x genes (log scale)
    genes : sequence of str
        Genes to show, e.g. top DE genes
    metadata : pd.DataFrame
        Sample metadata for the column colour bars
    output_path : Path
        Output file path
    annotation_cols : list of str, optional
        Metadata columns drawn as colour bars
    z_score : bool, default True
        Z-score each gene across samples (constant genes are always dropped)
    method : str, default 'average'
        Linkage method
    metric : str, default 'correlation'
        Distance metric
    cmap : str, default 'RdBu_r'
        Colormap
    figsize : tuple, default (10, 12)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    list of str
        Genes in clustered row order

    Raises
    ------
    ValueError
        If fewer than 2 usable genes remain
    """
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating clustered heatmap: {output_path}")

    genes_in_data = [g for g in genes if g in expression.columns]
    missing = [g for g in genes if g not in expression.columns]
    if missing:
        logger.warning(
            f"{len(missing)} genes not found in data: {', '.join(missing[:5])}"
        )

    data = expression[genes_in_data].T

    # Constant rows have undefined correlation distance and z-scores
    std = data.std(axis=1)
    constant = std[std == 0].index
    if len(constant) > 0:
        logger.warning(f"Dropping {len(constant)} genes constant across samples")
        data = data.drop(index=constant)
        std = std.drop(index=constant)

    if z_score:
        data = data.sub(data.mean(axis=1), axis=0).div(std, axis=0)

    if data.shape[0] < 2:
        raise ValueError(
            f"Clustered heatmap needs at least 2 genes, got {data.shape[0]}"
        )

    col_colors = None
    legends = []
    if annotation_cols:
        col_colors = pd.DataFrame(index=data.columns)
        for col, palette in zip(annotation_cols, ['Set2', 'Set1', 'Pastel1', 'Dark2']):
            if col not in metadata.columns:
                raise KeyError(f"Metadata column '{col}' not found")
            values = metadata.loc[data.columns, col].astype(str)
            color_map = _category_colors(values, palette)
            col_colors[col] = values.map(color_map)
            legends.append((col, color_map))

    grid = sns.clustermap(
        data,
        method=method,
        metric=metric,
        col_colors=col_colors,
        cmap=cmap,
        center=0 if z_score else None,
        figsize=figsize,
        xticklabels=True,
        yticklabels=data.shape[0] <= 60,
        cbar_kws={'label': 'Z-score' if z_score else 'Expression'}
    )

    for i, (col, color_map) in enumerate(legends):
        handles = [mpatches.Patch(color=c, label=v) for v, c in color_map.items()]
        grid.fig.legend(
            handles=handles,
            title=col,
            bbox_to_anchor=(1.0, 0.95 - 0.15 * i),
            loc='upper left',
            fontsize=8,
            frameon=False
        )

    grid.ax_heatmap.set_xlabel('Sample')
    grid.ax_heatmap.set_ylabel('Gene')

    grid.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(grid.fig)

    row_order = [data.index[i] for i in grid.dendrogram_row.reordered_ind]

    logger.info(f"Clustered heatmap saved to: {output_path} ({len(row_order)} genes)")

    return row_order


def plot_umap_grid(
    adata: ad.AnnData,
    color_by: List[str],
    output_path: Path,
    ncols: int = 3,
    figsize: Tuple[int, int] = (18, 12),
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Plot UMAP embeddings colored by multiple variables in a grid.

    Parameters
    ----------
    adata : AnnData
        Input AnnData with UMAP computed
    color_by : list of str
        List of variables to color by (from .obs or .var_names)
    output_path : Path
        Output file path
    ncols : int, default 3
        Number of columns in grid
    figsize : tuple, default (18, 12)
        Figure size
    logger : logging.Logger, optional
        Logger instance

    Examples
    --------
    >>> plot_umap_grid(
    ...     adata,
    ...     color_by=['sample_id', 'leiden', 'EPCAM', 'PTPRC'],
    ...     output_path=Path("results/figures/umap_grid.pdf")
    ... )
    """
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    color_by = [v for v in color_by if v in adata.obs.columns or v in adata.var_names]

    logger.info(f"Generating UMAP grid plot: {output_path}")

    nrows = int(np.ceil(len(color_by) / ncols))

    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    for idx, var in enumerate(color_by):
        sc.pl.umap(
            adata,
            color=var,
            ax=axes[idx],
            show=False,
            frameon=False,
            legend_loc='right margin' if var in adata.obs.columns else 'on data',
            legend_fontsize=8
        )
        axes[idx].set_title(var.replace('_', ' '))

    for idx in range(len(color_by), len(axes)):
        fig.delaxes(axes[idx])

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"UMAP grid saved to: {output_path}")

    return output_path


def plot_heatmap_markers(
    adata: ad.AnnData,
    marker_genes: List[str],
    groupby: str,
    output_path: Path,
    figsize: Tuple[int, int] = (10, 12),
    cmap: str = 'RdBu_r',
    logger: Optional[logging.Logger] = None
) -> Optional[Path]:
    """
    Plot a cell-level heatmap of marker gene expression across groups.

    Returns None (with an error logged) when none of the markers exist.
    """
    logger = get_logger(logger)

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating marker heatmap: {output_path}")

    genes_in_data = [g for g in marker_genes if g in adata.var_names]

    if len(genes_in_data) < len(marker_genes):
        missing = [g for g in marker_genes if g not in adata.var_names]
        logger.warning(
            f"{len(missing)} genes not found in data: {', '.join(missing[:5])}"
        )

    if len(genes_in_data) == 0:
        logger.error("No marker genes found in data. Skipping heatmap.")
        return None

    sc.pl.heatmap(
        adata,
        var_names=genes_in_data,
        groupby=groupby,
        cmap=cmap,
        dendrogram=False,
        figsize=figsize,
        show=False
    )

    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close('all')

    logger.info(f"Marker heatmap saved to: {output_path}")

    return output_path
