"""
Pipeline Runner
===============

Two stages, each reading only files written by the previous one:

1. ``pseudobulk``: raw counts -> QC -> (optional cell-level preprocessing)
   -> per-sample log pseudo-bulk CSV
2. ``analyze``: pseudo-bulk CSV -> sample PCA, Welch t-test DE,
   volcano plot and clustered heatmap

Usage
-----
    luad-pipeline all --config config/analysis_params.yaml \\
        --config config/qc_thresholds.yaml --config config/samples.yaml
"""

import argparse
import logging
from pathlib import Path
from typing import Dict, List, Optional, Any

from . import __version__
from .data_loading import (
    load_count_matrix,
    load_sample_matrices,
    assign_samples_from_barcodes,
    filter_samples,
    load_sample_metadata,
)
from .qc import run_qc_pipeline, qc_summary_by_sample, plot_qc_metrics
from .preprocessing import preprocess_pipeline, cluster_composition
from .pseudobulk import build_pseudobulk, write_pseudobulk_csv, read_pseudobulk_csv
from .decomposition import run_sample_pca, top_loading_genes
from .differential_expression import run_differential_expression, save_de_results, top_genes
from .visualization import (
    plot_pca,
    plot_scree,
    plot_volcano,
    plot_clustered_heatmap,
    plot_umap_grid,
    plot_heatmap_markers,
)
from .utils import (
    setup_logging,
    get_logger,
    load_config,
    merge_configs,
    set_random_seeds,
    ensure_dir,
    save_checkpoint,
    cleanup_memory,
    get_timestamp,
)


DEFAULT_CONFIGS = [
    "config/analysis_params.yaml",
    "config/qc_thresholds.yaml",
    "config/samples.yaml",
]


def _results_dirs(config: Dict[str, Any]) -> Dict[str, Path]:
    results_dir = Path(config['paths'].get('results_dir', 'results'))
    return {
        'figures': ensure_dir(results_dir / 'figures'),
        'tables': ensure_dir(results_dir / 'tables'),
    }


def _sample_sheet(config: Dict[str, Any]):
    # An explicit sample sheet path wins over an inline ``samples`` list
    return config.get('paths', {}).get('sample_sheet') or config


def _load_counts(config: Dict[str, Any], sample_key: str, logger: logging.Logger):
    paths = config['paths']
    input_params = config.get('input', {})

    if paths.get('sample_matrices'):
        return load_sample_matrices(paths['sample_matrices'], sample_key=sample_key, logger=logger)

    if not paths.get('counts'):
        raise ValueError("No input configured: set paths.counts or paths.sample_matrices")

    adata = load_count_matrix(
        paths['counts'],
        transpose=input_params.get('transpose'),
        logger=logger
    )

    if sample_key not in adata.obs.columns:
        separator = input_params.get('barcode_sample_separator')
        if not separator:
            raise KeyError(
                f"Sample key '{sample_key}' not in the count matrix and "
                f"input.barcode_sample_separator is not set"
            )
        adata = assign_samples_from_barcodes(
            adata,
            sample_key=sample_key,
            separator=separator,
            logger=logger
        )

    return adata


def run_pseudobulk_stage(
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Build the pseudo-bulk CSV from raw single-cell counts.

    Parameters
    ----------
    config : dict
        Merged configuration (analysis_params + qc_thresholds + samples)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    Path
        Path of the written pseudo-bulk CSV
    """
    logger = get_logger(logger)

    logger.info("="*60)
    logger.info("Stage 1: pseudo-bulk construction")
    logger.info("="*60)

    set_random_seeds(config.get('random_seed', 42))

    sample_key = config.get('input', {}).get('sample_key', 'sample_id')
    plot_params = config.get('plots', {})
    dirs = _results_dirs(config)

    metadata = load_sample_metadata(_sample_sheet(config), logger=logger)

    adata = _load_counts(config, sample_key, logger)
    adata = filter_samples(adata, list(metadata.index), sample_key=sample_key, logger=logger)
    cleanup_memory(logger)

    if config.get('run_qc', True):
        adata = run_qc_pipeline(adata, config, sample_key=sample_key, logger=logger)

        summary = qc_summary_by_sample(adata, sample_key=sample_key)
        summary_path = dirs['tables'] / 'qc_summary_by_sample.csv'
        summary.to_csv(summary_path)
        logger.info(f"QC summary saved to: {summary_path}")

        if plot_params.get('qc', False):
            plot_qc_metrics(adata, dirs['figures'], groupby=sample_key, logger=logger)

    if config.get('run_cell_preprocessing', False):
        adata = preprocess_pipeline(adata, config, logger=logger)

        composition_path = dirs['tables'] / 'cluster_composition_by_sample.csv'
        cluster_composition(adata, sample_key=sample_key).to_csv(composition_path)
        logger.info(f"Cluster composition saved to: {composition_path}")

        if plot_params.get('umap', True):
            plot_umap_grid(
                adata,
                color_by=[sample_key, 'leiden'] + plot_params.get('umap_genes', []),
                output_path=dirs['figures'] / 'umap_grid.pdf',
                logger=logger
            )
            plot_heatmap_markers(
                adata,
                marker_genes=config['feature_selection'].get('marker_genes', []),
                groupby='leiden',
                output_path=dirs['figures'] / 'marker_heatmap_leiden.pdf',
                logger=logger
            )

    checkpoint = config['paths'].get('checkpoint')
    if checkpoint:
        save_checkpoint(adata, checkpoint, logger=logger)

    table = build_pseudobulk(adata, metadata, config, sample_key=sample_key, logger=logger)

    return write_pseudobulk_csv(table, config['paths']['pseudobulk_csv'], logger=logger)


def run_analysis_stage(
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> Dict[str, Path]:
    """
    PCA, differential expression and heatmap from the pseudo-bulk CSV.

    Parameters
    ----------
    config : dict
        Merged configuration
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    dict
        Output name -> written file path
    """
    logger = get_logger(logger)

    logger.info("="*60)
    logger.info("Stage 2: pseudo-bulk analysis")
    logger.info("="*60)

    dirs = _results_dirs(config)
    outputs: Dict[str, Path] = {}

    metadata_columns = list(load_sample_metadata(_sample_sheet(config), logger=logger).columns) + ['n_cells']
    expression, metadata = read_pseudobulk_csv(
        config['paths']['pseudobulk_csv'],
        metadata_columns=metadata_columns,
        logger=logger
    )

    # Sample PCA
    pca_params = config.get('sample_pca', {})
    scores, explained, loadings = run_sample_pca(
        expression,
        n_components=pca_params.get('n_components', 10),
        n_top_genes=pca_params.get('n_top_genes'),
        scale=pca_params.get('scale', True),
        random_state=config.get('random_seed', 42),
        logger=logger
    )

    outputs['pca_scores'] = dirs['tables'] / 'pca_scores.csv'
    scores.join(metadata).to_csv(outputs['pca_scores'], index_label='sample_id')
    outputs['pca_variance'] = dirs['tables'] / 'pca_explained_variance.csv'
    explained.to_csv(outputs['pca_variance'], index_label='component')
    outputs['pca_top_loadings'] = dirs['tables'] / 'pca_top_loadings_PC1.csv'
    top_loading_genes(loadings, 'PC1', n=pca_params.get('n_top_loadings', 25)).to_csv(
        outputs['pca_top_loadings'], index_label='gene'
    )

    if len(explained) >= 2:
        for color_by in pca_params.get('color_by', ['condition']):
            key = f'pca_plot_{color_by}'
            outputs[key] = plot_pca(
                scores,
                explained,
                metadata,
                output_path=dirs['figures'] / f'pca_{color_by}.pdf',
                color_by=color_by,
                logger=logger
            )
    else:
        logger.warning("Only one principal component; skipping PCA scatter plots")

    outputs['scree_plot'] = plot_scree(
        explained,
        output_path=dirs['figures'] / 'pca_scree.pdf',
        logger=logger
    )

    # Differential expression
    de_params = config['differential_expression']
    results = run_differential_expression(expression, metadata, config, logger=logger)

    comparison = f"{de_params['group1']}_vs_{de_params['group2']}"
    outputs['de_results'] = save_de_results(
        results,
        dirs['tables'] / f'de_welch_{comparison}.csv',
        logger=logger
    )

    outputs['volcano_plot'] = plot_volcano(
        results,
        output_path=dirs['figures'] / f'volcano_{comparison}.pdf',
        lfc_threshold=de_params.get('lfc_threshold', 1.0),
        fdr_threshold=de_params.get('fdr_threshold', 0.05),
        top_n_labels=config.get('plots', {}).get('volcano_labels', 20),
        logger=logger
    )

    # Clustered heatmap
    heatmap_params = config.get('heatmap', {})
    genes = top_genes(
        results,
        n=heatmap_params.get('n_genes', 50),
        by=heatmap_params.get('rank_by', 'pvalue'),
        significant_only=heatmap_params.get('significant_only', False)
    )

    if len(genes) < 2:
        logger.warning(f"Only {len(genes)} genes selected for heatmap; skipping")
    else:
        heatmap_path = dirs['figures'] / f'heatmap_top{len(genes)}_{comparison}.pdf'
        row_order = plot_clustered_heatmap(
            expression,
            genes=list(genes),
            metadata=metadata,
            output_path=heatmap_path,
            annotation_cols=heatmap_params.get('annotation_cols', [de_params['group_key']]),
            z_score=heatmap_params.get('z_score', True),
            method=heatmap_params.get('method', 'average'),
            metric=heatmap_params.get('metric', 'correlation'),
            logger=logger
        )
        outputs['heatmap'] = heatmap_path
        outputs['heatmap_gene_order'] = dirs['tables'] / 'heatmap_gene_order.csv'
        results.loc[row_order].to_csv(outputs['heatmap_gene_order'], index_label='gene')

    logger.info("="*60)
    logger.info("Analysis complete. Outputs:")
    for name, path in outputs.items():
        logger.info(f"  {name}: {path}")
    logger.info("="*60)

    return outputs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="luad-pipeline",
        description="LUAD single-cell pseudo-bulk expression pipeline"
    )
    parser.add_argument(
        "stage",
        choices=["pseudobulk", "analyze", "all"],
        help="Pipeline stage to run"
    )
    parser.add_argument(
        "--config",
        action="append",
        default=None,
        help="YAML config file; repeat to merge several "
             f"(default: {' '.join(DEFAULT_CONFIGS)})"
    )
    parser.add_argument(
        "--samples",
        default=None,
        help="Sample sheet (YAML with a 'samples' list, or CSV with a sample_id column)"
    )
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default=None)
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logger = setup_logging(log_level=args.log_level)

    try:
        config = merge_configs(*[load_config(p) for p in (args.config or DEFAULT_CONFIGS)])
        if args.samples:
            config['paths'] = {**config.get('paths', {}), 'sample_sheet': args.samples}

        log_file = args.log_file or config.get('paths', {}).get('log_file')
        if log_file:
            log_file = str(log_file).replace('{timestamp}', get_timestamp())
            logger = setup_logging(log_file=log_file, log_level=args.log_level)

        if args.stage in ("pseudobulk", "all"):
            run_pseudobulk_stage(config, logger=logger)
        if args.stage in ("analyze", "all"):
            run_analysis_stage(config, logger=logger)

    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
