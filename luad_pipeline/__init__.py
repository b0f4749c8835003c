"""
LUAD Pseudo-bulk Expression Pipeline
====================================

Single-cell to pseudo-bulk analysis of lung adenocarcinoma samples:
QC, per-sample aggregation, sample PCA, Welch t-test differential
expression and clustered heatmaps.

Modules:
--------
- data_loading: Count matrices and sample sheets
- qc: Quality control and filtering
- preprocessing: Cell-level normalization, HVGs, PCA, UMAP, clustering
- pseudobulk: Per-sample aggregation, log transform, CSV I/O
- decomposition: Sample-level PCA
- differential_expression: Welch t-test, log2FC, Cohen's d, BH FDR
- visualization: Publication-quality plotting
- pipeline: Stage runners and command-line entry point
- utils: Helper functions and logging
"""

__version__ = "1.0.0"
__description__ = "LUAD Pseudo-bulk Expression Pipeline"

from . import utils
from . import data_loading
from . import qc
from . import preprocessing
from . import pseudobulk
from . import decomposition
from . import differential_expression
from . import visualization
from . import pipeline

__all__ = [
    "utils",
    "data_loading",
    "qc",
    "preprocessing",
    "pseudobulk",
    "decomposition",
    "differential_expression",
    "visualization",
    "pipeline",
]
