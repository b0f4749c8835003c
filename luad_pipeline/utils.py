"""
Utilities
=========

Shared plumbing for the pipeline modules:
- the ``LUAD_Pipeline`` logger (console and optional log file)
- YAML configuration files and their merge order
- seeds, memory reporting and output directories
- intermediate checkpoints (H5AD for cells, CSV for tables, pickle otherwise)
"""

import logging
import os
import sys
import gc
import pickle
import random
from pathlib import Path
from typing import Dict, Any, Optional, Union
from datetime import datetime

import yaml
import psutil
import numpy as np
import pandas as pd
import anndata as ad


LOGGER_NAME = "LUAD_Pipeline"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
GB = 1024 ** 3


def setup_logging(
    log_file: Optional[Union[str, Path]] = None,
    log_level: str = "INFO",
    console_output: bool = True
) -> logging.Logger:
    """
    (Re)configure the ``LUAD_Pipeline`` logger.

    Any handlers from an earlier call are closed and replaced, so the CLI
    can first log to the console and then attach the run's log file once
    the configuration has been read.

    Parameters
    ----------
    log_file : str or Path, optional
        Appended to; parent directories are created
    log_level : str, default "INFO"
        Name of a `logging` level
    console_output : bool, default True
        Also write to stdout

    Returns
    -------
    logging.Logger

    Raises
    ------
    ValueError
        If `log_level` is not a logging level name

    Examples
    --------
    >>> logger = setup_logging("results/reports/pipeline_20240101.log")
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file is not None:
        ensure_dir(Path(log_file).parent)
        handlers.append(logging.FileHandler(log_file, mode='a'))

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(logger: Optional[logging.Logger] = None) -> logging.Logger:
    """Return `logger`, or the package logger (configured on first use)."""
    if logger is not None:
        return logger

    default = logging.getLogger(LOGGER_NAME)
    if not default.handlers:
        default = setup_logging()
    return default


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read one of the ``config/*.yaml`` files.

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    ValueError
        If it is empty or its top level is not a mapping

    Examples
    --------
    >>> load_config("config/analysis_params.yaml")['pseudobulk']['log_base']
    2
    """
    config_path = Path(config_path)

    if not config_path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        found = 'nothing' if config is None else type(config).__name__
        raise ValueError(f"{config_path} must hold a YAML mapping, found {found}")

    return config


def merge_configs(*configs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Top-level merge; later files override earlier ones, None is skipped."""
    merged: Dict[str, Any] = {}
    for config in configs:
        merged.update(config or {})
    return merged


def set_random_seeds(seed: int = 42) -> None:
    """Seed `random` and NumPy, and export PYTHONHASHSEED for subprocesses."""
    random.seed(seed)
    np.random.seed(seed)
    os.environ['PYTHONHASHSEED'] = str(seed)


def get_memory_usage() -> Dict[str, float]:
    """
    System and process memory, in GB except ``ram_percent``.

    Keys: ``ram_used_gb``, ``ram_available_gb``, ``ram_percent``,
    ``process_rss_gb``.
    """
    system = psutil.virtual_memory()
    rss = psutil.Process(os.getpid()).memory_info().rss

    return {
        'ram_used_gb': system.used / GB,
        'ram_available_gb': system.available / GB,
        'ram_percent': system.percent,
        'process_rss_gb': rss / GB,
    }


def log_memory_usage(logger: logging.Logger) -> None:
    mem = get_memory_usage()
    logger.info(
        f"Memory: process {mem['process_rss_gb']:.2f} GB, "
        f"system {mem['ram_used_gb']:.2f} GB used ({mem['ram_percent']:.1f}%), "
        f"{mem['ram_available_gb']:.2f} GB free"
    )


def cleanup_memory(logger: Optional[logging.Logger] = None) -> None:
    """Force a garbage-collection pass after large AnnData subsets are dropped."""
    freed = gc.collect()
    if logger is not None:
        logger.debug(f"gc collected {freed} objects")


def ensure_dir(path: Union[str, Path]) -> Path:
    """Create `path` (and parents) if needed and return it as a Path."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_timestamp(format: str = "%Y%m%d_%H%M%S") -> str:
    return datetime.now().strftime(format)


def save_checkpoint(
    obj: Any,
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Persist an intermediate result.

    AnnData goes to gzip-compressed H5AD (replacing the RDS objects of the
    R workflow), DataFrames to CSV with their index, anything else to pickle.

    Examples
    --------
    >>> save_checkpoint(adata, "data/processed/luad_cells_qc.h5ad")
    """
    filepath = Path(filepath)
    ensure_dir(filepath.parent)

    if isinstance(obj, ad.AnnData):
        obj.write_h5ad(filepath, compression='gzip')
    elif isinstance(obj, pd.DataFrame):
        obj.to_csv(filepath)
    else:
        with open(filepath, 'wb') as f:
            pickle.dump(obj, f)

    if logger is not None:
        logger.info(f"Checkpoint saved: {filepath}")

    return filepath


def load_checkpoint(
    filepath: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> Any:
    """Read back a file written by `save_checkpoint`, dispatching on its suffix."""
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    if filepath.suffix == '.h5ad':
        obj = ad.read_h5ad(filepath)
    elif filepath.suffix == '.csv':
        obj = pd.read_csv(filepath, index_col=0)
    else:
        with open(filepath, 'rb') as f:
            obj = pickle.load(f)

    if logger is not None:
        logger.info(f"Checkpoint loaded: {filepath}")

    return obj
