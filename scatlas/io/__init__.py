"""I/O utilities for scatlas.

Provides logging, dataset readers and gene-set loading.
"""

from .logging import get_logger, get_timestamped_log_path, log_json, log_yaml, run_record
from .readers import (
    BATCH_KEY,
    COUNTS_LAYER,
    ensure_output_dir,
    load_gene_sets,
    read_dataset,
    write_dataframe,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    "run_record",
    # Readers
    "BATCH_KEY",
    "COUNTS_LAYER",
    "ensure_output_dir",
    "load_gene_sets",
    "read_dataset",
    "write_dataframe",
]
