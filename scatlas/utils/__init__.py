"""Utility functions for scatlas.

Provides statistical helpers shared across modules.
"""

from .stats import (
    MAD_SCALE,
    mad_outliers,
    rank_rows,
    robust_zscore,
    spearman_matrix,
)

__all__ = [
    "MAD_SCALE",
    "mad_outliers",
    "rank_rows",
    "robust_zscore",
    "spearman_matrix",
]
