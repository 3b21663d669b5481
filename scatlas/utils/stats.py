"""Statistical utilities for scatlas.

Provides robust outlier detection and rank-correlation helpers shared by
cell QC, reference label pruning and scoring.
"""

from __future__ import annotations

from typing import Iterable, Optional, Union

import numpy as np
from scipy.stats import rankdata

ArrayLike = Union[Iterable[float], np.ndarray]

# Scales the MAD to match the standard deviation under normality
MAD_SCALE = 1.4826


def robust_zscore(
    values: ArrayLike,
    *,
    median: float | None = None,
    mad: float | None = None,
) -> np.ndarray:
    """Compute a robust z-score using the median absolute deviation (MAD).

    Parameters
    ----------
    values : ArrayLike
        Input values.
    median : float, optional
        Pre-computed median. If None, computed from data.
    mad : float, optional
        Pre-computed (unscaled) MAD. If None, computed from data.

    Returns
    -------
    np.ndarray
        Robust z-scores. Non-finite inputs become NaN in output; a zero
        MAD yields zeros.
    """
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr

    mask = np.isfinite(arr)
    clean = arr[mask]
    if clean.size == 0:
        return np.full_like(arr, np.nan, dtype=float)

    if median is None:
        median = np.median(clean)
    if mad is None:
        mad = np.median(np.abs(clean - median))

    scale = mad * MAD_SCALE if mad else np.nan

    if not np.isfinite(scale) or scale == 0:
        z = np.zeros_like(clean)
    else:
        z = (clean - median) / scale

    result = np.full_like(arr, np.nan, dtype=float)
    result[mask] = z
    return result


def mad_outliers(
    values: ArrayLike,
    nmads: float = 3.0,
    side: str = "both",
    log: bool = False,
    groups: Optional[ArrayLike] = None,
) -> np.ndarray:
    """Flag values more than ``nmads`` scaled MADs away from the median.

    Parameters
    ----------
    values : ArrayLike
        Metric per observation.
    nmads : float
        Number of MADs defining the outlier boundary.
    side : str
        ``"lower"``, ``"higher"`` or ``"both"``.
    log : bool
        Evaluate on ``log1p`` of the values (library sizes, gene counts).
    groups : ArrayLike, optional
        Group label per observation; thresholds are computed within groups.

    Returns
    -------
    np.ndarray
        Boolean outlier mask. Non-finite values are never flagged.
    """
    if side not in ("lower", "higher", "both"):
        raise ValueError(f"side must be 'lower', 'higher' or 'both', got {side!r}")

    arr = np.asarray(values, dtype=float)
    if log:
        arr = np.log1p(np.clip(arr, 0, None))

    if groups is None:
        group_arr = np.zeros(arr.shape[0], dtype=int)
    else:
        group_arr = np.asarray(groups)

    flags = np.zeros(arr.shape[0], dtype=bool)
    for group in np.unique(group_arr):
        idx = np.flatnonzero(group_arr == group)
        z = robust_zscore(arr[idx])
        z = np.nan_to_num(z, nan=0.0)
        if side in ("lower", "both"):
            flags[idx] |= z < -nmads
        if side in ("higher", "both"):
            flags[idx] |= z > nmads
    return flags


def rank_rows(matrix: np.ndarray) -> np.ndarray:
    """Centre and scale row-wise average ranks for fast Spearman correlation.

    After this transform the Spearman correlation between two rows is their
    dot product. Constant rows become all zeros.
    """
    matrix = np.asarray(matrix, dtype=float)
    ranks = rankdata(matrix, axis=1)
    ranks -= ranks.mean(axis=1, keepdims=True)
    norms = np.linalg.norm(ranks, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return ranks / norms


def spearman_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Spearman correlation between every row of ``a`` and every row of ``b``."""
    return rank_rows(a) @ rank_rows(b).T
