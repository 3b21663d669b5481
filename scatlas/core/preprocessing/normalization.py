"""Expression normalization.

Two schemes are provided:

- library-size normalization followed by ``log1p`` (single dataset)
- multi-batch normalization: size factors are centred within each batch
  and batches are scaled to the coverage of the shallowest batch, so that
  log-expression is comparable across batches before MNN correction.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional

import numpy as np
import pandas as pd
from scipy import sparse

from .config import NormalizationConfig


@dataclass
class NormalizationResult:
    """Summary of a normalization run.

    Attributes
    ----------
    method : str
        Normalization scheme used
    batch_rescale : Dict[str, float]
        Coverage rescaling factor per batch (1.0 for the shallowest batch)
    batch_mean_library : Dict[str, float]
        Mean library size per batch before rescaling
    """

    method: str
    batch_rescale: Dict[str, float] = field(default_factory=dict)
    batch_mean_library: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "batch_rescale": dict(self.batch_rescale),
            "batch_mean_library": dict(self.batch_mean_library),
        }


def _library_sizes(counts) -> np.ndarray:
    return np.asarray(counts.sum(axis=1)).ravel().astype(float)


def _record(adata, step: str, payload: Dict[str, Any]) -> None:
    adata.uns.setdefault("scatlas", {})[step] = payload


class Normalizer:
    """Normalize raw counts into log-expression in ``adata.X``.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> normalizer = Normalizer(NormalizationConfig(method="multi_batch"))
    >>> result = normalizer.run(adata, batch_key="batch")
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _get_counts(self, adata):
        layer = self.config.counts_layer
        if layer in adata.layers:
            return adata.layers[layer]
        self.logger.warning("Counts layer '%s' missing; normalizing AnnData.X", layer)
        return adata.X

    def log_normalize(self, adata, target_sum: Optional[float] = None) -> NormalizationResult:
        """Library-size normalize to ``target_sum`` and apply ``log1p`` (in place).

        ``target_sum`` defaults to the config value, then the median library size.

        Raises
        ------
        ValueError
            If any cell has zero total counts
        """
        import scanpy as sc

        counts = self._get_counts(adata)
        lib = _library_sizes(counts)
        if np.any(lib <= 0):
            raise ValueError(f"{int((lib <= 0).sum())} cells have zero total counts")

        target_sum = target_sum or self.config.target_sum or float(np.median(lib))
        adata.X = counts.astype(np.float32, copy=True)
        sc.pp.normalize_total(adata, target_sum=target_sum)
        sc.pp.log1p(adata)

        adata.obs["size_factor"] = lib / lib.mean()
        result = NormalizationResult(method="library_size")
        _record(adata, "normalization", {"method": "library_size", "target_sum": target_sum})
        self.logger.info("Log-normalized %d cells to target_sum=%.1f", adata.n_obs, target_sum)
        return result

    def multi_batch_normalize(self, adata, batch_key: str = "batch") -> NormalizationResult:
        """Coverage-matched normalization across batches (in place).

        Size factors are library sizes centred to mean 1 within each batch.
        Each batch is then downscaled by ``mean_library(batch) /
        min_b mean_library(b)`` and ``X = log2(counts / sf + pseudo_count)``.

        Raises
        ------
        KeyError
            If ``batch_key`` is not in ``adata.obs``
        ValueError
            If any cell has zero total counts
        """
        if batch_key not in adata.obs:
            raise KeyError(f"Batch key '{batch_key}' not found in adata.obs")

        counts = self._get_counts(adata)
        lib = _library_sizes(counts)
        if np.any(lib <= 0):
            raise ValueError(f"{int((lib <= 0).sum())} cells have zero total counts")

        batches = adata.obs[batch_key].astype(str).to_numpy()
        unique_batches = list(pd.unique(batches))
        mean_lib = {b: float(lib[batches == b].mean()) for b in unique_batches}
        floor = min(mean_lib.values())
        rescale = {b: mean_lib[b] / floor for b in unique_batches}

        size_factors = np.empty_like(lib)
        for b in unique_batches:
            mask = batches == b
            size_factors[mask] = lib[mask] / mean_lib[b] * rescale[b]

        pseudo = self.config.pseudo_count
        scaled = sparse.diags(1.0 / size_factors) @ sparse.csr_matrix(counts, dtype=np.float64)
        if pseudo == 1.0:
            scaled = scaled.tocsr()
            scaled.data = np.log2(scaled.data + 1.0)
            adata.X = scaled.astype(np.float32)
        else:
            dense = np.log2(scaled.toarray() + pseudo)
            adata.X = dense.astype(np.float32)

        adata.obs["size_factor"] = size_factors
        result = NormalizationResult(
            method="multi_batch",
            batch_rescale=rescale,
            batch_mean_library=mean_lib,
        )
        _record(adata, "normalization", {**result.to_dict(), "pseudo_count": pseudo})

        for b in unique_batches:
            self.logger.info(
                "Batch %-12s mean library %.1f, rescale x%.3f", b, mean_lib[b], rescale[b]
            )
        return result

    def run(self, adata, batch_key: Optional[str] = None) -> NormalizationResult:
        """Dispatch on ``config.method``.

        ``multi_batch`` on a dataset without ``batch_key`` (or with a single
        batch) degrades to library-size normalization.
        """
        method = self.config.method
        if method not in ("multi_batch", "library_size"):
            raise ValueError(f"Unknown normalization method: {method}")

        if method == "multi_batch" and batch_key and batch_key in adata.obs:
            if adata.obs[batch_key].nunique() > 1:
                return self.multi_batch_normalize(adata, batch_key=batch_key)
            self.logger.info("Single batch present; using library-size normalization")
        return self.log_normalize(adata)
