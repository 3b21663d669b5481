"""Cell-level quality control.

Flags low-quality cells with median-absolute-deviation thresholds on
library size, detected genes and mitochondrial content, evaluated within
each batch, then drops rarely detected genes.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from ...utils.stats import mad_outliers
from .config import QCConfig

# Reason columns written to obs for tracking removal causes
REASON_COLUMNS = [
    "low_lib_size",
    "low_n_features",
    "high_mito_percent",
    "below_min_genes",
]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    cells_total : int
        Cells before filtering
    cells_removed : int
        Cells flagged by at least one reason
    genes_total : int
        Genes before filtering
    genes_removed : int
        Genes detected in fewer than ``min_cells`` retained cells
    reason_counts : Dict[str, int]
        Cells flagged per reason (a cell may count under several)
    batch_summary : pd.DataFrame
        Per-batch cells total/removed
    """

    cells_total: int = 0
    cells_removed: int = 0
    genes_total: int = 0
    genes_removed: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    batch_summary: Optional[pd.DataFrame] = None

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
            "genes_total": self.genes_total,
            "genes_removed": self.genes_removed,
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> from scatlas.core.preprocessing import CellQC, QCConfig
    >>> qc = CellQC(QCConfig(nmads=3, min_genes=200))
    >>> filtered, result = qc.run(adata)
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _counts(self, adata, layer: str = "counts"):
        return adata.layers[layer] if layer in adata.layers else adata.X

    def compute_metrics(self, adata, layer: str = "counts") -> pd.DataFrame:
        """Add per-cell QC metrics to ``adata.obs`` (in place).

        Adds ``n_genes_by_counts``, ``total_counts`` and ``pct_counts_mt``
        via ``scanpy.pp.calculate_qc_metrics``.
        """
        import scanpy as sc

        prefix = self.config.mito_prefix.upper()
        adata.var["mt"] = adata.var_names.str.upper().str.startswith(prefix)
        sc.pp.calculate_qc_metrics(
            adata,
            qc_vars=["mt"],
            percent_top=None,
            log1p=False,
            inplace=True,
            layer=layer if layer in adata.layers else None,
        )
        n_mt = int(adata.var["mt"].sum())
        if n_mt == 0:
            self.logger.warning(
                "No mitochondrial genes match prefix '%s'; mito filter inactive",
                self.config.mito_prefix,
            )
        else:
            self.logger.debug("Found %d mitochondrial genes", n_mt)
        return adata.obs[["n_genes_by_counts", "total_counts", "pct_counts_mt"]]

    def flag_outliers(self, adata) -> pd.DataFrame:
        """Return a cells x reasons boolean frame of QC failures."""
        cfg = self.config
        obs = adata.obs
        groups = None
        if cfg.per_batch and cfg.batch_key in obs:
            groups = obs[cfg.batch_key].astype(str).to_numpy()

        reasons = pd.DataFrame(index=obs.index)
        reasons["low_lib_size"] = mad_outliers(
            obs["total_counts"], nmads=cfg.nmads, side="lower", log=True, groups=groups
        )
        reasons["low_n_features"] = mad_outliers(
            obs["n_genes_by_counts"], nmads=cfg.nmads, side="lower", log=True, groups=groups
        )
        high_mt = mad_outliers(
            obs["pct_counts_mt"], nmads=cfg.nmads, side="higher", groups=groups
        )
        if cfg.max_pct_mt is not None:
            high_mt |= obs["pct_counts_mt"].to_numpy() > cfg.max_pct_mt
        reasons["high_mito_percent"] = high_mt
        reasons["below_min_genes"] = obs["n_genes_by_counts"].to_numpy() < cfg.min_genes
        return reasons

    def run(self, adata, layer: str = "counts") -> Tuple[Any, QCResult]:
        """Compute metrics, drop outlier cells and rarely detected genes.

        Parameters
        ----------
        adata : AnnData
            Dataset with raw counts in ``layers[layer]`` (or ``X``)
        layer : str
            Counts layer

        Returns
        -------
        Tuple[AnnData, QCResult]
            Filtered copy and filtering summary

        Raises
        ------
        ValueError
            If every cell fails QC
        """
        result = QCResult(cells_total=adata.n_obs, genes_total=adata.n_vars)

        self.compute_metrics(adata, layer=layer)
        reasons = self.flag_outliers(adata)
        discard = reasons.any(axis=1).to_numpy()
        adata.obs["qc_outlier"] = discard

        result.cells_removed = int(discard.sum())
        result.reason_counts = {r: int(reasons[r].sum()) for r in REASON_COLUMNS}

        batch_key = self.config.batch_key
        if batch_key in adata.obs:
            summary = (
                pd.DataFrame({"batch": adata.obs[batch_key].astype(str), "removed": discard})
                .groupby("batch")["removed"]
                .agg(cells_total="size", cells_removed="sum")
            )
            result.batch_summary = summary

        if discard.all():
            raise ValueError(
                f"All {adata.n_obs} cells failed QC; relax nmads/min_genes thresholds."
            )

        for reason, count in result.reason_counts.items():
            if count:
                self.logger.info("QC reason %-18s: %d cells", reason, count)

        filtered = adata[~discard].copy()

        counts = self._counts(filtered, layer)
        detected = np.asarray((counts > 0).sum(axis=0)).ravel()
        keep_genes = detected >= self.config.min_cells
        result.genes_removed = int((~keep_genes).sum())
        if result.genes_removed:
            filtered = filtered[:, keep_genes].copy()

        if sparse.issparse(filtered.X):
            filtered.X = filtered.X.tocsr()

        self.logger.info(
            "QC kept %d/%d cells (%.1f%% removed), %d/%d genes",
            filtered.n_obs,
            result.cells_total,
            100.0 * result.removal_fraction,
            filtered.n_vars,
            result.genes_total,
        )
        return filtered, result
