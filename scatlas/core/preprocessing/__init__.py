"""Preprocessing module: QC, normalization and feature selection.

Steps
-----
- QC: MAD-based outlier removal on library size, detected genes and
  mitochondrial percentage (per batch)
- Normalization: library-size log-normalization or multi-batch,
  coverage-matched log2 normalization
- Features: LOWESS variance modeling, gene blacklisting and highly
  variable gene selection

Example Usage
-------------
>>> from scatlas.core.preprocessing import CellQC, Normalizer, FeatureSelector
>>> adata, qc_result = CellQC().run(adata)
>>> Normalizer().run(adata, batch_key="batch")
>>> hvgs = FeatureSelector().run(adata, batch_key="batch")
"""

from .config import (
    FeatureSelectionConfig,
    NormalizationConfig,
    PreprocessingConfig,
    QCConfig,
)
from .qc import REASON_COLUMNS, CellQC, QCResult
from .normalization import NormalizationResult, Normalizer
from .features import (
    VARIANCE_COLUMNS,
    FeatureSelector,
    blacklist_genes,
    fit_variance_trend,
    model_gene_variance,
    select_features,
)

__all__ = [
    # Config
    "FeatureSelectionConfig",
    "NormalizationConfig",
    "PreprocessingConfig",
    "QCConfig",
    # QC
    "REASON_COLUMNS",
    "CellQC",
    "QCResult",
    # Normalization
    "NormalizationResult",
    "Normalizer",
    # Features
    "VARIANCE_COLUMNS",
    "FeatureSelector",
    "blacklist_genes",
    "fit_variance_trend",
    "model_gene_variance",
    "select_features",
]
