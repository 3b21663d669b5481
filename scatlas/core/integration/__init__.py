"""Integration module for combining a query with a reference.

Provides multi-batch PCA, mutual-nearest-neighbour batch correction and
the end-to-end IntegrationEngine.
"""

from .config import IntegrationConfig, MNNConfig
from .engine import IntegrationEngine, IntegrationResult
from .mnn import (
    MNNResult,
    average_correction,
    center_along_batch_vector,
    compute_correction_vectors,
    cosine_normalize,
    fast_mnn,
    find_mutual_nn,
    multi_batch_pca,
)

__all__ = [
    # Config
    "IntegrationConfig",
    "MNNConfig",
    # Engine
    "IntegrationEngine",
    "IntegrationResult",
    # MNN
    "MNNResult",
    "average_correction",
    "center_along_batch_vector",
    "compute_correction_vectors",
    "cosine_normalize",
    "fast_mnn",
    "find_mutual_nn",
    "multi_batch_pca",
]
