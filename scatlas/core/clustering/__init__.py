"""Clustering module for cell population identification.

Provides neighbor graphs, Louvain/Leiden clustering, UMAP and cluster
marker detection.
"""

from .config import ClusteringConfig, ClusterStageConfig, MarkerConfig
from .engine import (
    GPU_AVAILABLE,
    ClusteringEngine,
    ClusteringResult,
    connectivities_to_igraph,
    relabel_by_size,
)
from .markers import MARKER_COLUMNS, find_cluster_markers, top_markers

__all__ = [
    # Config
    "ClusteringConfig",
    "ClusterStageConfig",
    "MarkerConfig",
    # Engine
    "GPU_AVAILABLE",
    "ClusteringEngine",
    "ClusteringResult",
    "connectivities_to_igraph",
    "relabel_by_size",
    # Markers
    "MARKER_COLUMNS",
    "find_cluster_markers",
    "top_markers",
]
