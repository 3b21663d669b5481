"""Configuration classes for clustering module."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class ClusteringConfig:
    """Configuration for graph-based clustering.

    Attributes
    ----------
    method : str
        "louvain" (python-igraph multilevel) or "leiden"
    n_neighbors : int
        k for the neighborhood graph
    n_pcs : int, optional
        Components of ``use_rep`` used for neighbors (None = all)
    use_rep : str, optional
        ``obsm`` key the graph is built on (None = scanpy default)
    resolution : float
        Modularity resolution
    key_added : str
        ``obs`` column for cluster labels
    random_seed : int
        Random seed for reproducibility
    use_gpu : bool
        Use rapids-singlecell if available
    compute_umap : bool
        Compute UMAP embedding after clustering
    min_dist : float
        UMAP ``min_dist``
    """

    method: str = "louvain"
    n_neighbors: int = 15
    n_pcs: Optional[int] = None
    use_rep: Optional[str] = None
    resolution: float = 1.0
    key_added: str = "louvain"
    random_seed: int = 1337
    use_gpu: bool = False
    compute_umap: bool = True
    min_dist: float = 0.5


@dataclass
class MarkerConfig:
    """Configuration for cluster marker detection.

    Attributes
    ----------
    method : str
        ``scanpy.tl.rank_genes_groups`` method
    n_genes : int
        Top genes reported per cluster
    layer : str, optional
        Expression layer (None = X)
    tie_correct : bool
        Tie correction for the Wilcoxon test
    """

    method: str = "wilcoxon"
    n_genes: int = 25
    layer: Optional[str] = None
    tie_correct: bool = True


@dataclass
class ClusterStageConfig:
    """Master configuration for the clustering stage."""

    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "ClusterStageConfig":
        """Load the ``clustering`` and ``markers`` sections of a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(
            clustering=ClusteringConfig(**data.get("clustering", {})),
            markers=MarkerConfig(**data.get("markers", {})),
        )

    @classmethod
    def default(cls) -> "ClusterStageConfig":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {"clustering": asdict(self.clustering), "markers": asdict(self.markers)}
