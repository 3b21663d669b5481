"""Configuration classes for dataset integration."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..clustering.config import ClusteringConfig
from ..preprocessing.config import FeatureSelectionConfig, NormalizationConfig


@dataclass
class MNNConfig:
    """Configuration for fastMNN-style batch correction.

    Attributes
    ----------
    k : int
        Neighbors searched in each direction for mutual pairs
    sigma : float
        Gaussian kernel bandwidth (squared cosine distance) for smoothing
    n_components : int
        Multi-batch PCA dimensions
    cos_norm : bool
        Cosine-normalize expression before PCA
    weighted_pca : bool
        Weight batches equally when fitting the rotation
    center_batch_vector : bool
        Remove within-batch spread along the batch vector before correcting
    merge_order : List[str], optional
        Batches in merge order (None = reference first, then order of appearance)
    use_hvg : bool
        Restrict to ``var["highly_variable"]`` when present
    batch_key : str
        ``obs`` column with batch labels
    key_added : str
        ``obsm`` key for the corrected embedding
    seed : int
        Random seed for the randomized SVD
    """

    k: int = 20
    sigma: float = 0.1
    n_components: int = 50
    cos_norm: bool = True
    weighted_pca: bool = True
    center_batch_vector: bool = True
    merge_order: Optional[List[str]] = None
    use_hvg: bool = True
    batch_key: str = "batch"
    key_added: str = "X_mnn"
    seed: int = 0


@dataclass
class IntegrationConfig:
    """Master configuration for query/reference integration.

    Attributes
    ----------
    normalization : NormalizationConfig
    features : FeatureSelectionConfig
    mnn : MNNConfig
    clustering : ClusteringConfig
        Graph built on ``mnn.key_added`` unless ``use_rep`` is set
    query_label : str
        Batch label of the query cells
    reference_label : str
        Batch label of the reference cells
    """

    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    mnn: MNNConfig = field(default_factory=MNNConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    query_label: str = "query"
    reference_label: str = "reference"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntegrationConfig":
        return cls(
            normalization=NormalizationConfig(**data.get("normalization", {})),
            features=FeatureSelectionConfig(**data.get("features", {})),
            mnn=MNNConfig(**data.get("mnn", {})),
            clustering=ClusteringConfig(**data.get("clustering", {})),
            query_label=data.get("query_label", "query"),
            reference_label=data.get("reference_label", "reference"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "IntegrationConfig":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "IntegrationConfig":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalization": asdict(self.normalization),
            "features": asdict(self.features),
            "mnn": asdict(self.mnn),
            "clustering": asdict(self.clustering),
            "query_label": self.query_label,
            "reference_label": self.reference_label,
        }
