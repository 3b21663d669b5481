"""Configuration classes for cell-type annotation."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class AUCellConfig:
    """Configuration for gene-set enrichment scoring (AUCell).

    Attributes
    ----------
    max_rank_frac : float
        Fraction of genes used as the recovery-curve cutoff
    max_rank : int, optional
        Absolute cutoff; overrides ``max_rank_frac`` when set
    min_genes : int
        Gene sets with fewer resolved genes are skipped
    min_auc : float
        Cells whose best AUC is below this value stay unassigned
    seed : int
        Seed for random tie-breaking in the rankings
    chunk_size : int
        Cells ranked per chunk
    key_added : str
        ``obsm`` key for the AUC matrix
    label_key : str
        ``obs`` column for the best-scoring gene set
    unassigned_label : str
        Label for cells below ``min_auc``
    """

    max_rank_frac: float = 0.05
    max_rank: Optional[int] = None
    min_genes: int = 1
    min_auc: float = 0.0
    seed: int = 42
    chunk_size: int = 2000
    key_added: str = "aucell"
    label_key: str = "aucell_label"
    unassigned_label: str = "Unassigned"


@dataclass
class ReferenceConfig:
    """Configuration for reference-based label transfer (SingleR-style).

    Attributes
    ----------
    label_key : str
        ``obs`` column with reference labels
    de_n : int, optional
        Markers per label pair; default ``round(500 * (2/3) ** log2(L))``
    quantile : float
        Quantile of per-label correlations used as the label score
    fine_tune : bool
        Iteratively re-score close labels on their own markers
    tune_thresh : float
        Labels within this distance of the top score stay in contention
    aggr_size : int, optional
        Aggregate reference cells into k-means pseudo-cells of about this size
    prune : bool
        Flag low-confidence assignments by MAD outliers on delta
    nmads : float
        MADs below the per-label median delta defining a pruned cell
    chunk_size : int
        Query cells scored per chunk
    n_jobs : int
        joblib workers for chunked scoring
    seed : int
        Seed for reference aggregation
    key_prefix : str
        Prefix for ``obs``/``obsm`` output keys
    """

    label_key: str = "label"
    de_n: Optional[int] = None
    quantile: float = 0.8
    fine_tune: bool = True
    tune_thresh: float = 0.05
    aggr_size: Optional[int] = None
    prune: bool = True
    nmads: float = 3.0
    chunk_size: int = 500
    n_jobs: int = 1
    seed: int = 42
    key_prefix: str = "singler"


@dataclass
class AnnotationConfig:
    """Master configuration for annotation.

    Attributes
    ----------
    aucell : AUCellConfig
    reference : ReferenceConfig
    cluster_key : str
        Cluster column used for cluster-level summaries
    """

    aucell: AUCellConfig = field(default_factory=AUCellConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    cluster_key: str = "louvain"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnnotationConfig":
        return cls(
            aucell=AUCellConfig(**data.get("aucell", {})),
            reference=ReferenceConfig(**data.get("reference", {})),
            cluster_key=data.get("cluster_key", "louvain"),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "AnnotationConfig":
        """Load configuration from YAML, optionally nested under ``annotation``."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "annotation" in data:
            data = data["annotation"]
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aucell": asdict(self.aucell),
            "reference": asdict(self.reference),
            "cluster_key": self.cluster_key,
        }
