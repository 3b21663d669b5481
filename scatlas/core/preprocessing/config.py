"""Configuration classes for preprocessing steps.

All preprocessing parameters are configurable via YAML so that the same
workflow can be re-run with dataset-specific thresholds.
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


@dataclass
class QCConfig:
    """Configuration for cell quality control.

    Attributes
    ----------
    mito_prefix : str
        Gene-name prefix of mitochondrial genes (matched case-insensitively)
    nmads : float
        Number of MADs from the median defining an outlier
    min_genes : int
        Absolute floor on detected genes per cell
    min_cells : int
        Drop genes detected in fewer cells than this after cell filtering
    max_pct_mt : float, optional
        Absolute cap on mitochondrial percentage, applied in addition to MADs
    batch_key : str
        Column with the batch label; outliers are computed per batch
    per_batch : bool
        Compute MAD thresholds within each batch
    """

    mito_prefix: str = "MT-"
    nmads: float = 3.0
    min_genes: int = 200
    min_cells: int = 3
    max_pct_mt: Optional[float] = None
    batch_key: str = "batch"
    per_batch: bool = True


@dataclass
class NormalizationConfig:
    """Configuration for expression normalization.

    Attributes
    ----------
    method : str
        ``"multi_batch"`` (coverage-matched across batches) or ``"library_size"``
    target_sum : float, optional
        Library-size target for ``library_size``; median library size if None
    pseudo_count : float
        Pseudo-count added before the log2 transform in ``multi_batch``
    counts_layer : str
        Layer holding raw counts
    """

    method: str = "multi_batch"
    target_sum: Optional[float] = None
    pseudo_count: float = 1.0
    counts_layer: str = "counts"


@dataclass
class FeatureSelectionConfig:
    """Configuration for variance modeling and feature selection.

    Attributes
    ----------
    n_top_genes : int
        Number of highly variable genes to keep
    span : float
        LOWESS span for the mean-variance trend
    min_bio_var : float
        Minimum biological variance component for selection
    blacklist : bool
        Exclude blacklisted genes from selection
    blacklist_patterns : List[str]
        Regular expressions for blacklisted genes (case-insensitive)
    extra_blacklist : List[str]
        Additional gene names to blacklist
    """

    n_top_genes: int = 2000
    span: float = 0.3
    min_bio_var: float = 0.0
    blacklist: bool = True
    blacklist_patterns: List[str] = field(
        default_factory=lambda: [
            r"^MT-",
            r"^RP[SL]\d",
            r"^HB[ABDEGMQZ]\d?$",
            r"^(XIST|TSIX|RPS4Y1|DDX3Y|KDM5D|UTY|EIF1AY)$",
        ]
    )
    extra_blacklist: List[str] = field(default_factory=list)


@dataclass
class PreprocessingConfig:
    """Master configuration for preprocessing.

    Attributes
    ----------
    qc : QCConfig
    normalization : NormalizationConfig
    features : FeatureSelectionConfig
    """

    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreprocessingConfig":
        return cls(
            qc=QCConfig(**data.get("qc", {})),
            normalization=NormalizationConfig(**data.get("normalization", {})),
            features=FeatureSelectionConfig(**data.get("features", {})),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "PreprocessingConfig":
        """Load configuration from YAML, optionally nested under ``preprocessing``."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if "preprocessing" in data:
            data = data["preprocessing"]
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "PreprocessingConfig":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "qc": asdict(self.qc),
            "normalization": asdict(self.normalization),
            "features": asdict(self.features),
        }
