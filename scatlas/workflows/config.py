"""Configuration for the end-to-end workflows.

One YAML file drives both workflows; every section is optional::

    paths:
      query: data/query_10x/
      reference: data/atlas.h5ad
      gene_sets: data/markers.gmt
      output_dir: output/
    qc: {nmads: 3.0, min_genes: 200}
    aucell: {max_rank_frac: 0.05}
    reference: {label_key: cell_type, fine_tune: true}
    mnn: {k: 20}
    clustering: {resolution: 1.0}
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.annotation.config import AnnotationConfig, AUCellConfig, ReferenceConfig
from ..core.clustering.config import ClusteringConfig, MarkerConfig
from ..core.integration.config import IntegrationConfig, MNNConfig
from ..core.preprocessing.config import (
    FeatureSelectionConfig,
    NormalizationConfig,
    QCConfig,
)
from ..viz.style import VizConfig


@dataclass
class WorkflowPaths:
    """Inputs and outputs of a workflow run.

    Attributes
    ----------
    query : str, optional
        Query dataset (h5ad, 10x h5, 10x directory or CSV/TSV)
    reference : str, optional
        Reference dataset; labelled for annotation, raw counts for integration
    gene_sets : str, optional
        Marker gene sets (JSON/YAML/GMT)
    output_dir : str
        Root output directory
    query_batch : str
        Batch label of query cells
    reference_batch : str
        Batch label of reference cells
    """

    query: Optional[str] = None
    reference: Optional[str] = None
    gene_sets: Optional[str] = None
    output_dir: str = "output"
    query_batch: str = "query"
    reference_batch: str = "reference"


_SECTIONS = {
    "paths": WorkflowPaths,
    "qc": QCConfig,
    "normalization": NormalizationConfig,
    "features": FeatureSelectionConfig,
    "aucell": AUCellConfig,
    "reference": ReferenceConfig,
    "mnn": MNNConfig,
    "clustering": ClusteringConfig,
    "markers": MarkerConfig,
    "viz": VizConfig,
}


@dataclass
class WorkflowConfig:
    """Master configuration for the annotation and integration workflows."""

    paths: WorkflowPaths = field(default_factory=WorkflowPaths)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    aucell: AUCellConfig = field(default_factory=AUCellConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    mnn: MNNConfig = field(default_factory=MNNConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    viz: VizConfig = field(default_factory=VizConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowConfig":
        """Build from a dict of sections.

        Raises
        ------
        ValueError
            If a section name is unknown
        """
        unknown = set(data) - set(_SECTIONS)
        if unknown:
            raise ValueError(f"Unknown workflow config sections: {sorted(unknown)}")
        return cls(**{name: _SECTIONS[name](**(data.get(name) or {})) for name in _SECTIONS})

    @classmethod
    def from_yaml(cls, path: Path) -> "WorkflowConfig":
        """Load configuration from YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Workflow config not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "WorkflowConfig":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: asdict(getattr(self, f.name)) for f in fields(self)}

    def to_yaml(self, path: Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return path

    @property
    def output_dir(self) -> Path:
        return Path(self.paths.output_dir)

    def annotation_config(self) -> AnnotationConfig:
        return AnnotationConfig(
            aucell=self.aucell,
            reference=self.reference,
            cluster_key=self.clustering.key_added,
        )

    def integration_config(self) -> IntegrationConfig:
        return IntegrationConfig(
            normalization=self.normalization,
            features=self.features,
            mnn=self.mnn,
            clustering=self.clustering,
            query_label=self.paths.query_batch,
            reference_label=self.paths.reference_batch,
        )
