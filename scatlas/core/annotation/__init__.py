"""Annotation module for cell-type labelling.

Provides gene-set enrichment scoring (AUCell), reference label transfer
(SingleR-style) and cluster-level label summaries.
"""

from .assignment import annotate_clusters, cluster_majority_labels, label_concordance
from .aucell import AUCellScorer, build_rankings, compute_auc, resolve_max_rank
from .config import AnnotationConfig, AUCellConfig, ReferenceConfig
from .engine import AnnotationEngine, AnnotationResult
from .gene_sets import GeneSet, canonicalize_gene, resolve_gene_sets
from .reference import (
    ClassificationResult,
    ReferenceClassifier,
    TrainedReference,
    default_de_n,
)

__all__ = [
    # Engine
    "AnnotationEngine",
    "AnnotationResult",
    # Config
    "AnnotationConfig",
    "AUCellConfig",
    "ReferenceConfig",
    # Gene sets
    "GeneSet",
    "canonicalize_gene",
    "resolve_gene_sets",
    # AUCell
    "AUCellScorer",
    "build_rankings",
    "compute_auc",
    "resolve_max_rank",
    # Reference transfer
    "ClassificationResult",
    "ReferenceClassifier",
    "TrainedReference",
    "default_de_n",
    # Assignment
    "annotate_clusters",
    "cluster_majority_labels",
    "label_concordance",
]
