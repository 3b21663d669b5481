"""Annotation engine for cell-type labelling.

Orchestrates gene-set scoring (AUCell) and reference label transfer
(SingleR-style) on a log-normalized query, plus cluster-level summaries
when clusters are available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from anndata import AnnData

from ...io import load_gene_sets, write_dataframe
from .assignment import annotate_clusters, label_concordance
from .aucell import AUCellScorer
from .config import AnnotationConfig
from .reference import ClassificationResult, ReferenceClassifier


@dataclass
class AnnotationResult:
    """Result from the annotation engine.

    Attributes:
        adata: Query with label columns added to obs
        auc: cells x gene sets AUC matrix (None if no gene sets)
        aucell_labels: Best gene set per cell
        classification: Reference transfer result (None if no reference)
        cluster_summaries: label key -> per-cluster majority table
        concordance: AUCell vs reference contingency table
    """

    adata: AnnData
    auc: Optional[pd.DataFrame] = None
    aucell_labels: Optional[pd.Series] = None
    classification: Optional[ClassificationResult] = None
    cluster_summaries: Dict[str, pd.DataFrame] = field(default_factory=dict)
    concordance: Optional[pd.DataFrame] = None

    @property
    def label_keys(self) -> List[str]:
        return list(self.cluster_summaries)


class AnnotationEngine:
    """Annotates a log-normalized query by gene sets and/or a reference.

    Example:
        >>> engine = AnnotationEngine()
        >>> result = engine.run(
        ...     adata,
        ...     gene_sets=Path("markers.gmt"),
        ...     reference=ref_adata,
        ...     output_dir=Path("output/annotation"),
        ... )
        >>> adata.obs[["aucell_label", "singler_pruned_label"]]
    """

    def __init__(
        self,
        config: Optional[AnnotationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AnnotationConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.scorer = AUCellScorer(self.config.aucell, self.logger)
        self.classifier = ReferenceClassifier(self.config.reference, self.logger)

    def run(
        self,
        adata: AnnData,
        gene_sets: Optional[Union[Mapping[str, Sequence[str]], Path, str]] = None,
        reference: Optional[AnnData] = None,
        output_dir: Optional[Path] = None,
        cluster_key: Optional[str] = None,
    ) -> AnnotationResult:
        """Run gene-set scoring and/or reference transfer.

        Args:
            adata: Log-normalized query (modified in place)
            gene_sets: Gene set mapping or path to a JSON/YAML/GMT file
            reference: Log-normalized, labelled reference
            output_dir: Where to write CSVs (None = don't write)
            cluster_key: Cluster column for summaries (overrides config)

        Returns:
            AnnotationResult

        Raises:
            ValueError: If neither gene sets nor a reference are given, or the
                reference shares no genes with the query
        """
        if gene_sets is None and reference is None:
            raise ValueError("Annotation needs gene sets, a reference, or both")

        cluster_key = cluster_key or self.config.cluster_key
        result = AnnotationResult(adata=adata)

        self.logger.info("=" * 70)
        self.logger.info("ANNOTATION ENGINE")
        self.logger.info("=" * 70)
        self.logger.info("Query: %d cells x %d genes", adata.n_obs, adata.n_vars)

        if gene_sets is not None:
            self.logger.info("Phase 1: AUCell gene-set scoring...")
            if isinstance(gene_sets, (str, Path)):
                gene_sets = load_gene_sets(gene_sets)
            result.auc = self.scorer.score(adata, gene_sets)
            result.aucell_labels = self.scorer.assign(adata, result.auc)

        if reference is not None:
            self.logger.info("Phase 2: Reference label transfer...")
            shared = reference.var_names.intersection(adata.var_names)
            if len(shared) == 0:
                raise ValueError("Query and reference share no genes")
            self.logger.info("Training on %d genes shared with the query", len(shared))
            self.classifier.train(reference, genes=shared)
            result.classification = self.classifier.classify(adata)
            self.classifier.annotate(adata, result.classification)

        label_keys = []
        if result.auc is not None:
            label_keys.append(self.config.aucell.label_key)
        if result.classification is not None:
            label_keys.append(f"{self.config.reference.key_prefix}_pruned_label")

        if cluster_key in adata.obs:
            self.logger.info("Phase 3: Cluster-level summaries on '%s'...", cluster_key)
            for key in label_keys:
                result.cluster_summaries[key] = annotate_clusters(adata, key, cluster_key)
        else:
            self.logger.info("No '%s' column; skipping cluster summaries", cluster_key)

        if len(label_keys) == 2:
            result.concordance = label_concordance(adata, label_keys[0], label_keys[1])

        if output_dir:
            self._export(result, Path(output_dir))

        self.logger.info("Annotation complete!")
        return result

    def _export(self, result: AnnotationResult, output_dir: Path) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        prefix = self.config.reference.key_prefix

        if result.auc is not None:
            write_dataframe(result.auc, output_dir / "aucell_scores.csv")
            self.logger.info("Wrote aucell_scores.csv")

        if result.classification is not None:
            write_dataframe(result.classification.scores, output_dir / f"{prefix}_scores.csv")
            write_dataframe(result.classification.to_frame(), output_dir / f"{prefix}_labels.csv")
            self.logger.info("Wrote %s_scores.csv, %s_labels.csv", prefix, prefix)

        label_cols = [
            c
            for c in (
                self.config.aucell.label_key,
                f"{self.config.aucell.label_key}_auc",
                f"{prefix}_label",
                f"{prefix}_pruned_label",
                f"{prefix}_delta",
            )
            if c in result.adata.obs
        ]
        write_dataframe(result.adata.obs[label_cols], output_dir / "cell_labels.csv")

        for key, summary in result.cluster_summaries.items():
            write_dataframe(summary, output_dir / f"cluster_{key}.csv", index=False)
            self.logger.info("Wrote cluster_%s.csv", key)

        if result.concordance is not None:
            write_dataframe(result.concordance, output_dir / "label_concordance.csv")
