"""Annotation workflow: QC, normalization, clustering and two-way labelling.

Stages (run in-process by :class:`InMemoryExecutor`)::

    load -> qc -> normalize -> features -> cluster -> annotate -> plots -> write
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.annotation import AnnotationEngine
from ..core.clustering import ClusteringEngine
from ..core.preprocessing import CellQC, FeatureSelector, Normalizer
from ..io import load_gene_sets, log_yaml, read_dataset, run_record, write_dataframe
from ..pipeline import InMemoryExecutor, PipelineLogger
from .config import WorkflowConfig


@dataclass
class WorkflowResult:
    """Outcome of a workflow run.

    Attributes:
        adata: Final AnnData
        output_path: Written ``.h5ad``
        stage_results: Stage ID -> stage return value
        durations: Stage ID -> seconds
        plots: Plot name -> path
    """

    adata: Any
    output_path: Path
    stage_results: Dict[str, Any] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    plots: Dict[str, Path] = field(default_factory=dict)


def _load(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    paths = config.paths
    query = read_dataset(paths.query, batch=paths.query_batch, batch_key=config.qc.batch_key)
    reference = read_dataset(paths.reference) if paths.reference else None
    gene_sets = load_gene_sets(paths.gene_sets) if paths.gene_sets else None
    logger.info(
        "Inputs: query %d cells, reference %s, gene sets %s",
        query.n_obs,
        f"{reference.n_obs} cells" if reference is not None else "none",
        len(gene_sets) if gene_sets else "none",
    )
    return {"query": query, "reference": reference, "gene_sets": gene_sets}


def _qc(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata, qc_result = CellQC(config.qc, logger).run(stage_results["load"]["query"])
    write_dataframe(adata.obs, config.output_dir / "qc" / "cell_qc.csv")
    return {"adata": adata, "qc": qc_result}


def _normalize(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata = stage_results["qc"]["adata"]
    Normalizer(config.normalization, logger).run(adata, batch_key=config.qc.batch_key)

    reference = stage_results["load"]["reference"]
    if reference is not None:
        Normalizer(config.normalization, logger).log_normalize(reference)
    return adata


def _features(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata = stage_results["normalize"]
    key = config.qc.batch_key
    batch_key = key if key in adata.obs and adata.obs[key].nunique() > 1 else None
    return FeatureSelector(config.features, logger).run(adata, batch_key=batch_key)


def _cluster(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata = stage_results["normalize"]
    engine = ClusteringEngine(config.clustering, logger)
    engine.pca(adata, n_comps=config.clustering.n_pcs or 50)
    return engine.run(adata, use_rep="X_pca")


def _annotate(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    loaded = stage_results["load"]
    return AnnotationEngine(config.annotation_config(), logger).run(
        stage_results["normalize"],
        gene_sets=loaded["gene_sets"],
        reference=loaded["reference"],
        output_dir=config.output_dir / "annotation",
    )


def _plots(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    from ..viz import (
        plot_aucell_heatmap,
        plot_aucell_histograms,
        plot_concordance,
        plot_embedding,
        plot_score_heatmap,
    )
    from ..core.annotation import label_concordance

    adata = stage_results["normalize"]
    annotation = stage_results["annotate"]
    cluster_key = stage_results["cluster"].cluster_key
    plot_dir = config.output_dir / "plots"
    viz = config.viz
    plots: Dict[str, Path] = {}

    if annotation.auc is not None:
        label_key = config.aucell.label_key
        plots["aucell_heatmap"] = plot_aucell_heatmap(
            annotation.auc, adata.obs[label_key], plot_dir / "aucell_heatmap.png", config=viz
        )
        plots["aucell_histograms"] = plot_aucell_histograms(
            annotation.auc, plot_dir / "aucell_histograms.png", config=viz
        )
        plots["aucell_vs_clusters"] = plot_concordance(
            label_concordance(adata, cluster_key, label_key),
            plot_dir / "aucell_vs_clusters.png",
            title="Clusters vs AUCell labels",
            config=viz,
        )

    if annotation.classification is not None:
        prefix = config.reference.key_prefix
        plots["reference_scores"] = plot_score_heatmap(
            annotation.classification.scores,
            annotation.classification.labels,
            plot_dir / "reference_scores.png",
            config=viz,
        )
        plots["reference_vs_clusters"] = plot_concordance(
            label_concordance(adata, cluster_key, f"{prefix}_pruned_label"),
            plot_dir / "reference_vs_clusters.png",
            title="Clusters vs reference labels",
            config=viz,
        )

    if "X_umap" in adata.obsm:
        colors = [cluster_key] + [
            key
            for key in (config.aucell.label_key, f"{config.reference.key_prefix}_pruned_label")
            if key in adata.obs
        ]
        plots["umap"] = plot_embedding(adata, colors, plot_dir / "umap_annotation.png", config=viz)

    logger.info("Wrote %d plots to %s", len(plots), plot_dir)
    return plots


def _write(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata = stage_results["normalize"]
    output_path = config.output_dir / "annotated.h5ad"
    adata.write_h5ad(output_path)
    config.to_yaml(config.output_dir / "config_used.yaml")
    logger.info("Wrote %s", output_path)
    return output_path


def build_annotation_executor(pipeline_logger: Optional[PipelineLogger] = None) -> InMemoryExecutor:
    """Register the annotation stages on a fresh executor."""
    executor = InMemoryExecutor(pipeline_logger)
    executor.register_stage("load", _load, name="Load datasets")
    executor.register_stage("qc", _qc, depends_on=["load"], name="Cell QC")
    executor.register_stage("normalize", _normalize, depends_on=["qc"], name="Normalization")
    executor.register_stage("features", _features, depends_on=["normalize"], name="Feature selection")
    executor.register_stage("cluster", _cluster, depends_on=["features"], name="Clustering")
    executor.register_stage("annotate", _annotate, depends_on=["cluster"], name="Annotation")
    executor.register_stage("plots", _plots, depends_on=["annotate"], name="Plots")
    executor.register_stage("write", _write, depends_on=["plots"], name="Write outputs")
    return executor


def run_annotation_workflow(
    config: WorkflowConfig,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> WorkflowResult:
    """Annotate a query against gene sets and/or a labelled reference.

    Raises:
        ValueError: If no query is configured, or neither gene sets nor a
            reference are configured
    """
    paths = config.paths
    if not paths.query:
        raise ValueError("Annotation workflow needs paths.query")
    if not paths.gene_sets and not paths.reference:
        raise ValueError("Annotation workflow needs paths.gene_sets, paths.reference, or both")

    config.output_dir.mkdir(parents=True, exist_ok=True)
    owns_logger = pipeline_logger is None
    if owns_logger:
        pipeline_logger = PipelineLogger(str(config.output_dir / "logs"), log_name="scatlas.annotation")
        pipeline_logger.setup()

    executor = build_annotation_executor(pipeline_logger)
    try:
        results = executor.run(config=config, logger=pipeline_logger.logger)
    finally:
        if owns_logger:
            pipeline_logger.close()

    workflow_result = WorkflowResult(
        adata=results["normalize"],
        output_path=results["write"],
        stage_results=results,
        durations=dict(executor.durations),
        plots=results["plots"],
    )
    log_yaml(
        config.output_dir / "run_records.yaml",
        run_record(
            "annotation_workflow",
            workflow_result.adata,
            qc=results["qc"]["qc"].to_dict(),
            n_clusters=results["cluster"].n_clusters,
            durations=workflow_result.durations,
        ),
    )
    return workflow_result
