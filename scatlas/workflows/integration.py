"""Integration workflow: per-dataset QC, fastMNN integration and markers.

Stages (run in-process by :class:`InMemoryExecutor`)::

    load -> qc -> integrate -> markers -> plots -> write
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.clustering import find_cluster_markers, top_markers
from ..core.integration import IntegrationEngine
from ..core.preprocessing import CellQC
from ..io import log_yaml, read_dataset, run_record, write_dataframe
from ..pipeline import InMemoryExecutor, PipelineLogger
from .annotation import WorkflowResult
from .config import WorkflowConfig


def _load(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    paths = config.paths
    batch_key = config.qc.batch_key
    return {
        "query": read_dataset(paths.query, batch=paths.query_batch, batch_key=batch_key),
        "reference": read_dataset(paths.reference, batch=paths.reference_batch, batch_key=batch_key),
    }


def _qc(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    qc = CellQC(config.qc, logger)
    filtered = {}
    summaries = {}
    for name, adata in stage_results["load"].items():
        logger.info("QC for %s", name)
        filtered[name], summaries[name] = qc.run(adata)
        write_dataframe(filtered[name].obs, config.output_dir / "qc" / f"{name}_cell_qc.csv")
    return {"datasets": filtered, "summaries": summaries}


def _integrate(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    datasets = stage_results["qc"]["datasets"]
    return IntegrationEngine(config.integration_config(), logger).run(
        datasets["query"],
        datasets["reference"],
        output_dir=config.output_dir / "integration",
    )


def _markers(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    integration = stage_results["integrate"]
    markers = find_cluster_markers(
        integration.adata,
        integration.clustering.cluster_key,
        config=config.markers,
        logger=logger,
    )
    out_dir = config.output_dir / "integration"
    write_dataframe(markers, out_dir / "cluster_markers.csv", index=False)
    write_dataframe(top_markers(markers), out_dir / "cluster_top_markers.csv")
    return markers


def _plots(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    from ..viz import plot_embedding

    integration = stage_results["integrate"]
    adata = integration.adata
    plots: Dict[str, Path] = dict(integration.plots)
    plot_dir = config.output_dir / "plots"

    label_key = config.reference.label_key
    if "X_umap" in adata.obsm and label_key in adata.obs:
        plots["umap_reference_labels"] = plot_embedding(
            adata, label_key, plot_dir / "umap_reference_labels.png", config=config.viz
        )

    top = stage_results["markers"].groupby("cluster").head(1)["gene"].unique().tolist()
    if "X_umap" in adata.obsm and top:
        plots["umap_top_markers"] = plot_embedding(
            adata, top[:8], plot_dir / "umap_top_markers.png", config=config.viz
        )

    logger.info("Wrote %d plots", len(plots))
    return plots


def _write(config: WorkflowConfig, logger: logging.Logger, stage_results: Dict[str, Any]):
    adata = stage_results["integrate"].adata
    output_path = config.output_dir / "integrated.h5ad"
    adata.write_h5ad(output_path)
    config.to_yaml(config.output_dir / "config_used.yaml")
    logger.info("Wrote %s", output_path)
    return output_path


def build_integration_executor(pipeline_logger: Optional[PipelineLogger] = None) -> InMemoryExecutor:
    """Register the integration stages on a fresh executor."""
    executor = InMemoryExecutor(pipeline_logger)
    executor.register_stage("load", _load, name="Load datasets")
    executor.register_stage("qc", _qc, depends_on=["load"], name="Cell QC")
    executor.register_stage("integrate", _integrate, depends_on=["qc"], name="fastMNN integration")
    executor.register_stage("markers", _markers, depends_on=["integrate"], name="Cluster markers")
    executor.register_stage("plots", _plots, depends_on=["markers"], name="Plots")
    executor.register_stage("write", _write, depends_on=["plots"], name="Write outputs")
    return executor


def run_integration_workflow(
    config: WorkflowConfig,
    pipeline_logger: Optional[PipelineLogger] = None,
) -> WorkflowResult:
    """Integrate a query with a reference and cluster the combined cells.

    Raises:
        ValueError: If the query or reference path is not configured
    """
    paths = config.paths
    if not paths.query or not paths.reference:
        raise ValueError("Integration workflow needs paths.query and paths.reference")

    config.output_dir.mkdir(parents=True, exist_ok=True)
    owns_logger = pipeline_logger is None
    if owns_logger:
        pipeline_logger = PipelineLogger(str(config.output_dir / "logs"), log_name="scatlas.integration")
        pipeline_logger.setup()

    executor = build_integration_executor(pipeline_logger)
    try:
        results = executor.run(config=config, logger=pipeline_logger.logger)
    finally:
        if owns_logger:
            pipeline_logger.close()

    integration = results["integrate"]
    workflow_result = WorkflowResult(
        adata=integration.adata,
        output_path=results["write"],
        stage_results=results,
        durations=dict(executor.durations),
        plots=results["plots"],
    )
    log_yaml(
        config.output_dir / "run_records.yaml",
        run_record(
            "integration_workflow",
            integration.adata,
            qc={name: s.to_dict() for name, s in results["qc"]["summaries"].items()},
            shared_genes=integration.shared_genes,
            n_hvgs=len(integration.hvgs),
            mnn=integration.mnn.to_dict(),
            n_clusters=integration.clustering.n_clusters,
            durations=workflow_result.durations,
        ),
    )
    return workflow_result
