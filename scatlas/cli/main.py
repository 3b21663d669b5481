"""Command-line interface for scatlas.

Provides CLI commands for single-cell annotation and integration steps
and the end-to-end workflows.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from scatlas import __version__


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("scatlas")


@click.group()
@click.version_option(version=__version__, prog_name="scatlas")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """scatlas: single-cell annotation and reference integration.

    Annotates scRNA-seq data with marker gene sets (AUCell) and labelled
    references (SingleR-style), and integrates a query with a reference
    (multi-batch normalization + fastMNN).

    Examples:

        # QC and normalize a 10x dataset
        scatlas qc --input data/filtered_feature_bc_matrix/ --out out/qc

        # Annotate with gene sets and a reference
        scatlas annotate -i out/qc/preprocessed.h5ad -o out/annot \\
            --gene-sets markers.gmt --reference atlas.h5ad --label-key cell_type

        # Run a workflow from config
        scatlas workflow annotation --config workflow.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input dataset (h5ad, 10x h5, 10x directory, CSV/TSV)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Configuration file (YAML) with qc/normalization/features sections")
@click.option("--batch", help="Batch label assigned to all cells")
@click.option("--nmads", type=float, help="MADs defining an outlier")
@click.option("--select-features/--no-select-features", default=True,
              help="Model gene variance and select HVGs")
@click.pass_context
def qc(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    batch: Optional[str],
    nmads: Optional[float],
    select_features: bool,
) -> None:
    """Cell QC, normalization and feature selection."""
    logger = ctx.obj["logger"]

    from scatlas.core.preprocessing import (
        CellQC,
        FeatureSelector,
        Normalizer,
        PreprocessingConfig,
    )
    from scatlas.io import read_dataset, write_dataframe

    cfg = PreprocessingConfig.from_yaml(Path(config)) if config else PreprocessingConfig()
    if nmads is not None:
        cfg.qc.nmads = nmads

    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)

    adata = read_dataset(input_path, batch=batch, batch_key=cfg.qc.batch_key)
    adata, result = CellQC(cfg.qc, logger).run(adata)
    Normalizer(cfg.normalization, logger).run(adata, batch_key=cfg.qc.batch_key)
    if select_features:
        FeatureSelector(cfg.features, logger).run(adata)
        write_dataframe(adata.var, out_dir / "gene_variance.csv")

    write_dataframe(adata.obs, out_dir / "cell_qc.csv")
    output_file = out_dir / "preprocessed.h5ad"
    adata.write_h5ad(output_file)

    click.echo(
        f"QC complete: kept {result.cells_total - result.cells_removed}/{result.cells_total} cells"
    )
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Log-normalized AnnData file (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--gene-sets", type=click.Path(exists=True), help="Gene sets (JSON/YAML/GMT)")
@click.option("--reference", type=click.Path(exists=True),
              help="Log-normalized labelled reference (.h5ad)")
@click.option("--label-key", default="label", show_default=True, help="Reference label column")
@click.option("--cluster-key", default="louvain", show_default=True,
              help="Cluster column for cluster-level summaries")
@click.option("--fine-tune/--no-fine-tune", default=True, help="Reference fine-tuning")
@click.option("--n-jobs", type=int, default=1, show_default=True,
              help="Parallel workers for reference scoring")
@click.pass_context
def annotate(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    gene_sets: Optional[str],
    reference: Optional[str],
    label_key: str,
    cluster_key: str,
    fine_tune: bool,
    n_jobs: int,
) -> None:
    """Annotate cells with AUCell gene sets and/or a labelled reference."""
    logger = ctx.obj["logger"]
    if not gene_sets and not reference:
        raise click.UsageError("Provide --gene-sets, --reference, or both")

    import scanpy as sc
    from scatlas.core.annotation import AnnotationConfig, AnnotationEngine

    cfg = AnnotationConfig(cluster_key=cluster_key)
    cfg.reference.label_key = label_key
    cfg.reference.fine_tune = fine_tune
    cfg.reference.n_jobs = n_jobs

    out_dir = Path(output_path)
    adata = sc.read_h5ad(input_path)
    ref = sc.read_h5ad(reference) if reference else None
    AnnotationEngine(cfg, logger).run(adata, gene_sets=gene_sets, reference=ref, output_dir=out_dir)

    output_file = out_dir / "annotated.h5ad"
    adata.write_h5ad(output_file)
    click.echo("Annotation complete")
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--query", "-q", required=True, type=click.Path(exists=True),
              help="QC-filtered query dataset")
@click.option("--reference", "-r", required=True, type=click.Path(exists=True),
              help="QC-filtered reference dataset")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True), help="Integration YAML")
@click.option("--k", type=int, help="MNN neighbors")
@click.option("--resolution", type=float, help="Louvain resolution")
@click.pass_context
def integrate(
    ctx: click.Context,
    query: str,
    reference: str,
    output_path: str,
    config: Optional[str],
    k: Optional[int],
    resolution: Optional[float],
) -> None:
    """Integrate a query with a reference (fastMNN) and cluster."""
    logger = ctx.obj["logger"]

    from scatlas.core.integration import IntegrationConfig, IntegrationEngine
    from scatlas.io import read_dataset

    cfg = IntegrationConfig.from_yaml(Path(config)) if config else IntegrationConfig()
    if k is not None:
        cfg.mnn.k = k
    if resolution is not None:
        cfg.clustering.resolution = resolution

    out_dir = Path(output_path)
    result = IntegrationEngine(cfg, logger).run(
        read_dataset(query), read_dataset(reference), output_dir=out_dir
    )
    output_file = out_dir / "integrated.h5ad"
    result.adata.write_h5ad(output_file)

    click.echo(
        f"Integration complete: {result.shared_genes} shared genes, "
        f"{len(result.hvgs)} HVGs, MNN pairs {result.mnn.n_pairs}, "
        f"{result.clustering.n_clusters} clusters"
    )
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input AnnData file (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--method", type=click.Choice(["louvain", "leiden"]), default="louvain",
              show_default=True, help="Community detection")
@click.option("--use-rep", help="obsm representation for the graph (default: X_pca)")
@click.option("--resolution", type=float, default=1.0, show_default=True,
              help="Clustering resolution")
@click.option("--n-neighbors", type=int, default=15, show_default=True,
              help="Neighbors for the kNN graph")
@click.option("--use-gpu/--no-gpu", default=False, help="Use GPU acceleration")
@click.option("--markers/--no-markers", default=True, help="Rank cluster markers")
@click.pass_context
def cluster(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    method: str,
    use_rep: Optional[str],
    resolution: float,
    n_neighbors: int,
    use_gpu: bool,
    markers: bool,
) -> None:
    """Build the neighbor graph, cluster, run UMAP and rank markers."""
    logger = ctx.obj["logger"]

    import scanpy as sc
    from scatlas.core.clustering import (
        ClusteringConfig,
        ClusteringEngine,
        find_cluster_markers,
    )
    from scatlas.io import write_dataframe

    cfg = ClusteringConfig(
        method=method,
        key_added=method,
        use_rep=use_rep,
        resolution=resolution,
        n_neighbors=n_neighbors,
        use_gpu=use_gpu,
    )
    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)

    adata = sc.read_h5ad(input_path)
    result = ClusteringEngine(cfg, logger).run(adata)
    if markers:
        table = find_cluster_markers(adata, result.cluster_key, logger=logger)
        write_dataframe(table, out_dir / "cluster_markers.csv", index=False)

    output_file = out_dir / "clustered.h5ad"
    adata.write_h5ad(output_file)
    click.echo(f"Clustering complete: {result.n_clusters} clusters")
    click.echo(f"Output saved to: {output_file}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Input AnnData file (.h5ad)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory for PNGs")
@click.option("--color", "colors", multiple=True,
              help="obs columns or genes to color the embedding by (repeatable)")
@click.option("--basis", default="umap", show_default=True, help="Embedding basis")
@click.option("--batch-key", default="batch", show_default=True, help="Batch column")
@click.option("--cluster-key", default="louvain", show_default=True, help="Cluster column")
@click.pass_context
def plot(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    colors: Tuple[str, ...],
    basis: str,
    batch_key: str,
    cluster_key: str,
) -> None:
    """Write diagnostic plots for an annotated or integrated dataset."""
    logger = ctx.obj["logger"]

    import scanpy as sc
    from scatlas.viz import (
        plot_aucell_heatmap,
        plot_aucell_histograms,
        plot_batch_composition,
        plot_embedding,
        plot_score_heatmap,
    )

    out_dir = Path(output_path)
    adata = sc.read_h5ad(input_path)
    written = []

    colors = list(colors) or [k for k in (cluster_key, batch_key) if k in adata.obs]
    if colors and f"X_{basis}" in adata.obsm:
        written.append(plot_embedding(adata, colors, out_dir / f"{basis}.png", basis=basis))
    if "aucell" in adata.obsm and "aucell_label" in adata.obs:
        written.append(
            plot_aucell_heatmap(adata.obsm["aucell"], adata.obs["aucell_label"],
                                out_dir / "aucell_heatmap.png")
        )
        written.append(plot_aucell_histograms(adata.obsm["aucell"], out_dir / "aucell_histograms.png"))
    if "singler_scores" in adata.obsm and "singler_label" in adata.obs:
        written.append(
            plot_score_heatmap(adata.obsm["singler_scores"], adata.obs["singler_label"],
                               out_dir / "reference_scores.png")
        )
    if cluster_key in adata.obs and batch_key in adata.obs and adata.obs[batch_key].nunique() > 1:
        written.append(
            plot_batch_composition(adata, cluster_key, batch_key, out_dir / "batch_composition.png")
        )

    logger.info("Wrote plots: %s", [str(p) for p in written])
    click.echo(f"Wrote {len(written)} plots to {out_dir}")


@cli.command()
@click.argument("name", type=click.Choice(["annotation", "integration"]))
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Workflow configuration file (YAML)")
@click.option("--out", "-o", "output_path", type=click.Path(),
              help="Override paths.output_dir")
@click.pass_context
def workflow(ctx: click.Context, name: str, config: str, output_path: Optional[str]) -> None:
    """Run the annotation or integration workflow end to end."""
    from scatlas.pipeline import PipelineLogger
    from scatlas.workflows import (
        WorkflowConfig,
        run_annotation_workflow,
        run_integration_workflow,
    )

    cfg = WorkflowConfig.from_yaml(Path(config))
    if output_path:
        cfg.paths.output_dir = output_path

    verbose = ctx.obj["verbose"] or ctx.obj["debug"]
    pipeline_logger = PipelineLogger(
        str(cfg.output_dir / "logs"),
        log_level="DEBUG" if ctx.obj["debug"] else ("INFO" if verbose else "WARNING"),
        log_name=f"scatlas.{name}",
    )
    pipeline_logger.setup()
    runner = run_annotation_workflow if name == "annotation" else run_integration_workflow
    try:
        result = runner(cfg, pipeline_logger=pipeline_logger)
    finally:
        pipeline_logger.close()

    click.echo(f"Workflow '{name}' complete")
    click.echo(f"Output saved to: {result.output_path}")


@cli.command()
@click.option("--config", "-c", required=True, type=click.Path(exists=True),
              help="Pipeline configuration file (YAML)")
@click.option("--start-stage", help="Stage to start from")
@click.option("--end-stage", help="Stage to end at")
@click.option("--dry-run", is_flag=True, help="Show execution plan without running")
@click.option("--force", is_flag=True, help="Ignore checkpoints and re-run all stages")
@click.option("--resume", is_flag=True, help="Resume from the last completed stage")
@click.pass_context
def pipeline(
    ctx: click.Context,
    config: str,
    start_stage: Optional[str],
    end_stage: Optional[str],
    dry_run: bool,
    force: bool,
    resume: bool,
) -> None:
    """Run stage modules as subprocesses from a pipeline configuration.

    Executes stages in dependency order with checkpoint support and
    detailed logging.
    """
    logger = ctx.obj["logger"]
    verbose = ctx.obj["verbose"]

    from scatlas.pipeline import PipelineConfig, PipelineExecutor, PipelineLogger

    logger.info(f"Loading pipeline config: {config}")
    pipeline_config = PipelineConfig(config)
    pipeline_config.load()
    pipeline_config.parse_stages()

    valid, errors = pipeline_config.validate_dependencies()
    if not valid:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)

    order = pipeline_config.get_execution_order()
    click.echo(f"Pipeline stages: {' -> '.join(order)}")

    if dry_run:
        click.echo("Dry run - no stages will be executed")
        for stage_id in order:
            cmd = " ".join(pipeline_config.stages[stage_id].get_command())
            click.echo(f"  {stage_id}: {cmd}")
        return

    log_dir = Path(config).parent / "logs"
    pipeline_logger = PipelineLogger(str(log_dir), log_level="DEBUG" if verbose else "INFO")
    pipeline_logger.setup()
    executor = PipelineExecutor(pipeline_config, pipeline_logger)

    if resume:
        resume_stage = executor.get_resume_stage()
        if resume_stage:
            click.echo(f"Resuming from stage: {resume_stage}")
            start_stage = resume_stage

    try:
        exit_code = executor.run(start_stage=start_stage, end_stage=end_stage, force=force)
    finally:
        pipeline_logger.close()

    if exit_code == 0:
        click.echo("Pipeline completed successfully")
    else:
        click.echo(f"Pipeline failed with exit code {exit_code}", err=True)
        sys.exit(exit_code)


@cli.command("init-config")
@click.option("--out", "-o", "output_path", default="workflow.yaml", show_default=True,
              type=click.Path(), help="Where to write the default workflow YAML")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init_config(output_path: str, force: bool) -> None:
    """Write a default workflow configuration."""
    from scatlas.workflows import WorkflowConfig

    path = Path(output_path)
    if path.exists() and not force:
        raise click.ClickException(f"{path} exists; use --force to overwrite")
    WorkflowConfig.default().to_yaml(path)
    click.echo(f"Wrote default configuration to {path}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
