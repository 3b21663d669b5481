"""Clustering CLI runner.

Builds the neighbor graph, clusters, embeds and ranks cluster markers:
    python -m scatlas.core.clustering --input integrated.h5ad --output out/clustering

Usage Examples:
    # Louvain on the MNN-corrected embedding
    python -m scatlas.core.clustering \\
        --input out/integration/integrated.h5ad --output out/clustering \\
        --use-rep X_mnn --resolution 0.8

    # Leiden with rapids-singlecell when available
    python -m scatlas.core.clustering \\
        --input out/qc/preprocessed.h5ad --output out/clustering \\
        --method leiden --gpu
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional, Sequence

import scanpy as sc

from ...io import get_logger, log_json, run_record, write_dataframe
from .config import ClusterStageConfig
from .engine import ClusteringEngine
from .markers import find_cluster_markers


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scatlas.core.clustering",
        description="Neighbor graph, Louvain/Leiden clustering, UMAP and markers",
    )
    parser.add_argument("--input", required=True, type=Path, help="Input .h5ad")
    parser.add_argument("--output", required=True, type=Path, help="Output directory")
    parser.add_argument("--config", type=Path, help="YAML with clustering/markers sections")
    parser.add_argument("--method", choices=["louvain", "leiden"], help="Community detection")
    parser.add_argument("--use-rep", help="obsm representation for the graph")
    parser.add_argument("--resolution", type=float, help="Resolution parameter")
    parser.add_argument("--n-neighbors", type=int, help="k for the neighbor graph")
    parser.add_argument("--gpu", action="store_true", help="Use rapids-singlecell if available")
    parser.add_argument("--no-markers", action="store_true", help="Skip marker ranking")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    logger, log_path = get_logger(
        "scatlas.clustering",
        output / "clustering.log",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        config = ClusterStageConfig.from_yaml(args.config) if args.config else ClusterStageConfig()
        if args.method:
            config.clustering.method = args.method
            config.clustering.key_added = args.method
        if args.gpu:
            config.clustering.use_gpu = True

        adata = sc.read_h5ad(args.input)
        result = ClusteringEngine(config.clustering, logger).run(
            adata,
            use_rep=args.use_rep,
            n_neighbors=args.n_neighbors,
            resolution=args.resolution,
        )

        if not args.no_markers:
            markers = find_cluster_markers(
                adata, result.cluster_key, config=config.markers, logger=logger
            )
            write_dataframe(markers, output / "cluster_markers.csv", index=False)

        write_dataframe(adata.obs[[result.cluster_key]], output / "clusters.csv")
        adata.write_h5ad(output / "clustered.h5ad")
        log_json(
            output / "run_records.jsonl",
            run_record(
                "clustering",
                adata,
                method=result.method,
                n_clusters=result.n_clusters,
                cluster_sizes=result.cluster_sizes,
            ),
        )
    except Exception as e:
        logger.error("Clustering failed: %s", e)
        logger.debug(traceback.format_exc())
        print(f"Clustering failed: {e} (see {log_path})", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
