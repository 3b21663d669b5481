"""Integration CLI runner.

Integrates a QC-filtered query with a reference:
    python -m scatlas.core.integration --query q.h5ad --reference r.h5ad --output out/integration

Usage Examples:
    # Default fastMNN settings
    python -m scatlas.core.integration \\
        --query out/qc_query/preprocessed.h5ad \\
        --reference out/qc_reference/preprocessed.h5ad \\
        --output out/integration

    # More neighbors, fewer HVGs
    python -m scatlas.core.integration \\
        --query q.h5ad --reference r.h5ad --output out/integration \\
        --k 30 --n-top-genes 1000
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional, Sequence

from ...io import get_logger, log_json, read_dataset, run_record
from .config import IntegrationConfig
from .engine import IntegrationEngine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scatlas.core.integration",
        description="Multi-batch normalization and fastMNN integration",
    )
    parser.add_argument("--query", required=True, type=Path, help="Query dataset")
    parser.add_argument("--reference", required=True, type=Path, help="Reference dataset")
    parser.add_argument("--output", required=True, type=Path, help="Output directory")
    parser.add_argument("--config", type=Path, help="Integration YAML")
    parser.add_argument("--k", type=int, help="MNN neighbors")
    parser.add_argument("--n-top-genes", type=int, help="HVGs used for correction")
    parser.add_argument("--resolution", type=float, help="Clustering resolution")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    logger, log_path = get_logger(
        "scatlas.integration",
        output / "integration.log",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        config = IntegrationConfig.from_yaml(args.config) if args.config else IntegrationConfig()
        if args.k is not None:
            config.mnn.k = args.k
        if args.n_top_genes is not None:
            config.features.n_top_genes = args.n_top_genes
        if args.resolution is not None:
            config.clustering.resolution = args.resolution

        query = read_dataset(args.query)
        reference = read_dataset(args.reference)
        result = IntegrationEngine(config, logger).run(query, reference, output_dir=output)
        result.adata.write_h5ad(output / "integrated.h5ad")
        log_json(
            output / "run_records.jsonl",
            run_record(
                "integration",
                result.adata,
                shared_genes=result.shared_genes,
                n_hvgs=len(result.hvgs),
                n_clusters=result.clustering.n_clusters,
                **result.mnn.to_dict(),
            ),
        )
    except Exception as e:
        logger.error("Integration failed: %s", e)
        logger.debug(traceback.format_exc())
        print(f"Integration failed: {e} (see {log_path})", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
