"""Annotation CLI runner.

Scores a log-normalized query against gene sets and/or a labelled reference:
    python -m scatlas.core.annotation --input preprocessed.h5ad --output out/annotation

Usage Examples:
    # Gene sets only
    python -m scatlas.core.annotation \\
        --input out/qc/preprocessed.h5ad --output out/annotation \\
        --gene-sets markers.gmt

    # Reference transfer with fine-tuning disabled
    python -m scatlas.core.annotation \\
        --input out/qc/preprocessed.h5ad --output out/annotation \\
        --reference atlas.h5ad --label-key cell_type --no-fine-tune
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional, Sequence

import scanpy as sc

from ...io import get_logger, log_json, run_record
from .config import AnnotationConfig
from .engine import AnnotationEngine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scatlas.core.annotation",
        description="AUCell gene-set scoring and reference label transfer",
    )
    parser.add_argument("--input", required=True, type=Path, help="Log-normalized query .h5ad")
    parser.add_argument("--output", required=True, type=Path, help="Output directory")
    parser.add_argument("--gene-sets", type=Path, help="Gene sets (JSON/YAML/GMT)")
    parser.add_argument("--reference", type=Path, help="Log-normalized labelled reference .h5ad")
    parser.add_argument("--label-key", help="Reference label column")
    parser.add_argument("--config", type=Path, help="YAML with an 'annotation' section")
    parser.add_argument("--no-fine-tune", action="store_true", help="Disable fine-tuning")
    parser.add_argument("--n-jobs", type=int, help="joblib workers for reference scoring")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    logger, log_path = get_logger(
        "scatlas.annotation",
        output / "annotation.log",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        config = AnnotationConfig.from_yaml(args.config) if args.config else AnnotationConfig()
        if args.label_key:
            config.reference.label_key = args.label_key
        if args.no_fine_tune:
            config.reference.fine_tune = False
        if args.n_jobs is not None:
            config.reference.n_jobs = args.n_jobs

        adata = sc.read_h5ad(args.input)
        reference = sc.read_h5ad(args.reference) if args.reference else None
        result = AnnotationEngine(config, logger).run(
            adata,
            gene_sets=args.gene_sets,
            reference=reference,
            output_dir=output,
        )
        adata.write_h5ad(output / "annotated.h5ad")

        record = run_record("annotation", adata)
        if result.classification is not None:
            record.update(result.classification.summary)
        log_json(output / "run_records.jsonl", record)
    except Exception as e:
        logger.error("Annotation failed: %s", e)
        logger.debug(traceback.format_exc())
        print(f"Annotation failed: {e} (see {log_path})", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
