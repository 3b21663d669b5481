"""Preprocessing CLI runner.

Runs QC, normalization and (optionally) feature selection on one dataset:
    python -m scatlas.core.preprocessing --input query.h5ad --output out/qc

Usage Examples:
    # QC + library-size normalization of a query dataset
    python -m scatlas.core.preprocessing \\
        --input data/query.h5ad --output out/qc --batch query

    # With thresholds from YAML and HVG selection
    python -m scatlas.core.preprocessing \\
        --input data/query.h5ad --output out/qc \\
        --config configs/workflow.yaml --select-features
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import Optional, Sequence

from ...io import get_logger, log_json, read_dataset, run_record, write_dataframe
from .config import PreprocessingConfig
from .features import FeatureSelector
from .normalization import Normalizer
from .qc import CellQC


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scatlas.core.preprocessing",
        description="Cell QC, normalization and feature selection",
    )
    parser.add_argument("--input", required=True, type=Path, help="Input dataset")
    parser.add_argument("--output", required=True, type=Path, help="Output directory")
    parser.add_argument("--config", type=Path, help="YAML with a 'preprocessing' section")
    parser.add_argument("--batch", help="Batch label assigned to all cells")
    parser.add_argument("--select-features", action="store_true", help="Run HVG selection")
    parser.add_argument("--verbose", action="store_true", help="DEBUG logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    logger, log_path = get_logger(
        "scatlas.preprocessing",
        output / "preprocessing.log",
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    try:
        config = (
            PreprocessingConfig.from_yaml(args.config) if args.config else PreprocessingConfig()
        )
        adata = read_dataset(args.input, batch=args.batch, batch_key=config.qc.batch_key)
        adata, qc_result = CellQC(config.qc, logger).run(adata)
        Normalizer(config.normalization, logger).run(adata, batch_key=config.qc.batch_key)
        if args.select_features:
            FeatureSelector(config.features, logger).run(adata, batch_key=config.qc.batch_key)
            write_dataframe(adata.var, output / "gene_variance.csv")

        write_dataframe(adata.obs, output / "cell_qc.csv")
        adata.write_h5ad(output / "preprocessed.h5ad")
        log_json(
            output / "run_records.jsonl",
            run_record("preprocessing", adata, **qc_result.to_dict()),
        )
    except Exception as e:
        logger.error("Preprocessing failed: %s", e)
        logger.debug(traceback.format_exc())
        print(f"Preprocessing failed: {e} (see {log_path})", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
