"""Command-line interface for scatlas.

Provides CLI commands for individual analysis steps and workflows.

Example Usage
-------------
    # From command line:
    scatlas --help
    scatlas qc --input data/ --out out/qc
    scatlas annotate --input out/qc/preprocessed.h5ad --out out/annot --gene-sets markers.gmt
    scatlas workflow integration --config workflow.yaml
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
