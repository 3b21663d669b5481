"""Test fixtures for scatlas.

Provides mock data generators and test utilities.
"""

from .mock_adata import (
    MARKERS,
    add_low_quality_cells,
    create_counts_adata,
    create_lognorm_adata,
    create_two_batch_adata,
    gene_panel,
)

__all__ = [
    "MARKERS",
    "add_low_quality_cells",
    "create_counts_adata",
    "create_lognorm_adata",
    "create_two_batch_adata",
    "gene_panel",
]
