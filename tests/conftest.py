"""Pytest configuration and shared fixtures for scatlas tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import mock data generators
from tests.fixtures import (
    MARKERS,
    add_low_quality_cells,
    create_counts_adata,
    create_lognorm_adata,
    create_two_batch_adata,
)


# ============================================================================
# AnnData Fixtures
# ============================================================================


@pytest.fixture
def counts_adata():
    """Raw counts: 3 cell types x 40 cells, one batch."""
    return create_counts_adata(n_per_type=40)


@pytest.fixture
def lognorm_adata():
    """Log-normalized query with known cell types."""
    return create_lognorm_adata(n_per_type=40, batch="query", seed=3)


@pytest.fixture
def lognorm_reference():
    """Log-normalized labelled reference drawn from the same cell types."""
    return create_lognorm_adata(n_per_type=30, batch="reference", seed=11)


@pytest.fixture
def two_batches():
    """(query, reference) raw-count datasets with a batch effect."""
    return create_two_batch_adata(n_per_type=40)


@pytest.fixture
def dirty_adata():
    """Counts dataset with injected low-library and high-mito cells."""
    return add_low_quality_cells(create_counts_adata(n_per_type=40))


@pytest.fixture
def marker_sets() -> dict:
    """Marker gene sets matching the mock cell types."""
    return {name: list(genes) for name, genes in MARKERS.items()}


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def sample_pipeline_config(tmp_path) -> Path:
    """Create sample pipeline configuration file."""
    import yaml

    config = {
        "pipeline": {
            "name": "Test Pipeline",
            "version": "1.0",
        },
        "global": {
            "output_dir": str(tmp_path / "output"),
        },
        "stages": {
            "qc": {
                "name": "Cell QC",
                "script_module": "scatlas.core.preprocessing",
                "inputs": {"raw": str(tmp_path / "raw.h5ad")},
                "outputs": {"processed": "{global.output_dir}/qc/preprocessed.h5ad"},
                "args": {"input": str(tmp_path / "raw.h5ad"), "output": "{global.output_dir}/qc"},
            },
            "cluster": {
                "name": "Clustering",
                "script_module": "scatlas.core.clustering",
                "depends_on": ["qc"],
                "args": {"input": "{stages.qc.outputs.processed}"},
            },
        },
    }

    path = tmp_path / "pipeline.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f, sort_keys=False)

    return path


@pytest.fixture
def gmt_file(tmp_path) -> Path:
    """Gene sets in GMT format."""
    path = tmp_path / "markers.gmt"
    lines = [
        "\t".join([name, "mock"] + genes) for name, genes in MARKERS.items()
    ]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator."""
    return np.random.default_rng(0)


@pytest.fixture
def label_frame() -> pd.DataFrame:
    """Cluster and label columns with a pruned (NaN) label."""
    return pd.DataFrame(
        {
            "louvain": pd.Categorical(["0", "0", "0", "1", "1", "10"]),
            "label": ["T cell", "T cell", "B cell", "B cell", np.nan, np.nan],
            "other": ["T", "T", "T", "B", "B", "B"],
        },
        index=[f"c{i}" for i in range(6)],
    )
