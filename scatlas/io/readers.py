"""Dataset and gene-set readers for scatlas.

Expression data is always returned as an AnnData with raw counts kept in
``layers["counts"]``; gene sets are returned as ordered name -> genes maps.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd
import yaml
from scipy import sparse

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

COUNTS_LAYER = "counts"
BATCH_KEY = "batch"


def ensure_output_dir(path: PathLike) -> Path:
    """Create the directory at ``path`` if needed and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def write_dataframe(df: pd.DataFrame, path: PathLike, index: bool = True) -> Path:
    """Write ``df`` as CSV, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    logger.debug("Wrote %s (%d rows)", path, len(df))
    return path


def _read_delimited_counts(path: Path) -> "AnnData":
    """Read a genes x cells delimited count table."""
    import anndata as ad

    sep = "\t" if path.suffix in (".tsv", ".txt") else ","
    df = pd.read_csv(path, sep=sep, index_col=0)
    numeric = df.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().any().any():
        raise ValueError(f"Non-numeric entries in count table: {path}")
    matrix = sparse.csr_matrix(numeric.to_numpy(dtype=np.float32).T)
    return ad.AnnData(
        X=matrix,
        obs=pd.DataFrame(index=df.columns.astype(str)),
        var=pd.DataFrame(index=df.index.astype(str)),
    )


def read_dataset(
    path: PathLike,
    batch: Optional[str] = None,
    batch_key: str = BATCH_KEY,
) -> "AnnData":
    """Read a single-cell count dataset.

    Parameters
    ----------
    path : PathLike
        ``.h5ad``, 10x ``.h5``, 10x matrix directory, or a genes x cells
        ``.csv``/``.tsv`` table.
    batch : str, optional
        If given, stored in ``obs[batch_key]`` for every cell.
    batch_key : str
        Column receiving the batch label.

    Returns
    -------
    AnnData
        Dataset with unique var names and ``layers["counts"]``.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ValueError
        If the format is not recognised.
    """
    import scanpy as sc

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)
    elif path.suffix == ".h5ad":
        adata = sc.read_h5ad(path)
    elif path.suffix == ".h5":
        adata = sc.read_10x_h5(path)
    elif path.suffix in (".csv", ".tsv", ".txt"):
        adata = _read_delimited_counts(path)
    else:
        raise ValueError(f"Unsupported dataset format: {path.suffix or path.name}")

    adata.var_names_make_unique()

    if COUNTS_LAYER not in adata.layers:
        adata.layers[COUNTS_LAYER] = adata.X.copy()

    if batch is not None:
        adata.obs[batch_key] = pd.Categorical([batch] * adata.n_obs)

    logger.info("Loaded %s: %d cells x %d genes", path.name, adata.n_obs, adata.n_vars)
    return adata


def _genes_from_entry(name: str, entry) -> List[str]:
    if isinstance(entry, dict):
        entry = entry.get("markers", entry.get("genes", []))
    if isinstance(entry, str):
        entry = [entry]
    if not isinstance(entry, (list, tuple)):
        raise ValueError(f"Gene set '{name}' must be a list of genes")
    return [str(g).strip() for g in entry if str(g).strip()]


def _read_gmt(path: Path) -> Dict[str, List[str]]:
    gene_sets: Dict[str, List[str]] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.rstrip("\n")
            if not line.strip():
                continue
            fields = line.split("\t")
            if len(fields) < 2:
                raise ValueError(f"Malformed GMT line {line_no} in {path}")
            gene_sets[fields[0]] = [g.strip() for g in fields[2:] if g.strip()]
    return gene_sets


def load_gene_sets(path: PathLike) -> Dict[str, List[str]]:
    """Load marker gene sets from JSON, YAML or GMT.

    JSON and YAML accept either ``{name: [genes]}`` or
    ``{name: {"markers": [genes]}}``. Duplicate genes within a set are
    removed, preserving order; empty sets are dropped with a warning.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ValueError
        If the file is malformed or the format is unknown.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Gene set file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".gmt":
        raw = _read_gmt(path)
    elif suffix in (".json", ".yaml", ".yml"):
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle) if suffix == ".json" else yaml.safe_load(handle)
        if not isinstance(data, dict):
            raise ValueError(f"Gene set file must contain a mapping: {path}")
        raw = {str(name): _genes_from_entry(name, entry) for name, entry in data.items()}
    else:
        raise ValueError(f"Unsupported gene set format: {suffix}")

    gene_sets: Dict[str, List[str]] = {}
    for name, genes in raw.items():
        unique = list(dict.fromkeys(genes))
        if not unique:
            logger.warning("Dropping empty gene set '%s'", name)
            continue
        gene_sets[name] = unique

    logger.info("Loaded %d gene sets from %s", len(gene_sets), path.name)
    return gene_sets
