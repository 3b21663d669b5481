"""Cluster marker detection.

Wraps ``scanpy.tl.rank_genes_groups`` (one cluster vs rest) and reshapes
its record arrays into one tidy table.
"""

from typing import Any, List, Optional
import logging
import time

import pandas as pd

from .config import MarkerConfig

MARKER_COLUMNS = [
    "cluster",
    "rank",
    "gene",
    "score",
    "logfoldchange",
    "pval",
    "pval_adj",
    "pct_in",
    "pct_out",
]

_RENAME = {
    "names": "gene",
    "scores": "score",
    "logfoldchanges": "logfoldchange",
    "pvals": "pval",
    "pvals_adj": "pval_adj",
    "pct_nz_group": "pct_in",
    "pct_nz_reference": "pct_out",
}


def find_cluster_markers(
    adata: Any,  # AnnData
    cluster_key: str = "louvain",
    method: Optional[str] = None,
    n_genes: Optional[int] = None,
    layer: Optional[str] = None,
    config: Optional[MarkerConfig] = None,
    key_added: str = "rank_genes_groups",
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """Rank marker genes for every cluster against the rest.

    Clusters with fewer than two cells are skipped.

    Parameters
    ----------
    adata : AnnData
        Log-normalized data with cluster labels
    cluster_key : str
        Column in adata.obs with cluster labels
    method : str, optional
        DE method ('wilcoxon', 't-test', 'logreg'...). Uses config default if None.
    n_genes : int, optional
        Top genes per cluster. Uses config default if None.
    layer : str, optional
        Expression layer. Uses config default if None.

    Returns
    -------
    pd.DataFrame
        Columns ``MARKER_COLUMNS``, ordered by cluster then rank

    Raises
    ------
    KeyError
        If ``cluster_key`` is missing
    ValueError
        If fewer than two clusters have at least two cells
    """
    import scanpy as sc

    logger = logger or logging.getLogger(__name__)
    cfg = config or MarkerConfig()
    method = method if method is not None else cfg.method
    n_genes = n_genes if n_genes is not None else cfg.n_genes
    layer = layer if layer is not None else cfg.layer

    if cluster_key not in adata.obs:
        raise KeyError(f"Cluster column '{cluster_key}' not found in adata.obs")
    if layer and layer not in adata.layers:
        logger.warning("Layer '%s' not found; falling back to adata.X", layer)
        layer = None

    sizes = adata.obs[cluster_key].astype(str).value_counts()
    groups: List[str] = sorted(sizes.index[sizes >= 2], key=_cluster_sort_key)
    if len(groups) < 2:
        raise ValueError("Marker detection needs at least two clusters with >= 2 cells")
    skipped = sorted(set(sizes.index) - set(groups))
    if skipped:
        logger.warning("Skipping single-cell clusters for markers: %s", skipped)

    work = adata
    if adata.obs[cluster_key].dtype.name != "category" or skipped:
        work = adata[adata.obs[cluster_key].astype(str).isin(groups)].copy()
        work.obs[cluster_key] = pd.Categorical(work.obs[cluster_key].astype(str))

    logger.info(
        "Ranking markers (method=%s, n_genes=%d, layer=%s) for %d clusters",
        method,
        n_genes,
        layer or "X",
        len(groups),
    )
    start = time.time()
    sc.tl.rank_genes_groups(
        work,
        groupby=cluster_key,
        groups=groups,
        method=method,
        n_genes=min(n_genes, work.n_vars),
        layer=layer,
        use_raw=False,
        tie_correct=cfg.tie_correct,
        key_added=key_added,
        pts=True,
    )
    if work is not adata:
        adata.uns[key_added] = work.uns[key_added]

    frames = []
    for group in groups:
        df = sc.get.rank_genes_groups_df(work, group=group, key=key_added)
        df = df.dropna(subset=["names"]).head(n_genes).rename(columns=_RENAME)
        df.insert(0, "rank", range(1, len(df) + 1))
        df.insert(0, "cluster", group)
        frames.append(df)

    markers = pd.concat(frames, ignore_index=True)
    markers = markers[[c for c in MARKER_COLUMNS if c in markers.columns]]
    logger.info("Marker ranking completed in %.1f seconds", time.time() - start)
    return markers


def _cluster_sort_key(value: str):
    return (0, int(value), "") if value.isdigit() else (1, 0, value)


def top_markers(markers: pd.DataFrame, n: int = 5) -> pd.DataFrame:
    """First ``n`` genes per cluster as a cluster x rank table of gene names."""
    top = markers[markers["rank"] <= n]
    return top.pivot(index="cluster", columns="rank", values="gene")
