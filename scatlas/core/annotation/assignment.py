"""Cluster-level label summaries and labeling concordance."""

from __future__ import annotations

import logging
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)


def _require_columns(adata, *keys: str) -> None:
    missing = [k for k in keys if k not in adata.obs]
    if missing:
        raise KeyError(f"Missing obs columns: {missing}")


def cluster_majority_labels(
    adata,
    label_key: str,
    cluster_key: str = "louvain",
) -> pd.DataFrame:
    """Majority label of each cluster.

    Cells without a label (NaN, e.g. pruned) are ignored when voting; a
    cluster whose cells are all unlabelled gets NaN.

    Returns
    -------
    pd.DataFrame
        One row per cluster with columns ``cluster``, ``n_cells``,
        ``majority_label``, ``majority_fraction``
    """
    _require_columns(adata, label_key, cluster_key)
    obs = adata.obs[[cluster_key, label_key]].copy()
    obs[cluster_key] = obs[cluster_key].astype(str)

    rows = []
    for cluster, group in obs.groupby(cluster_key, sort=False):
        counts = group[label_key].dropna().astype(str).value_counts()
        if counts.empty:
            majority, fraction = None, 0.0
        else:
            majority = counts.index[0]
            fraction = counts.iloc[0] / len(group)
        rows.append(
            {
                "cluster": cluster,
                "n_cells": len(group),
                "majority_label": majority,
                "majority_fraction": float(fraction),
            }
        )

    summary = pd.DataFrame(rows)
    order = pd.to_numeric(summary["cluster"], errors="coerce")
    if order.notna().all():
        summary = summary.iloc[order.argsort().to_numpy()]
    else:
        summary = summary.sort_values("cluster")
    return summary.reset_index(drop=True)


def annotate_clusters(
    adata,
    label_key: str,
    cluster_key: str = "louvain",
    key_added: Optional[str] = None,
) -> pd.DataFrame:
    """Map each cluster's majority label back onto its cells.

    Writes ``obs[key_added]`` (default ``"{label_key}_cluster"``) and
    returns the summary from :func:`cluster_majority_labels`.
    """
    summary = cluster_majority_labels(adata, label_key, cluster_key)
    key_added = key_added or f"{label_key}_cluster"
    mapping = dict(zip(summary["cluster"], summary["majority_label"]))
    adata.obs[key_added] = pd.Categorical(
        adata.obs[cluster_key].astype(str).map(mapping).to_numpy()
    )
    logger.info(
        "Cluster-level '%s' labels for %d clusters -> obs['%s']",
        label_key,
        len(summary),
        key_added,
    )
    return summary


MISSING_LABEL = "Pruned"


def _with_missing(labels: pd.Series) -> pd.Series:
    return labels.astype(object).where(labels.notna(), MISSING_LABEL).astype(str)


def label_concordance(
    adata,
    key_a: str,
    key_b: str,
    normalize: bool = False,
) -> pd.DataFrame:
    """Contingency table of two labelings (rows ``key_a``, columns ``key_b``).

    Missing labels (pruned cells) are counted under ``"Pruned"``.
    With ``normalize=True`` each row sums to 1.
    """
    _require_columns(adata, key_a, key_b)
    table = pd.crosstab(
        _with_missing(adata.obs[key_a]).rename(key_a),
        _with_missing(adata.obs[key_b]).rename(key_b),
    )
    if normalize:
        table = table.div(table.sum(axis=1).replace(0, 1), axis=0)
    return table
