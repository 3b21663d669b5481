"""Diagnostic plots for annotation and integration results.

Every function writes one PNG and returns its path.
"""

from pathlib import Path
from typing import Optional, Sequence, Union
import logging

import numpy as np
import pandas as pd

from .style import (
    VizConfig,
    get_color_palette,
    ordered_labels,
    save_figure,
    set_publication_style,
)

logger = logging.getLogger(__name__)

# Cells drawn in per-cell score heatmaps
_MAX_HEATMAP_CELLS = 2000


def plot_embedding(
    adata,
    color: Union[str, Sequence[str]],
    output_path: Union[str, Path],
    basis: str = "umap",
    config: Optional[VizConfig] = None,
) -> Path:
    """Scatter of ``obsm["X_" + basis]`` colored by obs columns or genes.

    Raises:
        KeyError: If the embedding or a color key is missing
    """
    import matplotlib.pyplot as plt
    import scanpy as sc

    config = config or VizConfig()
    key = f"X_{basis}"
    if key not in adata.obsm:
        raise KeyError(f"Embedding '{key}' not found in adata.obsm")

    colors = [color] if isinstance(color, str) else list(color)
    missing = [c for c in colors if c not in adata.obs and c not in adata.var_names]
    if missing:
        raise KeyError(f"Color keys not found in obs or var_names: {missing}")

    set_publication_style()
    fig, axes = plt.subplots(1, len(colors), figsize=(6.5 * len(colors), 5.5), squeeze=False)
    for ax, c in zip(axes[0], colors):
        palette = None
        if c in adata.obs and not pd.api.types.is_numeric_dtype(adata.obs[c]):
            categories = adata.obs[c].astype("category").cat.categories
            mapping = get_color_palette(categories)
            palette = [mapping[str(cat)] for cat in categories]
        sc.pl.embedding(
            adata,
            basis=basis,
            color=c,
            ax=ax,
            show=False,
            palette=palette,
            size=config.point_size,
            title=f"{basis.upper()}: {c}",
        )
    plt.tight_layout()
    return save_figure(fig, output_path, dpi=config.dpi)


def plot_aucell_heatmap(
    auc: pd.DataFrame,
    labels: Union[pd.Series, Sequence[str]],
    output_path: Union[str, Path],
    config: Optional[VizConfig] = None,
) -> Path:
    """Mean AUC of every gene set (columns) within each assigned label (rows)."""
    import matplotlib.pyplot as plt
    import seaborn as sns

    config = config or VizConfig()
    labels = pd.Series(np.asarray(labels, dtype=object), index=auc.index).astype(str)
    means = auc.groupby(labels).mean()
    means = means.loc[ordered_labels(labels, config.max_labels)]

    set_publication_style()
    fig, ax = plt.subplots(
        figsize=(max(4, 0.5 * means.shape[1] + 3), max(3, 0.4 * means.shape[0] + 2))
    )
    sns.heatmap(
        means,
        cmap=config.cmap,
        annot=means.size <= 400,
        fmt=".2f",
        cbar_kws={"label": "mean AUC"},
        ax=ax,
    )
    ax.set_xlabel("Gene set")
    ax.set_ylabel("Assigned label")
    ax.set_title("AUCell: mean AUC per assigned label")
    plt.tight_layout()
    return save_figure(fig, output_path, dpi=config.dpi)


def plot_aucell_histograms(
    auc: pd.DataFrame,
    output_path: Union[str, Path],
    bins: int = 50,
    config: Optional[VizConfig] = None,
) -> Path:
    """One AUC distribution histogram per gene set."""
    import matplotlib.pyplot as plt
    import seaborn as sns

    config = config or VizConfig()
    columns = list(auc.columns[: config.max_labels])
    n_cols = min(4, len(columns))
    n_rows = int(np.ceil(len(columns) / n_cols))

    set_publication_style()
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(3.5 * n_cols, 2.8 * n_rows), squeeze=False)
    for ax, name in zip(axes.ravel(), columns):
        sns.histplot(auc[name], bins=bins, ax=ax, color="#3498db")
        ax.set_title(str(name))
        ax.set_xlabel("AUC")
    for ax in axes.ravel()[len(columns):]:
        ax.set_visible(False)
    fig.suptitle("AUCell score distributions")
    plt.tight_layout()
    return save_figure(fig, output_path, dpi=config.dpi)


def plot_score_heatmap(
    scores: pd.DataFrame,
    labels: Union[pd.Series, Sequence[str]],
    output_path: Union[str, Path],
    seed: int = 0,
    config: Optional[VizConfig] = None,
) -> Path:
    """Per-cell reference scores (labels x cells), cells grouped by assignment.

    Scores are min-max scaled within each cell. Large datasets are
    subsampled to a fixed number of cells.
    """
    import matplotlib.pyplot as plt
    import seaborn as sns

    config = config or VizConfig()
    labels = pd.Series(np.asarray(labels, dtype=object), index=scores.index).astype(str)

    if len(scores) > _MAX_HEATMAP_CELLS:
        rng = np.random.default_rng(seed)
        keep = np.sort(rng.choice(len(scores), _MAX_HEATMAP_CELLS, replace=False))
        scores, labels = scores.iloc[keep], labels.iloc[keep]

    order = labels.sort_values(kind="stable").index
    scaled = scores.loc[order]
    lo = scaled.min(axis=1)
    span = (scaled.max(axis=1) - lo).replace(0, 1)
    scaled = scaled.sub(lo, axis=0).div(span, axis=0)

    mapping = get_color_palette(sorted(labels.unique()))
    col_colors = [mapping[label] for label in labels.loc[order]]

    set_publication_style()
    grid = sns.clustermap(
        scaled.T,
        row_cluster=True,
        col_cluster=False,
        col_colors=col_colors,
        cmap=config.cmap,
        xticklabels=False,
        figsize=(10, max(4, 0.3 * scores.shape[1] + 2)),
        cbar_kws={"label": "scaled score"},
    )
    grid.ax_heatmap.set_xlabel("Cells (grouped by label)")
    grid.fig.suptitle("Reference label scores", y=1.02)
    return save_figure(grid.fig, output_path, dpi=config.dpi)


def plot_concordance(
    table: pd.DataFrame,
    output_path: Union[str, Path],
    title: str = "Label concordance",
    config: Optional[VizConfig] = None,
) -> Path:
    """Row-normalized heatmap of a contingency table."""
    import matplotlib.pyplot as plt
    import seaborn as sns

    config = config or VizConfig()
    fractions = table.div(table.sum(axis=1).replace(0, 1), axis=0)

    set_publication_style()
    fig, ax = plt.subplots(
        figsize=(max(4, 0.5 * fractions.shape[1] + 3), max(3, 0.4 * fractions.shape[0] + 2))
    )
    sns.heatmap(
        fractions,
        cmap="Blues",
        vmin=0,
        vmax=1,
        annot=fractions.size <= 400,
        fmt=".2f",
        cbar_kws={"label": "row fraction"},
        ax=ax,
    )
    ax.set_title(title)
    plt.tight_layout()
    return save_figure(fig, output_path, dpi=config.dpi)


def plot_batch_composition(
    adata,
    cluster_key: str,
    batch_key: str,
    output_path: Union[str, Path],
    config: Optional[VizConfig] = None,
) -> Path:
    """Stacked bars of batch fractions within each cluster.

    Raises:
        KeyError: If either column is missing
    """
    import matplotlib.pyplot as plt

    config = config or VizConfig()
    missing = [k for k in (cluster_key, batch_key) if k not in adata.obs]
    if missing:
        raise KeyError(f"Missing obs columns: {missing}")

    fractions = pd.crosstab(
        adata.obs[cluster_key].astype(str), adata.obs[batch_key].astype(str), normalize="index"
    )
    order = sorted(fractions.index, key=lambda c: (0, int(c)) if c.isdigit() else (1, c))
    fractions = fractions.loc[order]
    mapping = get_color_palette(list(fractions.columns))

    set_publication_style()
    fig, ax = plt.subplots(figsize=(max(5, 0.35 * len(fractions) + 2), 4))
    fractions.plot(
        kind="bar",
        stacked=True,
        color=[mapping[c] for c in fractions.columns],
        width=0.85,
        ax=ax,
    )
    overall = adata.obs[batch_key].astype(str).value_counts(normalize=True)
    first = fractions.columns[0]
    ax.axhline(overall.get(first, 0.0), color="black", linestyle="--", linewidth=0.8)
    ax.set_xlabel(cluster_key)
    ax.set_ylabel("Fraction of cells")
    ax.set_ylim(0, 1)
    ax.set_title(f"Batch composition per cluster (dashed: overall '{first}' fraction)")
    ax.legend(title=batch_key, loc="upper left", bbox_to_anchor=(1.01, 1))
    plt.tight_layout()
    return save_figure(fig, output_path, dpi=config.dpi)
