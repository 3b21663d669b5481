"""Visualization module for scatlas.

Writes embedding, AUCell, reference-score, concordance and batch
composition figures with matplotlib (Agg), seaborn and scanpy.
"""

from .plots import (
    plot_aucell_heatmap,
    plot_aucell_histograms,
    plot_batch_composition,
    plot_concordance,
    plot_embedding,
    plot_score_heatmap,
)
from .style import VizConfig, get_color_palette, save_figure, set_publication_style

__all__ = [
    "VizConfig",
    "get_color_palette",
    "save_figure",
    "set_publication_style",
    "plot_aucell_heatmap",
    "plot_aucell_histograms",
    "plot_batch_composition",
    "plot_concordance",
    "plot_embedding",
    "plot_score_heatmap",
]
