"""Style utilities and color schemes for scatlas figures."""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import logging

import matplotlib
from matplotlib.colors import to_hex

matplotlib.use("Agg")

logger = logging.getLogger(__name__)

# Batch colors (integration diagnostics)
BATCH_COLORS: Dict[str, str] = {
    "reference": "#3498db",     # Blue
    "query": "#e67e22",         # Orange
}

# Labels that are not cell types
SPECIAL_COLORS: Dict[str, str] = {
    "Unassigned": "#7f8c8d",    # Dark gray
    "Pruned": "#d5d8dc",        # Light gray
    "nan": "#d5d8dc",
}


@dataclass
class VizConfig:
    """Configuration for written figures.

    Attributes
    ----------
    dpi : int
        Resolution of saved PNGs
    point_size : float, optional
        Scatter point size for embeddings (None = scanpy default)
    max_labels : int
        Labels shown individually in histograms/heatmaps
    cmap : str
        Colormap for score heatmaps
    """

    dpi: int = 200
    point_size: Optional[float] = None
    max_labels: int = 30
    cmap: str = "viridis"


def set_publication_style():
    """Set matplotlib style for publication-quality figures."""
    import matplotlib.pyplot as plt

    if "seaborn-v0_8-whitegrid" in plt.style.available:
        plt.style.use("seaborn-v0_8-whitegrid")

    plt.rcParams.update({
        "font.size": 10,
        "axes.titlesize": 12,
        "axes.labelsize": 10,
        "xtick.labelsize": 8,
        "ytick.labelsize": 8,
        "legend.fontsize": 8,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.1,
        "axes.spines.top": False,
        "axes.spines.right": False,
    })


def get_color_palette(labels: Sequence[str]) -> Dict[str, str]:
    """Color mapping for labels; batch and special labels keep fixed colors."""
    import seaborn as sns

    labels = [str(label) for label in labels]
    free = [label for label in labels if label not in BATCH_COLORS and label not in SPECIAL_COLORS]
    palette = sns.color_palette("tab20" if len(free) > 10 else "tab10", n_colors=max(len(free), 1))

    colors: Dict[str, str] = {}
    for label in labels:
        if label in BATCH_COLORS:
            colors[label] = BATCH_COLORS[label]
        elif label in SPECIAL_COLORS:
            colors[label] = SPECIAL_COLORS[label]
    for label, rgb in zip(free, palette):
        colors[label] = to_hex(rgb)
    return colors


def save_figure(
    fig,
    output_path: Union[str, Path],
    dpi: int = 200,
    close: bool = True,
) -> Path:
    """Save matplotlib figure, creating parent directories.

    Returns:
        Path to saved figure
    """
    import matplotlib.pyplot as plt

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi)
    if close:
        plt.close(fig)
    logger.debug("Saved figure: %s", output_path)
    return output_path


def ordered_labels(labels: Sequence[str], max_labels: int) -> List[str]:
    """Most frequent labels first, truncated to ``max_labels``."""
    import pandas as pd

    counts = pd.Series([str(label) for label in labels]).value_counts()
    return counts.index[:max_labels].tolist()
