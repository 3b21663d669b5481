"""Variance modeling, feature blacklisting and highly variable gene selection.

The per-gene variance of log-expression is decomposed into a technical
component, taken from a LOWESS trend of variance against mean, and a
biological component (the residual). With several batches the
decomposition is computed per batch and combined with cell-count weights.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from .config import FeatureSelectionConfig

logger = logging.getLogger(__name__)

VARIANCE_COLUMNS = ["mean", "total_var", "tech_var", "bio_var"]


def _mean_var(matrix) -> tuple[np.ndarray, np.ndarray]:
    """Column means and unbiased variances of a dense or sparse matrix."""
    n = matrix.shape[0]
    if sparse.issparse(matrix):
        mean = np.asarray(matrix.mean(axis=0)).ravel()
        sq = np.asarray(matrix.multiply(matrix).mean(axis=0)).ravel()
    else:
        arr = np.asarray(matrix, dtype=np.float64)
        mean = arr.mean(axis=0)
        sq = (arr ** 2).mean(axis=0)
    var = np.clip(sq - mean ** 2, 0, None)
    if n > 1:
        var *= n / (n - 1)
    return mean.astype(np.float64), var.astype(np.float64)


def fit_variance_trend(mean: np.ndarray, var: np.ndarray, span: float = 0.3) -> np.ndarray:
    """Fit the technical mean-variance trend with LOWESS (statsmodels).

    Genes with zero mean have zero technical variance. Fewer than four
    expressed genes leave no room for a trend; the observed variance is
    returned unchanged.
    """
    from statsmodels.nonparametric.smoothers_lowess import lowess

    tech = np.zeros_like(var)
    expressed = mean > 0
    if expressed.sum() < 4:
        tech[expressed] = var[expressed]
        return tech

    fitted = lowess(
        endog=var[expressed],
        exog=mean[expressed],
        frac=span,
        it=3,
        return_sorted=False,
    )
    tech[expressed] = np.clip(np.nan_to_num(fitted, nan=0.0), 0, None)
    return tech


def model_gene_variance(
    adata,
    batch_key: Optional[str] = None,
    span: float = 0.3,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """Decompose per-gene variance of log-expression (in place on ``adata.var``).

    Parameters
    ----------
    adata : AnnData
        Log-normalized data in ``X`` (or ``layers[layer]``)
    batch_key : str, optional
        If given, model each batch separately and average the components,
        weighted by ``n_cells - 1``
    span : float
        LOWESS span
    layer : str, optional
        Layer to model instead of ``X``

    Returns
    -------
    pd.DataFrame
        genes x (mean, total_var, tech_var, bio_var)
    """
    matrix = adata.layers[layer] if layer else adata.X

    if batch_key is None or batch_key not in adata.obs:
        if batch_key is not None:
            logger.warning("Batch key '%s' not in obs; modeling variance jointly", batch_key)
        groups = {"all": np.ones(adata.n_obs, dtype=bool)}
    else:
        labels = adata.obs[batch_key].astype(str).to_numpy()
        groups = {b: labels == b for b in pd.unique(labels)}

    tables = []
    weights = []
    for name, mask in groups.items():
        n_cells = int(mask.sum())
        if n_cells < 2:
            logger.warning("Batch '%s' has %d cell(s); excluded from variance model", name, n_cells)
            continue
        mean, var = _mean_var(matrix[mask])
        tech = fit_variance_trend(mean, var, span=span)
        tables.append(np.column_stack([mean, var, tech, var - tech]))
        weights.append(n_cells - 1)

    if not tables:
        raise ValueError("No batch has at least 2 cells; cannot model gene variance")

    combined = np.average(np.stack(tables), axis=0, weights=np.asarray(weights, dtype=float))
    result = pd.DataFrame(combined, index=adata.var_names.copy(), columns=VARIANCE_COLUMNS)
    for col in VARIANCE_COLUMNS:
        adata.var[col] = result[col].to_numpy()

    logger.info(
        "Modeled variance for %d genes across %d batch(es); %d with positive biological component",
        adata.n_vars,
        len(tables),
        int((result["bio_var"] > 0).sum()),
    )
    return result


def blacklist_genes(
    var_names: Iterable[str],
    patterns: Optional[Sequence[str]] = None,
    extra_genes: Optional[Iterable[str]] = None,
) -> pd.Series:
    """Flag genes matching any blacklist regex or named explicitly.

    Matching is case-insensitive for both patterns and explicit names.

    Returns
    -------
    pd.Series
        Boolean flag indexed by gene name
    """
    names = pd.Index([str(v) for v in var_names])
    if patterns is None:
        patterns = FeatureSelectionConfig().blacklist_patterns
    compiled = [re.compile(p, re.IGNORECASE) for p in patterns]
    extra = {g.upper() for g in (extra_genes or [])}

    flags = np.array(
        [any(rx.search(name) for rx in compiled) or name.upper() in extra for name in names],
        dtype=bool,
    )
    return pd.Series(flags, index=names, name="blacklisted")


def select_features(
    adata,
    n_top: int = 2000,
    min_bio_var: float = 0.0,
    blacklist: bool = True,
    patterns: Optional[Sequence[str]] = None,
    extra_genes: Optional[Iterable[str]] = None,
) -> List[str]:
    """Select the top genes by biological variance, excluding blacklisted genes.

    Requires ``bio_var`` in ``adata.var`` (see :func:`model_gene_variance`).
    Sets ``var["blacklisted"]`` and ``var["highly_variable"]``.

    Raises
    ------
    KeyError
        If the variance model has not been run
    ValueError
        If no gene passes the selection
    """
    if "bio_var" not in adata.var:
        raise KeyError("adata.var has no 'bio_var'; run model_gene_variance first")

    flags = blacklist_genes(adata.var_names, patterns=patterns, extra_genes=extra_genes)
    adata.var["blacklisted"] = flags.to_numpy()

    bio = adata.var["bio_var"].to_numpy()
    eligible = bio > min_bio_var
    if blacklist:
        eligible &= ~flags.to_numpy()

    candidates = np.flatnonzero(eligible)
    if candidates.size == 0:
        raise ValueError("No genes with positive biological variance remain after blacklisting")

    order = candidates[np.argsort(-bio[candidates], kind="stable")]
    chosen = order[:n_top]
    hvg = np.zeros(adata.n_vars, dtype=bool)
    hvg[chosen] = True
    adata.var["highly_variable"] = hvg

    logger.info(
        "Selected %d highly variable genes (%d blacklisted genes excluded)",
        len(chosen),
        int(flags.sum()) if blacklist else 0,
    )
    return adata.var_names[chosen].tolist()


class FeatureSelector:
    """Variance modeling plus blacklist-aware HVG selection from a config.

    Example
    -------
    >>> selector = FeatureSelector(FeatureSelectionConfig(n_top_genes=1000))
    >>> genes = selector.run(adata, batch_key="batch")
    """

    def __init__(
        self,
        config: Optional[FeatureSelectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FeatureSelectionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def run(self, adata, batch_key: Optional[str] = None) -> List[str]:
        cfg = self.config
        model_gene_variance(adata, batch_key=batch_key, span=cfg.span)
        genes = select_features(
            adata,
            n_top=cfg.n_top_genes,
            min_bio_var=cfg.min_bio_var,
            blacklist=cfg.blacklist,
            patterns=cfg.blacklist_patterns,
            extra_genes=cfg.extra_blacklist,
        )
        adata.uns.setdefault("scatlas", {})["features"] = {
            "n_selected": len(genes),
            "n_blacklisted": int(adata.var["blacklisted"].sum()),
            "batch_key": batch_key or "",
            "span": cfg.span,
        }
        return genes
