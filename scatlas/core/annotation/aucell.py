"""Gene-set enrichment scoring with AUCell.

Each cell ranks all genes by expression. For a gene set, the recovery
curve counts how many of its genes appear within the top ``max_rank``
positions; the area under that curve, divided by the area of a set whose
genes occupy the very top ranks, is the cell's AUC for the set. Scores are
rank-based and therefore insensitive to normalization.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from .config import AUCellConfig
from .gene_sets import GeneSet, resolve_gene_sets


def build_rankings(matrix, seed: int = 42) -> np.ndarray:
    """Rank genes within each cell, 0 = highest expression.

    Ties (including the block of unexpressed genes) are broken randomly but
    reproducibly from ``seed``.

    Parameters
    ----------
    matrix : array-like or sparse
        cells x genes expression

    Returns
    -------
    np.ndarray
        cells x genes int32 ranks
    """
    dense = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)
    n_cells, n_genes = dense.shape
    rng = np.random.default_rng(seed)
    noise = rng.random((n_cells, n_genes))

    # Last key is the primary sort key
    order = np.lexsort((noise, -dense.astype(np.float64)), axis=1)
    rankings = np.empty((n_cells, n_genes), dtype=np.int32)
    rows = np.arange(n_cells)[:, None]
    rankings[rows, order] = np.arange(n_genes, dtype=np.int32)[None, :]
    return rankings


def resolve_max_rank(n_genes: int, max_rank: Optional[int] = None, frac: float = 0.05) -> int:
    """Recovery-curve cutoff: ``max_rank`` or ``ceil(frac * n_genes)``, clamped to [1, n_genes]."""
    if max_rank is None:
        max_rank = int(math.ceil(frac * n_genes))
    return int(min(max(max_rank, 1), n_genes))


def compute_auc(
    rankings: np.ndarray,
    gene_indices: Mapping[str, Sequence[int]],
    max_rank: int,
) -> pd.DataFrame:
    """Normalized recovery-curve AUC of each gene set in each cell.

    A gene at 0-based rank ``r < max_rank`` contributes ``max_rank - r``;
    the sum is divided by the best attainable sum for a set of that size,
    so values lie in [0, 1].

    Parameters
    ----------
    rankings : np.ndarray
        cells x genes ranks from :func:`build_rankings`
    gene_indices : Mapping[str, Sequence[int]]
        Gene set name -> column indices into ``rankings``
    max_rank : int
        Recovery-curve cutoff

    Returns
    -------
    pd.DataFrame
        cells x gene sets AUC (default RangeIndex rows)
    """
    scores: Dict[str, np.ndarray] = {}
    for name, idx in gene_indices.items():
        idx = np.asarray(idx, dtype=int)
        if idx.size == 0:
            scores[name] = np.zeros(rankings.shape[0])
            continue
        ranks = rankings[:, idx]
        contrib = np.where(ranks < max_rank, max_rank - ranks, 0).sum(axis=1)
        k = min(idx.size, max_rank)
        best = float(np.sum(max_rank - np.arange(k)))
        scores[name] = contrib / best
    return pd.DataFrame(scores)


class AUCellScorer:
    """Scores cells against marker gene sets and assigns the best set.

    Parameters
    ----------
    config : AUCellConfig, optional
        Scoring configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> scorer = AUCellScorer(AUCellConfig(max_rank_frac=0.05))
    >>> auc = scorer.score(adata, {"T cell": ["CD3E", "CD3D"], "B cell": ["MS4A1"]})
    >>> labels = scorer.assign(adata)
    """

    def __init__(
        self,
        config: Optional[AUCellConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AUCellConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.gene_sets_: List[GeneSet] = []
        self.max_rank_: Optional[int] = None

    def score(
        self,
        adata,
        gene_sets: Union[Mapping[str, Sequence[str]], Sequence[GeneSet]],
        layer: Optional[str] = None,
    ) -> pd.DataFrame:
        """Compute AUCs and store them in ``adata.obsm[config.key_added]``.

        Returns
        -------
        pd.DataFrame
            cells x gene sets AUC indexed by ``adata.obs_names``
        """
        cfg = self.config
        if isinstance(gene_sets, Mapping):
            gene_sets = resolve_gene_sets(
                gene_sets, adata.var_names, min_genes=cfg.min_genes, logger=self.logger
            )
        self.gene_sets_ = list(gene_sets)

        var_index = {name: i for i, name in enumerate(adata.var_names)}
        gene_indices = {
            gs.name: [var_index[g] for g in gs.resolved if g in var_index]
            for gs in self.gene_sets_
        }

        matrix = adata.layers[layer] if layer else adata.X
        self.max_rank_ = resolve_max_rank(adata.n_vars, cfg.max_rank, cfg.max_rank_frac)
        self.logger.info(
            "AUCell: %d gene sets, %d cells, max_rank=%d (of %d genes)",
            len(gene_indices),
            adata.n_obs,
            self.max_rank_,
            adata.n_vars,
        )

        chunks = []
        for start in range(0, adata.n_obs, cfg.chunk_size):
            stop = min(start + cfg.chunk_size, adata.n_obs)
            rankings = build_rankings(matrix[start:stop], seed=cfg.seed + start)
            chunks.append(compute_auc(rankings, gene_indices, self.max_rank_))

        auc = pd.concat(chunks, ignore_index=True)
        auc.index = adata.obs_names.copy()
        adata.obsm[cfg.key_added] = auc
        adata.uns.setdefault("scatlas", {})["aucell"] = {
            "max_rank": self.max_rank_,
            "gene_sets": {gs.name: list(gs.resolved) for gs in self.gene_sets_},
        }
        return auc

    def assign(self, adata, auc: Optional[pd.DataFrame] = None) -> pd.Series:
        """Label each cell with its highest-AUC gene set.

        Cells whose best AUC is below ``min_auc`` get ``unassigned_label``.
        Writes ``obs[label_key]`` and ``obs[label_key + "_auc"]``.

        Raises
        ------
        KeyError
            If no AUC matrix is given or stored
        """
        cfg = self.config
        if auc is None:
            if cfg.key_added not in adata.obsm:
                raise KeyError(f"No AUC matrix in adata.obsm['{cfg.key_added}']; run score first")
            auc = adata.obsm[cfg.key_added]
            if not isinstance(auc, pd.DataFrame):
                raise KeyError(f"adata.obsm['{cfg.key_added}'] is not a named AUC table")

        best_auc = auc.max(axis=1)
        labels = auc.idxmax(axis=1).astype(object)
        labels[best_auc < cfg.min_auc] = cfg.unassigned_label

        adata.obs[cfg.label_key] = pd.Categorical(labels.to_numpy())
        adata.obs[f"{cfg.label_key}_auc"] = best_auc.to_numpy()

        n_unassigned = int((labels == cfg.unassigned_label).sum())
        self.logger.info(
            "AUCell assigned %d cells to %d gene sets (%d unassigned)",
            adata.n_obs - n_unassigned,
            labels[labels != cfg.unassigned_label].nunique(),
            n_unassigned,
        )
        return pd.Series(labels.to_numpy(), index=adata.obs_names, name=cfg.label_key)
