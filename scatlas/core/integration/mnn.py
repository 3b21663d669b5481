"""Mutual-nearest-neighbour batch correction (fastMNN-style).

Batches are projected into a shared PCA space in which every batch
contributes equally to the rotation. They are then merged one at a time:
mutual nearest neighbours between the accumulated reference and the next
batch define per-pair correction vectors, which are averaged per paired
cell and smoothed onto every cell of the batch with a Gaussian kernel.
Before each correction the within-batch spread along the average batch
vector is removed from both sides, and the variance this discards is
reported per batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse
from sklearn.decomposition import TruncatedSVD
from sklearn.neighbors import NearestNeighbors


# Target cells smoothed per block of the kernel matrix
_KERNEL_BLOCK = 2048


@dataclass
class MNNResult:
    """Summary of a fastMNN run.

    Attributes:
        merge_order: Batches in the order they were merged
        n_pairs: MNN pairs found at each merge step (len = n_batches - 1)
        lost_variance: Fraction of each batch's variance removed by
            centring along batch vectors
        n_components: Dimensions of the corrected embedding
    """

    merge_order: List[str]
    n_pairs: List[int] = field(default_factory=list)
    lost_variance: Dict[str, float] = field(default_factory=dict)
    n_components: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "merge_order": list(self.merge_order),
            "n_pairs": [int(n) for n in self.n_pairs],
            "lost_variance": {k: float(v) for k, v in self.lost_variance.items()},
            "n_components": int(self.n_components),
        }


def cosine_normalize(matrix: np.ndarray) -> np.ndarray:
    """Scale rows to unit L2 norm; all-zero rows are left unchanged."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def multi_batch_pca(
    matrices: Sequence,
    n_components: int = 50,
    weighted: bool = True,
    seed: int = 0,
) -> Tuple[List[np.ndarray], np.ndarray]:
    """PCA across batches with (optionally) equal batch contributions.

    Each batch is centred on the grand mean (the mean of per-batch means
    when ``weighted``); rows are scaled by ``1/sqrt(n_cells)`` of their
    batch while fitting so that large batches do not dominate the rotation.

    Parameters
    ----------
    matrices : Sequence
        Per-batch cells x genes matrices over the same genes
    n_components : int
        Requested dimensions (clamped to the data)

    Returns
    -------
    Tuple[List[np.ndarray], np.ndarray]
        Per-batch projections and the genes x components rotation

    Raises
    ------
    ValueError
        If a batch is empty or gene counts differ
    """
    dense = [
        (m.toarray() if sparse.issparse(m) else np.asarray(m)).astype(np.float64)
        for m in matrices
    ]
    if any(m.shape[0] == 0 for m in dense):
        raise ValueError("Cannot run PCA on an empty batch")
    if len({m.shape[1] for m in dense}) != 1:
        raise ValueError("All batches must share the same genes")

    if weighted:
        center = np.mean([m.mean(axis=0) for m in dense], axis=0)
    else:
        center = np.vstack(dense).mean(axis=0)
    centred = [m - center for m in dense]

    if weighted:
        fit_matrix = np.vstack([m / np.sqrt(m.shape[0]) for m in centred])
    else:
        fit_matrix = np.vstack(centred)

    n_comp = int(min(n_components, fit_matrix.shape[0] - 1, fit_matrix.shape[1] - 1))
    if n_comp < 1:
        raise ValueError("Too few cells or genes for PCA")

    svd = TruncatedSVD(n_components=n_comp, algorithm="randomized", random_state=seed)
    svd.fit(fit_matrix)
    rotation = svd.components_.T
    return [m @ rotation for m in centred], rotation


def find_mutual_nn(
    ref: np.ndarray,
    target: np.ndarray,
    k1: int = 20,
    k2: int = 20,
) -> Tuple[np.ndarray, np.ndarray]:
    """Mutual nearest-neighbour pairs between two embeddings.

    Pair ``(i, j)`` is kept when reference cell ``i`` is among the ``k1``
    nearest reference cells of target cell ``j`` and target cell ``j`` is
    among the ``k2`` nearest target cells of reference cell ``i``.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Reference and target row indices of each pair
    """
    k1 = min(k1, ref.shape[0])
    k2 = min(k2, target.shape[0])

    target_to_ref = NearestNeighbors(n_neighbors=k1).fit(ref).kneighbors(
        target, return_distance=False
    )
    ref_to_target = NearestNeighbors(n_neighbors=k2).fit(target).kneighbors(
        ref, return_distance=False
    )

    n_target = target.shape[0]
    forward = (
        target_to_ref.ravel().astype(np.int64) * n_target
        + np.repeat(np.arange(n_target), k1)
    )
    backward = (
        np.repeat(np.arange(ref.shape[0]), k2).astype(np.int64) * n_target
        + ref_to_target.ravel()
    )
    mutual = np.intersect1d(forward, backward)
    return mutual // n_target, mutual % n_target


def average_correction(
    ref: np.ndarray,
    target: np.ndarray,
    pairs: Tuple[np.ndarray, np.ndarray],
) -> Tuple[np.ndarray, np.ndarray]:
    """Mean ``ref - target`` difference for each paired target cell.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray]
        Averaged vectors and the target indices they belong to
    """
    ref_idx, target_idx = pairs
    diffs = ref[ref_idx] - target[target_idx]
    paired, inverse, counts = np.unique(target_idx, return_inverse=True, return_counts=True)
    averaged = np.zeros((paired.size, ref.shape[1]))
    np.add.at(averaged, inverse, diffs)
    return averaged / counts[:, None], paired


def compute_correction_vectors(
    ref: np.ndarray,
    target: np.ndarray,
    pairs: Tuple[np.ndarray, np.ndarray],
    sigma: float = 0.1,
) -> np.ndarray:
    """Smooth pair corrections onto every target cell.

    The weight of paired cell ``p`` for target cell ``t`` is
    ``exp(-||t - p||^2 / sigma)`` on cosine-normalized coordinates.

    Returns
    -------
    np.ndarray
        target cells x dims correction to add to ``target``

    Raises
    ------
    ValueError
        If ``pairs`` is empty
    """
    if len(pairs[0]) == 0:
        raise ValueError("No MNN pairs to derive corrections from")

    averaged, paired = average_correction(ref, target, pairs)
    normed = cosine_normalize(target)
    anchors = normed[paired]
    anchor_sq = (anchors ** 2).sum(axis=1)

    correction = np.empty_like(target, dtype=np.float64)
    for start in range(0, target.shape[0], _KERNEL_BLOCK):
        block = normed[start:start + _KERNEL_BLOCK]
        d2 = (block ** 2).sum(axis=1)[:, None] + anchor_sq[None, :] - 2.0 * block @ anchors.T
        d2 = np.clip(d2, 0.0, None)
        # Shift by the row minimum so the nearest anchor always has weight 1
        weights = np.exp(-(d2 - d2.min(axis=1, keepdims=True)) / sigma)
        correction[start:start + _KERNEL_BLOCK] = (weights @ averaged) / weights.sum(
            axis=1, keepdims=True
        )
    return correction


def center_along_batch_vector(matrix: np.ndarray, batch_vector: np.ndarray) -> np.ndarray:
    """Collapse each cell's coordinate along ``batch_vector`` to the batch mean."""
    norm = np.linalg.norm(batch_vector)
    if norm == 0:
        return matrix
    unit = batch_vector / norm
    loc = matrix @ unit
    return matrix + np.outer(loc.mean() - loc, unit)


def _total_variance(matrix: np.ndarray) -> float:
    return float(matrix.var(axis=0).sum()) if matrix.shape[0] > 1 else 0.0


def fast_mnn(
    adata,
    batch_key: str = "batch",
    merge_order: Optional[Sequence[str]] = None,
    k: int = 20,
    sigma: float = 0.1,
    n_components: int = 50,
    cos_norm: bool = True,
    weighted_pca: bool = True,
    center_batch_vector: bool = True,
    use_hvg: bool = True,
    key_added: str = "X_mnn",
    seed: int = 0,
    logger: Optional[logging.Logger] = None,
) -> MNNResult:
    """Correct batch effects in a low-dimensional embedding (in place).

    Uses log-expression in ``adata.X`` (highly variable genes when flagged
    and ``use_hvg``). Writes the multi-batch PCA to ``obsm["X_pca"]`` and
    the corrected embedding to ``obsm[key_added]``.

    Raises
    ------
    KeyError
        If ``batch_key`` is not in ``adata.obs``
    ValueError
        If fewer than two batches exist, ``merge_order`` does not match the
        batches, or a merge step finds no MNN pairs
    """
    log = logger or logging.getLogger(__name__)
    if batch_key not in adata.obs:
        raise KeyError(f"Batch key '{batch_key}' not found in adata.obs")

    batch_labels = adata.obs[batch_key].astype(str).to_numpy()
    batches = list(pd.unique(batch_labels))
    if len(batches) < 2:
        raise ValueError(f"fastMNN needs at least 2 batches, found {len(batches)}")

    order = list(merge_order) if merge_order else batches
    if sorted(order) != sorted(batches):
        raise ValueError(f"merge_order {order} does not match batches {batches}")

    matrix = adata.X
    if use_hvg and "highly_variable" in adata.var and adata.var["highly_variable"].any():
        matrix = matrix[:, adata.var["highly_variable"].to_numpy()]
    matrix = matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix, dtype=float)
    if cos_norm:
        matrix = cosine_normalize(matrix)

    rows = [np.flatnonzero(batch_labels == b) for b in order]
    embeddings, _ = multi_batch_pca(
        [matrix[r] for r in rows], n_components=n_components, weighted=weighted_pca, seed=seed
    )
    n_dims = embeddings[0].shape[1]
    log.info(
        "fastMNN: %d batches, %d genes, %d components, k=%d, sigma=%.3f",
        len(order),
        matrix.shape[1],
        n_dims,
        k,
        sigma,
    )

    pca = np.empty((adata.n_obs, n_dims))
    for r, emb in zip(rows, embeddings):
        pca[r] = emb
    adata.obsm["X_pca"] = pca

    result = MNNResult(merge_order=order, n_components=n_dims)
    initial_var = {b: _total_variance(e) for b, e in zip(order, embeddings)}
    lost = {b: 0.0 for b in order}

    merged = embeddings[0].copy()
    merged_batches = np.repeat(order[0], embeddings[0].shape[0]).astype(object)

    for batch, target in zip(order[1:], embeddings[1:]):
        target = target.copy()
        pairs = find_mutual_nn(merged, target, k1=k, k2=k)
        n_pairs = len(pairs[0])
        if n_pairs == 0:
            raise ValueError(f"No MNN pairs found when merging batch '{batch}'")
        result.n_pairs.append(n_pairs)

        if center_batch_vector:
            averaged, _ = average_correction(merged, target, pairs)
            batch_vector = averaged.mean(axis=0)
            for b in pd.unique(merged_batches):
                mask = merged_batches == b
                before = _total_variance(merged[mask])
                merged[mask] = center_along_batch_vector(merged[mask], batch_vector)
                if initial_var[b] > 0:
                    lost[b] += (before - _total_variance(merged[mask])) / initial_var[b]
            before = _total_variance(target)
            target = center_along_batch_vector(target, batch_vector)
            if initial_var[batch] > 0:
                lost[batch] += (before - _total_variance(target)) / initial_var[batch]

        target = target + compute_correction_vectors(merged, target, pairs, sigma=sigma)
        merged = np.vstack([merged, target])
        merged_batches = np.concatenate(
            [merged_batches, np.repeat(batch, target.shape[0]).astype(object)]
        )
        log.info("Merged batch '%s': %d MNN pairs", batch, n_pairs)

    corrected = np.empty((adata.n_obs, n_dims))
    corrected[np.concatenate(rows)] = merged
    adata.obsm[key_added] = corrected

    result.lost_variance = lost
    adata.uns.setdefault("scatlas", {})["mnn"] = {
        **result.to_dict(),
        "k": int(k),
        "sigma": float(sigma),
        "batch_key": batch_key,
    }
    for b in order:
        log.info("Batch %-12s lost variance %.4f", b, lost[b])
    return result
