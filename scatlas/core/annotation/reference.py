"""Reference-based label transfer (SingleR-style).

Training derives de novo markers for every ordered pair of reference
labels from the difference of per-label median log-expression. A query
cell is scored for each label as a high quantile of its Spearman
correlations with that label's reference cells over the union of markers.
Fine-tuning then repeatedly re-scores the labels close to the top using
only the markers that separate them. Assignments whose margin over the
median score is an outlier within their label are pruned.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from joblib import Parallel, delayed

from ...utils.stats import mad_outliers, spearman_matrix
from .config import ReferenceConfig


def default_de_n(n_labels: int) -> int:
    """Markers kept per label pair: ``round(500 * (2/3) ** log2(n_labels))``."""
    return max(1, int(round(500 * (2.0 / 3.0) ** math.log2(max(n_labels, 1)))))


def _dense(matrix) -> np.ndarray:
    return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


@dataclass
class TrainedReference:
    """Reference profiles and pairwise markers used for classification.

    Attributes:
        labels: Sorted reference labels
        genes: Genes spanned by the marker union (column order of ``matrix``)
        matrix: reference cells (or pseudo-cells) x ``genes`` log-expression
        cell_labels: Label index of each row of ``matrix``
        markers: (label_a, label_b) -> genes up in a relative to b
        de_n: Markers per pair requested at training time
    """

    labels: List[str]
    genes: List[str]
    matrix: np.ndarray
    cell_labels: np.ndarray
    markers: Dict[Tuple[str, str], List[str]]
    de_n: int

    @property
    def n_labels(self) -> int:
        return len(self.labels)

    def marker_union(self, labels: Optional[Sequence[str]] = None) -> List[str]:
        """Markers distinguishing any ordered pair among ``labels`` (all if None)."""
        chosen = set(self.labels if labels is None else labels)
        genes: Dict[str, None] = {}
        for (a, b), pair_genes in self.markers.items():
            if a in chosen and b in chosen:
                genes.update(dict.fromkeys(pair_genes))
        return list(genes)


@dataclass
class ClassificationResult:
    """Per-cell results of reference label transfer.

    Attributes:
        scores: cells x labels initial scores
        first_labels: Top label before fine-tuning
        labels: Final labels (after fine-tuning if enabled)
        delta: Top score minus median score per cell
        pruned_labels: ``labels`` with low-confidence cells set to NaN
    """

    scores: pd.DataFrame
    first_labels: pd.Series
    labels: pd.Series
    delta: pd.Series
    pruned_labels: pd.Series
    tuned: bool = True
    summary: Dict[str, int] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "first_label": self.first_labels,
                "label": self.labels,
                "delta": self.delta,
                "pruned_label": self.pruned_labels,
            }
        )


def _label_scores(
    corr: np.ndarray, cell_labels: np.ndarray, label_ids: Sequence[int], quantile: float
) -> np.ndarray:
    """Quantile of correlations per label: cells x len(label_ids)."""
    out = np.empty((corr.shape[0], len(label_ids)))
    for j, lab in enumerate(label_ids):
        cols = cell_labels == lab
        out[:, j] = np.quantile(corr[:, cols], quantile, axis=1)
    return out


def _fine_tune_cell(
    query_row: pd.Series,
    initial: np.ndarray,
    ref: TrainedReference,
    ref_frame: pd.DataFrame,
    quantile: float,
    tune_thresh: float,
) -> int:
    """Return the label index chosen for one cell by iterative re-scoring."""
    current = np.flatnonzero(initial >= initial.max() - tune_thresh)
    scores = initial[current]

    while current.size > 1:
        genes = [g for g in ref.marker_union([ref.labels[i] for i in current]) if g in ref_frame.columns]
        if len(genes) < 2:
            break
        rows = np.isin(ref.cell_labels, current)
        corr = spearman_matrix(
            query_row[genes].to_numpy()[None, :], ref_frame.loc[rows, genes].to_numpy()
        )
        scores = _label_scores(corr, ref.cell_labels[rows], current, quantile)[0]
        keep = scores >= scores.max() - tune_thresh
        if keep.all():
            break
        current = current[keep]
        scores = scores[keep]

    return int(current[np.argmax(scores)])


def _classify_chunk(
    query: pd.DataFrame,
    ref: TrainedReference,
    quantile: float,
    fine_tune: bool,
    tune_thresh: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Initial scores and final label indices for a chunk of query cells."""
    genes = list(query.columns)
    ref_frame = pd.DataFrame(ref.matrix, columns=ref.genes)[genes]
    ref_frame.index = pd.RangeIndex(len(ref_frame))

    corr = spearman_matrix(query.to_numpy(), ref_frame.to_numpy())
    scores = _label_scores(corr, ref.cell_labels, range(ref.n_labels), quantile)

    if not fine_tune:
        return scores, scores.argmax(axis=1)

    final = np.empty(query.shape[0], dtype=int)
    for i in range(query.shape[0]):
        final[i] = _fine_tune_cell(
            query.iloc[i], scores[i], ref, ref_frame, quantile, tune_thresh
        )
    return scores, final


class ReferenceClassifier:
    """Transfers labels from an annotated reference to query cells.

    Both datasets must hold log-normalized expression in ``X`` (or the
    given layer). Gene names are matched exactly.

    Parameters
    ----------
    config : ReferenceConfig, optional
        Classifier configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> clf = ReferenceClassifier(ReferenceConfig(label_key="cell_type"))
    >>> clf.train(reference)
    >>> result = clf.classify(query)
    >>> clf.annotate(query, result)
    """

    def __init__(
        self,
        config: Optional[ReferenceConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ReferenceConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.trained_: Optional[TrainedReference] = None

    def _aggregate(self, matrix: np.ndarray, codes: np.ndarray, n_labels: int):
        """Replace reference cells by k-means centroids within each label."""
        from sklearn.cluster import KMeans

        size = self.config.aggr_size
        rows: List[np.ndarray] = []
        row_labels: List[int] = []
        for lab in range(n_labels):
            block = matrix[codes == lab]
            n_centers = int(math.ceil(block.shape[0] / size))
            if n_centers >= block.shape[0]:
                rows.append(block)
                row_labels.extend([lab] * block.shape[0])
                continue
            km = KMeans(n_clusters=n_centers, n_init=3, random_state=self.config.seed)
            km.fit(block)
            rows.append(km.cluster_centers_)
            row_labels.extend([lab] * n_centers)
        return np.vstack(rows), np.asarray(row_labels)

    def train(
        self,
        reference,
        label_key: Optional[str] = None,
        layer: Optional[str] = None,
        genes: Optional[Sequence[str]] = None,
    ) -> TrainedReference:
        """Build label profiles and pairwise markers from the reference.

        Parameters
        ----------
        reference : AnnData
            Log-normalized, labelled reference
        label_key : str, optional
            Label column; defaults to ``config.label_key``
        layer : str, optional
            Expression layer instead of ``X``
        genes : Sequence[str], optional
            Restrict training to these genes (e.g. those shared with a query)

        Raises
        ------
        ValueError
            If the label column is missing or has fewer than two labels
        """
        cfg = self.config
        label_key = label_key or cfg.label_key
        if label_key not in reference.obs:
            raise ValueError(f"Label column '{label_key}' not found in reference.obs")

        labelled = reference.obs[label_key].notna().to_numpy()
        if not labelled.all():
            self.logger.warning("Ignoring %d unlabelled reference cells", int((~labelled).sum()))
            reference = reference[labelled]

        if genes is not None:
            keep = reference.var_names.isin(list(genes))
            reference = reference[:, keep]
            if reference.n_vars == 0:
                raise ValueError("No training genes present in the reference")

        labels_all = reference.obs[label_key].astype(str).to_numpy()
        labels = sorted(pd.unique(labels_all))
        if len(labels) < 2:
            raise ValueError(f"Reference needs at least 2 labels, found {len(labels)}")

        codes = np.searchsorted(labels, labels_all)
        matrix = _dense(reference.layers[layer] if layer else reference.X).astype(np.float32)
        var_names = np.asarray(reference.var_names)

        medians = np.vstack([np.median(matrix[codes == i], axis=0) for i in range(len(labels))])

        de_n = cfg.de_n or default_de_n(len(labels))
        markers: Dict[Tuple[str, str], List[str]] = {}
        for i, a in enumerate(labels):
            for j, b in enumerate(labels):
                if i == j:
                    continue
                diff = medians[i] - medians[j]
                positive = np.flatnonzero(diff > 0)
                top = positive[np.argsort(-diff[positive], kind="stable")[:de_n]]
                markers[(a, b)] = var_names[top].tolist()

        union = {g for pair in markers.values() for g in pair}
        gene_idx = np.flatnonzero(np.isin(var_names, list(union)))
        if gene_idx.size == 0:
            raise ValueError("No marker genes separate the reference labels")

        profile = matrix[:, gene_idx]
        cell_labels = codes
        if cfg.aggr_size:
            profile, cell_labels = self._aggregate(profile, codes, len(labels))

        self.trained_ = TrainedReference(
            labels=list(labels),
            genes=var_names[gene_idx].tolist(),
            matrix=profile,
            cell_labels=np.asarray(cell_labels),
            markers=markers,
            de_n=de_n,
        )
        self.logger.info(
            "Trained reference: %d labels, %d reference profiles, %d marker genes (de_n=%d)",
            len(labels),
            profile.shape[0],
            gene_idx.size,
            de_n,
        )
        return self.trained_

    def _prune(self, labels: pd.Series, delta: pd.Series) -> pd.Series:
        outliers = mad_outliers(
            delta.to_numpy(), nmads=self.config.nmads, side="lower", groups=labels.to_numpy()
        )
        pruned = labels.astype(object).copy()
        pruned[outliers] = np.nan
        return pruned

    def classify(self, query, layer: Optional[str] = None) -> ClassificationResult:
        """Score and label query cells.

        Raises
        ------
        RuntimeError
            If called before :meth:`train`
        ValueError
            If query and reference share no marker genes
        """
        if self.trained_ is None:
            raise RuntimeError("ReferenceClassifier.classify called before train")
        ref = self.trained_
        cfg = self.config

        shared = [g for g in ref.genes if g in set(query.var_names)]
        if not shared:
            raise ValueError("Query shares no marker genes with the reference")
        if len(shared) < len(ref.genes):
            self.logger.warning(
                "%d/%d reference marker genes missing from query",
                len(ref.genes) - len(shared),
                len(ref.genes),
            )

        col_idx = query.var_names.get_indexer(shared)
        matrix = query.layers[layer] if layer else query.X

        chunks = [
            pd.DataFrame(
                _dense(matrix[start:start + cfg.chunk_size][:, col_idx]),
                columns=shared,
            )
            for start in range(0, query.n_obs, cfg.chunk_size)
        ]

        args = (ref, cfg.quantile, cfg.fine_tune, cfg.tune_thresh)
        if cfg.n_jobs != 1 and len(chunks) > 1:
            self.logger.info("Scoring %d chunks with %d joblib workers", len(chunks), cfg.n_jobs)
            outputs = Parallel(n_jobs=cfg.n_jobs)(
                delayed(_classify_chunk)(chunk, *args) for chunk in chunks
            )
        else:
            outputs = [_classify_chunk(chunk, *args) for chunk in chunks]

        score_arr = np.vstack([o[0] for o in outputs])
        final_idx = np.concatenate([o[1] for o in outputs])

        index = query.obs_names.copy()
        label_arr = np.asarray(ref.labels, dtype=object)
        scores = pd.DataFrame(score_arr, index=index, columns=ref.labels)
        first = pd.Series(label_arr[score_arr.argmax(axis=1)], index=index, name="first_label")
        labels = pd.Series(label_arr[final_idx], index=index, name="label")
        delta = pd.Series(
            score_arr.max(axis=1) - np.median(score_arr, axis=1), index=index, name="delta"
        )
        pruned = self._prune(labels, delta) if cfg.prune else labels.astype(object).copy()
        pruned.name = "pruned_label"

        result = ClassificationResult(
            scores=scores,
            first_labels=first,
            labels=labels,
            delta=delta,
            pruned_labels=pruned,
            tuned=cfg.fine_tune,
            summary={
                "n_cells": int(query.n_obs),
                "n_pruned": int(pruned.isna().sum()),
                "n_changed_by_tuning": int((first != labels).sum()),
            },
        )
        self.logger.info(
            "Reference transfer: %d cells, %d labels used, %d pruned, %d changed by fine-tuning",
            query.n_obs,
            labels.nunique(),
            result.summary["n_pruned"],
            result.summary["n_changed_by_tuning"],
        )
        return result

    def annotate(self, query, result: ClassificationResult) -> None:
        """Write labels, delta and scores into ``query`` (in place)."""
        prefix = self.config.key_prefix
        query.obs[f"{prefix}_label"] = pd.Categorical(result.labels.to_numpy())
        query.obs[f"{prefix}_pruned_label"] = pd.Categorical(result.pruned_labels.to_numpy())
        query.obs[f"{prefix}_delta"] = result.delta.to_numpy()
        query.obsm[f"{prefix}_scores"] = result.scores
        record = dict(result.summary)
        if self.trained_ is not None:
            record.update(labels=list(self.trained_.labels), de_n=int(self.trained_.de_n))
        query.uns.setdefault("scatlas", {})["reference"] = record
