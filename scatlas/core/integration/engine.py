"""Integration engine for query/reference datasets.

Combines a query with a reference on their shared genes and runs
multi-batch normalization, combined variance modeling, blacklist-aware
feature selection, fastMNN correction, clustering on the corrected
embedding and UMAP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

try:
    import anndata as ad
except ImportError:
    ad = None

from ...io import COUNTS_LAYER, write_dataframe
from ..clustering.engine import ClusteringEngine, ClusteringResult
from ..preprocessing.features import VARIANCE_COLUMNS, FeatureSelector
from ..preprocessing.normalization import NormalizationResult, Normalizer
from .config import IntegrationConfig
from .mnn import MNNResult, fast_mnn


@dataclass
class IntegrationResult:
    """Result from query/reference integration.

    Attributes:
        adata: Combined, corrected and clustered AnnData
        shared_genes: Number of genes present in both datasets
        normalization: Multi-batch normalization summary
        hvgs: Highly variable genes used for correction
        mnn: fastMNN summary
        clustering: Clustering summary
        plots: Plot name -> written path
    """

    adata: "ad.AnnData"
    shared_genes: int
    normalization: NormalizationResult
    hvgs: List[str]
    mnn: MNNResult
    clustering: ClusteringResult
    plots: Dict[str, Path] = field(default_factory=dict)


class IntegrationEngine:
    """Integrates a query dataset with a reference dataset.

    Both inputs hold raw counts (``layers["counts"]`` or ``X``) and are
    expected to have passed QC.

    Example:
        >>> engine = IntegrationEngine(IntegrationConfig())
        >>> result = engine.run(query, reference, output_dir=Path("out/integration"))
        >>> result.adata.obsm["X_mnn"].shape
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)
        if ad is None:
            raise RuntimeError("Integration requires anndata. Install with: pip install anndata")

    def combine(self, query, reference):
        """Restrict both datasets to shared genes and concatenate them.

        Cells are labelled in ``obs[batch_key]`` with the configured query
        and reference labels; obs names are suffixed with the label.
        obs columns carried by only one dataset are kept, NaN elsewhere.

        Raises
        ------
        ValueError
            If the datasets share no genes
        """
        cfg = self.config
        batch_key = cfg.mnn.batch_key
        shared = query.var_names.intersection(reference.var_names, sort=False)
        if len(shared) == 0:
            raise ValueError("Query and reference share no genes")
        self.logger.info(
            "Shared genes: %d (query %d, reference %d)",
            len(shared),
            query.n_vars,
            reference.n_vars,
        )

        parts = {}
        for label, data in ((cfg.reference_label, reference), (cfg.query_label, query)):
            part = data[:, shared].copy()
            if COUNTS_LAYER not in part.layers:
                self.logger.warning("%s has no '%s' layer; using X as counts", label, COUNTS_LAYER)
                part.layers[COUNTS_LAYER] = part.X.copy()
            if batch_key in part.obs:
                part.obs = part.obs.drop(columns=[batch_key])
            parts[label] = part

        combined = ad.concat(parts, label=batch_key, index_unique="-", join="inner", merge="same")
        combined.obs[batch_key] = combined.obs[batch_key].astype("category")
        self._restore_obs_columns(combined, parts)
        self.logger.info(
            "Combined dataset: %d cells (%s)",
            combined.n_obs,
            ", ".join(f"{k}={v}" for k, v in combined.obs[batch_key].value_counts().items()),
        )
        return combined

    def _restore_obs_columns(self, combined, parts) -> None:
        """Bring back obs columns that only some datasets carry.

        ``ad.concat`` inner-joins obs columns too; cells from a dataset
        without the column get NaN.
        """
        missing: Dict[str, None] = {}
        for part in parts.values():
            missing.update(dict.fromkeys(c for c in part.obs.columns if c not in combined.obs))

        for col in missing:
            pieces = [
                part.obs[col].set_axis(part.obs_names + f"-{label}")
                for label, part in parts.items()
                if col in part.obs
            ]
            values = pd.concat([p.astype(object) for p in pieces]).reindex(combined.obs_names)
            numeric = all(
                pd.api.types.is_numeric_dtype(p) and not pd.api.types.is_bool_dtype(p)
                for p in pieces
            )
            if numeric:
                combined.obs[col] = pd.to_numeric(values)
            else:
                combined.obs[col] = values.astype("category")
            self.logger.info(
                "Kept obs column '%s' (%d/%d cells set)",
                col,
                int(values.notna().sum()),
                combined.n_obs,
            )

    def run(
        self,
        query,
        reference,
        output_dir: Optional[Path] = None,
    ) -> IntegrationResult:
        """Run the integration pipeline.

        Args:
            query: QC-filtered query with raw counts
            reference: QC-filtered reference with raw counts
            output_dir: Where to write tables and plots (None = don't write)

        Returns:
            IntegrationResult
        """
        cfg = self.config
        batch_key = cfg.mnn.batch_key

        self.logger.info("=" * 70)
        self.logger.info("INTEGRATION ENGINE")
        self.logger.info("=" * 70)

        self.logger.info("Phase 1: Combining datasets...")
        adata = self.combine(query, reference)

        self.logger.info("Phase 2: Multi-batch normalization...")
        normalization = Normalizer(cfg.normalization, self.logger).multi_batch_normalize(
            adata, batch_key=batch_key
        )

        self.logger.info("Phase 3: Combined variance model, blacklist and HVG selection...")
        hvgs = FeatureSelector(cfg.features, self.logger).run(adata, batch_key=batch_key)

        self.logger.info("Phase 4: fastMNN correction...")
        mnn_cfg = cfg.mnn
        merge_order = mnn_cfg.merge_order or [cfg.reference_label, cfg.query_label]
        mnn = fast_mnn(
            adata,
            batch_key=batch_key,
            merge_order=merge_order,
            k=mnn_cfg.k,
            sigma=mnn_cfg.sigma,
            n_components=mnn_cfg.n_components,
            cos_norm=mnn_cfg.cos_norm,
            weighted_pca=mnn_cfg.weighted_pca,
            center_batch_vector=mnn_cfg.center_batch_vector,
            use_hvg=mnn_cfg.use_hvg,
            key_added=mnn_cfg.key_added,
            seed=mnn_cfg.seed,
            logger=self.logger,
        )

        self.logger.info("Phase 5: Neighbors, clustering and UMAP on %s...", mnn_cfg.key_added)
        use_rep = cfg.clustering.use_rep or mnn_cfg.key_added
        clustering = ClusteringEngine(cfg.clustering, self.logger).run(adata, use_rep=use_rep)

        result = IntegrationResult(
            adata=adata,
            shared_genes=adata.n_vars,
            normalization=normalization,
            hvgs=hvgs,
            mnn=mnn,
            clustering=clustering,
        )

        if output_dir:
            self._export(result, Path(output_dir))

        self.logger.info("Integration complete!")
        self.logger.info(
            "  Cells: %d, HVGs: %d, MNN pairs: %s, Clusters: %d",
            adata.n_obs,
            len(hvgs),
            mnn.n_pairs,
            clustering.n_clusters,
        )
        return result

    def _export(self, result: IntegrationResult, output_dir: Path) -> None:
        from ...viz import plot_batch_composition, plot_embedding

        output_dir.mkdir(parents=True, exist_ok=True)
        adata = result.adata
        batch_key = self.config.mnn.batch_key
        cluster_key = result.clustering.cluster_key

        write_dataframe(
            adata.var[
                [c for c in VARIANCE_COLUMNS + ["blacklisted", "highly_variable"] if c in adata.var]
            ],
            output_dir / "gene_variance.csv",
        )
        write_dataframe(adata.obs[[batch_key, cluster_key]], output_dir / "clusters.csv")
        self.logger.info("Wrote gene_variance.csv, clusters.csv")

        if "X_umap" in adata.obsm:
            result.plots["umap_batch"] = plot_embedding(
                adata, batch_key, output_dir / "umap_batch.png"
            )
            result.plots["umap_clusters"] = plot_embedding(
                adata, cluster_key, output_dir / "umap_clusters.png"
            )
        result.plots["batch_composition"] = plot_batch_composition(
            adata, cluster_key, batch_key, output_dir / "batch_composition.png"
        )
        self.logger.info("Wrote %d plots to %s", len(result.plots), output_dir)
