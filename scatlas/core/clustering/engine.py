"""Clustering engine for cell population identification.

Provides neighbor-graph construction, Louvain (python-igraph) or Leiden
community detection and UMAP, with optional GPU acceleration.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional
import logging
import random

import numpy as np
import pandas as pd
from scipy import sparse

from .config import ClusteringConfig


# GPU acceleration support (optional)
try:
    import rapids_singlecell as rsc
    import cupy as cp
    GPU_AVAILABLE = cp.cuda.is_available()
except ImportError:
    GPU_AVAILABLE = False
    rsc = None
    cp = None


@dataclass
class ClusteringResult:
    """Result from clustering operation.

    Attributes
    ----------
    n_clusters : int
        Number of clusters found
    cluster_key : str
        Key in adata.obs containing cluster assignments
    cluster_sizes : Dict[str, int]
        Map of cluster ID to cell count
    method : str
        Community detection method used
    resolution : float
        Resolution used
    modularity : float, optional
        Modularity of the Louvain partition
    used_gpu : bool
        Whether the rapids path ran
    """

    n_clusters: int = 0
    cluster_key: str = "louvain"
    cluster_sizes: Dict[str, int] = field(default_factory=dict)
    method: str = "louvain"
    resolution: float = 1.0
    modularity: Optional[float] = None
    used_gpu: bool = False


def relabel_by_size(membership) -> pd.Categorical:
    """Relabel community ids as "0", "1", ... by decreasing size."""
    membership = np.asarray(membership)
    uniques, inverse, counts = np.unique(membership, return_inverse=True, return_counts=True)
    order = np.argsort(-counts, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(uniques))
    labels = rank[inverse].astype(str)
    return pd.Categorical(labels, categories=[str(i) for i in range(len(uniques))])


def connectivities_to_igraph(adjacency):
    """Undirected weighted igraph graph from a symmetric adjacency matrix."""
    import igraph as ig

    adjacency = sparse.csr_matrix(adjacency)
    upper = sparse.triu(adjacency, k=1).tocoo()
    graph = ig.Graph(
        n=adjacency.shape[0],
        edges=list(zip(upper.row.tolist(), upper.col.tolist())),
        directed=False,
    )
    graph.es["weight"] = upper.data.astype(float).tolist()
    return graph


class ClusteringEngine:
    """Clustering engine with Louvain/Leiden and GPU support.

    Pipeline: (PCA) → neighbors → Louvain/Leiden (→ UMAP optional).

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration. If None, uses defaults.
    logger : logging.Logger, optional
        Logger instance. If None, creates default logger.

    Example
    -------
    >>> from scatlas.core.clustering import ClusteringEngine, ClusteringConfig
    >>> engine = ClusteringEngine(ClusteringConfig(use_rep="X_mnn"))
    >>> result = engine.run(adata)
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._check_dependencies()

    def _check_dependencies(self) -> None:
        """Check for required dependencies."""
        try:
            import scanpy
        except ImportError:
            raise RuntimeError(
                "Clustering requires scanpy. Install with: pip install scanpy"
            )

    @property
    def gpu_available(self) -> bool:
        """Check if GPU acceleration is available."""
        return GPU_AVAILABLE

    def pca(self, adata: Any, n_comps: int = 50, random_seed: Optional[int] = None) -> int:
        """PCA on log-expression (highly variable genes when flagged).

        Returns the number of components actually computed.
        """
        import scanpy as sc

        random_seed = random_seed if random_seed is not None else self.config.random_seed
        n_features = adata.n_vars
        if "highly_variable" in adata.var and adata.var["highly_variable"].any():
            n_features = int(adata.var["highly_variable"].sum())
        use_pcs = min(n_comps, max(n_features - 1, 1), max(adata.n_obs - 1, 1))
        sc.tl.pca(adata, n_comps=use_pcs, svd_solver="arpack", random_state=random_seed)
        self.logger.info("Computed PCA with %d components on %d genes", use_pcs, n_features)
        return use_pcs

    def build_graph(
        self,
        adata: Any,  # AnnData
        use_rep: Optional[str] = None,
        n_neighbors: Optional[int] = None,
        n_pcs: Optional[int] = None,
    ) -> None:
        """Compute the kNN graph (``obsp["connectivities"]``) via scanpy."""
        import scanpy as sc

        cfg = self.config
        use_rep = use_rep if use_rep is not None else cfg.use_rep
        n_neighbors = n_neighbors if n_neighbors is not None else cfg.n_neighbors
        n_pcs = n_pcs if n_pcs is not None else cfg.n_pcs

        if use_rep is not None:
            if use_rep not in adata.obsm:
                raise KeyError(f"Representation '{use_rep}' not found in adata.obsm")
            if n_pcs is not None:
                n_pcs = min(n_pcs, adata.obsm[use_rep].shape[1])
        n_neighbors = min(n_neighbors, max(adata.n_obs - 1, 2))

        self.logger.info(
            "Building neighbor graph: rep=%s, n_neighbors=%d, n_pcs=%s",
            use_rep or "default",
            n_neighbors,
            n_pcs,
        )
        sc.pp.neighbors(
            adata,
            n_neighbors=n_neighbors,
            n_pcs=n_pcs,
            use_rep=use_rep,
            random_state=cfg.random_seed,
        )

    def louvain(
        self,
        adata: Any,  # AnnData
        resolution: Optional[float] = None,
        key_added: Optional[str] = None,
        random_seed: Optional[int] = None,
    ) -> float:
        """Louvain communities on the weighted connectivities graph.

        igraph is seeded with ``random_seed`` for the call and handed back
        its default generator (the ``random`` module) afterwards.

        Returns
        -------
        float
            Modularity of the partition
        """
        cfg = self.config
        resolution = resolution if resolution is not None else cfg.resolution
        key_added = key_added or cfg.key_added
        random_seed = random_seed if random_seed is not None else cfg.random_seed

        if "connectivities" not in adata.obsp:
            raise KeyError("No neighbor graph in adata.obsp; run build_graph first")

        import igraph as ig

        # igraph draws from a process-wide generator; module ``random`` is its default
        ig.set_random_number_generator(random.Random(random_seed))
        try:
            graph = connectivities_to_igraph(adata.obsp["connectivities"])
            partition = graph.community_multilevel(weights="weight", resolution=resolution)
        finally:
            ig.set_random_number_generator(random)

        adata.obs[key_added] = relabel_by_size(partition.membership)
        modularity = float(
            graph.modularity(partition.membership, weights="weight", resolution=resolution)
        )
        self.logger.info(
            "Louvain (resolution=%.2f): %d clusters, modularity=%.3f",
            resolution,
            adata.obs[key_added].nunique(),
            modularity,
        )
        return modularity

    def leiden(
        self,
        adata: Any,  # AnnData
        resolution: Optional[float] = None,
        key_added: Optional[str] = None,
        random_seed: Optional[int] = None,
    ) -> None:
        """Leiden communities via ``scanpy.tl.leiden`` (igraph flavor)."""
        import scanpy as sc

        cfg = self.config
        resolution = resolution if resolution is not None else cfg.resolution
        key_added = key_added or cfg.key_added
        random_seed = random_seed if random_seed is not None else cfg.random_seed

        sc.tl.leiden(
            adata,
            resolution=resolution,
            random_state=random_seed,
            key_added=key_added,
            flavor="igraph",
            n_iterations=2,
            directed=False,
        )
        adata.obs[key_added] = relabel_by_size(adata.obs[key_added].astype(str).to_numpy())
        self.logger.info(
            "Leiden (resolution=%.2f): %d clusters", resolution, adata.obs[key_added].nunique()
        )

    def umap(
        self,
        adata: Any,  # AnnData
        min_dist: Optional[float] = None,
        random_seed: Optional[int] = None,
    ) -> None:
        """UMAP embedding into ``obsm["X_umap"]``."""
        import scanpy as sc

        min_dist = min_dist if min_dist is not None else self.config.min_dist
        random_seed = random_seed if random_seed is not None else self.config.random_seed
        sc.tl.umap(adata, min_dist=min_dist, random_state=random_seed)
        self.logger.info("Computed UMAP (min_dist=%.2f)", min_dist)

    def _run_gpu(self, adata: Any, use_rep, n_neighbors, n_pcs, resolution, key_added) -> None:
        cfg = self.config
        self.logger.info("Using GPU acceleration for clustering")
        rsc.get.anndata_to_GPU(adata)
        rsc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep)
        if cfg.method == "leiden":
            rsc.tl.leiden(
                adata, resolution=resolution, random_state=cfg.random_seed, key_added=key_added
            )
        else:
            rsc.tl.louvain(
                adata, resolution=resolution, random_state=cfg.random_seed, key_added=key_added
            )
        if cfg.compute_umap:
            rsc.tl.umap(adata, min_dist=cfg.min_dist, random_state=cfg.random_seed)
        rsc.get.anndata_to_CPU(adata)
        adata.obs[key_added] = relabel_by_size(adata.obs[key_added].astype(str).to_numpy())

    def run(
        self,
        adata: Any,  # AnnData
        use_rep: Optional[str] = None,
        n_neighbors: Optional[int] = None,
        resolution: Optional[float] = None,
        key_added: Optional[str] = None,
        use_gpu: Optional[bool] = None,
        compute_umap: Optional[bool] = None,
    ) -> ClusteringResult:
        """Run the full clustering pipeline.

        When ``use_rep`` is None and no ``X_pca`` exists, PCA is computed
        first.

        Parameters
        ----------
        adata : AnnData
            Input AnnData object (modified in place)
        use_rep : str, optional
            ``obsm`` representation for the graph. Uses config default if None.
        n_neighbors : int, optional
            k for neighborhood graph. Uses config default if None.
        resolution : float, optional
            Community resolution. Uses config default if None.
        key_added : str, optional
            Cluster column. Uses config default if None.
        use_gpu : bool, optional
            Use GPU acceleration. Uses config default if None.
        compute_umap : bool, optional
            Compute UMAP embeddings. Uses config default if None.

        Returns
        -------
        ClusteringResult
            Clustering result with cluster statistics
        """
        cfg = self.config
        use_rep = use_rep if use_rep is not None else cfg.use_rep
        n_neighbors = n_neighbors if n_neighbors is not None else cfg.n_neighbors
        resolution = resolution if resolution is not None else cfg.resolution
        key_added = key_added or cfg.key_added
        use_gpu = use_gpu if use_gpu is not None else cfg.use_gpu
        compute_umap = compute_umap if compute_umap is not None else cfg.compute_umap

        if cfg.method not in ("louvain", "leiden"):
            raise ValueError(f"Unknown clustering method '{cfg.method}'")

        self.logger.info(
            "Running clustering pipeline: method=%s, rep=%s, n_neighbors=%d, resolution=%.3f, GPU=%s",
            cfg.method,
            use_rep or "X_pca",
            n_neighbors,
            resolution,
            GPU_AVAILABLE and use_gpu,
        )

        if use_rep is None and "X_pca" not in adata.obsm:
            self.pca(adata, n_comps=cfg.n_pcs or 50)
            use_rep = "X_pca"

        result = ClusteringResult(cluster_key=key_added, method=cfg.method, resolution=resolution)

        if GPU_AVAILABLE and use_gpu:
            self._run_gpu(adata, use_rep, n_neighbors, cfg.n_pcs, resolution, key_added)
            result.used_gpu = True
        else:
            if not use_gpu and GPU_AVAILABLE:
                self.logger.info("GPU available but disabled by user flag")
            self.build_graph(adata, use_rep=use_rep, n_neighbors=n_neighbors)
            if cfg.method == "leiden":
                self.leiden(adata, resolution=resolution, key_added=key_added)
            else:
                result.modularity = self.louvain(adata, resolution=resolution, key_added=key_added)
            if compute_umap:
                self.umap(adata)

        result.n_clusters = adata.obs[key_added].nunique()
        result.cluster_sizes = {
            str(k): int(v) for k, v in adata.obs[key_added].value_counts().items()
        }
        adata.uns.setdefault("scatlas", {})["clustering"] = {
            **{k: v for k, v in asdict(cfg).items() if v is not None},
            "use_rep": use_rep or "X_pca",
            "n_clusters": int(result.n_clusters),
        }

        self.logger.info("Computed %s clustering with %d clusters", cfg.method, result.n_clusters)
        return result
