"""Unit tests for integration module."""

import numpy as np
import pytest

from scatlas.core.clustering import ClusteringConfig
from scatlas.core.integration import (
    IntegrationConfig,
    IntegrationEngine,
    MNNConfig,
    center_along_batch_vector,
    compute_correction_vectors,
    cosine_normalize,
    fast_mnn,
    find_mutual_nn,
    multi_batch_pca,
)
from scatlas.core.preprocessing import Normalizer


@pytest.fixture
def combined(two_batches):
    """Normalized reference + query with a batch column."""
    query, reference = two_batches
    adata = IntegrationEngine().combine(query, reference)
    Normalizer().multi_batch_normalize(adata, batch_key="batch")
    return adata


def _centroid_gap(embedding, labels) -> float:
    a, b = np.unique(labels)
    return float(
        np.linalg.norm(embedding[labels == a].mean(axis=0) - embedding[labels == b].mean(axis=0))
    )


class TestMNNConfig:
    """Tests for integration configuration."""

    def test_default_values(self):
        """fastMNN defaults."""
        config = MNNConfig()
        assert config.k == 20
        assert config.sigma == 0.1
        assert config.key_added == "X_mnn"
        assert config.merge_order is None

    def test_from_dict(self):
        """Nested sections are parsed into their dataclasses."""
        config = IntegrationConfig.from_dict(
            {"mnn": {"k": 5}, "clustering": {"resolution": 0.5}, "query_label": "q"}
        )
        assert config.mnn.k == 5
        assert config.clustering.resolution == 0.5
        assert config.query_label == "q"
        assert config.reference_label == "reference"
        assert config.to_dict()["mnn"]["k"] == 5


class TestLinearAlgebra:
    """Tests for the fastMNN building blocks."""

    def test_cosine_normalize(self):
        """Rows get unit norm; zero rows stay zero."""
        normed = cosine_normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(normed[0], [0.6, 0.8])
        np.testing.assert_array_equal(normed[1], [0.0, 0.0])

    def test_mutual_nn_identity(self, rng):
        """Identical point sets pair each cell with itself at k=1."""
        points = rng.normal(size=(30, 4))
        ref_idx, target_idx = find_mutual_nn(points, points.copy(), k1=1, k2=1)
        assert len(ref_idx) == 30
        np.testing.assert_array_equal(ref_idx, target_idx)

    def test_mutual_nn_is_mutual(self, rng):
        """Every pair is within k of each other in both directions."""
        ref = rng.normal(size=(40, 3))
        target = rng.normal(size=(25, 3)) + 0.2
        ref_idx, target_idx = find_mutual_nn(ref, target, k1=3, k2=3)
        assert len(ref_idx) > 0
        for i, j in zip(ref_idx, target_idx):
            d_target = np.linalg.norm(ref - target[j], axis=1)
            d_ref = np.linalg.norm(target - ref[i], axis=1)
            assert i in np.argsort(d_target)[:3]
            assert j in np.argsort(d_ref)[:3]

    def test_multi_batch_pca_shapes(self, rng):
        """One projection per batch over the shared rotation."""
        a = rng.normal(size=(20, 10))
        b = rng.normal(size=(35, 10))
        projections, rotation = multi_batch_pca([a, b], n_components=4)
        assert [p.shape for p in projections] == [(20, 4), (35, 4)]
        assert rotation.shape == (10, 4)

    def test_multi_batch_pca_clamps(self, rng):
        """Components are limited by the gene count."""
        projections, rotation = multi_batch_pca(
            [rng.normal(size=(10, 5)), rng.normal(size=(10, 5))], n_components=50
        )
        assert rotation.shape == (5, 4)

    def test_multi_batch_pca_gene_mismatch(self, rng):
        """Batches must share genes."""
        with pytest.raises(ValueError, match="same genes"):
            multi_batch_pca([rng.normal(size=(10, 5)), rng.normal(size=(10, 6))])

    def test_multi_batch_pca_empty_batch(self, rng):
        """An empty batch raises."""
        with pytest.raises(ValueError, match="empty batch"):
            multi_batch_pca([rng.normal(size=(10, 5)), np.zeros((0, 5))])

    def test_constant_shift_recovered(self, rng):
        """A uniform offset between paired cells is corrected everywhere."""
        ref = rng.normal(size=(25, 3)) + 5.0
        shift = np.array([1.0, -2.0, 0.5])
        target = ref - shift
        pairs = (np.arange(25), np.arange(25))
        correction = compute_correction_vectors(ref, target, pairs, sigma=0.1)
        np.testing.assert_allclose(correction, np.tile(shift, (25, 1)), atol=1e-8)
        np.testing.assert_allclose(target + correction, ref, atol=1e-8)

    def test_correction_without_pairs(self, rng):
        """Empty pairs raise."""
        points = rng.normal(size=(5, 2))
        empty = (np.array([], dtype=int), np.array([], dtype=int))
        with pytest.raises(ValueError, match="No MNN pairs"):
            compute_correction_vectors(points, points, empty)

    def test_center_along_batch_vector(self, rng):
        """Spread along the vector collapses; orthogonal spread is kept."""
        matrix = rng.normal(size=(50, 3))
        vector = np.array([2.0, 0.0, 0.0])
        centred = center_along_batch_vector(matrix, vector)
        np.testing.assert_allclose(centred[:, 0], matrix[:, 0].mean())
        np.testing.assert_allclose(centred[:, 1:], matrix[:, 1:])

    def test_center_along_zero_vector(self, rng):
        """A zero batch vector is a no-op."""
        matrix = rng.normal(size=(10, 3))
        np.testing.assert_array_equal(center_along_batch_vector(matrix, np.zeros(3)), matrix)


class TestFastMNN:
    """Tests for fast_mnn on AnnData."""

    def test_outputs(self, combined):
        """PCA and corrected embeddings are written with a provenance record."""
        result = fast_mnn(combined, merge_order=["reference", "query"], k=10, n_components=10)

        assert combined.obsm["X_pca"].shape == (combined.n_obs, 10)
        assert combined.obsm["X_mnn"].shape == (combined.n_obs, 10)
        assert result.merge_order == ["reference", "query"]
        assert len(result.n_pairs) == 1
        assert result.n_pairs[0] > 0
        assert set(result.lost_variance) == {"reference", "query"}
        assert all(v >= 0 for v in result.lost_variance.values())
        assert combined.uns["scatlas"]["mnn"]["k"] == 10

    def test_reduces_batch_gap(self, combined):
        """Batch centroids move closer after correction."""
        fast_mnn(combined, merge_order=["reference", "query"], k=10, n_components=10)
        labels = combined.obs["batch"].astype(str).to_numpy()
        before = _centroid_gap(combined.obsm["X_pca"], labels)
        after = _centroid_gap(combined.obsm["X_mnn"], labels)
        assert after < before

    def test_rows_stay_aligned_with_obs(self, combined):
        """Without centring, the first merged batch keeps its PCA coordinates."""
        fast_mnn(
            combined,
            merge_order=["query", "reference"],
            k=10,
            n_components=5,
            center_batch_vector=False,
        )
        query_rows = (combined.obs["batch"] == "query").to_numpy()
        np.testing.assert_allclose(
            combined.obsm["X_mnn"][query_rows], combined.obsm["X_pca"][query_rows]
        )

    def test_single_batch(self, lognorm_adata):
        """One batch cannot be corrected."""
        with pytest.raises(ValueError, match="at least 2 batches"):
            fast_mnn(lognorm_adata)

    def test_merge_order_mismatch(self, combined):
        """merge_order must name exactly the batches."""
        with pytest.raises(ValueError, match="does not match"):
            fast_mnn(combined, merge_order=["reference", "other"])

    def test_missing_batch_key(self, combined):
        """An unknown batch column raises."""
        with pytest.raises(KeyError, match="sample"):
            fast_mnn(combined, batch_key="sample")


class TestIntegrationEngine:
    """Tests for IntegrationEngine."""

    def test_combine_labels_batches(self, two_batches):
        """Cells carry their dataset label and keep raw counts."""
        query, reference = two_batches
        combined = IntegrationEngine().combine(query, reference)
        counts = combined.obs["batch"].value_counts()
        assert counts["query"] == query.n_obs
        assert counts["reference"] == reference.n_obs
        assert "counts" in combined.layers
        assert combined.obs_names.is_unique

    def test_combine_keeps_reference_only_columns(self, two_batches):
        """Reference labels survive for reference cells; query cells get NaN."""
        query, reference = two_batches
        reference = reference.copy()
        reference.obs["label"] = reference.obs["cell_type"].astype(str)
        reference.obs["score"] = np.arange(reference.n_obs, dtype=float)

        combined = IntegrationEngine().combine(query, reference)

        assert "label" in combined.obs
        is_ref = (combined.obs["batch"] == "reference").to_numpy()
        labels = combined.obs["label"]
        assert labels[is_ref].notna().all()
        assert labels[~is_ref].isna().all()
        assert list(labels[is_ref].astype(str)) == list(reference.obs["label"])
        assert combined.obs["score"][is_ref].tolist() == list(reference.obs["score"])

    def test_combine_restricts_to_shared_genes(self, two_batches):
        """Only genes present in both datasets are kept."""
        query, reference = two_batches
        combined = IntegrationEngine().combine(query[:, 5:].copy(), reference)
        assert combined.n_vars == query.n_vars - 5

    def test_combine_without_shared_genes(self, two_batches):
        """Disjoint gene sets raise."""
        query, reference = two_batches
        reference = reference.copy()
        reference.var_names = [f"X{i}" for i in range(reference.n_vars)]
        with pytest.raises(ValueError, match="share no genes"):
            IntegrationEngine().combine(query, reference)

    def test_run_and_export(self, two_batches, tmp_output_dir):
        """End-to-end run writes tables and the composition plot."""
        query, reference = two_batches
        config = IntegrationConfig(
            mnn=MNNConfig(k=10, n_components=10),
            clustering=ClusteringConfig(compute_umap=False),
        )
        result = IntegrationEngine(config).run(query, reference, output_dir=tmp_output_dir)

        assert result.adata.n_obs == query.n_obs + reference.n_obs
        assert "X_mnn" in result.adata.obsm
        assert "louvain" in result.adata.obs
        assert result.clustering.n_clusters >= 2
        assert len(result.hvgs) > 0
        assert not any(g.startswith(("MT-", "RPL", "RPS")) for g in result.hvgs)
        assert (tmp_output_dir / "gene_variance.csv").exists()
        assert (tmp_output_dir / "clusters.csv").exists()
        assert (tmp_output_dir / "batch_composition.png").exists()
        assert "umap_batch" not in result.plots
