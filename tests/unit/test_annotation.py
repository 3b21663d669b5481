"""Unit tests for annotation module (AUCell, reference transfer, summaries)."""

import numpy as np
import pandas as pd
import pytest

from scatlas.core.annotation import (
    AnnotationConfig,
    AnnotationEngine,
    AUCellConfig,
    AUCellScorer,
    ReferenceClassifier,
    ReferenceConfig,
    annotate_clusters,
    build_rankings,
    canonicalize_gene,
    cluster_majority_labels,
    compute_auc,
    default_de_n,
    label_concordance,
    resolve_gene_sets,
    resolve_max_rank,
)


def _accuracy(predicted, truth) -> float:
    return float((np.asarray(predicted, dtype=object) == np.asarray(truth, dtype=object)).mean())


class TestGeneSets:
    """Tests for gene set resolution."""

    def test_canonicalize(self):
        """Whitespace and case are normalized."""
        assert canonicalize_gene(" cd3e ") == "CD3E"

    def test_resolve_case_insensitive(self):
        """Genes resolve to the dataset spelling."""
        sets = resolve_gene_sets({"T": ["cd3e", "Cd3d", "NOPE"]}, ["CD3E", "CD3D", "LYZ"])
        assert len(sets) == 1
        assert sets[0].resolved == ("CD3E", "CD3D")
        assert sets[0].missing == ("NOPE",)
        assert sets[0].coverage == pytest.approx(2 / 3)

    def test_resolve_drops_small_sets(self):
        """Sets below min_genes are skipped."""
        sets = resolve_gene_sets(
            {"T": ["CD3E", "CD3D"], "B": ["MS4A1"]}, ["CD3E", "CD3D", "MS4A1"], min_genes=2
        )
        assert [s.name for s in sets] == ["T"]

    def test_resolve_nothing_raises(self):
        """At least one set must survive."""
        with pytest.raises(ValueError, match="No gene set"):
            resolve_gene_sets({"T": ["CD3E"]}, ["LYZ"])


class TestAUCell:
    """Tests for AUCell scoring."""

    def test_rankings_order(self):
        """Highest expression gets rank 0."""
        rankings = build_rankings(np.array([[0.1, 5.0, 2.0, 3.0]]))
        assert rankings.tolist() == [[3, 0, 2, 1]]

    def test_rankings_are_permutations(self, rng):
        """Every row is a permutation, ties included."""
        matrix = rng.poisson(0.5, size=(20, 30)).astype(float)
        rankings = build_rankings(matrix, seed=1)
        assert (np.sort(rankings, axis=1) == np.arange(30)).all()
        assert np.array_equal(rankings, build_rankings(matrix, seed=1))

    def test_max_rank(self):
        """Fraction-based cutoff with clamping."""
        assert resolve_max_rank(100) == 5
        assert resolve_max_rank(100, max_rank=500) == 100
        assert resolve_max_rank(10, frac=0.01) == 1

    def test_auc_bounds(self):
        """Top-ranked sets score 1, unranked sets score 0."""
        rankings = np.array([[0, 1, 2, 3, 4, 5, 6, 7, 8, 9]])
        auc = compute_auc(rankings, {"top": [0, 1], "bottom": [8, 9], "empty": []}, max_rank=4)
        assert auc.loc[0, "top"] == pytest.approx(1.0)
        assert auc.loc[0, "bottom"] == pytest.approx(0.0)
        assert auc.loc[0, "empty"] == 0.0

    def test_auc_partial(self):
        """A gene at rank 2 of max_rank 4 contributes 2 of the best 4."""
        rankings = np.array([[3, 2, 0, 1]])
        auc = compute_auc(rankings, {"set": [1]}, max_rank=4)
        assert auc.loc[0, "set"] == pytest.approx(0.5)

    def test_score_and_assign(self, lognorm_adata, marker_sets):
        """Cells are assigned to their own marker set."""
        scorer = AUCellScorer(AUCellConfig(max_rank=10))
        auc = scorer.score(lognorm_adata, marker_sets)

        assert list(auc.columns) == list(marker_sets)
        assert auc.index.equals(lognorm_adata.obs_names)
        assert ((auc >= 0) & (auc <= 1)).all().all()
        assert lognorm_adata.uns["scatlas"]["aucell"]["max_rank"] == 10

        labels = scorer.assign(lognorm_adata)
        assert _accuracy(labels, lognorm_adata.obs["cell_type"]) > 0.95
        assert "aucell_label_auc" in lognorm_adata.obs

    def test_chunking_is_consistent(self, lognorm_adata, marker_sets):
        """Chunk size does not change assignments."""
        small = AUCellScorer(AUCellConfig(max_rank=10, chunk_size=7))
        large = AUCellScorer(AUCellConfig(max_rank=10, chunk_size=10_000))
        a = small.assign(lognorm_adata, small.score(lognorm_adata, marker_sets))
        b = large.assign(lognorm_adata, large.score(lognorm_adata, marker_sets))
        assert _accuracy(a, b) > 0.95

    def test_min_auc_unassigned(self, lognorm_adata, marker_sets):
        """Cells below min_auc get the unassigned label."""
        scorer = AUCellScorer(AUCellConfig(max_rank=10, min_auc=1.01))
        scorer.score(lognorm_adata, marker_sets)
        labels = scorer.assign(lognorm_adata)
        assert (labels == "Unassigned").all()

    def test_assign_before_score(self, lognorm_adata):
        """Assigning without a stored AUC matrix raises."""
        with pytest.raises(KeyError, match="run score first"):
            AUCellScorer().assign(lognorm_adata)


class TestReferenceClassifier:
    """Tests for reference label transfer."""

    @pytest.fixture
    def config(self) -> ReferenceConfig:
        return ReferenceConfig(label_key="cell_type")

    def test_default_de_n(self):
        """Marker count shrinks with the number of labels."""
        assert default_de_n(1) == 500
        assert default_de_n(2) == 333
        assert default_de_n(4) == 222

    def test_train_markers(self, lognorm_reference, config):
        """Every ordered pair has markers; own markers lead."""
        trained = ReferenceClassifier(config).train(lognorm_reference)
        assert trained.labels == ["B cell", "Monocyte", "T cell"]
        assert len(trained.markers) == 6
        assert trained.markers[("T cell", "B cell")][0] in {
            "CD3E", "CD3D", "CD2", "IL7R", "TRAC", "LCK"
        }
        assert set(trained.marker_union(["T cell", "B cell"])) <= set(trained.genes)
        assert trained.matrix.shape == (lognorm_reference.n_obs, len(trained.genes))

    def test_train_missing_label_column(self, lognorm_reference):
        """The label column must exist."""
        with pytest.raises(ValueError, match="not found"):
            ReferenceClassifier(ReferenceConfig(label_key="absent")).train(lognorm_reference)

    def test_train_single_label(self, lognorm_reference, config):
        """At least two labels are needed."""
        single = lognorm_reference[lognorm_reference.obs["cell_type"] == "T cell"].copy()
        with pytest.raises(ValueError, match="at least 2 labels"):
            ReferenceClassifier(config).train(single)

    def test_train_aggregated(self, lognorm_reference):
        """k-means aggregation replaces cells with centroids per label."""
        config = ReferenceConfig(label_key="cell_type", aggr_size=10)
        trained = ReferenceClassifier(config).train(lognorm_reference)
        assert trained.matrix.shape[0] == 9
        assert np.bincount(trained.cell_labels).tolist() == [3, 3, 3]

    def test_classify_before_train(self, lognorm_adata):
        """classify requires a trained reference."""
        with pytest.raises(RuntimeError, match="before train"):
            ReferenceClassifier().classify(lognorm_adata)

    def test_classify_recovers_types(self, lognorm_adata, lognorm_reference, config):
        """Query cells get their true type."""
        clf = ReferenceClassifier(config)
        clf.train(lognorm_reference)
        result = clf.classify(lognorm_adata)

        truth = lognorm_adata.obs["cell_type"]
        assert _accuracy(result.labels, truth) > 0.95
        assert list(result.scores.columns) == ["B cell", "Monocyte", "T cell"]
        assert (result.delta >= 0).all()

        kept = result.pruned_labels.notna()
        assert (result.pruned_labels[kept] == result.labels[kept]).all()
        assert result.summary["n_pruned"] == int((~kept).sum())

    def test_ambiguous_cell_is_pruned(self, lognorm_adata, lognorm_reference, config):
        """A half T / half B profile has a tiny delta and loses its label."""
        import anndata as ad

        x = lognorm_adata.X
        x = x.toarray() if hasattr(x, "toarray") else np.asarray(x)
        types = lognorm_adata.obs["cell_type"].astype(str).to_numpy()
        mixed = 0.5 * (x[types == "T cell"].mean(axis=0) + x[types == "B cell"].mean(axis=0))
        query = ad.AnnData(
            X=np.vstack([x, mixed[None, :]]).astype(np.float32),
            obs=pd.DataFrame(index=list(lognorm_adata.obs_names) + ["mixed"]),
            var=lognorm_adata.var.copy(),
        )

        clf = ReferenceClassifier(config)
        clf.train(lognorm_reference)
        result = clf.classify(query)

        assert result.labels["mixed"] in {"T cell", "B cell"}
        assert pd.isna(result.pruned_labels["mixed"])
        assert result.delta["mixed"] < result.delta.drop("mixed").min()
        assert result.summary["n_pruned"] >= 1

    def test_fine_tune_changes_label(self):
        """Two close labels are split by their pairwise markers alone."""
        import anndata as ad

        from scatlas.core.annotation.reference import TrainedReference

        genes = ["S", "T"] + [f"g{i}" for i in range(1, 11)]
        shared_up = np.arange(2, 12, dtype=float)
        profile_a = np.concatenate([[12.0, 1.0], shared_up])
        profile_b = np.concatenate([[12.0, 1.0], shared_up[::-1]])
        profile_c = np.concatenate([[1.0, 12.0], shared_up[::-1]])
        cell = np.concatenate([[1.0, 12.0], shared_up])

        clf = ReferenceClassifier(
            ReferenceConfig(label_key="cell_type", tune_thresh=0.4, prune=False)
        )
        clf.trained_ = TrainedReference(
            labels=["A", "B", "C"],
            genes=genes,
            matrix=np.vstack([profile_a, profile_b, profile_c]),
            cell_labels=np.array([0, 1, 2]),
            markers={
                ("A", "C"): ["S"],
                ("C", "A"): ["T"],
                ("A", "B"): ["g1", "g2"],
                ("B", "A"): ["g9", "g10"],
                ("C", "B"): ["T"],
                ("B", "C"): ["S"],
            },
            de_n=1,
        )
        query = ad.AnnData(
            X=cell[None, :].astype(np.float32),
            obs=pd.DataFrame(index=["cell0"]),
            var=pd.DataFrame(index=genes),
        )

        result = clf.classify(query)

        assert result.first_labels["cell0"] == "A"
        assert result.labels["cell0"] == "C"
        assert result.scores.loc["cell0", "A"] - result.scores.loc["cell0", "C"] < 0.4
        assert result.summary["n_changed_by_tuning"] == 1

    def test_no_fine_tune(self, lognorm_adata, lognorm_reference):
        """Without fine-tuning the final label is the top initial score."""
        clf = ReferenceClassifier(ReferenceConfig(label_key="cell_type", fine_tune=False))
        clf.train(lognorm_reference)
        result = clf.classify(lognorm_adata)
        assert (result.labels == result.first_labels).all()
        assert result.summary["n_changed_by_tuning"] == 0

    def test_no_prune(self, lognorm_adata, lognorm_reference):
        """prune=False keeps every label."""
        clf = ReferenceClassifier(ReferenceConfig(label_key="cell_type", prune=False))
        clf.train(lognorm_reference)
        result = clf.classify(lognorm_adata)
        assert result.pruned_labels.notna().all()

    def test_parallel_matches_serial(self, lognorm_adata, lognorm_reference):
        """joblib chunks give the same labels as a serial run."""
        serial = ReferenceClassifier(ReferenceConfig(label_key="cell_type", chunk_size=50))
        parallel = ReferenceClassifier(
            ReferenceConfig(label_key="cell_type", chunk_size=50, n_jobs=2)
        )
        serial.train(lognorm_reference)
        parallel.train(lognorm_reference)
        a = serial.classify(lognorm_adata)
        b = parallel.classify(lognorm_adata)
        assert (a.labels == b.labels).all()
        assert np.allclose(a.scores.to_numpy(), b.scores.to_numpy())

    def test_no_shared_genes(self, lognorm_adata, lognorm_reference, config):
        """A query without the marker genes cannot be classified."""
        clf = ReferenceClassifier(config)
        clf.train(lognorm_reference)
        query = lognorm_adata.copy()
        query.var_names = [f"OTHER{i}" for i in range(query.n_vars)]
        with pytest.raises(ValueError, match="shares no marker genes"):
            clf.classify(query)

    def test_annotate_writes_columns(self, lognorm_adata, lognorm_reference, config):
        """Labels, delta, scores and provenance are stored on the query."""
        clf = ReferenceClassifier(config)
        clf.train(lognorm_reference)
        clf.annotate(lognorm_adata, clf.classify(lognorm_adata))

        for col in ("singler_label", "singler_pruned_label", "singler_delta"):
            assert col in lognorm_adata.obs
        assert lognorm_adata.obsm["singler_scores"].shape == (lognorm_adata.n_obs, 3)
        record = lognorm_adata.uns["scatlas"]["reference"]
        assert record["labels"] == ["B cell", "Monocyte", "T cell"]
        assert None not in record.values()


class TestClusterSummaries:
    """Tests for cluster-level label summaries."""

    @pytest.fixture
    def adata(self, label_frame):
        import anndata as ad

        return ad.AnnData(obs=label_frame)

    def test_majority_labels(self, adata):
        """Majority ignores NaN; clusters sort numerically."""
        summary = cluster_majority_labels(adata, "label")
        assert summary["cluster"].tolist() == ["0", "1", "10"]
        assert summary["majority_label"].tolist()[:2] == ["T cell", "B cell"]
        assert pd.isna(summary["majority_label"].iloc[2])
        assert summary["majority_fraction"].tolist() == pytest.approx([2 / 3, 0.5, 0.0])
        assert summary["n_cells"].tolist() == [3, 2, 1]

    def test_annotate_clusters(self, adata):
        """Cells inherit their cluster's majority label."""
        annotate_clusters(adata, "label")
        assert adata.obs["label_cluster"].astype(object).iloc[:3].tolist() == ["T cell"] * 3
        assert adata.obs["label_cluster"].astype(object).iloc[3] == "B cell"

    def test_annotate_clusters_custom_key(self, adata):
        """key_added overrides the output column."""
        annotate_clusters(adata, "other", key_added="cluster_other")
        assert "cluster_other" in adata.obs

    def test_concordance(self, adata):
        """Contingency table and its row-normalized form."""
        table = label_concordance(adata, "louvain", "other")
        assert table.loc["0", "T"] == 3
        assert table.loc["1", "B"] == 2
        fractions = label_concordance(adata, "louvain", "other", normalize=True)
        assert np.allclose(fractions.sum(axis=1), 1.0)

    def test_concordance_counts_pruned(self, adata):
        """NaN labels are tallied as 'Pruned', never as the string 'nan'."""
        table = label_concordance(adata, "louvain", "label")
        assert "nan" not in table.columns
        assert table.loc["1", "Pruned"] == 1
        assert table.loc["10", "Pruned"] == 1
        assert table.to_numpy().sum() == adata.n_obs

    def test_missing_column(self, adata):
        """Unknown columns raise KeyError."""
        with pytest.raises(KeyError, match="absent"):
            cluster_majority_labels(adata, "absent")


class TestAnnotationEngine:
    """Tests for AnnotationEngine."""

    @pytest.fixture
    def config(self) -> AnnotationConfig:
        return AnnotationConfig.from_dict(
            {"aucell": {"max_rank": 10}, "reference": {"label_key": "cell_type"}}
        )

    def test_requires_input(self, lognorm_adata):
        """Gene sets or a reference must be given."""
        with pytest.raises(ValueError, match="gene sets, a reference"):
            AnnotationEngine().run(lognorm_adata)

    def test_gene_sets_only(self, lognorm_adata, gmt_file, config):
        """A GMT path is loaded and scored; no reference outputs."""
        result = AnnotationEngine(config).run(lognorm_adata, gene_sets=gmt_file)
        assert result.auc is not None
        assert result.classification is None
        assert result.concordance is None
        assert "aucell_label" in lognorm_adata.obs

    def test_full_run_with_export(
        self, lognorm_adata, lognorm_reference, marker_sets, config, tmp_output_dir
    ):
        """Both labelings, cluster summaries, concordance and CSVs."""
        lognorm_adata.obs["louvain"] = pd.Categorical(
            lognorm_adata.obs["cell_type"].cat.codes.astype(str)
        )
        result = AnnotationEngine(config).run(
            lognorm_adata,
            gene_sets=marker_sets,
            reference=lognorm_reference,
            output_dir=tmp_output_dir,
        )

        assert set(result.label_keys) == {"aucell_label", "singler_pruned_label"}
        for summary in result.cluster_summaries.values():
            assert (summary["majority_fraction"] > 0.9).all()
        assert result.concordance.to_numpy().sum() == lognorm_adata.n_obs

        for name in (
            "aucell_scores.csv",
            "singler_scores.csv",
            "singler_labels.csv",
            "cell_labels.csv",
            "cluster_aucell_label.csv",
            "cluster_singler_pruned_label.csv",
            "label_concordance.csv",
        ):
            assert (tmp_output_dir / name).exists(), name

    def test_reference_trained_on_shared_genes(self, lognorm_adata, lognorm_reference):
        """Reference-only genes never take marker slots."""
        import anndata as ad

        ref_x = lognorm_reference.X
        ref_x = ref_x.toarray() if hasattr(ref_x, "toarray") else np.asarray(ref_x)
        codes = lognorm_reference.obs["cell_type"].cat.codes.to_numpy()
        extra = np.zeros((lognorm_reference.n_obs, 3), dtype=np.float32)
        extra[np.arange(lognorm_reference.n_obs), codes] = 50.0
        reference = ad.AnnData(
            X=np.hstack([ref_x, extra]),
            obs=lognorm_reference.obs.copy(),
            var=pd.DataFrame(
                index=list(lognorm_reference.var_names) + ["REFONLY0", "REFONLY1", "REFONLY2"]
            ),
        )

        config = AnnotationConfig.from_dict(
            {"reference": {"label_key": "cell_type", "de_n": 1}}
        )
        engine = AnnotationEngine(config)
        result = engine.run(lognorm_adata, reference=reference)

        trained_genes = set(engine.classifier.trained_.genes)
        assert trained_genes
        assert trained_genes <= set(lognorm_adata.var_names)
        assert _accuracy(result.classification.labels, lognorm_adata.obs["cell_type"]) > 0.9

    def test_reference_without_shared_genes(self, lognorm_adata, lognorm_reference, config):
        """Disjoint gene spaces are rejected before training."""
        reference = lognorm_reference.copy()
        reference.var_names = [f"OTHER{i}" for i in range(reference.n_vars)]
        with pytest.raises(ValueError, match="share no genes"):
            AnnotationEngine(config).run(lognorm_adata, reference=reference)

    def test_config_yaml_roundtrip(self, tmp_path, config):
        """Nested YAML is unwrapped."""
        import yaml

        path = tmp_path / "annotation.yaml"
        path.write_text(yaml.dump({"annotation": config.to_dict()}))
        loaded = AnnotationConfig.from_yaml(path)
        assert loaded.aucell.max_rank == 10
        assert loaded.reference.label_key == "cell_type"
