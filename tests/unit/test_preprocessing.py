"""Unit tests for preprocessing module and statistical helpers."""

import numpy as np
import pandas as pd
import pytest
from scipy import sparse
from scipy.stats import spearmanr

from scatlas.core.preprocessing import (
    CellQC,
    FeatureSelectionConfig,
    FeatureSelector,
    NormalizationConfig,
    Normalizer,
    PreprocessingConfig,
    QCConfig,
    REASON_COLUMNS,
    VARIANCE_COLUMNS,
    blacklist_genes,
    fit_variance_trend,
    model_gene_variance,
    select_features,
)
from scatlas.utils import mad_outliers, rank_rows, robust_zscore, spearman_matrix


def _dense(matrix):
    return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


class TestRobustStats:
    """Tests for MAD-based helpers."""

    def test_zscore_centered(self):
        """Median maps to zero, MAD is scaled to a standard deviation."""
        z = robust_zscore([1.0, 2.0, 3.0, 4.0, 100.0])
        assert z[2] == pytest.approx(0.0)
        assert z[3] == pytest.approx(1.0 / 1.4826)

    def test_zscore_zero_mad(self):
        """A constant vector yields zeros instead of infinities."""
        assert np.all(robust_zscore([5.0, 5.0, 5.0]) == 0.0)

    def test_zscore_keeps_nan(self):
        """Non-finite inputs stay NaN."""
        z = robust_zscore([1.0, np.nan, 2.0, 3.0])
        assert np.isnan(z[1])
        assert np.isfinite(z[[0, 2, 3]]).all()

    def test_outlier_sides(self):
        """Lower and higher sides are evaluated separately."""
        values = np.array([10.0, 11.0, 9.0, 10.5, 9.5, 0.0, 50.0])
        lower = mad_outliers(values, nmads=3, side="lower")
        higher = mad_outliers(values, nmads=3, side="higher")
        assert lower.tolist() == [False] * 5 + [True, False]
        assert higher.tolist() == [False] * 6 + [True]

    def test_outliers_within_groups(self):
        """Thresholds are computed per group."""
        values = np.array([1.0, 1.1, 0.9, 1.0, 5.0, 100.0, 101.0, 99.0, 100.0, 96.0])
        groups = np.array(["a"] * 5 + ["b"] * 5)
        assert not mad_outliers(values).any()
        assert np.flatnonzero(mad_outliers(values, groups=groups)).tolist() == [4]

    def test_invalid_side(self):
        """Unknown side names are rejected."""
        with pytest.raises(ValueError, match="side"):
            mad_outliers([1.0, 2.0], side="left")

    def test_spearman_matches_scipy(self, rng):
        """Row-wise Spearman agrees with scipy."""
        a = rng.normal(size=(3, 12))
        b = rng.normal(size=(4, 12))
        corr = spearman_matrix(a, b)
        assert corr.shape == (3, 4)
        assert corr[1, 2] == pytest.approx(spearmanr(a[1], b[2])[0])

    def test_constant_rows_rank_to_zero(self):
        """Constant rows have no rank signal."""
        ranks = rank_rows(np.array([[1.0, 1.0, 1.0], [1.0, 2.0, 3.0]]))
        assert np.allclose(ranks[0], 0.0)
        assert np.linalg.norm(ranks[1]) == pytest.approx(1.0)


class TestPreprocessingConfig:
    """Tests for configuration loading."""

    def test_defaults(self):
        """Default thresholds."""
        config = PreprocessingConfig.default()
        assert config.qc.nmads == 3.0
        assert config.normalization.method == "multi_batch"
        assert config.features.n_top_genes == 2000

    def test_from_yaml_nested(self, tmp_path):
        """A ``preprocessing`` section is unwrapped."""
        import yaml

        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump({"preprocessing": {"qc": {"nmads": 2.5}, "features": {"n_top_genes": 50}}})
        )
        config = PreprocessingConfig.from_yaml(path)
        assert config.qc.nmads == 2.5
        assert config.features.n_top_genes == 50
        assert config.to_dict()["qc"]["nmads"] == 2.5


class TestCellQC:
    """Tests for CellQC."""

    def test_removes_injected_cells(self, dirty_adata):
        """Low-library and high-mito cells are removed."""
        qc = CellQC(QCConfig(min_genes=5))
        filtered, result = qc.run(dirty_adata)

        assert not filtered.obs["injected"].any()
        assert dirty_adata.obs.loc[dirty_adata.obs["injected"], "qc_outlier"].all()
        normal_removed = int(dirty_adata.obs.loc[~dirty_adata.obs["injected"], "qc_outlier"].sum())
        assert normal_removed <= 3
        assert result.cells_total == dirty_adata.n_obs
        assert result.cells_removed == dirty_adata.n_obs - filtered.n_obs
        assert result.reason_counts["low_lib_size"] >= 3
        assert result.reason_counts["high_mito_percent"] >= 3

    def test_metrics_columns(self, counts_adata):
        """QC metrics are written to obs."""
        CellQC(QCConfig(min_genes=5)).compute_metrics(counts_adata)
        for col in ("n_genes_by_counts", "total_counts", "pct_counts_mt"):
            assert col in counts_adata.obs
        assert counts_adata.var["mt"].sum() == 3

    def test_batch_summary(self, dirty_adata):
        """Per-batch removal is summarized."""
        _, result = CellQC(QCConfig(min_genes=5)).run(dirty_adata)
        assert list(result.batch_summary.columns) == ["cells_total", "cells_removed"]
        assert result.batch_summary["cells_total"].sum() == dirty_adata.n_obs

    def test_to_dict_reasons(self, dirty_adata):
        """Every reason appears in the report."""
        _, result = CellQC(QCConfig(min_genes=5)).run(dirty_adata)
        report = result.to_dict()
        for reason in REASON_COLUMNS:
            assert f"removed_{reason}" in report
        assert 0 < report["removal_fraction"] < 1

    def test_all_cells_fail(self, counts_adata):
        """An impossible gene floor removes everything and raises."""
        with pytest.raises(ValueError, match="All"):
            CellQC(QCConfig(min_genes=10_000)).run(counts_adata)

    def test_absolute_mito_cap(self, counts_adata):
        """max_pct_mt flags cells regardless of the MAD threshold."""
        qc = CellQC(QCConfig(min_genes=5, max_pct_mt=0.0))
        with pytest.raises(ValueError):
            qc.run(counts_adata)


class TestNormalizer:
    """Tests for Normalizer."""

    def test_log_normalize_target_sum(self, counts_adata):
        """expm1(X) sums to the target per cell."""
        Normalizer(NormalizationConfig(method="library_size")).log_normalize(
            counts_adata, target_sum=1e4
        )
        totals = np.expm1(_dense(counts_adata.X)).sum(axis=1)
        assert np.allclose(totals, 1e4, rtol=1e-3)
        assert counts_adata.obs["size_factor"].mean() == pytest.approx(1.0)
        assert counts_adata.uns["scatlas"]["normalization"]["method"] == "library_size"

    def test_log_normalize_keeps_counts(self, counts_adata):
        """Raw counts in the layer are untouched."""
        before = counts_adata.layers["counts"].copy()
        Normalizer().log_normalize(counts_adata)
        assert np.array_equal(_dense(counts_adata.layers["counts"]), before)

    def test_zero_count_cell(self, counts_adata):
        """Cells without counts cannot be normalized."""
        counts_adata.layers["counts"][0] = 0
        with pytest.raises(ValueError, match="zero total counts"):
            Normalizer().log_normalize(counts_adata)

    def test_multi_batch_rescales_deeper_batch(self, two_batches):
        """The shallow batch keeps scale 1; the deep batch is downscaled."""
        import anndata as ad

        query, reference = two_batches
        adata = ad.concat([query, reference])
        result = Normalizer().multi_batch_normalize(adata, batch_key="batch")

        assert result.method == "multi_batch"
        assert result.batch_rescale["query"] == pytest.approx(1.0)
        assert result.batch_rescale["reference"] > 1.0

        for batch, scale in result.batch_rescale.items():
            sf = adata.obs.loc[adata.obs["batch"] == batch, "size_factor"]
            assert sf.mean() == pytest.approx(scale)

        counts = _dense(adata.layers["counts"])
        sf = adata.obs["size_factor"].to_numpy()
        expected = np.log2(counts[0] / sf[0] + 1.0)
        assert np.allclose(_dense(adata.X)[0], expected, atol=1e-4)

    def test_multi_batch_missing_key(self, counts_adata):
        """An absent batch column raises."""
        with pytest.raises(KeyError):
            Normalizer().multi_batch_normalize(counts_adata, batch_key="donor")

    def test_run_single_batch_falls_back(self, counts_adata):
        """multi_batch on one batch is library-size normalization."""
        result = Normalizer().run(counts_adata, batch_key="batch")
        assert result.method == "library_size"

    def test_run_unknown_method(self, counts_adata):
        """Unknown methods are rejected."""
        with pytest.raises(ValueError, match="Unknown normalization"):
            Normalizer(NormalizationConfig(method="scran")).run(counts_adata)


class TestFeatureSelection:
    """Tests for variance modeling and HVG selection."""

    def test_trend_is_nonnegative(self, rng):
        """LOWESS technical variance never goes below zero."""
        mean = rng.uniform(0.1, 5, size=200)
        var = mean * rng.uniform(0.5, 1.5, size=200)
        tech = fit_variance_trend(mean, var)
        assert (tech >= 0).all()
        assert tech.shape == mean.shape

    def test_model_columns(self, lognorm_adata):
        """Variance components are written to var and add up."""
        table = model_gene_variance(lognorm_adata)
        assert list(table.columns) == VARIANCE_COLUMNS
        assert np.allclose(table["total_var"] - table["tech_var"], table["bio_var"])
        for col in VARIANCE_COLUMNS:
            assert col in lognorm_adata.var

    def test_markers_have_biological_variance(self, lognorm_adata):
        """Cell-type markers rank above background genes."""
        table = model_gene_variance(lognorm_adata)
        assert table.loc["CD3E", "bio_var"] > table.loc["GENE0", "bio_var"]

    def test_model_per_batch(self, lognorm_adata):
        """Batch-aware modeling runs with several batches."""
        lognorm_adata.obs["batch"] = pd.Categorical(
            np.where(np.arange(lognorm_adata.n_obs) % 2 == 0, "a", "b")
        )
        table = model_gene_variance(lognorm_adata, batch_key="batch")
        assert table.shape == (lognorm_adata.n_vars, 4)

    def test_blacklist_patterns(self):
        """Mitochondrial, ribosomal, hemoglobin and sex genes are flagged."""
        flags = blacklist_genes(["MT-CO1", "RPL3", "rps6", "HBB", "XIST", "CD3E", "HBEGF"])
        assert flags.to_dict() == {
            "MT-CO1": True,
            "RPL3": True,
            "rps6": True,
            "HBB": True,
            "XIST": True,
            "CD3E": False,
            "HBEGF": False,
        }

    def test_blacklist_extra_genes(self):
        """Explicit genes are matched case-insensitively."""
        flags = blacklist_genes(["CD3E", "LYZ"], patterns=[], extra_genes=["lyz"])
        assert flags.tolist() == [False, True]

    def test_select_excludes_blacklist(self, lognorm_adata):
        """Blacklisted genes are never selected."""
        model_gene_variance(lognorm_adata)
        genes = select_features(lognorm_adata, n_top=1000)
        assert not set(genes) & {"MT-CO1", "MT-ND1", "MT-ATP6", "RPL3", "RPS6"}
        assert lognorm_adata.var["highly_variable"].sum() == len(genes)
        assert lognorm_adata.var.loc["MT-CO1", "blacklisted"]

    def test_select_top_n(self, lognorm_adata):
        """n_top limits the selection to the highest biological variance."""
        model_gene_variance(lognorm_adata)
        genes = select_features(lognorm_adata, n_top=5)
        assert len(genes) == 5
        var = lognorm_adata.var
        rest = var.loc[~var["highly_variable"] & ~var["blacklisted"], "bio_var"]
        assert var.loc[genes, "bio_var"].min() >= rest.max()

    def test_select_requires_model(self, lognorm_adata):
        """Selection before modeling raises."""
        with pytest.raises(KeyError, match="bio_var"):
            select_features(lognorm_adata)

    def test_selector_records_run(self, lognorm_adata):
        """FeatureSelector stores a provenance record."""
        genes = FeatureSelector(FeatureSelectionConfig(n_top_genes=10)).run(lognorm_adata)
        record = lognorm_adata.uns["scatlas"]["features"]
        assert record["n_selected"] == len(genes) == 10
        assert record["batch_key"] == ""
