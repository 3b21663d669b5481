"""Unit tests for the command line interface."""

import yaml
import pytest
from click.testing import CliRunner

from scatlas import __version__
from scatlas.cli import cli
from scatlas.workflows import WorkflowConfig


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestCLI:
    """Tests for the scatlas command group."""

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"], obj={})
        assert result.exit_code == 0
        for command in ("qc", "annotate", "integrate", "cluster", "plot", "workflow", "pipeline"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"], obj={})
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_config(self, runner, tmp_path):
        """The written file is a loadable default configuration."""
        path = tmp_path / "workflow.yaml"
        result = runner.invoke(cli, ["init-config", "--out", str(path)], obj={})
        assert result.exit_code == 0
        assert WorkflowConfig.from_yaml(path) == WorkflowConfig.default()

    def test_init_config_refuses_overwrite(self, runner, tmp_path):
        """Existing files need --force."""
        path = tmp_path / "workflow.yaml"
        path.write_text("keep: me\n")

        result = runner.invoke(cli, ["init-config", "--out", str(path)], obj={})
        assert result.exit_code != 0
        assert "--force" in result.output
        assert path.read_text() == "keep: me\n"

        result = runner.invoke(cli, ["init-config", "--out", str(path), "--force"], obj={})
        assert result.exit_code == 0
        assert "paths" in yaml.safe_load(path.read_text())

    def test_annotate_needs_labels_source(self, runner, tmp_path):
        """annotate without gene sets or reference is a usage error."""
        path = tmp_path / "query.h5ad"
        path.write_text("")
        result = runner.invoke(
            cli, ["annotate", "-i", str(path), "-o", str(tmp_path / "out")], obj={}
        )
        assert result.exit_code == 2
        assert "--gene-sets" in result.output

    def test_pipeline_dry_run(self, runner, sample_pipeline_config):
        """Dry run prints the plan without executing anything."""
        result = runner.invoke(
            cli, ["pipeline", "--config", str(sample_pipeline_config), "--dry-run"], obj={}
        )
        assert result.exit_code == 0
        assert "qc -> cluster" in result.output
        assert "Dry run" in result.output
        assert "scatlas.core.preprocessing" in result.output

    def test_qc_command(self, runner, counts_adata, tmp_path):
        """qc writes the preprocessed dataset and per-cell table."""
        data = tmp_path / "counts.h5ad"
        counts_adata.write_h5ad(data)
        config = tmp_path / "qc.yaml"
        config.write_text(yaml.safe_dump({"qc": {"min_genes": 5}}))
        out = tmp_path / "qc"

        result = runner.invoke(
            cli, ["qc", "-i", str(data), "-o", str(out), "-c", str(config)], obj={}
        )
        assert result.exit_code == 0, result.output
        assert "QC complete" in result.output
        assert (out / "preprocessed.h5ad").exists()
        assert (out / "cell_qc.csv").exists()
        assert (out / "gene_variance.csv").exists()

    def test_workflow_bad_name(self, runner, tmp_path):
        path = tmp_path / "workflow.yaml"
        path.write_text("{}\n")
        result = runner.invoke(cli, ["workflow", "clustering", "-c", str(path)], obj={})
        assert result.exit_code == 2
