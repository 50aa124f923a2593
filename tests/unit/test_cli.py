"""
Unit tests for the dereport command-line interface.
"""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from dereport.cli import app
from dereport.version import __version__

runner = CliRunner()


@pytest.fixture
def config_path(toy_project):
    path = toy_project["root"] / "report.json"
    path.write_text(
        json.dumps(
            {
                "tx2gene_path": "tx2gene.tsv",
                "metadata_path": "samples.tsv",
                "quant_dir": "quants",
                "annotation_source": "table",
                "annotation_table": "annotation.tsv",
                "de_engine": "deseq2_like",
                "transform_method": "log2",
            }
        )
    )
    return path


@pytest.mark.unit
class TestCLI:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_config(self, tmp_path):
        path = tmp_path / "dereport.json"
        result = runner.invoke(app, ["init-config", str(path)])
        assert result.exit_code == 0
        assert json.loads(path.read_text())["quant_dir"] == "quants"

    def test_init_config_refuses_overwrite(self, tmp_path):
        path = tmp_path / "dereport.json"
        path.write_text("{}")
        result = runner.invoke(app, ["init-config", str(path)])
        assert result.exit_code == 1
        assert path.read_text() == "{}"

    def test_validate_ok(self, config_path):
        result = runner.invoke(app, ["validate", str(config_path)])
        assert result.exit_code == 0, result.output
        assert "Inputs OK" in result.output
        assert "salmon" in result.output

    def test_validate_sample_mismatch(self, config_path, toy_project):
        metadata = toy_project["metadata"]
        lines = metadata.read_text().splitlines()
        metadata.write_text("\n".join(lines[:-1]) + "\n")

        result = runner.invoke(app, ["validate", str(config_path)])

        assert result.exit_code == 1
        assert "SampleMismatchError" in result.output

    def test_validate_missing_annotation_table(self, config_path):
        config = json.loads(config_path.read_text())
        config["annotation_table"] = "nope.tsv"
        config_path.write_text(json.dumps(config))

        result = runner.invoke(app, ["validate", str(config_path)])

        assert result.exit_code == 1
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "AnnotationTableError" in result.output
        assert "Annotation table not found" in result.output

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"quant_dir": "quants"}))
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_run_prints_summary(self, config_path, tmp_path):
        pipeline_result = MagicMock()
        pipeline_result.output_path = tmp_path / "report.html"
        pipeline_result.stats = {
            "differential_expression": {
                "HT55": {"n_tested": 50, "n_significant": 5, "n_up": 0, "n_down": 5},
                "SW948": {"n_tested": 50, "n_significant": 4, "n_up": 4, "n_down": 0},
            },
            "enrichment": {"HT55": {"n_terms_significant": 3}, "SW948": {"failed": True}},
        }

        with patch("dereport.services.orchestration.report_pipeline.ReportPipeline") as pipeline_cls:
            pipeline_cls.return_value.run.return_value = pipeline_result
            result = runner.invoke(app, ["run", str(config_path), "-o", str(tmp_path / "report.html")])

        assert result.exit_code == 0, result.output
        config = pipeline_cls.call_args.args[0]
        assert config.output_path == (tmp_path / "report.html").resolve()
        assert "HT55" in result.output
        assert "failed" in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["run", str(Path(tmp_path) / "absent.json")])
        assert result.exit_code != 0
