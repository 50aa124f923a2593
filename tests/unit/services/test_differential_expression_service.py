"""
Unit tests for the differential expression service and its engines.

The lightweight engine is used for the deterministic checks; the pyDESeq2
engine is exercised when the library is installed.
"""

from unittest.mock import Mock

import numpy as np
import pandas as pd
import pytest

from dereport.config.constants import RESULT_COLUMNS
from dereport.core.dataset import build_dataset
from dereport.core.exceptions import ConvergenceError, MetadataError
from dereport.services.analysis.differential_expression_service import (
    DESeq2LikeEngine,
    DifferentialExpressionError,
    DifferentialExpressionService,
    PyDESeq2Engine,
    get_engine,
    group_effects,
)

# Genes given a 16-fold effect in the conftest toy matrix
SW948_UP_IDS = [f"ENSG{i:011d}" for i in range(0, 5)]
HT55_DOWN_IDS = [f"ENSG{i:011d}" for i in range(5, 10)]


@pytest.fixture
def service():
    return DifferentialExpressionService(engine=DESeq2LikeEngine())


@pytest.fixture
def four_sample_dataset():
    """
    One target gene plus stable housekeeping genes, one control and one
    treated sample per cell line. The target is flat in HT55 and rises
    about ten-fold in SW948.
    """
    samples = ["HT55_ctrl", "HT55_treat", "SW948_ctrl", "SW948_treat"]
    counts = pd.DataFrame(
        [
            [10, 10, 10, 100],
            [500, 500, 500, 500],
            [300, 300, 300, 300],
            [800, 800, 800, 800],
        ],
        index=["TARGET", "HK1", "HK2", "HK3"],
        columns=samples,
    )
    metadata = pd.DataFrame(
        {
            "cell_line": pd.Categorical(["HT55", "HT55", "SW948", "SW948"]),
            "condition": pd.Categorical(["control", "treated", "control", "treated"]),
        },
        index=pd.Index(samples, name="sample_id"),
    )
    return build_dataset(counts, metadata)


def _result(results: pd.DataFrame, gene: str) -> pd.Series:
    return results.set_index("gene_id").loc[gene]


# ===============================================================================
# Effect sizes
# ===============================================================================


@pytest.mark.unit
class TestGroupEffects:
    """Test untested fold changes."""

    def test_fold_change_with_pseudocount(self):
        counts = pd.DataFrame({"c": [0, 100], "t": [3, 100]}, index=["g1", "hk"])
        groups = pd.Series(["control", "treated"], index=["c", "t"])
        effects = group_effects(counts, groups, "treated", "control")
        assert effects.loc["hk", "log2FoldChange"] == pytest.approx(0.0, abs=1e-9)
        assert np.isfinite(effects.loc["g1", "log2FoldChange"])
        assert effects.loc["g1", "log2FoldChange"] > 0


# ===============================================================================
# Engines
# ===============================================================================


@pytest.mark.unit
class TestDESeq2LikeEngine:
    """Test the lightweight engine."""

    def test_detects_planted_effects(self, dataset):
        sw948 = dataset.subset("cell_line", "SW948")
        results = DESeq2LikeEngine().run(
            sw948.counts_frame(), sw948.metadata, "condition", "treated", "control"
        )
        assert list(results.columns) == RESULT_COLUMNS
        assert (results.loc[SW948_UP_IDS, "log2FoldChange"] > 3).all()
        assert (results.loc[SW948_UP_IDS, "padj"] < 0.05).all()
        assert results["padj"].notna().all()

    def test_single_replicate_gives_nan_statistics(self):
        counts = pd.DataFrame({"c": [10, 200], "t": [40, 200]}, index=["g1", "hk"])
        metadata = pd.DataFrame({"condition": ["control", "treated"]}, index=["c", "t"])
        results = DESeq2LikeEngine().run(counts, metadata, "condition", "treated", "control")
        assert results["pvalue"].isna().all()
        assert results["padj"].isna().all()
        assert results["log2FoldChange"].notna().all()

    def test_constant_gene_is_untestable(self):
        counts = pd.DataFrame(
            {"c1": [50, 100], "c2": [50, 110], "t1": [50, 300], "t2": [50, 320]}, index=["flat", "up"]
        )
        metadata = pd.DataFrame({"condition": ["control", "control", "treated", "treated"]}, index=counts.columns)
        engine = DESeq2LikeEngine()
        with pytest.raises(ConvergenceError):
            engine._test_gene(np.array([1.0, 1.0]), np.array([1.0, 1.0]))
        results = engine.run(counts, metadata, "condition", "treated", "control")
        assert results["log2FoldChange"].notna().all()


@pytest.mark.unit
class TestEngineRegistry:
    """Test engine lookup by name."""

    def test_known_engines(self):
        assert isinstance(get_engine("deseq2_like"), DESeq2LikeEngine)
        assert isinstance(get_engine("pydeseq2", n_cpus=2), PyDESeq2Engine)

    def test_unknown_engine(self):
        with pytest.raises(ValueError, match="edger"):
            get_engine("edger")


# ===============================================================================
# Service
# ===============================================================================


@pytest.mark.unit
class TestRunDifferentialExpression:
    """Test one two-level comparison."""

    def test_one_row_per_gene(self, service, dataset):
        results, stats, ir = service.run_differential_expression(
            dataset.subset("cell_line", "HT55"), label="HT55"
        )
        assert list(results.columns) == ["gene_id", *RESULT_COLUMNS]
        assert sorted(results["gene_id"]) == sorted(dataset.gene_ids)
        assert stats["label"] == "HT55"
        assert stats["contrast"] == ["condition", "treated", "control"]
        assert ir.operation == "deseq2_like.differential_expression"
        assert ir.execution_context["branch"] == "HT55"

    def test_direction_and_counts(self, service, dataset):
        results, stats, _ = service.run_differential_expression(
            dataset.subset("cell_line", "HT55"), label="HT55"
        )
        assert (_result(results, HT55_DOWN_IDS[0])["log2FoldChange"]) < -3
        assert stats["n_down"] >= len(HT55_DOWN_IDS) - 1
        assert stats["n_up"] == 0

    def test_low_count_genes_kept_as_nan(self, service, dataset):
        counts = dataset.counts_frame()
        counts.loc["ENSG_SILENT"] = 0
        silent = build_dataset(counts, dataset.metadata)

        results, stats, _ = service.run_differential_expression(silent.subset("cell_line", "SW948"))

        row = _result(results, "ENSG_SILENT")
        assert row[RESULT_COLUMNS].isna().all()
        assert stats["n_filtered_low_count"] == 1
        assert stats["n_tested"] == len(dataset.gene_ids)

    def test_requires_both_levels(self, service, dataset):
        treated_only = dataset.subset("condition", "treated")
        with pytest.raises(MetadataError) as exc_info:
            service.run_differential_expression(treated_only)
        assert exc_info.value.details["levels"] == ["treated"]

    def test_custom_levels(self, service, dataset):
        with pytest.raises(MetadataError):
            service.run_differential_expression(dataset, test_level="drug", reference_level="vehicle")

    def test_model_failure_keeps_fold_changes(self, dataset):
        engine = Mock()
        engine.name = "mock"
        engine.library = "mock"
        engine.description = "mock engine"
        engine.run.side_effect = ConvergenceError("design matrix is singular")
        service = DifferentialExpressionService(engine=engine)

        results, stats, _ = service.run_differential_expression(dataset.subset("cell_line", "SW948"))

        assert stats["model_failed"] is True
        assert results["padj"].isna().all()
        assert results["log2FoldChange"].notna().all()
        assert stats["n_significant"] == 0

    def test_unexpected_engine_error_wrapped(self, dataset):
        engine = Mock()
        engine.name = "mock"
        engine.run.side_effect = KeyError("condition")
        service = DifferentialExpressionService(engine=engine)
        with pytest.raises(DifferentialExpressionError):
            service.run_differential_expression(dataset.subset("cell_line", "HT55"))

    def test_dataset_not_modified(self, service, dataset):
        before = dataset.counts_frame()
        service.run_differential_expression(dataset.subset("cell_line", "HT55"))
        pd.testing.assert_frame_equal(dataset.counts_frame(), before)


@pytest.mark.unit
class TestRunBySubpopulation:
    """Test independent per-cell-line models."""

    def test_branches_are_independent(self, service, dataset):
        results, stats, steps = service.run_by_subpopulation(dataset, split_by="cell_line")

        assert list(results) == ["HT55", "SW948"]
        assert [s.execution_context["branch"] for s in steps] == ["HT55", "SW948"]
        # Effects planted in one cell line do not leak into the other
        assert _result(results["SW948"], SW948_UP_IDS[0])["log2FoldChange"] > 3
        assert abs(_result(results["HT55"], SW948_UP_IDS[0])["log2FoldChange"]) < 1
        assert stats["HT55"]["n_samples"] == 6

    def test_toy_cell_line_scenario(self, service, four_sample_dataset):
        results, stats, _ = service.run_by_subpopulation(four_sample_dataset)

        ht55 = _result(results["HT55"], "TARGET")
        sw948 = _result(results["SW948"], "TARGET")
        assert abs(ht55["log2FoldChange"]) == pytest.approx(0.0, abs=1e-9)
        assert sw948["log2FoldChange"] == pytest.approx(np.log2(101 / 11))
        # One replicate per group: no test statistic can be computed
        assert np.isnan(sw948["padj"])
        assert stats["SW948"]["n_significant"] == 0


@pytest.mark.unit
class TestPyDESeq2Engine:
    """Test the pyDESeq2 engine when the library is available."""

    def test_planted_effects(self, dataset):
        pytest.importorskip("pydeseq2")
        service = DifferentialExpressionService(engine=PyDESeq2Engine())
        results, stats, ir = service.run_differential_expression(
            dataset.subset("cell_line", "SW948"), label="SW948"
        )
        up = results.set_index("gene_id").loc[SW948_UP_IDS]
        assert (up["log2FoldChange"] > 3).all()
        assert (up["padj"] < 0.05).all()
        assert ir.library == "pydeseq2"

    def test_fit_failure_is_convergence_error(self):
        pytest.importorskip("pydeseq2")
        counts = pd.DataFrame({"c": [10, 20]}, index=["g1", "g2"])
        metadata = pd.DataFrame({"condition": ["control"]}, index=["c"])
        with pytest.raises(ConvergenceError):
            PyDESeq2Engine().run(counts, metadata, "condition", "treated", "control")
