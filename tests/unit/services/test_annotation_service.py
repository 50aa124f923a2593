"""
Unit tests for gene annotation and the canonical result table.

MyGene.info is never contacted; its client is patched.
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pandas as pd
import pytest

from dereport.core.exceptions import InputIntegrityError
from dereport.services.analysis.annotation_service import (
    AnnotationError,
    AnnotationService,
    AnnotationTableError,
    MyGeneAnnotationSource,
    TableAnnotationSource,
    call_significance,
    unversioned,
)


@pytest.fixture
def service():
    return AnnotationService()


@pytest.fixture
def de_results():
    """Unsorted DE results with ties and undefined padj."""
    return pd.DataFrame(
        {
            "gene_id": ["ENSG05", "ENSG01.2", "ENSG03", "ENSG02", "ENSG04", "ENSG06"],
            "baseMean": [100.0, 200.0, 300.0, 400.0, 500.0, np.nan],
            "log2FoldChange": [3.0, -2.5, 0.5, 2.1, 1.0, np.nan],
            "lfcSE": 0.3,
            "stat": 1.0,
            "pvalue": [0.001, 0.0001, 0.5, np.nan, 0.0001, np.nan],
            "padj": [0.01, 0.001, 0.9, np.nan, 0.001, np.nan],
        }
    )


@pytest.fixture
def table_source():
    return TableAnnotationSource(
        pd.DataFrame(
            {
                "gene_id": ["ENSG01", "ENSG02", "ENSG03", "ENSG05"],
                "symbol": ["TP53", "MYC", "GAPDH", "EGFR"],
                "gene_name": ["tumor protein p53", "MYC proto-oncogene", "GAPDH", "EGFR"],
                "entrez_id": ["7157", "4609", "2597", "1956"],
            }
        )
    )


# ===============================================================================
# Significance rule
# ===============================================================================


@pytest.mark.unit
class TestCallSignificance:
    """Test the fixed significance rule."""

    @pytest.mark.parametrize(
        "padj,lfc,expected",
        [
            (0.01, 2.5, True),
            (0.01, -2.5, True),
            (0.05, 3.0, False),
            (0.01, 2.0, False),
            (np.nan, 5.0, False),
            (0.001, np.nan, False),
        ],
    )
    def test_scalar(self, padj, lfc, expected):
        assert call_significance(padj, lfc) is expected

    def test_series_keeps_index(self):
        padj = pd.Series([0.01, 0.2], index=["a", "b"])
        lfc = pd.Series([3.0, 3.0], index=["a", "b"])
        called = call_significance(padj, lfc)
        assert called.tolist() == [True, False]
        assert list(called.index) == ["a", "b"]


@pytest.mark.unit
class TestUnversioned:
    def test_strips_numeric_suffix_only(self):
        assert unversioned("ENSG00000141510.17") == "ENSG00000141510"
        assert unversioned("ENSG00000141510") == "ENSG00000141510"
        assert unversioned("gene.x") == "gene.x"


# ===============================================================================
# Annotation sources
# ===============================================================================


@pytest.mark.unit
class TestTableAnnotationSource:
    """Test lookups against a local table."""

    def test_versioned_request_matches(self, table_source):
        records = table_source.lookup(["ENSG01.2", "ENSG99"])
        assert records["gene_id"].tolist() == ["ENSG01.2"]
        assert records["symbol"].tolist() == ["TP53"]

    def test_reads_file(self, tmp_path):
        path = tmp_path / "annotation.tsv"
        path.write_text("gene_id\tsymbol\nENSG01\tTP53\n")
        records = TableAnnotationSource(path).lookup(["ENSG01"])
        assert records.loc[0, "symbol"] == "TP53"
        assert list(records.columns) == ["gene_id", "symbol", "gene_name", "entrez_id"]

    def test_missing_file_is_input_error(self, tmp_path):
        with pytest.raises(AnnotationTableError) as exc_info:
            TableAnnotationSource(tmp_path / "absent.tsv")
        assert isinstance(exc_info.value, InputIntegrityError)
        assert isinstance(exc_info.value, AnnotationError)
        assert exc_info.value.details["path"].endswith("absent.tsv")

    def test_requires_gene_id(self):
        with pytest.raises(AnnotationError):
            TableAnnotationSource(pd.DataFrame({"symbol": ["TP53"]}))


@pytest.mark.unit
class TestMyGeneAnnotationSource:
    """Test the MyGene.info client wrapper."""

    def test_querymany_batches_and_maps_back(self):
        client = MagicMock()
        client.querymany.side_effect = [
            [
                {"query": "ENSG01", "symbol": "TP53", "name": "tumor protein p53", "entrezgene": "7157"},
                {"query": "ENSG02", "notfound": True},
            ],
            [{"query": "ENSG03", "symbol": "GAPDH", "name": "GAPDH", "entrezgene": 2597}],
        ]

        with patch("mygene.MyGeneInfo", return_value=client):
            source = MyGeneAnnotationSource(species="human", batch_size=2)
            records = source.lookup(["ENSG01.4", "ENSG02", "ENSG03"])

        assert client.querymany.call_count == 2
        first_call = client.querymany.call_args_list[0]
        assert first_call.args[0] == ["ENSG01", "ENSG02"]
        assert first_call.kwargs["scopes"] == "ensembl.gene"
        assert first_call.kwargs["species"] == "human"
        assert records["gene_id"].tolist() == ["ENSG01.4", "ENSG03"]
        assert records["symbol"].tolist() == ["TP53", "GAPDH"]


# ===============================================================================
# Annotated result table
# ===============================================================================


@pytest.mark.unit
class TestAnnotate:
    """Test the join, sort and significance call."""

    def test_gene_id_set_preserved(self, service, de_results, table_source):
        annotated, stats, _ = service.annotate(de_results, table_source)
        assert sorted(annotated["gene_id"]) == sorted(de_results["gene_id"])
        assert len(annotated) == len(de_results)
        assert stats["n_annotated"] == 4

    def test_sorted_by_padj_nan_last_stable(self, service, de_results, table_source):
        annotated, _, _ = service.annotate(de_results, table_source)
        # ENSG01.2 and ENSG04 tie at 0.001 and keep their input order
        assert annotated["gene_id"].tolist() == ["ENSG01.2", "ENSG04", "ENSG05", "ENSG03", "ENSG02", "ENSG06"]
        defined = annotated["padj"].dropna()
        assert defined.is_monotonic_increasing
        assert annotated["padj"].iloc[len(defined):].isna().all()

    def test_significant_matches_rule(self, service, de_results, table_source):
        annotated, stats, _ = service.annotate(de_results, table_source)
        expected = [
            (p == p) and p < 0.05 and (l == l) and abs(l) > 2
            for p, l in zip(annotated["padj"], annotated["log2FoldChange"])
        ]
        assert annotated["Significant"].tolist() == expected
        assert stats["n_significant"] == 2

    def test_unannotated_genes_kept_with_missing_symbol(self, service, de_results, table_source):
        annotated, _, _ = service.annotate(de_results, table_source)
        row = annotated.set_index("gene_id").loc["ENSG04"]
        assert pd.isna(row["symbol"])

    def test_first_duplicate_wins(self, service, de_results):
        source = TableAnnotationSource(
            pd.DataFrame({"gene_id": ["ENSG05", "ENSG05"], "symbol": ["FIRST", "SECOND"]})
        )
        annotated, stats, _ = service.annotate(de_results, source)
        assert annotated.set_index("gene_id").loc["ENSG05", "symbol"] == "FIRST"
        assert stats["n_duplicates_dropped"] == 1
        assert len(annotated) == len(de_results)

    def test_lookup_failure_wrapped(self, service, de_results):
        source = MagicMock()
        source.lookup.side_effect = ConnectionError("service unavailable")
        with pytest.raises(AnnotationError, match="service unavailable"):
            service.annotate(de_results, source)

    def test_provenance_records_policy(self, service, de_results, table_source):
        _, _, ir = service.annotate(de_results, table_source, label="HT55")
        assert ir.parameters["duplicate_policy"] == "first"
        assert ir.output_entities == ["annotated_results_HT55"]
