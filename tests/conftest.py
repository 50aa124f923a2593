"""
Pytest configuration and fixtures for dereport testing.

Fixtures build small, deterministic inputs: quantification trees under
tmp_path, count matrices, metadata, annotated result tables and enrichment
tables. External services (MyGene.info, Enrichr) are never contacted.
"""

import logging
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
import pytest

from dereport.core.dataset import build_dataset

logging.getLogger("anndata").setLevel(logging.ERROR)

CELL_LINES = ["HT55", "SW948"]
CONDITIONS = ["control", "treated"]
N_GENES = 50
N_REPLICATES = 3

# Genes with a 16-fold change in one cell line only
SW948_UP = [0, 1, 2, 3, 4]
HT55_DOWN = [5, 6, 7, 8, 9]


# ==============================================================================
# Pytest Configuration Hooks
# ==============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ==============================================================================
# Helpers
# ==============================================================================


def gene_id(i: int) -> str:
    return f"ENSG{i:011d}"


def transcript_id(i: int, j: int) -> str:
    return f"ENST{i:09d}{j:02d}"


def write_salmon_sample(sample_dir: Path, counts: Dict[str, float]) -> Path:
    """Write a minimal quant.sf for one sample."""
    sample_dir.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        {
            "Name": list(counts),
            "Length": 1500,
            "EffectiveLength": 1350.0,
            "TPM": 1.0,
            "NumReads": list(counts.values()),
        }
    )
    path = sample_dir / "quant.sf"
    frame.to_csv(path, sep="\t", index=False)
    return path


def write_kallisto_sample(sample_dir: Path, counts: Dict[str, float]) -> Path:
    """Write a minimal abundance.tsv for one sample."""
    sample_dir.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        {
            "target_id": list(counts),
            "length": 1500,
            "eff_length": 1350.0,
            "est_counts": list(counts.values()),
            "tpm": 1.0,
        }
    )
    path = sample_dir / "abundance.tsv"
    frame.to_csv(path, sep="\t", index=False)
    return path


def toy_gene_counts(seed: int = 42) -> pd.DataFrame:
    """
    Genes x samples counts for 2 cell lines x 2 conditions x 3 replicates.

    SW948_UP genes rise 16-fold with treatment in SW948 only; HT55_DOWN genes
    fall 16-fold with treatment in HT55 only. All other genes are null.
    """
    rng = np.random.default_rng(seed)
    base = rng.uniform(100, 400, N_GENES)
    columns = {}
    for cell_line in CELL_LINES:
        for condition in CONDITIONS:
            for rep in range(1, N_REPLICATES + 1):
                mean = base.copy()
                if condition == "treated" and cell_line == "SW948":
                    mean[SW948_UP] *= 16
                if condition == "control" and cell_line == "HT55":
                    mean[HT55_DOWN] *= 16
                columns[f"{cell_line}_{condition}_{rep}"] = rng.poisson(mean)
    return pd.DataFrame(columns, index=[gene_id(i) for i in range(N_GENES)])


def toy_metadata(samples: List[str]) -> pd.DataFrame:
    rows = [s.split("_") for s in samples]
    metadata = pd.DataFrame(
        {
            "cell_line": [r[0] for r in rows],
            "condition": [r[1] for r in rows],
        },
        index=pd.Index(samples, name="sample_id"),
    )
    for column in ("cell_line", "condition"):
        metadata[column] = metadata[column].astype("category")
    return metadata


# ==============================================================================
# Data Fixtures
# ==============================================================================


@pytest.fixture
def gene_counts() -> pd.DataFrame:
    return toy_gene_counts()


@pytest.fixture
def sample_metadata(gene_counts) -> pd.DataFrame:
    return toy_metadata(list(gene_counts.columns))


@pytest.fixture
def dataset(gene_counts, sample_metadata):
    return build_dataset(gene_counts, sample_metadata)


@pytest.fixture
def annotation_frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "gene_id": [gene_id(i) for i in range(N_GENES)],
            "symbol": [f"GENE{i}" for i in range(N_GENES)],
            "gene_name": [f"gene number {i}" for i in range(N_GENES)],
            "entrez_id": [str(1000 + i) for i in range(N_GENES)],
        }
    )


@pytest.fixture
def annotated_results() -> pd.DataFrame:
    """Annotated, padj-sorted results with significant, null and undefined rows."""
    frame = pd.DataFrame(
        {
            "gene_id": [gene_id(i) for i in range(8)],
            "baseMean": [500.0, 300.0, 250.0, 200.0, 150.0, 100.0, np.nan, 50.0],
            "log2FoldChange": [4.1, -3.2, 2.5, 0.4, -0.2, 1.0, np.nan, 3.0],
            "lfcSE": [0.3, 0.3, 0.4, 0.5, 0.5, 0.6, np.nan, np.nan],
            "stat": [13.0, -10.0, 6.0, 0.8, -0.4, 1.6, np.nan, np.nan],
            "pvalue": [1e-12, 1e-9, 1e-5, 0.4, 0.7, 0.1, np.nan, np.nan],
            "padj": [1e-10, 1e-8, 1e-4, 0.6, 0.8, 0.2, np.nan, np.nan],
            "symbol": ["MYC", "CDKN1A", None, "GAPDH", "ACTB", "TP53", "EGFR", "KRAS"],
            "gene_name": ["myc", "p21", None, "gapdh", "actin", "p53", "egfr", "kras"],
            "entrez_id": ["4609", "1026", None, "2597", "60", "7157", "1956", "3845"],
        }
    )
    frame["Significant"] = [True, True, True, False, False, False, False, False]
    return frame


@pytest.fixture
def enrichment_table() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "term_id": ["GO:0000001", "GO:0000002", "GO:0000003", "GO:0000004"],
            "term_name": ["cell cycle", "mitotic cell cycle", "DNA replication", "apoptotic process"],
            "count": [4, 3, 2, 1],
            "term_size": [400, 200, 100, 300],
            "gene_ratio": [0.8, 0.6, 0.4, 0.2],
            "bg_ratio": [0.2, 0.1, 0.05, 0.15],
            "pvalue": [1e-6, 1e-5, 1e-4, 1e-3],
            "padj": [1e-5, 1e-4, 1e-3, 1e-2],
            "genes": ["MYC;CDK1;CCNB1;E2F1", "CDK1;CCNB1;PLK1", "MCM2;E2F1", "BAX"],
        }
    )


# ==============================================================================
# Project Fixtures
# ==============================================================================


@pytest.fixture
def toy_project(tmp_path, gene_counts, annotation_frame) -> Dict[str, Path]:
    """
    Complete on-disk project: salmon quant tree, tx2gene, metadata,
    annotation table. Each gene's count is split over two versioned
    transcripts; one extra transcript per sample has no gene mapping.
    """
    quant_dir = tmp_path / "quants"
    tx_rows = []
    for i in range(N_GENES):
        for j in (1, 2):
            tx_rows.append({"transcript_id": transcript_id(i, j), "gene_id": gene_id(i)})

    for sample in gene_counts.columns:
        counts = {}
        for i in range(N_GENES):
            total = int(gene_counts.loc[gene_id(i), sample])
            first = total // 2
            counts[f"{transcript_id(i, 1)}.3"] = float(first)
            counts[f"{transcript_id(i, 2)}.1"] = float(total - first)
        counts["ENST99999999999.1"] = 7.0
        write_salmon_sample(quant_dir / sample, counts)

    tx2gene_path = tmp_path / "tx2gene.tsv"
    pd.DataFrame(tx_rows).to_csv(tx2gene_path, sep="\t", index=False)

    metadata_path = tmp_path / "samples.tsv"
    toy_metadata(list(gene_counts.columns)).reset_index().to_csv(metadata_path, sep="\t", index=False)

    annotation_path = tmp_path / "annotation.tsv"
    annotation_frame.to_csv(annotation_path, sep="\t", index=False)

    return {
        "root": tmp_path,
        "quant_dir": quant_dir,
        "tx2gene": tx2gene_path,
        "metadata": metadata_path,
        "annotation": annotation_path,
    }


@pytest.fixture
def salmon_writer():
    return write_salmon_sample


@pytest.fixture
def kallisto_writer():
    return write_kallisto_sample
