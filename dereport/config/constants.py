"""
Fixed analysis constants.

This module is the single source of truth for the significance rule and the
artifact sizes of the report. The thresholds are preserved exactly as the
analysis defines them; they are not derived from the data.
"""

from typing import Final, List

# Significant = padj < PADJ_THRESHOLD and |log2FoldChange| > LOG2FC_THRESHOLD
PADJ_THRESHOLD: Final[float] = 0.05
LOG2FC_THRESHOLD: Final[float] = 2.0

# Report artifact sizes
TABLE_ROWS: Final[int] = 6
TOP_N_GENES: Final[int] = 10
TOP_K_CATEGORIES: Final[int] = 5

# Enrichment
ENRICHMENT_QVALUE_CUTOFF: Final[float] = 0.05
GO_BIOLOGICAL_PROCESS_LIBRARY: Final[str] = "GO_Biological_Process_2023"

# Canonical column names
RESULT_COLUMNS: Final[List[str]] = [
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
]
ANNOTATION_COLUMNS: Final[List[str]] = ["gene_id", "symbol", "gene_name", "entrez_id"]
ENRICHMENT_COLUMNS: Final[List[str]] = [
    "term_id",
    "term_name",
    "count",
    "term_size",
    "gene_ratio",
    "bg_ratio",
    "pvalue",
    "padj",
    "genes",
]

VALID_QUANT_TOOLS: Final[List[str]] = ["auto", "salmon", "kallisto"]
VALID_DE_ENGINES: Final[List[str]] = ["pydeseq2", "deseq2_like"]
VALID_TRANSFORMS: Final[List[str]] = ["vst", "log2"]
VALID_ANNOTATION_SOURCES: Final[List[str]] = ["mygene", "table"]
