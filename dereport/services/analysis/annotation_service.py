"""
Gene annotation service.

Joins human-readable symbols, names and Entrez ids onto differential
expression results and produces the canonical tidy result: every gene kept,
sorted by ascending padj (undefined last), with the Significant call.
"""

from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from dereport.config.constants import ANNOTATION_COLUMNS, LOG2FC_THRESHOLD, PADJ_THRESHOLD
from dereport.core.analysis_ir import AnalysisStep
from dereport.core.exceptions import InputIntegrityError
from dereport.utils.logger import get_logger

logger = get_logger(__name__)


class AnnotationError(Exception):
    """Base exception for annotation operations."""

    pass


class AnnotationTableError(AnnotationError, InputIntegrityError):
    """Raised when a local annotation table is missing or malformed."""

    pass


def unversioned(gene_id: str) -> str:
    """Drop a trailing Ensembl version suffix ("ENSG00000141510.17" -> "ENSG00000141510")."""
    head, sep, tail = str(gene_id).rpartition(".")
    return head if sep and tail.isdigit() else str(gene_id)


def call_significance(padj, log2_fold_change):
    """
    Significant = padj defined and padj < 0.05 and |log2FoldChange| > 2.

    Works element-wise on Series (returns a boolean Series with the same
    index) or on scalars (returns a bool). Undefined inputs are never
    significant.
    """
    padj_values = np.asarray(padj, dtype=float)
    lfc_values = np.asarray(log2_fold_change, dtype=float)
    with np.errstate(invalid="ignore"):
        called = (
            ~np.isnan(padj_values)
            & ~np.isnan(lfc_values)
            & (padj_values < PADJ_THRESHOLD)
            & (np.abs(lfc_values) > LOG2FC_THRESHOLD)
        )
    if isinstance(padj, pd.Series):
        return pd.Series(called, index=padj.index, name="Significant")
    if np.ndim(called) == 0:
        return bool(called)
    return called


class AnnotationSource(Protocol):
    """Protocol for gene annotation lookups."""

    def lookup(self, gene_ids: Sequence[str]) -> pd.DataFrame:
        """
        Annotate gene ids.

        Returns:
            DataFrame with gene_id, symbol, gene_name, entrez_id in the
            source's own order. gene_id holds the requested identifier; a
            gene may appear more than once if the source has several records.
        """
        ...


class MyGeneAnnotationSource:
    """
    Annotation from MyGene.info.

    Ensembl gene ids are queried without their version suffix and mapped back
    to the requested ids. Multiple hits for one id are all returned, in
    MyGene.info's order.
    """

    FIELDS = "symbol,name,entrezgene"

    def __init__(self, species: str = "human", scopes: str = "ensembl.gene", batch_size: int = 1000):
        self.species = species
        self.scopes = scopes
        self.batch_size = batch_size

    def lookup(self, gene_ids: Sequence[str]) -> pd.DataFrame:
        import mygene

        by_query: Dict[str, List[str]] = {}
        for gene_id in gene_ids:
            by_query.setdefault(unversioned(gene_id), []).append(str(gene_id))
        queries = list(by_query)

        mg = mygene.MyGeneInfo()
        logger.info(f"Querying MyGene.info for {len(queries)} genes ({self.species})")

        rows = []
        for start in range(0, len(queries), self.batch_size):
            batch = queries[start : start + self.batch_size]
            hits = mg.querymany(
                batch,
                scopes=self.scopes,
                fields=self.FIELDS,
                species=self.species,
                verbose=False,
            )
            for hit in hits:
                if hit.get("notfound"):
                    continue
                for gene_id in by_query.get(str(hit.get("query")), []):
                    rows.append(
                        {
                            "gene_id": gene_id,
                            "symbol": hit.get("symbol"),
                            "gene_name": hit.get("name"),
                            "entrez_id": hit.get("entrezgene"),
                        }
                    )

        return pd.DataFrame(rows, columns=ANNOTATION_COLUMNS)


class TableAnnotationSource:
    """
    Annotation from a local table (TSV/CSV or DataFrame).

    The table needs a gene_id column plus any of symbol, gene_name,
    entrez_id. Ids are matched without version suffixes.
    """

    def __init__(self, table: Union[Path, str, pd.DataFrame]):
        if isinstance(table, pd.DataFrame):
            frame = table.copy()
        else:
            path = Path(table)
            if not path.exists():
                raise AnnotationTableError(
                    f"Annotation table not found: {path}", details={"path": str(path)}
                )
            sep = "," if path.suffix.lower() == ".csv" else "\t"
            frame = pd.read_csv(path, sep=sep, dtype=str)

        if "gene_id" not in frame.columns:
            raise AnnotationTableError(
                "Annotation table needs a 'gene_id' column",
                details={"columns": list(frame.columns)},
            )
        for column in ANNOTATION_COLUMNS:
            if column not in frame.columns:
                frame[column] = None
        frame = frame[ANNOTATION_COLUMNS].copy()
        frame["_key"] = frame["gene_id"].map(unversioned)
        self.table = frame

    def lookup(self, gene_ids: Sequence[str]) -> pd.DataFrame:
        requested = pd.DataFrame({"requested": [str(g) for g in gene_ids]})
        requested["_key"] = requested["requested"].map(unversioned)
        # Left side is the table so the source's row order is kept
        matched = self.table.drop(columns="gene_id").merge(requested, on="_key", how="inner")
        matched = matched.rename(columns={"requested": "gene_id"})
        return matched[ANNOTATION_COLUMNS].reset_index(drop=True)


class AnnotationService:
    """
    Stateless service producing the annotated, sorted result table.
    """

    def __init__(self):
        logger.debug("Initializing stateless AnnotationService")

    def annotate(
        self,
        results: pd.DataFrame,
        source: AnnotationSource,
        label: str = "",
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Attach annotation to results, sort by padj and call significance.

        Steps, in order: left join (no row dropped or added), duplicate
        annotation records dropped with the first occurrence kept, stable
        ascending sort on padj with undefined values last, Significant
        computed from padj and log2FoldChange.

        Args:
            results: Differential expression results with a gene_id column
            source: Annotation lookup
            label: Branch label for logs and provenance

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Annotated
            results, join statistics, provenance record

        Raises:
            AnnotationError: If the lookup or the join fails
        """
        try:
            gene_ids = results["gene_id"].astype(str).tolist()
            records = source.lookup(gene_ids) if gene_ids else pd.DataFrame(columns=ANNOTATION_COLUMNS)
            records = records.reindex(columns=ANNOTATION_COLUMNS)
            records["gene_id"] = records["gene_id"].astype(str)

            duplicated = records["gene_id"].duplicated(keep="first")
            n_duplicates = int(duplicated.sum())
            if n_duplicates:
                logger.warning(
                    f"[{label}] {n_duplicates} duplicate annotation records dropped, first kept "
                    f"(e.g. {', '.join(records.loc[duplicated, 'gene_id'].head(3))}); "
                    "the surviving record depends on the annotation source's ordering"
                )
            records = records.loc[~duplicated]

            annotated = results.merge(records, on="gene_id", how="left", validate="one_to_one")
            annotated = annotated.sort_values(
                "padj", ascending=True, na_position="last", kind="mergesort"
            ).reset_index(drop=True)
            annotated["Significant"] = call_significance(
                annotated["padj"], annotated["log2FoldChange"]
            ).to_numpy()

        except Exception as e:
            if isinstance(e, AnnotationError):
                raise
            logger.exception(f"[{label}] Error annotating results: {e}")
            raise AnnotationError(f"Annotation failed: {str(e)}") from e

        stats = {
            "n_genes": int(len(annotated)),
            "n_annotated": int(annotated["symbol"].notna().sum()),
            "n_duplicates_dropped": n_duplicates,
            "n_significant": int(annotated["Significant"].sum()),
        }
        logger.info(
            f"[{label}] Annotated {stats['n_annotated']} of {stats['n_genes']} genes"
        )

        ir = AnalysisStep(
            operation="annotation.left_join",
            tool_name="AnnotationService.annotate",
            description=f"Gene annotation via {type(source).__name__} ({label})".replace(" ()", ""),
            library="mygene" if isinstance(source, MyGeneAnnotationSource) else "pandas",
            parameters={
                "duplicate_policy": "first",
                "sort": "padj ascending, NaN last",
                "padj_threshold": PADJ_THRESHOLD,
                "log2fc_threshold": LOG2FC_THRESHOLD,
            },
            input_entities=[f"de_results_{label}"],
            output_entities=[f"annotated_results_{label}"],
        )
        return annotated, stats, ir
