"""
Pathway enrichment service.

Over-representation of GO Biological Process categories among the
significant genes of one comparison, tested against the universe of all
tested genes. The test itself is delegated to an EnrichmentBackend; the
default backend is Enrichr through GSEApy.
"""

import re
import warnings
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import numpy as np
import pandas as pd

from dereport.config.constants import (
    ENRICHMENT_COLUMNS,
    ENRICHMENT_QVALUE_CUTOFF,
    GO_BIOLOGICAL_PROCESS_LIBRARY,
)
from dereport.core.analysis_ir import AnalysisStep
from dereport.core.exceptions import EmptyResultWarning
from dereport.utils.logger import get_logger

logger = get_logger(__name__)

# "regulation of apoptotic process (GO:0042981)"
GO_TERM_PATTERN = re.compile(r"^(?P<name>.*?)\s*\((?P<id>GO:\d+)\)\s*$")


class EnrichmentError(Exception):
    """Base exception for enrichment operations."""

    pass


class EnrichmentBackend(Protocol):
    """Protocol for over-representation test backends."""

    def enrich(
        self,
        genes: List[str],
        universe: List[str],
        gene_set_library: str,
        organism: str,
    ) -> pd.DataFrame:
        """
        Test genes for over-represented categories against universe.

        Returns:
            DataFrame in Enrichr's layout: Term, Overlap ("k/n"), P-value,
            Adjusted P-value, Genes (";"-joined). All tested categories,
            unfiltered.
        """
        ...


class EnrichrBackend:
    """Enrichr libraries tested locally by GSEApy against an explicit background."""

    library = "gseapy"

    def enrich(self, genes, universe, gene_set_library, organism):
        import gseapy as gp

        enr = gp.enrichr(
            gene_list=list(genes),
            gene_sets=[gene_set_library],
            organism=organism,
            background=list(universe),
            cutoff=1.0,
            outdir=None,
            no_plot=True,
        )
        if enr.results is None:
            return pd.DataFrame(columns=["Term", "Overlap", "P-value", "Adjusted P-value", "Genes"])
        return enr.results.copy()


def empty_enrichment() -> pd.DataFrame:
    """Well-formed enrichment table without rows."""
    return pd.DataFrame({column: pd.Series(dtype=object) for column in ENRICHMENT_COLUMNS})


def split_term(term: str) -> Tuple[str, str]:
    """Split an Enrichr GO term label into (term_id, term_name)."""
    match = GO_TERM_PATTERN.match(str(term))
    if match:
        return match.group("id"), match.group("name")
    return str(term), str(term)


def remap_identifiers(gene_ids: Sequence[str], id_map: Mapping[str, Any]) -> List[str]:
    """Map ids through id_map, dropping unmapped ids and repeats, keeping first-seen order."""
    seen = set()
    mapped = []
    for gene_id in gene_ids:
        value = id_map.get(gene_id)
        if value is None or (isinstance(value, float) and np.isnan(value)) or value == "":
            continue
        value = str(value)
        if value not in seen:
            seen.add(value)
            mapped.append(value)
    return mapped


class EnrichmentService:
    """
    Stateless orchestration of GO Biological Process over-representation.
    """

    def __init__(self, backend: Optional[EnrichmentBackend] = None):
        self.backend = backend if backend is not None else EnrichrBackend()
        logger.debug(f"Initializing EnrichmentService with backend {type(self.backend).__name__}")

    def run_enrichment(
        self,
        significant_ids: Sequence[str],
        universe_ids: Sequence[str],
        id_map: Mapping[str, Any],
        gene_set_library: str = GO_BIOLOGICAL_PROCESS_LIBRARY,
        organism: str = "human",
        qvalue_cutoff: float = ENRICHMENT_QVALUE_CUTOFF,
        label: str = "",
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Test the significant genes for enriched categories.

        Ids are remapped to symbols (the identifier system of the gene set
        library) before testing; the universe is remapped the same way.

        Args:
            significant_ids: Gene ids called significant
            universe_ids: All tested gene ids
            id_map: gene id -> symbol
            gene_set_library: Enrichr library name
            organism: Enrichr organism
            qvalue_cutoff: Largest adjusted p-value kept
            label: Branch label for logs and provenance

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Enriched
            categories ranked by adjusted p-value (term_id, term_name, count,
            term_size, gene_ratio, bg_ratio, pvalue, padj, genes); statistics;
            provenance record. The table is empty, with EmptyResultWarning,
            when no gene survives remapping or no category passes the cutoff.

        Raises:
            EnrichmentError: If the backend fails
        """
        universe = remap_identifiers(universe_ids, id_map)
        universe_set = set(universe)
        genes = [g for g in remap_identifiers(significant_ids, id_map) if g in universe_set]

        stats: Dict[str, Any] = {
            "label": label,
            "gene_set_library": gene_set_library,
            "n_significant_input": len(list(significant_ids)),
            "n_genes_mapped": len(genes),
            "n_universe_mapped": len(universe),
            "n_terms_tested": 0,
            "n_terms_significant": 0,
        }
        ir = self._create_ir(gene_set_library, organism, qvalue_cutoff, genes, universe, label)

        if not genes:
            self._warn_empty(f"[{label}] No significant genes left after remapping to symbols")
            return empty_enrichment(), stats, ir

        try:
            logger.info(
                f"[{label}] Enrichment of {len(genes)} genes against {len(universe)} "
                f"background genes ({gene_set_library})"
            )
            raw = self.backend.enrich(genes, universe, gene_set_library, organism)
            results = self._tidy(raw, n_query=len(genes), n_universe=len(universe))
        except Exception as e:
            if isinstance(e, EnrichmentError):
                raise
            logger.exception(f"[{label}] Error in enrichment analysis: {e}")
            raise EnrichmentError(f"Enrichment analysis failed: {str(e)}") from e

        stats["n_terms_tested"] = int(len(results))
        results = results[results["padj"] <= qvalue_cutoff].reset_index(drop=True)
        stats["n_terms_significant"] = int(len(results))
        stats["top_terms"] = results["term_name"].head(5).tolist()

        if results.empty:
            self._warn_empty(f"[{label}] No category passes q <= {qvalue_cutoff}")
            return empty_enrichment(), stats, ir

        logger.info(f"[{label}] {len(results)} enriched categories")
        return results, stats, ir

    def _warn_empty(self, message: str) -> None:
        logger.warning(message)
        warnings.warn(message, EmptyResultWarning, stacklevel=3)

    def _tidy(self, raw: pd.DataFrame, n_query: int, n_universe: int) -> pd.DataFrame:
        """Convert Enrichr's layout into the enrichment result columns."""
        if raw is None or raw.empty:
            return empty_enrichment()

        overlap = raw["Overlap"].astype(str).str.split("/", expand=True)
        ids_names = [split_term(term) for term in raw["Term"]]
        counts = overlap[0].astype(int).to_numpy()
        term_sizes = overlap[1].astype(int).to_numpy()

        results = pd.DataFrame(
            {
                "term_id": [i for i, _ in ids_names],
                "term_name": [n for _, n in ids_names],
                "count": counts,
                "term_size": term_sizes,
                "gene_ratio": counts / n_query,
                "bg_ratio": term_sizes / n_universe,
                "pvalue": raw["P-value"].astype(float).to_numpy(),
                "padj": raw["Adjusted P-value"].astype(float).to_numpy(),
                "genes": raw["Genes"].astype(str).to_numpy(),
            }
        )
        return results.sort_values(["padj", "pvalue"], kind="mergesort").reset_index(drop=True)

    def _create_ir(self, library, organism, cutoff, genes, universe, label) -> AnalysisStep:
        return AnalysisStep(
            operation="gseapy.enrichr",
            tool_name="EnrichmentService.run_enrichment",
            description=f"Over-representation test, {library} ({label})".replace(" ()", ""),
            library=getattr(self.backend, "library", "gseapy"),
            parameters={
                "gene_sets": library,
                "organism": organism,
                "qvalue_cutoff": cutoff,
                "gene_list": list(genes),
                "background_size": len(universe),
            },
            input_entities=[f"annotated_results_{label}"],
            output_entities=[f"enrichment_{label}"],
        )
