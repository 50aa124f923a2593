"""
End-to-end report pipeline.

Runs every stage once, strictly forward, and passes each stage's output
explicitly to the next:

    quantifications -> count matrix -> dataset -> normalization/QC
    -> per-cell-line differential expression -> annotation -> enrichment
    -> figures and tables -> HTML report

Input-integrity errors abort the run. A failure while drawing one artifact
replaces only that artifact with a placeholder.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from dereport.config.constants import ENRICHMENT_QVALUE_CUTOFF
from dereport.config.report_config import ReportConfig
from dereport.core.analysis_ir import AnalysisStep
from dereport.core.dataset import ExperimentDataset, build_dataset, load_sample_metadata
from dereport.services.analysis.annotation_service import (
    AnnotationService,
    AnnotationSource,
    MyGeneAnnotationSource,
    TableAnnotationSource,
)
from dereport.services.analysis.differential_expression_service import (
    DEEngine,
    DifferentialExpressionService,
    get_engine,
)
from dereport.services.analysis.enrichment_service import (
    EnrichmentBackend,
    EnrichmentError,
    EnrichmentService,
    empty_enrichment,
)
from dereport.services.data_access.quantification_service import QuantificationService
from dereport.services.quality.normalization_service import NormalizationService
from dereport.services.reporting.report_service import ReportSection, ReportService, ranked_table
from dereport.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
    padj_calls,
)
from dereport.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ReportResult:
    """Everything a run produced, for callers that want more than the document."""

    output_path: Path
    dataset: ExperimentDataset
    normalized: pd.DataFrame
    results: Dict[str, pd.DataFrame]
    enrichment: Dict[str, pd.DataFrame]
    stats: Dict[str, Any] = field(default_factory=dict)
    steps: List[AnalysisStep] = field(default_factory=list)


class ReportPipeline:
    """
    One report run for a ReportConfig.

    The annotation source, enrichment backend and DE engine default to what
    the configuration names and can be injected (offline runs, tests).
    """

    def __init__(
        self,
        config: ReportConfig,
        annotation_source: Optional[AnnotationSource] = None,
        enrichment_backend: Optional[EnrichmentBackend] = None,
        de_engine: Optional[DEEngine] = None,
    ):
        self.config = config
        self.annotation_source = annotation_source or self._default_annotation_source()
        self.de_engine = de_engine or get_engine(config.de_engine)

        self.quantification_service = QuantificationService(
            max_unmapped_fraction=config.max_unmapped_fraction
        )
        self.normalization_service = NormalizationService()
        self.de_service = DifferentialExpressionService(engine=self.de_engine)
        self.annotation_service = AnnotationService()
        self.enrichment_service = EnrichmentService(backend=enrichment_backend)
        self.visualization_service = BulkVisualizationService()
        self.report_service = ReportService()

    def _default_annotation_source(self) -> AnnotationSource:
        if self.config.annotation_source == "table":
            return TableAnnotationSource(self.config.annotation_table)
        return MyGeneAnnotationSource(species=self.config.species)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def load_inputs(self) -> Tuple[ExperimentDataset, Dict[str, Any], List[AnalysisStep]]:
        """
        Read metadata and quantifications and bind them into a dataset.

        This is the input-integrity stage: every MappingError,
        SampleMismatchError or MetadataError surfaces from here.
        """
        config = self.config
        metadata = load_sample_metadata(
            config.metadata_path,
            sample_column=config.sample_column,
            required_columns=(config.cell_line_column, config.condition_column),
        )
        metadata = metadata.rename(
            columns={config.cell_line_column: "cell_line", config.condition_column: "condition"}
        )

        counts, quant_stats, quant_ir = self.quantification_service.assemble_count_matrix(
            config.quant_dir, config.tx2gene_path, tool=config.quant_tool
        )
        dataset = build_dataset(counts, metadata, comparison_factor="condition")

        stats = {
            "quantification": quant_stats,
            "n_samples": len(dataset),
            "n_genes": len(dataset.gene_ids),
            "cell_lines": dataset.levels("cell_line"),
            "conditions": dataset.levels("condition"),
        }
        return dataset, stats, [quant_ir]

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def _figure(
        self,
        sections: List[ReportSection],
        steps: List[AnalysisStep],
        kind: str,
        heading: str,
        build: Callable[[], Tuple[Any, Dict[str, Any], AnalysisStep]],
        label: str = "",
    ) -> Dict[str, Any]:
        """Build one figure; a rendering failure becomes a failed section."""
        try:
            figure, stats, ir = build()
        except BulkVisualizationError as e:
            logger.error(f"{heading} ({label or 'all'}) could not be rendered: {e}")
            sections.append(ReportSection(kind=kind, heading=heading, content=str(e), label=label, failed=True))
            return {"failed": True, "error": str(e)}
        sections.append(ReportSection(kind=kind, heading=heading, content=figure, label=label))
        steps.append(ir)
        return stats

    def run(self) -> ReportResult:
        """
        Execute the pipeline and write the report.

        Returns:
            ReportResult with the written path, per-cell-line annotated
            results and enrichment tables, statistics and provenance steps
        """
        config = self.config
        steps: List[AnalysisStep] = []
        sections: List[ReportSection] = []
        stats: Dict[str, Any] = {}
        viz = self.visualization_service

        dataset, input_stats, input_steps = self.load_inputs()
        stats["inputs"] = input_stats
        steps.extend(input_steps)

        # Normalization and QC
        normalized, norm_stats, norm_ir = self.normalization_service.transform_counts(
            dataset, method=config.transform_method
        )
        summary, qc_stats, qc_ir = self.normalization_service.summarize_distributions(normalized)
        embedding, pca_stats, pca_ir = self.normalization_service.compute_embedding(
            normalized, dataset.metadata
        )
        steps.extend([norm_ir, qc_ir, pca_ir])
        stats["normalization"] = {**norm_stats, **qc_stats, "pca": pca_stats}

        self._figure(
            sections, steps, "box_plot", "Normalized expression distributions",
            lambda: viz.create_box_plot(normalized, dataset.metadata, summary),
        )
        self._figure(
            sections, steps, "pca_plot", "Sample similarity",
            lambda: viz.create_pca_plot(embedding, pca_stats["explained_variance_ratio"]),
        )

        # Differential expression, one independent model per cell line
        de_results, de_stats, de_steps = self.de_service.run_by_subpopulation(
            dataset,
            split_by="cell_line",
            test_level=config.test_level,
            reference_level=config.reference_level,
            min_total_count=config.min_total_count,
        )
        steps.extend(de_steps)
        stats["differential_expression"] = de_stats

        annotated_by_line: Dict[str, pd.DataFrame] = {}
        enrichment_by_line: Dict[str, pd.DataFrame] = {}
        stats["annotation"] = {}
        stats["enrichment"] = {}
        for cell_line, results in de_results.items():
            annotated, ann_stats, ann_ir = self.annotation_service.annotate(
                results, self.annotation_source, label=cell_line
            )
            annotated_by_line[cell_line] = annotated
            stats["annotation"][cell_line] = ann_stats
            steps.append(ann_ir)

            sections.append(
                ReportSection(
                    kind="ranked_table",
                    heading="Top genes by adjusted p-value",
                    content=ranked_table(annotated, config.table_rows),
                    label=cell_line,
                )
            )
            self._figure(
                sections, steps, "volcano_plot", "Volcano plot",
                lambda a=annotated, c=cell_line: viz.create_volcano_plot(
                    a, top_n_genes=config.top_n_genes, title=f"Volcano plot: {c}"
                ),
                label=cell_line,
            )
            self._figure(
                sections, steps, "expression_heatmap", f"Top {config.top_n_genes} genes",
                lambda a=annotated, c=cell_line: viz.create_expression_heatmap(
                    normalized, a, dataset.metadata, top_n_genes=config.top_n_genes,
                    title=f"Top {config.top_n_genes} genes: {c}",
                ),
                label=cell_line,
            )

            enrichment, enr_stats = self._enrich(annotated, cell_line, steps)
            enrichment_by_line[cell_line] = enrichment
            stats["enrichment"][cell_line] = enr_stats

            if enr_stats.get("failed"):
                for kind, heading in (
                    ("enrichment_dotplot", "GO Biological Process enrichment"),
                    ("category_dag", "Category relationships"),
                ):
                    sections.append(
                        ReportSection(
                            kind=kind, heading=heading, content=enr_stats["error"],
                            label=cell_line, failed=True,
                        )
                    )
                continue

            self._figure(
                sections, steps, "enrichment_dotplot", "GO Biological Process enrichment",
                lambda e=enrichment, c=cell_line: viz.create_enrichment_dotplot(
                    e, title=f"GO Biological Process enrichment: {c}"
                ),
                label=cell_line,
            )
            self._figure(
                sections, steps, "category_dag", "Category relationships",
                lambda e=enrichment, c=cell_line: viz.create_category_dag(
                    e, top_k=config.top_k_categories,
                    title=f"Top {config.top_k_categories} categories: {c}",
                ),
                label=cell_line,
            )

        # Overlap of padj-only calls between the first two cell lines
        lines = list(annotated_by_line)
        if len(lines) >= 2:
            a, b = lines[0], lines[1]
            stats["overlap"] = self._figure(
                sections, steps, "overlap_diagram", "Overlap of significant genes",
                lambda: viz.create_overlap_diagram(
                    padj_calls(annotated_by_line[a]), padj_calls(annotated_by_line[b]), a, b
                ),
            )

        sections.append(self.report_service.provenance_section(steps))
        output_path, report_stats, report_ir = self.report_service.render(
            sections,
            config.output_path,
            title=config.title,
            subtitle=f"{config.test_level} vs {config.reference_level}, by cell line",
        )
        steps.append(report_ir)
        stats["report"] = report_stats

        return ReportResult(
            output_path=output_path,
            dataset=dataset,
            normalized=normalized,
            results=annotated_by_line,
            enrichment=enrichment_by_line,
            stats=stats,
            steps=steps,
        )

    def _enrich(
        self, annotated: pd.DataFrame, cell_line: str, steps: List[AnalysisStep]
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """Enrichment for one cell line; a backend failure is confined to its sections."""
        significant = annotated.loc[annotated["Significant"], "gene_id"].tolist()
        universe = annotated.loc[annotated["baseMean"].notna(), "gene_id"].tolist()
        id_map = dict(zip(annotated["gene_id"], annotated["symbol"]))
        try:
            enrichment, enr_stats, enr_ir = self.enrichment_service.run_enrichment(
                significant,
                universe,
                id_map,
                gene_set_library=self.config.gene_set_library,
                organism=self.config.enrichr_organism,
                qvalue_cutoff=ENRICHMENT_QVALUE_CUTOFF,
                label=cell_line,
            )
        except EnrichmentError as e:
            logger.error(f"[{cell_line}] Enrichment failed, section left empty: {e}")
            return empty_enrichment(), {"failed": True, "error": str(e)}
        steps.append(enr_ir)
        return enrichment, enr_stats
