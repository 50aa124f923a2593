"""
Report assembly service.

Collects figures and tables into one self-contained HTML document. Sections
are always written in the report's fixed order regardless of the order in
which they were produced:

    box plot, PCA, ranked tables, volcano plots, heatmaps, overlap diagram,
    enrichment dot plots, category DAGs, provenance appendix
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pandas as pd
import plotly.graph_objects as go
from jinja2 import Environment, select_autoescape
from markupsafe import Markup

from dereport.config.constants import TABLE_ROWS
from dereport.core.analysis_ir import AnalysisStep, steps_to_frame
from dereport.utils.logger import get_logger

logger = get_logger(__name__)

SECTION_ORDER = (
    "box_plot",
    "pca_plot",
    "ranked_table",
    "volcano_plot",
    "expression_heatmap",
    "overlap_diagram",
    "enrichment_dotplot",
    "category_dag",
    "provenance",
)

TABLE_COLUMNS = ["gene_id", "symbol", "gene_name", "baseMean", "log2FoldChange", "padj", "Significant"]

DOCUMENT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<title>{{ title }}</title>
<style>
  body { font-family: -apple-system, "Segoe UI", Roboto, sans-serif; color: #2c3e50;
         max-width: 1100px; margin: 0 auto; padding: 0 20px 40px; line-height: 1.5; }
  h1 { border-bottom: 2px solid #2c3e50; padding-bottom: 8px; }
  h2 { margin-top: 40px; color: #34495e; }
  table.dereport { border-collapse: collapse; font-size: 13px; margin: 10px 0; }
  table.dereport th, table.dereport td { border: 1px solid #ddd; padding: 4px 8px; text-align: right; }
  table.dereport th { background: #f4f6f8; }
  .caption { color: #7f8c8d; font-size: 13px; }
  .empty { color: #95a5a6; font-style: italic; }
  .failed { color: #c0392b; }
</style>
</head>
<body>
<h1>{{ title }}</h1>
<p class="caption">Generated {{ generated }}{% if subtitle %} &middot; {{ subtitle }}{% endif %}</p>
{% for section in sections %}
<section id="{{ section.anchor }}">
  <h2>{{ section.heading }}</h2>
  {% if section.caption %}<p class="caption">{{ section.caption }}</p>{% endif %}
  {{ section.body }}
</section>
{% endfor %}
</body>
</html>
"""


class ReportError(Exception):
    """Base exception for report assembly."""

    pass


@dataclass
class ReportSection:
    """
    One artifact of the report.

    Attributes:
        kind: One of SECTION_ORDER
        heading: Section heading
        content: go.Figure, pd.DataFrame, or preformatted text
        label: Branch label (e.g. "HT55"); empty for whole-dataset artifacts
        caption: Optional explanatory line
        failed: True when the artifact could not be produced
    """

    kind: str
    heading: str
    content: Union[go.Figure, pd.DataFrame, str, None]
    label: str = ""
    caption: Optional[str] = None
    failed: bool = False

    def __post_init__(self):
        if self.kind not in SECTION_ORDER:
            raise ReportError(f"Unknown report section kind: '{self.kind}'")


def ranked_table(annotated: pd.DataFrame, n_rows: int = TABLE_ROWS) -> pd.DataFrame:
    """First n_rows of the sorted annotated results, with the reported columns."""
    columns = [c for c in TABLE_COLUMNS if c in annotated.columns]
    return annotated.head(n_rows)[columns].reset_index(drop=True)


class ReportService:
    """
    Stateless service rendering report sections into one HTML document.
    """

    def __init__(self):
        logger.debug("Initializing ReportService")
        self.environment = Environment(autoescape=select_autoescape(default=True))
        self.template = self.environment.from_string(DOCUMENT_TEMPLATE)

    def order_sections(self, sections: Sequence[ReportSection]) -> List[ReportSection]:
        """Sort into the fixed report order; same-kind sections keep their relative order."""
        return sorted(sections, key=lambda s: SECTION_ORDER.index(s.kind))

    def provenance_section(self, steps: Sequence[AnalysisStep]) -> ReportSection:
        """Methods appendix built from the collected provenance records."""
        return ReportSection(
            kind="provenance",
            heading="Provenance",
            content=steps_to_frame(list(steps)),
            caption="Operations in execution order, with library versions and parameters.",
        )

    def _render_body(self, section: ReportSection, include_plotlyjs: Union[bool, str]) -> Markup:
        if section.failed:
            message = section.content if isinstance(section.content, str) else "Artifact could not be rendered"
            return Markup('<p class="failed">{}</p>').format(message)

        content = section.content
        if isinstance(content, go.Figure):
            return Markup(content.to_html(full_html=False, include_plotlyjs=include_plotlyjs))
        if isinstance(content, pd.DataFrame):
            if content.empty:
                return Markup('<p class="empty">No rows.</p>')
            return Markup(
                content.to_html(
                    index=False,
                    na_rep="NA",
                    float_format=lambda v: f"{v:.4g}",
                    classes="dereport",
                    border=0,
                )
            )
        if content is None or content == "":
            return Markup('<p class="empty">Nothing to show.</p>')
        return Markup("<pre>{}</pre>").format(content)

    def render(
        self,
        sections: Sequence[ReportSection],
        output_path: Path,
        title: str = "Differential expression report",
        subtitle: Optional[str] = None,
    ) -> Tuple[Path, Dict[str, Any], AnalysisStep]:
        """
        Write all sections, in fixed order, to one HTML file.

        Plotly's JavaScript is embedded once, so the file opens offline.

        Returns:
            Tuple[Path, Dict[str, Any], AnalysisStep]: written path, section
            statistics, provenance record

        Raises:
            ReportError: If the document cannot be written
        """
        try:
            ordered = self.order_sections(sections)
            rendered = []
            plotlyjs_embedded = False
            for index, section in enumerate(ordered):
                is_figure = isinstance(section.content, go.Figure) and not section.failed
                body = self._render_body(
                    section, include_plotlyjs=is_figure and not plotlyjs_embedded
                )
                plotlyjs_embedded = plotlyjs_embedded or is_figure
                heading = f"{section.heading} ({section.label})" if section.label else section.heading
                rendered.append(
                    {
                        "anchor": f"{section.kind}-{index}",
                        "heading": heading,
                        "caption": section.caption,
                        "body": body,
                    }
                )

            html = self.template.render(
                title=title,
                subtitle=subtitle,
                generated=datetime.now().strftime("%Y-%m-%d %H:%M"),
                sections=rendered,
            )

            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(html, encoding="utf-8")

        except Exception as e:
            if isinstance(e, ReportError):
                raise
            logger.exception(f"Error rendering report: {e}")
            raise ReportError(f"Report rendering failed: {str(e)}") from e

        stats = {
            "output_path": str(output_path),
            "n_sections": len(ordered),
            "n_failed": sum(1 for s in ordered if s.failed),
            "section_order": [s.kind for s in ordered],
        }
        logger.info(f"Report written to {output_path} ({len(ordered)} sections)")

        ir = AnalysisStep(
            operation="report.render_html",
            tool_name="ReportService.render",
            description="Self-contained HTML report",
            library="jinja2",
            parameters={"title": title},
            output_entities=[str(output_path)],
        )
        return output_path, stats, ir
