"""
Bulk RNA-seq visualization service for the differential expression report.

Static-report figures built with Plotly: QC box plot and PCA scatter,
volcano plot, top-gene heatmap, two-set overlap diagram, enrichment dot plot
and a category-relationship DAG. Every figure degrades to a labelled
placeholder when its input is empty or entirely undefined.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from dereport.config.constants import (
    LOG2FC_THRESHOLD,
    PADJ_THRESHOLD,
    TOP_K_CATEGORIES,
    TOP_N_GENES,
)
from dereport.core.analysis_ir import AnalysisStep
from dereport.utils.logger import get_logger

logger = get_logger(__name__)


class BulkVisualizationError(Exception):
    """Base exception for bulk RNA-seq visualization operations."""

    pass


def display_labels(annotated: pd.DataFrame) -> pd.Series:
    """Symbol per row, falling back to the gene id when there is no symbol."""
    if "symbol" not in annotated.columns:
        return annotated["gene_id"].astype(str)
    symbols = annotated["symbol"].astype(object)
    missing = symbols.isna() | (symbols.astype(str).str.strip() == "")
    return symbols.where(~missing, annotated["gene_id"]).astype(str)


def top_genes(annotated: pd.DataFrame, n: int = TOP_N_GENES) -> pd.DataFrame:
    """First n rows with a defined padj, in ascending padj order."""
    defined = annotated[annotated["padj"].notna()]
    return defined.sort_values("padj", kind="mergesort").head(n)


def padj_calls(annotated: pd.DataFrame, threshold: float = PADJ_THRESHOLD) -> pd.Series:
    """Boolean vector indexed by gene id: padj < threshold (undefined -> False)."""
    values = annotated.set_index("gene_id")["padj"]
    return (values < threshold).fillna(False).astype(bool)


class BulkVisualizationService:
    """
    Visualization service for the report's figures.

    Each create_* method returns (figure, statistics, AnalysisStep) and
    raises BulkVisualizationError on malformed input. Empty input is not
    an error: the figure is a placeholder and statistics carry empty=True.
    """

    def __init__(self):
        logger.debug("Initializing BulkVisualizationService")

        self.significance_colors = {
            "significant": "#d62728",
            "not_significant": "lightgray",
        }
        self.condition_colors = px.colors.qualitative.Set2
        self.sequential_colors = "Viridis_r"

        self.default_width = 900
        self.default_height = 700
        self.default_marker_size = 6
        self.default_opacity = 0.7

    # -------------------------
    # PLACEHOLDER
    # -------------------------

    def create_placeholder(self, title: str, message: str) -> go.Figure:
        """Empty figure that states why there is nothing to show."""
        fig = go.Figure()
        fig.add_annotation(
            text=message,
            x=0.5,
            y=0.5,
            xref="paper",
            yref="paper",
            showarrow=False,
            font=dict(size=16, color="gray"),
        )
        fig.update_layout(
            title=title,
            width=self.default_width,
            height=self.default_height // 2,
            plot_bgcolor="white",
        )
        fig.update_xaxes(visible=False)
        fig.update_yaxes(visible=False)
        return fig

    def _empty(self, plot_type: str, title: str, message: str) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        logger.warning(f"{title}: {message}")
        return (
            self.create_placeholder(title, message),
            {"plot_type": plot_type, "empty": True, "reason": message},
            self._plot_ir(plot_type, title, {}),
        )

    # -------------------------
    # QC
    # -------------------------

    def create_box_plot(
        self,
        normalized: pd.DataFrame,
        metadata: pd.DataFrame,
        summary: Optional[pd.DataFrame] = None,
        title: str = "Normalized expression per sample",
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Box plot of normalized values per sample, colored by condition.

        Samples flagged in `summary` are marked with an asterisk.
        """
        try:
            if normalized.empty or normalized.isna().all().all():
                return self._empty("box_plot", title, "No normalized values")

            flagged = set()
            if summary is not None and "flagged" in summary.columns:
                flagged = set(summary.index[summary["flagged"].astype(bool)])

            conditions = sorted(metadata["condition"].astype(str).unique()) if "condition" in metadata else []
            palette = {c: self.condition_colors[i % len(self.condition_colors)] for i, c in enumerate(conditions)}

            fig = go.Figure()
            for sample in normalized.columns:
                condition = str(metadata.loc[sample, "condition"]) if "condition" in metadata else ""
                cell_line = str(metadata.loc[sample, "cell_line"]) if "cell_line" in metadata else ""
                name = f"{sample}*" if sample in flagged else str(sample)
                fig.add_trace(
                    go.Box(
                        y=normalized[sample].dropna().to_numpy(),
                        name=name,
                        marker_color=palette.get(condition, "steelblue"),
                        boxpoints=False,
                        legendgroup=condition,
                        hovertext=f"{cell_line} / {condition}",
                        showlegend=False,
                    )
                )

            fig.update_layout(
                title=title + (" (* median outlier)" if flagged else ""),
                xaxis_title="Sample",
                yaxis_title="Normalized expression",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )
            fig.update_xaxes(tickangle=45)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray")

            stats = {"plot_type": "box_plot", "n_samples": normalized.shape[1], "flagged": sorted(flagged)}
            return fig, stats, self._plot_ir("box_plot", title, {})

        except Exception as e:
            logger.error(f"Error creating box plot: {e}")
            raise BulkVisualizationError(f"Failed to create box plot: {str(e)}") from e

    def create_pca_plot(
        self,
        embedding: pd.DataFrame,
        explained_variance_ratio: Sequence[float] = (0.0, 0.0),
        title: str = "Sample similarity (PCA)",
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """PC1 vs PC2 scatter, colored by cell line with condition as marker symbol."""
        try:
            if embedding.empty or embedding[["PC1", "PC2"]].isna().all().all():
                return self._empty("pca_plot", title, "No samples to embed")

            frame = embedding.reset_index().rename(columns={embedding.index.name or "index": "sample"})
            fig = px.scatter(
                frame,
                x="PC1",
                y="PC2",
                color="cell_line" if "cell_line" in frame else None,
                symbol="condition" if "condition" in frame else None,
                hover_name="sample",
                color_discrete_sequence=self.condition_colors,
            )
            fig.update_traces(marker=dict(size=14, line=dict(width=1, color="black")))
            fig.update_layout(
                title=title,
                xaxis_title=f"PC1 ({explained_variance_ratio[0]:.1%} variance)",
                yaxis_title=f"PC2 ({explained_variance_ratio[1]:.1%} variance)",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray", zeroline=True)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {"plot_type": "pca_plot", "n_samples": len(frame)}
            return fig, stats, self._plot_ir("pca_plot", title, {})

        except Exception as e:
            logger.error(f"Error creating PCA plot: {e}")
            raise BulkVisualizationError(f"Failed to create PCA plot: {str(e)}") from e

    # -------------------------
    # DIFFERENTIAL EXPRESSION
    # -------------------------

    def create_volcano_plot(
        self,
        annotated: pd.DataFrame,
        top_n_genes: int = TOP_N_GENES,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Volcano plot at (log2FoldChange, -log10(padj)), colored by Significant.

        The top_n_genes rows by ascending padj are labelled with their symbol
        (gene id when no symbol). Genes with undefined padj or fold change
        are not drawn.

        Raises:
            BulkVisualizationError: If required columns are missing
        """
        title = title or "Volcano plot"
        try:
            required = ["gene_id", "log2FoldChange", "padj", "Significant"]
            missing = [c for c in required if c not in annotated.columns]
            if missing:
                raise BulkVisualizationError(f"Missing required columns: {missing}")

            drawable = annotated[annotated["padj"].notna() & annotated["log2FoldChange"].notna()]
            if drawable.empty:
                return self._empty("volcano_plot", title, "No gene has a defined adjusted p-value")

            labels = display_labels(drawable).to_numpy()
            log2fc = drawable["log2FoldChange"].to_numpy(dtype=float)
            neg_log_padj = -np.log10(drawable["padj"].to_numpy(dtype=float) + 1e-300)
            significant = drawable["Significant"].to_numpy(dtype=bool)
            n_sig = int(significant.sum())

            fig = go.Figure()
            for mask, name, color, size in (
                (~significant, "Not significant", self.significance_colors["not_significant"], self.default_marker_size),
                (significant, f"Significant ({n_sig})", self.significance_colors["significant"], self.default_marker_size + 1),
            ):
                if not mask.any():
                    continue
                fig.add_trace(
                    go.Scatter(
                        x=log2fc[mask],
                        y=neg_log_padj[mask],
                        mode="markers",
                        name=name,
                        marker=dict(color=color, size=size, opacity=self.default_opacity),
                        text=labels[mask],
                        hovertemplate="Gene: %{text}<br>log2FC: %{x:.2f}<br>-log10(padj): %{y:.2f}<extra></extra>",
                    )
                )

            top = top_genes(drawable, top_n_genes)
            top_labels = display_labels(top)
            for (_, row), label in zip(top.iterrows(), top_labels):
                fig.add_annotation(
                    x=float(row["log2FoldChange"]),
                    y=float(-np.log10(row["padj"] + 1e-300)),
                    text=label,
                    showarrow=True,
                    arrowhead=2,
                    arrowwidth=1,
                    ax=20 if row["log2FoldChange"] > 0 else -20,
                    ay=-20,
                    font=dict(size=9, color="black"),
                    bgcolor="rgba(255,255,255,0.8)",
                )

            fig.add_hline(y=-np.log10(PADJ_THRESHOLD), line_dash="dash", line_color="darkgray")
            fig.add_vline(x=LOG2FC_THRESHOLD, line_dash="dash", line_color="darkgray")
            fig.add_vline(x=-LOG2FC_THRESHOLD, line_dash="dash", line_color="darkgray")

            fig.update_layout(
                title=title,
                xaxis_title="log2 Fold Change",
                yaxis_title="-log10(padj)",
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
                hovermode="closest",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray", zeroline=True)
            fig.update_yaxes(showgrid=True, gridcolor="lightgray", zeroline=True)

            stats = {
                "plot_type": "volcano_plot",
                "n_genes_plotted": int(len(drawable)),
                "n_significant": n_sig,
                "labelled_genes": list(top_labels),
            }
            logger.info(f"Volcano plot created: {len(drawable)} genes, {n_sig} significant")
            return fig, stats, self._plot_ir("volcano_plot", title, {"top_n_genes": top_n_genes})

        except BulkVisualizationError:
            raise
        except Exception as e:
            logger.error(f"Error creating volcano plot: {e}")
            raise BulkVisualizationError(f"Failed to create volcano plot: {str(e)}") from e

    def create_expression_heatmap(
        self,
        normalized: pd.DataFrame,
        annotated: pd.DataFrame,
        metadata: pd.DataFrame,
        top_n_genes: int = TOP_N_GENES,
        z_score: bool = False,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Heatmap of normalized values for the volcano plot's labelled genes.

        Rows are labelled by symbol; columns are ordered by cell line then
        condition and labelled "sample (cell_line / condition)".
        """
        title = title or f"Top {top_n_genes} genes"
        try:
            top = top_genes(annotated, top_n_genes)
            top = top[top["gene_id"].isin(normalized.index)]
            if top.empty:
                return self._empty("expression_heatmap", title, "No gene with a defined adjusted p-value")

            order_columns = [c for c in ("cell_line", "condition") if c in metadata.columns]
            samples = [s for s in normalized.columns if s in metadata.index]
            if order_columns:
                ordered = metadata.loc[samples].astype(str).sort_values(order_columns, kind="mergesort")
                samples = list(ordered.index)
            column_labels = [
                f"{s} ({' / '.join(str(metadata.loc[s, c]) for c in order_columns)})" if order_columns else str(s)
                for s in samples
            ]

            values = normalized.loc[top["gene_id"], samples].to_numpy(dtype=float)
            if z_score:
                mean = values.mean(axis=1, keepdims=True)
                std = values.std(axis=1, keepdims=True)
                std[std == 0] = 1
                values = (values - mean) / std

            fig = go.Figure(
                data=go.Heatmap(
                    z=values,
                    x=column_labels,
                    y=list(display_labels(top)),
                    colorscale=px.colors.diverging.RdBu_r if z_score else "Viridis",
                    colorbar=dict(title="z-score" if z_score else "Normalized<br>expression"),
                    hovertemplate="Sample: %{x}<br>Gene: %{y}<br>Value: %{z:.2f}<extra></extra>",
                )
            )
            fig.update_layout(
                title=title,
                xaxis_title="Samples",
                width=max(self.default_width, 60 * len(samples)),
                height=max(self.default_height // 2, 30 * len(top)),
                plot_bgcolor="white",
            )
            fig.update_xaxes(tickangle=45, tickfont=dict(size=9))
            fig.update_yaxes(autorange="reversed", tickfont=dict(size=10))

            stats = {"plot_type": "expression_heatmap", "n_genes": int(len(top)), "n_samples": len(samples)}
            return fig, stats, self._plot_ir(
                "expression_heatmap", title, {"top_n_genes": top_n_genes, "z_score": z_score}
            )

        except Exception as e:
            logger.error(f"Error creating expression heatmap: {e}")
            raise BulkVisualizationError(f"Failed to create expression heatmap: {str(e)}") from e

    def create_overlap_diagram(
        self,
        calls_a: pd.Series,
        calls_b: pd.Series,
        label_a: str,
        label_b: str,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """
        Two-set overlap diagram of boolean significance vectors.

        The vectors are aligned by gene id; a gene missing from one vector
        counts as not significant there.

        Returns:
            Statistics carry only_a, only_b, both, neither
        """
        title = title or f"Genes with padj < {PADJ_THRESHOLD}: {label_a} vs {label_b}"
        try:
            if len(calls_a) == 0 and len(calls_b) == 0:
                return self._empty("overlap_diagram", title, "No genes to compare")

            aligned = pd.concat([calls_a.rename("a"), calls_b.rename("b")], axis=1)
            aligned = aligned.astype("boolean").fillna(False).astype(bool)
            counts = {
                "only_a": int((aligned["a"] & ~aligned["b"]).sum()),
                "only_b": int((~aligned["a"] & aligned["b"]).sum()),
                "both": int((aligned["a"] & aligned["b"]).sum()),
                "neither": int((~aligned["a"] & ~aligned["b"]).sum()),
            }

            fig = go.Figure()
            for x0, x1, color in ((0.0, 2.0, self.condition_colors[0]), (1.2, 3.2, self.condition_colors[1])):
                fig.add_shape(
                    type="circle",
                    x0=x0,
                    y0=0.0,
                    x1=x1,
                    y1=2.0,
                    fillcolor=color,
                    opacity=0.4,
                    line=dict(color="black", width=1),
                )
            fig.add_trace(
                go.Scatter(
                    x=[0.6, 1.6, 2.6, 1.0, 2.2],
                    y=[1.0, 1.0, 1.0, 2.2, 2.2],
                    text=[
                        str(counts["only_a"]),
                        str(counts["both"]),
                        str(counts["only_b"]),
                        f"<b>{label_a}</b>",
                        f"<b>{label_b}</b>",
                    ],
                    mode="text",
                    textfont=dict(size=[22, 22, 22, 16, 16]),
                    hoverinfo="skip",
                    showlegend=False,
                )
            )
            fig.update_layout(
                title=title,
                width=self.default_width,
                height=self.default_height // 2 + 100,
                plot_bgcolor="white",
                annotations=[
                    dict(
                        text=f"Neither: {counts['neither']}",
                        x=1.6,
                        y=-0.2,
                        showarrow=False,
                        font=dict(size=12, color="gray"),
                    )
                ],
            )
            fig.update_xaxes(visible=False, range=[-0.3, 3.5])
            fig.update_yaxes(visible=False, range=[-0.4, 2.5], scaleanchor="x")

            stats = {"plot_type": "overlap_diagram", "labels": [label_a, label_b], **counts}
            logger.info(
                f"Overlap {label_a}/{label_b}: {counts['only_a']} | {counts['both']} | {counts['only_b']}"
            )
            return fig, stats, self._plot_ir("overlap_diagram", title, {"padj_threshold": PADJ_THRESHOLD})

        except Exception as e:
            logger.error(f"Error creating overlap diagram: {e}")
            raise BulkVisualizationError(f"Failed to create overlap diagram: {str(e)}") from e

    # -------------------------
    # ENRICHMENT
    # -------------------------

    def create_enrichment_dotplot(
        self,
        enrichment: pd.DataFrame,
        max_terms: int = 20,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """Gene ratio vs category, dot size = count, color = padj."""
        title = title or "GO Biological Process enrichment"
        try:
            if enrichment is None or enrichment.empty:
                return self._empty("enrichment_dotplot", title, "No enriched categories")

            shown = enrichment.sort_values("padj", kind="mergesort").head(max_terms)
            # Most significant category at the top
            shown = shown.iloc[::-1]
            counts = shown["count"].astype(float).to_numpy()

            fig = go.Figure(
                go.Scatter(
                    x=shown["gene_ratio"].astype(float),
                    y=shown["term_name"],
                    mode="markers",
                    marker=dict(
                        size=8 + 22 * counts / max(counts.max(), 1.0),
                        color=shown["padj"].astype(float),
                        colorscale=self.sequential_colors,
                        colorbar=dict(title="padj"),
                        line=dict(width=1, color="black"),
                    ),
                    text=shown["count"],
                    customdata=shown["term_id"],
                    hovertemplate="%{y}<br>%{customdata}<br>Gene ratio: %{x:.3f}<br>Count: %{text}<extra></extra>",
                )
            )
            fig.update_layout(
                title=title,
                xaxis_title="Gene ratio",
                width=self.default_width,
                height=max(self.default_height // 2, 35 * len(shown) + 150),
                plot_bgcolor="white",
            )
            fig.update_xaxes(showgrid=True, gridcolor="lightgray")
            fig.update_yaxes(tickfont=dict(size=10))

            stats = {"plot_type": "enrichment_dotplot", "n_terms": int(len(shown))}
            return fig, stats, self._plot_ir("enrichment_dotplot", title, {"max_terms": max_terms})

        except Exception as e:
            logger.error(f"Error creating enrichment dot plot: {e}")
            raise BulkVisualizationError(f"Failed to create enrichment dot plot: {str(e)}") from e

    def build_category_graph(self, enrichment: pd.DataFrame, top_k: int = TOP_K_CATEGORIES) -> nx.DiGraph:
        """
        Directed acyclic graph over the top_k categories by padj.

        An edge runs from a larger category to a smaller one when they share
        genes. Categories of equal size are ordered by rank, so the graph is
        acyclic by construction.
        """
        top = enrichment.sort_values("padj", kind="mergesort").head(top_k).reset_index(drop=True)
        graph = nx.DiGraph()
        gene_sets: Dict[str, set] = {}
        for rank, row in top.iterrows():
            genes = {g for g in str(row["genes"]).split(";") if g}
            gene_sets[row["term_id"]] = genes
            graph.add_node(
                row["term_id"],
                name=row["term_name"],
                padj=float(row["padj"]),
                count=int(row["count"]),
                term_size=int(row["term_size"]),
                rank=rank,
            )

        nodes = sorted(graph.nodes, key=lambda n: (-graph.nodes[n]["term_size"], graph.nodes[n]["rank"]))
        for i, parent in enumerate(nodes):
            for child in nodes[i + 1 :]:
                shared = gene_sets[parent] & gene_sets[child]
                if shared:
                    graph.add_edge(parent, child, shared=len(shared))
        return graph

    def create_category_dag(
        self,
        enrichment: pd.DataFrame,
        top_k: int = TOP_K_CATEGORIES,
        title: Optional[str] = None,
    ) -> Tuple[go.Figure, Dict[str, Any], AnalysisStep]:
        """Category-relationship DAG among the top_k categories, laid out by generation."""
        title = title or f"Relationships among the top {top_k} categories"
        try:
            if enrichment is None or enrichment.empty:
                return self._empty("category_dag", title, "No enriched categories")

            graph = self.build_category_graph(enrichment, top_k)

            positions: Dict[str, Tuple[float, float]] = {}
            for depth, generation in enumerate(nx.topological_generations(graph)):
                generation = sorted(generation, key=lambda n: graph.nodes[n]["rank"])
                for j, node in enumerate(generation):
                    positions[node] = (j - (len(generation) - 1) / 2.0, -float(depth))

            fig = go.Figure()
            for parent, child in graph.edges:
                (x0, y0), (x1, y1) = positions[parent], positions[child]
                fig.add_annotation(
                    x=x1,
                    y=y1,
                    ax=x0,
                    ay=y0,
                    xref="x",
                    yref="y",
                    axref="x",
                    ayref="y",
                    showarrow=True,
                    arrowhead=3,
                    arrowwidth=1.5,
                    arrowcolor="gray",
                    standoff=18,
                    startstandoff=18,
                    text="",
                )

            nodes: List[str] = list(graph.nodes)
            fig.add_trace(
                go.Scatter(
                    x=[positions[n][0] for n in nodes],
                    y=[positions[n][1] for n in nodes],
                    mode="markers+text",
                    text=[graph.nodes[n]["name"] for n in nodes],
                    textposition="bottom center",
                    customdata=nodes,
                    marker=dict(
                        size=[18 + 2 * graph.nodes[n]["count"] for n in nodes],
                        color=[graph.nodes[n]["padj"] for n in nodes],
                        colorscale=self.sequential_colors,
                        colorbar=dict(title="padj"),
                        line=dict(width=1, color="black"),
                    ),
                    hovertemplate="%{text}<br>%{customdata}<extra></extra>",
                    showlegend=False,
                )
            )
            fig.update_layout(
                title=title,
                width=self.default_width,
                height=self.default_height,
                plot_bgcolor="white",
            )
            fig.update_xaxes(visible=False)
            fig.update_yaxes(visible=False)

            stats = {
                "plot_type": "category_dag",
                "n_nodes": graph.number_of_nodes(),
                "n_edges": graph.number_of_edges(),
                "is_dag": nx.is_directed_acyclic_graph(graph),
            }
            return fig, stats, self._plot_ir("category_dag", title, {"top_k": top_k})

        except Exception as e:
            logger.error(f"Error creating category DAG: {e}")
            raise BulkVisualizationError(f"Failed to create category DAG: {str(e)}") from e

    # -------------------------
    # IR HELPER METHODS
    # -------------------------

    def _plot_ir(self, plot_type: str, title: str, parameters: Dict[str, Any]) -> AnalysisStep:
        return AnalysisStep(
            operation=f"plotly.{plot_type}",
            tool_name=f"BulkVisualizationService.create_{plot_type}",
            description=title,
            library="plotly",
            parameters=parameters,
            output_entities=[plot_type],
        )
