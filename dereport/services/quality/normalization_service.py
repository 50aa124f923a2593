"""
Normalization and QC service for bulk RNA-seq counts.

Produces a comparable-scale expression matrix (variance-stabilized or
log2-normalized) and the diagnostics drawn from it: per-sample distribution
summaries and a two-dimensional PCA embedding. Nothing here tests hypotheses.
"""

from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from dereport.core.analysis_ir import AnalysisStep
from dereport.core.dataset import ExperimentDataset
from dereport.utils.logger import get_logger

logger = get_logger(__name__)


class NormalizationError(Exception):
    """Base exception for normalization and QC operations."""

    pass


def median_of_ratios_size_factors(counts: pd.DataFrame) -> pd.Series:
    """
    DESeq2 median-of-ratios size factors for a genes x samples matrix.

    Uses genes expressed in every sample. When no such gene exists the
    factors fall back to library sizes scaled to a geometric mean of 1.
    """
    values = counts.to_numpy(dtype=float)
    expressed = (values > 0).all(axis=1)

    if expressed.any():
        log_counts = np.log(values[expressed])
        log_geo_means = log_counts.mean(axis=1, keepdims=True)
        factors = np.exp(np.median(log_counts - log_geo_means, axis=0))
    else:
        logger.warning("No gene is expressed in every sample; using library size factors")
        totals = values.sum(axis=0)
        if (totals <= 0).any():
            raise NormalizationError("Cannot normalize: a sample has zero total counts")
        factors = totals / np.exp(np.log(totals).mean())

    return pd.Series(factors, index=counts.columns, name="size_factor")


class NormalizationService:
    """
    Stateless service for count transformation and sample-level QC.

    All methods return new objects; the input dataset is not modified.
    """

    def __init__(self):
        logger.debug("Initializing stateless NormalizationService")

    def transform_counts(
        self, dataset: ExperimentDataset, method: str = "vst"
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Transform raw counts onto a comparable scale for plotting.

        Args:
            dataset: Experiment descriptor with raw counts
            method: "vst" (pyDESeq2 variance stabilizing transform, blind to
                the design) or "log2" (log2 of median-of-ratios normalized
                counts plus one)

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: genes x samples
            matrix, transform statistics, provenance record

        Raises:
            NormalizationError: If the transform fails
        """
        try:
            counts = dataset.counts_frame()
            if counts.empty:
                raise NormalizationError("Cannot normalize an empty count matrix")

            logger.info(f"Transforming {counts.shape[0]} genes x {counts.shape[1]} samples ({method})")

            applied = method
            if method == "vst":
                try:
                    normalized = self._vst(counts, dataset.metadata, dataset.comparison_factor)
                except Exception as e:
                    # Tiny or degenerate matrices cannot support a dispersion trend fit
                    logger.warning(f"VST failed, continuing with log2 normalization: {e}")
                    applied = "log2"
                    normalized = self._log2(counts)
            elif method == "log2":
                normalized = self._log2(counts)
            else:
                raise NormalizationError(f"Unknown transform method: {method}")

            medians = normalized.median(axis=0)
            stats = {
                "method_requested": method,
                "method_applied": applied,
                "n_genes": int(normalized.shape[0]),
                "n_samples": int(normalized.shape[1]),
                "median_range": [float(medians.min()), float(medians.max())],
            }

            ir = AnalysisStep(
                operation="pydeseq2.vst" if applied == "vst" else "normalization.log2_median_of_ratios",
                tool_name="NormalizationService.transform_counts",
                description=(
                    "Variance stabilizing transform (blind to design)"
                    if applied == "vst"
                    else "log2(median-of-ratios normalized counts + 1)"
                ),
                library="pydeseq2" if applied == "vst" else "numpy",
                parameters={"method": applied},
                input_entities=["gene_counts"],
                output_entities=["normalized_counts"],
            )
            return normalized, stats, ir

        except Exception as e:
            if isinstance(e, NormalizationError):
                raise
            logger.exception(f"Error transforming counts: {e}")
            raise NormalizationError(f"Count transformation failed: {str(e)}") from e

    def _log2(self, counts: pd.DataFrame) -> pd.DataFrame:
        size_factors = median_of_ratios_size_factors(counts)
        return np.log2(counts.div(size_factors, axis=1) + 1.0)

    def _vst(self, counts: pd.DataFrame, metadata: pd.DataFrame, factor: str) -> pd.DataFrame:
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference

        # pyDESeq2 works on samples x genes
        samples_by_genes = counts.T.astype(int)
        design_metadata = metadata.loc[samples_by_genes.index].astype(str)

        dds = DeseqDataSet(
            counts=samples_by_genes,
            metadata=design_metadata,
            design=f"~{factor}",
            inference=DefaultInference(n_cpus=1),
            quiet=True,
        )
        dds.vst(use_design=False)
        vst_counts = np.asarray(dds.layers["vst_counts"])
        return pd.DataFrame(vst_counts.T, index=counts.index, columns=counts.columns)

    def summarize_distributions(
        self, normalized: pd.DataFrame, median_tolerance: float = 1.0
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Per-sample five-number summaries of the normalized values.

        A sample is flagged when its median lies more than `median_tolerance`
        (normalized units) from the median of all sample medians. Flagging is
        a QC hint and never stops the run.

        Returns:
            Tuple of (summary indexed by sample with min, q1, median, q3, max,
            flagged; statistics; provenance record)
        """
        if normalized.empty:
            summary = pd.DataFrame(columns=["min", "q1", "median", "q3", "max", "flagged"])
            return summary, {"n_flagged": 0, "flagged_samples": []}, self._qc_ir(median_tolerance)

        summary = pd.DataFrame(
            {
                "min": normalized.min(axis=0),
                "q1": normalized.quantile(0.25, axis=0),
                "median": normalized.median(axis=0),
                "q3": normalized.quantile(0.75, axis=0),
                "max": normalized.max(axis=0),
            }
        )
        center = summary["median"].median()
        summary["flagged"] = (summary["median"] - center).abs() > median_tolerance

        flagged: List[str] = list(summary.index[summary["flagged"]])
        if flagged:
            logger.warning(
                f"QC: median of sample(s) {', '.join(flagged)} deviates more than "
                f"{median_tolerance} from the median of medians ({center:.2f})"
            )

        stats = {
            "median_of_medians": float(center),
            "n_flagged": len(flagged),
            "flagged_samples": flagged,
        }
        return summary, stats, self._qc_ir(median_tolerance)

    def _qc_ir(self, median_tolerance: float) -> AnalysisStep:
        return AnalysisStep(
            operation="qc.distribution_summary",
            tool_name="NormalizationService.summarize_distributions",
            description="Per-sample quartiles with median deviation flag",
            library="pandas",
            parameters={"median_tolerance": median_tolerance},
            input_entities=["normalized_counts"],
            output_entities=["distribution_summary"],
        )

    def compute_embedding(
        self,
        normalized: pd.DataFrame,
        metadata: pd.DataFrame,
        n_top_genes: int = 500,
        label_columns: Tuple[str, ...] = ("cell_line", "condition"),
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Two-dimensional PCA embedding of samples.

        Follows DESeq2's plotPCA: the `n_top_genes` most variable genes,
        centered but not scaled.

        Returns:
            Tuple of (samples x [PC1, PC2, *label_columns]; statistics with
            explained_variance_ratio; provenance record)

        Raises:
            NormalizationError: If fewer than two samples are provided
        """
        try:
            if normalized.shape[1] < 2:
                raise NormalizationError("PCA needs at least two samples")

            variances = normalized.var(axis=1).fillna(0.0)
            top_genes = variances.sort_values(ascending=False, kind="mergesort").index[:n_top_genes]
            X = normalized.loc[top_genes].T.to_numpy(dtype=float)

            n_components = min(2, X.shape[0], X.shape[1])
            pca = PCA(n_components=n_components)
            coords = pca.fit_transform(X)
            if n_components < 2:
                coords = np.hstack([coords, np.zeros((coords.shape[0], 2 - n_components))])

            explained = list(pca.explained_variance_ratio_) + [0.0] * (2 - n_components)
            embedding = pd.DataFrame(coords[:, :2], index=normalized.columns, columns=["PC1", "PC2"])
            for column in label_columns:
                if column in metadata.columns:
                    embedding[column] = metadata.loc[embedding.index, column].astype(str).to_numpy()

            stats = {
                "n_top_genes": int(len(top_genes)),
                "explained_variance_ratio": [float(v) for v in explained],
            }
            logger.info(
                f"PCA on {len(top_genes)} genes: PC1 {explained[0]:.1%}, PC2 {explained[1]:.1%}"
            )

            ir = AnalysisStep(
                operation="sklearn.decomposition.PCA",
                tool_name="NormalizationService.compute_embedding",
                description=f"PCA of samples on the {len(top_genes)} most variable genes",
                library="scikit-learn",
                parameters={"n_top_genes": n_top_genes, "n_components": 2},
                input_entities=["normalized_counts"],
                output_entities=["sample_embedding"],
            )
            return embedding, stats, ir

        except Exception as e:
            if isinstance(e, NormalizationError):
                raise
            logger.exception(f"Error computing embedding: {e}")
            raise NormalizationError(f"Sample embedding failed: {str(e)}") from e
