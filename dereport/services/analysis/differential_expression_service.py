"""
Differential expression service for bulk RNA-seq.

Orchestrates one two-level comparison (treated vs control) per
subpopulation. The statistics are delegated to an engine behind the narrow
DEEngine protocol: pyDESeq2 by default, or a lightweight DESeq2-like engine
(median-of-ratios, Welch t-test, Benjamini-Hochberg) for small or offline runs.
"""

from typing import Any, Dict, List, Optional, Protocol, Tuple

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats
from statsmodels.stats.multitest import multipletests

from dereport.config.constants import PADJ_THRESHOLD, RESULT_COLUMNS
from dereport.core.analysis_ir import AnalysisStep
from dereport.core.dataset import ExperimentDataset
from dereport.core.exceptions import ConvergenceError, MetadataError
from dereport.services.analysis.annotation_service import call_significance
from dereport.services.quality.normalization_service import median_of_ratios_size_factors
from dereport.utils.logger import get_logger

logger = get_logger(__name__)


class DifferentialExpressionError(Exception):
    """Base exception for differential expression operations."""

    pass


class DEEngine(Protocol):
    """Protocol for differential expression engines."""

    name: str
    library: str

    def run(
        self,
        counts: pd.DataFrame,
        metadata: pd.DataFrame,
        factor: str,
        test_level: str,
        reference_level: str,
    ) -> pd.DataFrame:
        """
        Test every gene for a `factor` effect, test_level vs reference_level.

        Args:
            counts: Raw integer counts, genes x samples
            metadata: Sample metadata indexed by sample id
            factor: Metadata column with the two compared levels
            test_level: Numerator level (e.g. "treated")
            reference_level: Denominator level (e.g. "control")

        Returns:
            DataFrame indexed by gene id with baseMean, log2FoldChange, lfcSE,
            stat, pvalue, padj

        Raises:
            ConvergenceError: If the model cannot be fitted at all
        """
        ...


def group_effects(
    counts: pd.DataFrame, groups: pd.Series, test_level: str, reference_level: str
) -> pd.DataFrame:
    """
    Normalized mean and log2 fold change per gene without any test.

    Counts are scaled by median-of-ratios size factors; a pseudocount of 1
    keeps genes that are silent in one group finite.
    """
    normalized = counts.div(median_of_ratios_size_factors(counts), axis=1)
    test_mean = normalized.loc[:, (groups == test_level).to_numpy()].mean(axis=1)
    ref_mean = normalized.loc[:, (groups == reference_level).to_numpy()].mean(axis=1)
    return pd.DataFrame(
        {
            "baseMean": normalized.mean(axis=1),
            "log2FoldChange": np.log2((test_mean + 1.0) / (ref_mean + 1.0)),
        },
        index=counts.index,
    )


class PyDESeq2Engine:
    """
    DESeq2 negative-binomial GLM and Wald test via pyDESeq2.

    Attributes:
        alpha: Target FDR for pyDESeq2's independent filtering
        shrink_lfc: Apply apeGLM-style LFC shrinkage to the contrast
        n_cpus: Worker count for pyDESeq2 inference
    """

    name = "pydeseq2"
    library = "pydeseq2"

    def __init__(self, alpha: float = PADJ_THRESHOLD, shrink_lfc: bool = False, n_cpus: int = 1):
        self.alpha = alpha
        self.shrink_lfc = shrink_lfc
        self.n_cpus = n_cpus

    @property
    def description(self) -> str:
        return "DESeq2 negative binomial GLM, Wald test, Benjamini-Hochberg"

    def run(self, counts, metadata, factor, test_level, reference_level):
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        # pyDESeq2 works on samples x genes
        counts_int = counts.T.astype(int)
        design_metadata = metadata.loc[counts_int.index, [factor]].astype(str)
        contrast = [factor, test_level, reference_level]
        inference = DefaultInference(n_cpus=self.n_cpus)

        try:
            dds = DeseqDataSet(
                counts=counts_int,
                metadata=design_metadata,
                design=f"~{factor}",
                inference=inference,
                quiet=True,
            )
            dds.deseq2()

            ds = DeseqStats(dds, contrast=contrast, alpha=self.alpha, inference=inference, quiet=True)
            ds.summary()

            if self.shrink_lfc:
                try:
                    ds.lfc_shrink(coeff=f"{factor}[T.{test_level}]")
                except Exception as e:
                    logger.warning(f"LFC shrinkage failed, continuing without: {e}")
        except Exception as e:
            raise ConvergenceError(
                f"pyDESeq2 model fit failed: {e}", details={"contrast": contrast}
            ) from e

        return ds.results_df.reindex(counts.index)[RESULT_COLUMNS].astype(float)


class DESeq2LikeEngine:
    """
    Lightweight engine: median-of-ratios normalization, log2 ratio of group
    means, Welch t-test on log2 normalized counts, Benjamini-Hochberg.

    Genes whose test cannot be computed (fewer than two replicates in a
    group, or no variance) keep their effect size and get NaN statistics.
    """

    name = "deseq2_like"
    library = "scipy"

    @property
    def description(self) -> str:
        return "Median-of-ratios normalization, Welch t-test, Benjamini-Hochberg"

    def run(self, counts, metadata, factor, test_level, reference_level):
        groups = metadata.loc[counts.columns, factor].astype(str)
        results = group_effects(counts, groups, test_level, reference_level)

        log_norm = np.log2(counts.div(median_of_ratios_size_factors(counts), axis=1) + 1.0)
        test_values = log_norm.loc[:, (groups == test_level).to_numpy()].to_numpy()
        ref_values = log_norm.loc[:, (groups == reference_level).to_numpy()].to_numpy()

        n_genes = len(counts)
        lfc_se = np.full(n_genes, np.nan)
        t_stats = np.full(n_genes, np.nan)
        p_values = np.full(n_genes, np.nan)

        n_failed = 0
        for i in range(n_genes):
            try:
                lfc_se[i], t_stats[i], p_values[i] = self._test_gene(test_values[i], ref_values[i])
            except ConvergenceError as e:
                n_failed += 1
                logger.debug(f"{counts.index[i]}: {e}")

        if n_failed:
            logger.warning(f"{n_failed} of {n_genes} genes could not be tested; statistics set to NaN")

        padj = np.full(n_genes, np.nan)
        tested = ~np.isnan(p_values)
        if tested.any():
            _, padj[tested], _, _ = multipletests(p_values[tested], method="fdr_bh")

        results["lfcSE"] = lfc_se
        results["stat"] = t_stats
        results["pvalue"] = p_values
        results["padj"] = padj
        return results[RESULT_COLUMNS]

    def _test_gene(self, test: np.ndarray, ref: np.ndarray) -> Tuple[float, float, float]:
        if len(test) < 2 or len(ref) < 2:
            raise ConvergenceError("at least two replicates per group are required")
        se = float(np.sqrt(test.var(ddof=1) / len(test) + ref.var(ddof=1) / len(ref)))
        if not np.isfinite(se) or se == 0.0:
            raise ConvergenceError("no within-group variance")
        t_stat, p_value = scipy_stats.ttest_ind(test, ref, equal_var=False)
        if not np.isfinite(p_value):
            raise ConvergenceError("t-test did not return a finite p-value")
        return se, float(t_stat), float(p_value)


ENGINES = {
    "pydeseq2": PyDESeq2Engine,
    "deseq2_like": DESeq2LikeEngine,
}


def get_engine(name: str, **kwargs) -> DEEngine:
    """Instantiate a registered engine by name."""
    if name not in ENGINES:
        raise ValueError(f"Unknown DE engine '{name}'. Available: {', '.join(ENGINES)}")
    return ENGINES[name](**kwargs)


class DifferentialExpressionService:
    """
    Stateless orchestration of two-level differential expression tests.

    The engine is injected so it can be replaced without touching the
    orchestration (filtering, failure recovery, provenance).
    """

    def __init__(self, engine: Optional[DEEngine] = None):
        self.engine = engine if engine is not None else PyDESeq2Engine()
        logger.debug(f"Initializing DifferentialExpressionService with engine {self.engine.name}")

    def run_differential_expression(
        self,
        dataset: ExperimentDataset,
        test_level: str = "treated",
        reference_level: str = "control",
        min_total_count: int = 10,
        label: Optional[str] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Test test_level vs reference_level on the dataset's comparison factor.

        Genes whose total count is below `min_total_count` are not tested and
        keep NaN statistics. If the engine cannot fit the model at all, every
        tested gene keeps its normalized mean and fold change with NaN test
        statistics, and the run continues.

        Args:
            dataset: One subpopulation (e.g. one cell line)
            test_level: Numerator condition
            reference_level: Denominator condition
            min_total_count: Low-count pre-filter threshold
            label: Branch label for logs and provenance (e.g. "HT55")

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: One row per
            dataset gene with gene_id and the result columns; statistics;
            provenance record

        Raises:
            MetadataError: If the comparison factor does not have exactly the
                two expected levels
            DifferentialExpressionError: If the engine fails unexpectedly
        """
        factor = dataset.comparison_factor
        label = label or "all samples"
        levels = dataset.levels(factor)
        if sorted(levels) != sorted([test_level, reference_level]):
            raise MetadataError(
                f"[{label}] '{factor}' must have exactly the levels "
                f"{reference_level!r} and {test_level!r}, found {levels}",
                details={"levels": levels},
            )

        try:
            counts = dataset.counts_frame()
            metadata = dataset.metadata
            keep = counts.sum(axis=1) >= min_total_count
            tested_counts = counts.loc[keep]
            n_filtered = int((~keep).sum())
            logger.info(
                f"[{label}] Testing {test_level} vs {reference_level}: {len(tested_counts)} genes "
                f"({n_filtered} below min_total_count={min_total_count}), engine={self.engine.name}"
            )

            model_failed = False
            if tested_counts.empty:
                logger.warning(f"[{label}] No gene passes the low-count filter")
                engine_results = pd.DataFrame(columns=RESULT_COLUMNS, dtype=float)
            else:
                try:
                    engine_results = self.engine.run(
                        tested_counts, metadata, factor, test_level, reference_level
                    )
                except ConvergenceError as e:
                    logger.warning(f"[{label}] {e}; reporting fold changes without statistics")
                    model_failed = True
                    groups = metadata.loc[tested_counts.columns, factor].astype(str)
                    engine_results = group_effects(tested_counts, groups, test_level, reference_level)
                    for column in ("lfcSE", "stat", "pvalue", "padj"):
                        engine_results[column] = np.nan
                    engine_results = engine_results[RESULT_COLUMNS]

            results = engine_results.reindex(counts.index)
            results.index.name = "gene_id"
            results = results.reset_index()[["gene_id", *RESULT_COLUMNS]]

        except Exception as e:
            if isinstance(e, DifferentialExpressionError):
                raise
            logger.exception(f"[{label}] Error in differential expression: {e}")
            raise DifferentialExpressionError(f"Differential expression failed: {str(e)}") from e

        significant = call_significance(results["padj"], results["log2FoldChange"])
        stats = {
            "label": label,
            "engine": self.engine.name,
            "contrast": [factor, test_level, reference_level],
            "n_samples": len(dataset),
            "n_genes": int(len(results)),
            "n_tested": int(keep.sum()),
            "n_filtered_low_count": n_filtered,
            "n_failed": int(results.loc[keep.to_numpy(), "padj"].isna().sum()),
            "model_failed": model_failed,
            "n_significant": int(significant.sum()),
            "n_up": int((significant & (results["log2FoldChange"] > 0)).sum()),
            "n_down": int((significant & (results["log2FoldChange"] < 0)).sum()),
        }
        logger.info(
            f"[{label}] {stats['n_significant']} significant genes "
            f"({stats['n_up']} up, {stats['n_down']} down)"
        )

        ir = AnalysisStep(
            operation=f"{self.engine.name}.differential_expression",
            tool_name="DifferentialExpressionService.run_differential_expression",
            description=f"{self.engine.description} ({label})",
            library=self.engine.library,
            parameters={
                "design": f"~{factor}",
                "contrast": [factor, test_level, reference_level],
                "min_total_count": min_total_count,
            },
            input_entities=list(dataset.sample_ids),
            output_entities=[f"de_results_{label}"],
            execution_context={"branch": label},
        )
        return results, stats, ir

    def run_by_subpopulation(
        self,
        dataset: ExperimentDataset,
        split_by: str = "cell_line",
        **kwargs,
    ) -> Tuple[Dict[str, pd.DataFrame], Dict[str, Dict[str, Any]], List[AnalysisStep]]:
        """
        Model each level of `split_by` independently.

        Each branch is narrowed from the full dataset and fitted on its own;
        there is no shared model and no interaction term.

        Returns:
            Tuple of (results per level, statistics per level, provenance
            records in level order)
        """
        results: Dict[str, pd.DataFrame] = {}
        stats: Dict[str, Dict[str, Any]] = {}
        steps: List[AnalysisStep] = []
        for level in dataset.levels(split_by):
            branch = dataset.subset(split_by, level)
            results[level], stats[level], ir = self.run_differential_expression(
                branch, label=level, **kwargs
            )
            steps.append(ir)
        return results, stats, steps
