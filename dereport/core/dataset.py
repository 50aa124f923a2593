"""
Experiment descriptor: the count matrix bound to its sample metadata.

The descriptor owns one AnnData (samples x genes, the orientation pyDESeq2
expects) together with the metadata column that defines the compared groups.
Narrowing to one cell line returns a new, independent descriptor.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import anndata
import numpy as np
import pandas as pd

from dereport.core.exceptions import MetadataError, SampleMismatchError
from dereport.utils.logger import get_logger

logger = get_logger(__name__)

REQUIRED_METADATA_COLUMNS = ("cell_line", "condition")


def load_sample_metadata(
    path: Path,
    sample_column: str = "sample_id",
    required_columns: Sequence[str] = REQUIRED_METADATA_COLUMNS,
) -> pd.DataFrame:
    """
    Read the sample metadata table.

    Args:
        path: TSV or CSV file with one row per sample
        sample_column: Column holding the sample identifiers
        required_columns: Columns that must be present besides the sample id

    Returns:
        pd.DataFrame: Metadata indexed by sample id; required columns are
        categorical strings

    Raises:
        MetadataError: If the file is missing, a column is absent, or sample
            ids are empty or duplicated
    """
    path = Path(path)
    if not path.exists():
        raise MetadataError(f"Sample metadata not found: {path}")

    sep = "," if path.suffix.lower() == ".csv" else "\t"
    metadata = pd.read_csv(path, sep=sep, dtype=str)
    metadata.columns = [c.strip() for c in metadata.columns]

    missing = [c for c in (sample_column, *required_columns) if c not in metadata.columns]
    if missing:
        raise MetadataError(
            f"Sample metadata {path.name} is missing column(s): {', '.join(missing)}",
            details={"columns": list(metadata.columns)},
        )

    if metadata[sample_column].isna().any():
        raise MetadataError(f"Sample metadata {path.name} has rows without a sample id")

    duplicated = metadata.loc[metadata[sample_column].duplicated(), sample_column].tolist()
    if duplicated:
        raise MetadataError(
            f"Duplicate sample ids in {path.name}: {', '.join(duplicated)}",
            details={"duplicated": duplicated},
        )

    for column in required_columns:
        if metadata[column].isna().any():
            raise MetadataError(f"Column '{column}' has missing values in {path.name}")
        metadata[column] = metadata[column].str.strip().astype("category")

    metadata = metadata.set_index(sample_column)
    metadata.index.name = "sample_id"
    logger.info(f"Loaded metadata for {len(metadata)} samples from {path.name}")
    return metadata


@dataclass(frozen=True)
class ExperimentDataset:
    """
    Count matrix plus sample metadata plus the comparison factor.

    Attributes:
        adata: AnnData with X = raw integer counts (samples x genes),
            obs = sample metadata, var indexed by gene id
        comparison_factor: obs column defining the two compared groups
    """

    adata: anndata.AnnData
    comparison_factor: str = "condition"

    @property
    def sample_ids(self) -> List[str]:
        return list(self.adata.obs_names)

    @property
    def gene_ids(self) -> List[str]:
        return list(self.adata.var_names)

    @property
    def metadata(self) -> pd.DataFrame:
        """Copy of the sample metadata table."""
        return self.adata.obs.copy()

    def counts_frame(self) -> pd.DataFrame:
        """Return a genes x samples copy of the raw counts."""
        return pd.DataFrame(
            np.asarray(self.adata.X).T.copy(),
            index=pd.Index(self.adata.var_names, name="gene_id"),
            columns=list(self.adata.obs_names),
        )

    def levels(self, column: Optional[str] = None) -> List[str]:
        """Distinct values of a metadata column among the samples present."""
        column = column or self.comparison_factor
        if column not in self.adata.obs.columns:
            raise MetadataError(f"Unknown metadata column: '{column}'")
        values = self.adata.obs[column].astype(str)
        return sorted(values.unique())

    def subset(self, column: str, value: str) -> "ExperimentDataset":
        """
        Narrow to the samples whose `column` equals `value`.

        The result owns copied data; the parent is never modified.
        """
        if column not in self.adata.obs.columns:
            raise MetadataError(f"Unknown metadata column: '{column}'")
        mask = (self.adata.obs[column].astype(str) == str(value)).to_numpy()
        narrowed = self.adata[mask].copy()
        # Drop categories that no longer occur in the narrowed samples
        for col in narrowed.obs.columns:
            if isinstance(narrowed.obs[col].dtype, pd.CategoricalDtype):
                narrowed.obs[col] = narrowed.obs[col].cat.remove_unused_categories()
        logger.debug(f"Subset {column}={value}: {narrowed.n_obs} of {self.adata.n_obs} samples")
        return ExperimentDataset(adata=narrowed, comparison_factor=self.comparison_factor)

    def __len__(self) -> int:
        return self.adata.n_obs


def build_dataset(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    comparison_factor: str = "condition",
) -> ExperimentDataset:
    """
    Bind a genes x samples count matrix to its metadata.

    Samples follow the count matrix's column order.

    Raises:
        SampleMismatchError: If a count column has no metadata row or a
            metadata row has no count column
        MetadataError: If the comparison factor is not a metadata column
    """
    if comparison_factor not in metadata.columns:
        raise MetadataError(f"Comparison factor '{comparison_factor}' not in metadata columns")

    count_samples = [str(s) for s in counts.columns]
    meta_samples = [str(s) for s in metadata.index]
    missing_from_metadata = sorted(set(count_samples) - set(meta_samples))
    missing_from_counts = sorted(set(meta_samples) - set(count_samples))
    if missing_from_metadata or missing_from_counts:
        raise SampleMismatchError(
            "Quantified samples and metadata samples do not match "
            f"(not in metadata: {missing_from_metadata or 'none'}; "
            f"not quantified: {missing_from_counts or 'none'})",
            details={
                "missing_from_metadata": missing_from_metadata,
                "missing_from_counts": missing_from_counts,
            },
        )

    if counts.index.duplicated().any():
        raise SampleMismatchError("Count matrix has duplicate gene identifiers")

    obs = metadata.copy()
    obs.index = obs.index.astype(str)
    obs = obs.loc[count_samples]

    adata = anndata.AnnData(
        X=counts.to_numpy(dtype=np.int64).T.copy(),
        obs=obs,
        var=pd.DataFrame(index=pd.Index(counts.index.astype(str), name="gene_id")),
    )
    logger.info(f"Built dataset: {adata.n_obs} samples x {adata.n_vars} genes")
    return ExperimentDataset(adata=adata, comparison_factor=comparison_factor)
