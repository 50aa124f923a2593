"""
Transcript quantification import service.

Reads per-sample Salmon or Kallisto abundance files and collapses transcript
estimates into a gene-level integer count matrix through a transcript->gene
mapping table (tximport-style "summarize to gene").
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from dereport.core.analysis_ir import AnalysisStep
from dereport.core.exceptions import InputIntegrityError, MappingError
from dereport.utils.logger import get_logger

logger = get_logger(__name__)

# Trailing ".<digits>" is the Ensembl/RefSeq version suffix
VERSION_SUFFIX = re.compile(r"\.\d+$")

SALMON_FILES = ("quant.sf",)
KALLISTO_FILES = ("abundance.h5", "abundance.tsv", "abundance.txt")

# (identifier column, estimated count column)
TOOL_COLUMNS = {
    "salmon": ("Name", "NumReads"),
    "kallisto": ("target_id", "est_counts"),
}


class QuantificationError(InputIntegrityError):
    """Raised when quantification files are missing or malformed."""

    pass


def strip_version(identifiers: pd.Index) -> pd.Index:
    """
    Reduce transcript identifiers to their unversioned accession.

    GENCODE FASTA headers ("ENST...|ENSG...|...") keep their first field.

    >>> strip_version(pd.Index(["ENST000001.3", "ENST000002"]))
    Index(['ENST000001', 'ENST000002'], dtype='object')
    """
    ids = pd.Index(identifiers).astype(str)
    return ids.str.split("|").str[0].str.replace(VERSION_SUFFIX, "", regex=True)


class QuantificationService:
    """
    Stateless service that turns a quantification directory tree into counts.

    Each sample lives in its own subdirectory named after the sample id and
    holds one abundance file (quant.sf for Salmon; abundance.tsv, .txt or .h5
    for Kallisto).
    """

    def __init__(self, max_unmapped_fraction: float = 1.0):
        """
        Initialize the quantification service.

        Args:
            max_unmapped_fraction: Largest tolerated fraction of transcripts
                without a gene mapping in any one sample. Unmapped transcripts
                are always excluded; above this fraction the run aborts.
        """
        if not 0.0 <= max_unmapped_fraction <= 1.0:
            raise ValueError("max_unmapped_fraction must be within [0, 1]")
        self.max_unmapped_fraction = max_unmapped_fraction
        logger.debug("Initializing stateless QuantificationService")

    # ------------------------------------------------------------------
    # Mapping table
    # ------------------------------------------------------------------

    def load_tx2gene(self, path: Path) -> pd.Series:
        """
        Load the transcript -> gene mapping table.

        Accepts TSV or CSV, with a (transcript_id, gene_id) header or as a
        headerless two-column file. Transcript ids are stored unversioned.

        Returns:
            pd.Series: gene_id values indexed by unversioned transcript id

        Raises:
            QuantificationError: If the table is missing or malformed
        """
        path = Path(path)
        if not path.exists():
            raise QuantificationError(f"Transcript to gene table not found: {path}")

        sep = "," if path.suffix.lower() == ".csv" else "\t"
        table = pd.read_csv(path, sep=sep, dtype=str)
        if not {"transcript_id", "gene_id"}.issubset(table.columns):
            if table.shape[1] < 2:
                raise QuantificationError(
                    f"Transcript to gene table {path} needs two columns",
                    details={"columns": list(table.columns)},
                )
            table = pd.read_csv(path, sep=sep, dtype=str, header=None).iloc[:, :2]
            table.columns = ["transcript_id", "gene_id"]

        table = table.dropna(subset=["transcript_id", "gene_id"])
        table["transcript_id"] = strip_version(table["transcript_id"])
        n_dup = int(table["transcript_id"].duplicated().sum())
        if n_dup:
            logger.warning(f"{n_dup} duplicate transcript ids in {path.name}; keeping first")
        table = table.drop_duplicates(subset="transcript_id", keep="first")

        logger.info(
            f"Loaded tx2gene: {len(table)} transcripts -> {table['gene_id'].nunique()} genes"
        )
        return table.set_index("transcript_id")["gene_id"]

    # ------------------------------------------------------------------
    # Per-sample files
    # ------------------------------------------------------------------

    def detect_quantification_tool(self, directory: Path) -> str:
        """Auto-detect whether directory contains Kallisto or Salmon files."""
        kallisto_count = 0
        salmon_count = 0

        for subdir in Path(directory).iterdir():
            if not subdir.is_dir():
                continue
            if any((subdir / name).exists() for name in KALLISTO_FILES):
                kallisto_count += 1
            if any((subdir / name).exists() for name in SALMON_FILES):
                salmon_count += 1

        if kallisto_count > salmon_count:
            return "kallisto"
        elif salmon_count > 0:
            return "salmon"
        raise QuantificationError(
            f"No Kallisto or Salmon quantification files detected in {directory}"
        )

    def _sample_file(self, sample_dir: Path, tool: str, use_h5: bool) -> Optional[Path]:
        candidates = SALMON_FILES if tool == "salmon" else KALLISTO_FILES
        if tool == "kallisto" and not use_h5:
            candidates = tuple(c for c in candidates if not c.endswith(".h5"))
        for name in candidates:
            if (sample_dir / name).exists():
                return sample_dir / name
        return None

    def _read_table(self, path: Path, tool: str) -> pd.Series:
        id_column, value_column = TOOL_COLUMNS[tool]
        df = pd.read_csv(path, sep="\t")
        missing = [c for c in (id_column, value_column) if c not in df.columns]
        if missing:
            raise QuantificationError(
                f"{path} is missing column(s) {missing}",
                details={"columns": list(df.columns)},
            )
        return df.set_index(id_column)[value_column].astype(float)

    def _read_kallisto_h5(self, path: Path) -> pd.Series:
        import h5py

        with h5py.File(path, "r") as f:
            # Kallisto H5 structure: /aux/ids, /est_counts, /tpm
            ids = f["aux"]["ids"][:]
            values = f["est_counts"][:]
        ids = [i.decode("utf-8") if isinstance(i, bytes) else str(i) for i in ids]
        return pd.Series(values.astype(float), index=ids)

    def read_sample_quantifications(
        self,
        quant_dir: Path,
        tool: str = "auto",
        sample_names: Optional[List[str]] = None,
        use_h5: bool = True,
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Read per-sample abundance files into a transcript x sample matrix.

        Args:
            quant_dir: Directory with one subdirectory per sample
            tool: "salmon", "kallisto", or "auto" for detection
            sample_names: Samples to read; auto-detected from subdirectories if None
            use_h5: Prefer Kallisto's abundance.h5 when present

        Returns:
            Tuple of (transcript_counts, stats). Transcripts absent from one
            sample's file are 0 for that sample.

        Raises:
            QuantificationError: If a requested sample has no readable file
        """
        quant_dir = Path(quant_dir)
        if not quant_dir.is_dir():
            raise QuantificationError(f"Quantification directory not found: {quant_dir}")

        if tool == "auto":
            tool = self.detect_quantification_tool(quant_dir)
            logger.info(f"Auto-detected quantification tool: {tool}")
        if tool not in TOOL_COLUMNS:
            raise QuantificationError(f"Unsupported quantification tool: {tool}")

        if sample_names is None:
            sample_names = sorted(
                d.name
                for d in quant_dir.iterdir()
                if d.is_dir() and self._sample_file(d, tool, use_h5) is not None
            )
            logger.info(f"Auto-detected {len(sample_names)} {tool} samples")

        if not sample_names:
            raise QuantificationError(f"No {tool} quantification directories found in {quant_dir}")

        columns = {}
        formats_used: Dict[str, int] = {}
        missing_samples = []
        for sample in sample_names:
            path = self._sample_file(quant_dir / sample, tool, use_h5)
            if path is None:
                missing_samples.append(sample)
                continue
            try:
                if path.suffix == ".h5":
                    series = self._read_kallisto_h5(path)
                else:
                    series = self._read_table(path, tool)
            except QuantificationError:
                raise
            except Exception as e:
                logger.exception(f"Failed to read {path}")
                raise QuantificationError(f"Failed to read {path}: {e}") from e

            if series.index.duplicated().any():
                raise QuantificationError(
                    f"Duplicate transcript identifiers in {path}",
                    details={"sample": sample},
                )
            columns[sample] = series
            formats_used[path.name] = formats_used.get(path.name, 0) + 1

        if missing_samples:
            raise QuantificationError(
                f"No {tool} quantification file for sample(s): {', '.join(missing_samples)}",
                details={"missing_samples": missing_samples},
            )

        transcript_counts = pd.concat(columns, axis=1).fillna(0.0)
        transcript_counts.columns = list(columns)

        stats = {
            "quantification_tool": tool,
            "n_samples": len(columns),
            "n_transcripts": len(transcript_counts),
            "formats_used": formats_used,
            "source_directory": str(quant_dir),
        }
        logger.info(
            f"Read {tool} quantifications: {len(columns)} samples x "
            f"{len(transcript_counts)} transcripts"
        )
        return transcript_counts, stats

    # ------------------------------------------------------------------
    # Gene summarization
    # ------------------------------------------------------------------

    def summarize_to_genes(
        self, transcript_counts: pd.DataFrame, tx2gene: pd.Series
    ) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Sum transcript estimates per gene and round to integer counts.

        Matching ignores transcript version suffixes. Transcripts without a
        mapping are excluded from every sample and reported in the stats.

        Raises:
            QuantificationError: If a sample has no quantified reads
            MappingError: If a sample has no mappable transcript, or its
                unmapped fraction exceeds max_unmapped_fraction
        """
        unversioned = strip_version(transcript_counts.index)
        gene_ids = pd.Series(unversioned.map(tx2gene), index=transcript_counts.index)
        mapped = gene_ids.notna().to_numpy()

        unmapped_by_sample: Dict[str, int] = {}
        for sample in transcript_counts.columns:
            # A transcript counts for a sample only if it was quantified there
            present = (transcript_counts[sample] > 0).to_numpy()
            n_present = int(present.sum())
            if n_present == 0:
                raise QuantificationError(
                    f"Sample '{sample}' has no quantified reads",
                    details={"sample": sample, "n_transcripts": len(transcript_counts)},
                )
            n_unmapped = int((present & ~mapped).sum())
            unmapped_by_sample[sample] = n_unmapped

            n_mapped = n_present - n_unmapped
            fraction = n_unmapped / n_present
            if n_mapped == 0 or fraction > self.max_unmapped_fraction:
                examples = list(transcript_counts.index[present & ~mapped][:5])
                raise MappingError(
                    f"Sample '{sample}': {n_unmapped} of {n_present} transcripts "
                    f"have no gene in the mapping table",
                    details={
                        "sample": sample,
                        "n_unmapped": n_unmapped,
                        "n_total": n_present,
                        "examples": examples,
                    },
                )

        n_unmapped_total = int((~mapped).sum())
        if n_unmapped_total:
            logger.warning(
                f"Excluded {n_unmapped_total} unmapped transcripts "
                f"(e.g. {', '.join(map(str, transcript_counts.index[~mapped][:3]))})"
            )

        mapped_counts = transcript_counts.loc[mapped]
        gene_counts = mapped_counts.groupby(gene_ids[mapped].to_numpy(), sort=True).sum()
        gene_counts = pd.DataFrame(
            np.rint(gene_counts.clip(lower=0).to_numpy()).astype(np.int64),
            index=pd.Index(gene_counts.index, name="gene_id"),
            columns=transcript_counts.columns,
        )

        stats = {
            "n_genes": len(gene_counts),
            "n_transcripts_mapped": int(mapped.sum()),
            "n_transcripts_unmapped": n_unmapped_total,
            "unmapped_by_sample": unmapped_by_sample,
        }
        return gene_counts, stats

    def assemble_count_matrix(
        self,
        quant_dir: Path,
        tx2gene_path: Path,
        tool: str = "auto",
        sample_names: Optional[List[str]] = None,
    ) -> Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]:
        """
        Build the gene x sample integer count matrix for a quantification tree.

        Args:
            quant_dir: Directory with one subdirectory per sample
            tx2gene_path: Transcript -> gene mapping table
            tool: "salmon", "kallisto", or "auto"
            sample_names: Samples to read; auto-detected if None

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any], AnalysisStep]: Counts (genes x
            samples, int64), assembly statistics, provenance record
        """
        try:
            tx2gene = self.load_tx2gene(tx2gene_path)
            transcript_counts, read_stats = self.read_sample_quantifications(
                quant_dir, tool=tool, sample_names=sample_names
            )
            counts, summary_stats = self.summarize_to_genes(transcript_counts, tx2gene)
        except Exception as e:
            if isinstance(e, InputIntegrityError):
                raise
            logger.exception(f"Error assembling count matrix: {e}")
            raise QuantificationError(f"Count matrix assembly failed: {str(e)}") from e

        stats = {**read_stats, **summary_stats}
        logger.info(
            f"Assembled count matrix: {stats['n_genes']} genes x {stats['n_samples']} samples"
        )

        ir = AnalysisStep(
            operation="tximport.summarize_to_gene",
            tool_name="QuantificationService.assemble_count_matrix",
            description=(
                f"Summed {stats['quantification_tool']} transcript counts to genes; "
                f"{stats['n_transcripts_unmapped']} unmapped transcripts excluded"
            ),
            library="pandas",
            parameters={
                "tool": stats["quantification_tool"],
                "count_column": TOOL_COLUMNS[stats["quantification_tool"]][1],
                "max_unmapped_fraction": self.max_unmapped_fraction,
                "samples": list(counts.columns),
            },
            input_entities=[str(quant_dir), str(tx2gene_path)],
            output_entities=["gene_counts"],
        )
        return counts, stats, ir
