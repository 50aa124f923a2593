"""
Per-run report configuration with Pydantic validation.

A run is described by one JSON file. Relative paths inside the file are
resolved against the directory that contains it, so a project folder can be
moved as a unit.

Example:
    >>> from dereport.config.report_config import ReportConfig
    >>> config = ReportConfig.load(Path("project/report.json"))
    >>> config.quant_dir
    PosixPath('/data/project/quants')
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from dereport.config.constants import (
    GO_BIOLOGICAL_PROCESS_LIBRARY,
    TABLE_ROWS,
    TOP_K_CATEGORIES,
    TOP_N_GENES,
    VALID_ANNOTATION_SOURCES,
    VALID_DE_ENGINES,
    VALID_QUANT_TOOLS,
    VALID_TRANSFORMS,
)
from dereport.config.settings import get_settings

logger = logging.getLogger(__name__)

PATH_FIELDS = ("tx2gene_path", "metadata_path", "quant_dir", "annotation_table", "output_path")


class ReportConfigError(Exception):
    """Raised when a run configuration cannot be loaded."""

    pass


class ReportConfig(BaseModel):
    """
    Analysis parameters for one report run.

    Attributes:
        tx2gene_path: Transcript -> gene mapping table (transcript_id, gene_id)
        metadata_path: Sample metadata table (sample_id, cell_line, condition)
        quant_dir: Directory with one quantification subdirectory per sample
        quant_tool: salmon | kallisto | auto
        de_engine: pydeseq2 | deseq2_like
        transform_method: vst | log2 (for QC and heatmaps only)
        annotation_source: mygene | table (table requires annotation_table)
    """

    tx2gene_path: Path = Field(..., description="Transcript to gene mapping table")
    metadata_path: Path = Field(..., description="Sample metadata table")
    quant_dir: Path = Field(..., description="Per-sample quantification directory tree")
    quant_tool: str = Field("auto", description="Quantification tool (salmon | kallisto | auto)")

    sample_column: str = Field("sample_id", description="Metadata column with sample ids")
    cell_line_column: str = Field("cell_line", description="Metadata column with cell line labels")
    condition_column: str = Field("condition", description="Metadata column with treatment labels")
    reference_level: str = Field("control", description="Reference condition level")
    test_level: str = Field("treated", description="Test condition level")

    max_unmapped_fraction: float = Field(
        1.0, ge=0.0, le=1.0, description="Unmapped transcript fraction tolerated per sample"
    )
    min_total_count: int = Field(10, ge=0, description="Genes below this total count are not tested")
    transform_method: str = Field("vst", description="Normalization for QC plots (vst | log2)")
    de_engine: str = Field("pydeseq2", description="Differential expression engine")

    annotation_source: str = Field("mygene", description="Annotation source (mygene | table)")
    annotation_table: Optional[Path] = Field(None, description="Local annotation TSV")
    species: str = Field("human", description="Species for annotation lookup")

    gene_set_library: str = Field(
        GO_BIOLOGICAL_PROCESS_LIBRARY, description="Enrichr library (GO Biological Process)"
    )
    enrichr_organism: str = Field("human", description="Enrichr organism")

    top_n_genes: int = Field(TOP_N_GENES, ge=1, description="Genes labelled on volcano/heatmap")
    table_rows: int = Field(TABLE_ROWS, ge=1, description="Rows in the ranked tables")
    top_k_categories: int = Field(TOP_K_CATEGORIES, ge=1, description="Categories in the DAG plot")

    output_path: Path = Field(Path("report/dereport.html"), description="Report document path")
    title: str = Field("Differential expression report", description="Report title")

    @field_validator("quant_tool")
    @classmethod
    def validate_quant_tool(cls, v):
        if v not in VALID_QUANT_TOOLS:
            raise ValueError(f"Invalid quant_tool: '{v}'. Must be one of: {', '.join(VALID_QUANT_TOOLS)}")
        return v

    @field_validator("de_engine")
    @classmethod
    def validate_de_engine(cls, v):
        if v not in VALID_DE_ENGINES:
            raise ValueError(f"Invalid de_engine: '{v}'. Must be one of: {', '.join(VALID_DE_ENGINES)}")
        return v

    @field_validator("transform_method")
    @classmethod
    def validate_transform(cls, v):
        if v not in VALID_TRANSFORMS:
            raise ValueError(
                f"Invalid transform_method: '{v}'. Must be one of: {', '.join(VALID_TRANSFORMS)}"
            )
        return v

    @field_validator("annotation_source")
    @classmethod
    def validate_annotation_source(cls, v):
        if v not in VALID_ANNOTATION_SOURCES:
            raise ValueError(
                f"Invalid annotation_source: '{v}'. "
                f"Must be one of: {', '.join(VALID_ANNOTATION_SOURCES)}"
            )
        return v

    @model_validator(mode="after")
    def check_annotation_table(self):
        if self.annotation_source == "table" and self.annotation_table is None:
            raise ValueError("annotation_source 'table' requires annotation_table")
        if self.reference_level == self.test_level:
            raise ValueError("reference_level and test_level must differ")
        return self

    def resolve_paths(self, base_dir: Path) -> "ReportConfig":
        """Return a copy with relative paths anchored at base_dir."""
        updates = {}
        for name in PATH_FIELDS:
            value = getattr(self, name)
            if value is not None and not Path(value).is_absolute():
                updates[name] = (base_dir / value).resolve()
        return self.model_copy(update=updates)

    def save(self, path: Path) -> None:
        """
        Save configuration as indented JSON.

        Raises:
            IOError: If write operation fails
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            path.write_text(self.model_dump_json(indent=2))
            logger.info(f"Saved report config to {path}")
        except Exception as e:
            logger.error(f"Failed to save report config: {e}")
            raise

    @classmethod
    def load(cls, path: Path) -> "ReportConfig":
        """
        Load configuration from a JSON file.

        Unlike optional preference files, a run configuration has no usable
        defaults for its input paths, so every failure is raised.

        Raises:
            ReportConfigError: If the file is missing, not JSON, or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ReportConfigError(f"Report config not found: {path}")

        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ReportConfigError(f"Corrupted report config at {path}: {e}") from e

        try:
            config = cls(**data)
        except ValidationError as e:
            raise ReportConfigError(f"Invalid report config at {path}: {e}") from e

        logger.info(f"Loaded report config from {path}")
        return config.resolve_paths(path.parent.resolve())

    @classmethod
    def template(cls) -> "ReportConfig":
        """Return a config pointing at conventional relative locations."""
        settings = get_settings()
        return cls(
            tx2gene_path=Path("tx2gene.tsv"),
            metadata_path=Path("samples.tsv"),
            quant_dir=Path("quants"),
            species=settings.SPECIES,
            enrichr_organism=settings.ENRICHR_ORGANISM,
            output_path=settings.OUTPUT_DIR / "dereport.html",
        )
