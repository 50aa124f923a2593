"""
Core exceptions for dereport.

Errors fall into three families that the pipeline treats differently:

- Input-integrity errors (InputIntegrityError and subclasses) are detected
  early and abort the run; downstream results would be meaningless.
- Per-gene statistical failures (ConvergenceError) are recovered locally as
  undefined values for the affected gene.
- Empty results (EmptyResultWarning) are a warning, not an error: the report
  renders a visibly empty artifact instead.
"""

from typing import Any, Dict, Optional


class DEReportError(Exception):
    """Base exception for all dereport errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        return self.message


class InputIntegrityError(DEReportError):
    """Base class for errors in the run's input files."""

    pass


class MappingError(InputIntegrityError):
    """
    Raised when quantified transcripts cannot be resolved to genes.

    Individual unmapped transcripts are excluded and reported, not fatal.
    This error is raised only when a sample has no mappable transcript at all
    or its unmapped fraction exceeds the configured tolerance.

    Attributes:
        details: Contains:
            - sample: Sample identifier
            - n_unmapped: Number of unmapped transcripts
            - n_total: Number of transcripts in the sample
            - examples: A few unmapped transcript identifiers
    """

    pass


class SampleMismatchError(InputIntegrityError):
    """
    Raised when count-matrix samples and metadata samples cannot be reconciled.

    Attributes:
        details: Contains:
            - missing_from_metadata: Samples quantified but not described
            - missing_from_counts: Samples described but not quantified
    """

    pass


class MetadataError(InputIntegrityError):
    """Raised when the sample metadata table is malformed."""

    pass


class ConvergenceError(DEReportError):
    """
    Raised when the per-gene model cannot be fitted.

    Never escapes a differential expression engine: the gene's row receives
    undefined (NaN) statistics and the analysis continues.
    """

    pass


class EmptyResultWarning(UserWarning):
    """Emitted when a stage legitimately produces no rows (no significant genes, no enriched terms)."""

    pass


__all__ = [
    "DEReportError",
    "InputIntegrityError",
    "MappingError",
    "SampleMismatchError",
    "MetadataError",
    "ConvergenceError",
    "EmptyResultWarning",
]
