"""
dereport core module with the exception hierarchy, the experiment descriptor
and provenance records.
"""

from dereport.core.exceptions import (
    ConvergenceError,
    DEReportError,
    EmptyResultWarning,
    InputIntegrityError,
    MappingError,
    MetadataError,
    SampleMismatchError,
)

__all__ = [
    "DEReportError",
    "InputIntegrityError",
    "MappingError",
    "SampleMismatchError",
    "MetadataError",
    "ConvergenceError",
    "EmptyResultWarning",
]
