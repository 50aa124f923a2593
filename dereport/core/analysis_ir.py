"""
Provenance records for reproducible report runs.

Every service operation returns a 3-tuple (result, stats, AnalysisStep). The
AnalysisStep captures which engine ran, with which parameters and library
version, so the rendered report carries its own methods appendix.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from importlib import metadata as importlib_metadata
from typing import Any, Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


def library_version(distribution: str) -> Optional[str]:
    """Return the installed version of a distribution, or None if it is absent."""
    try:
        return importlib_metadata.version(distribution)
    except importlib_metadata.PackageNotFoundError:
        return None


@dataclass
class AnalysisStep:
    """
    Provenance record for one analysis operation.

    Attributes:
        operation: Operation name (e.g., "pydeseq2.wald_test")
        tool_name: Service method that emitted the step
        description: Human-readable description (appears in the report appendix)
        library: Distribution that did the numerical work (e.g., "pydeseq2")
        parameters: Actual parameter values used in this execution
        input_entities: Names of the inputs consumed
        output_entities: Names of the outputs produced
        execution_context: Library version, timestamp, branch label, etc.

    Example:
        >>> ir = AnalysisStep(
        ...     operation="pydeseq2.wald_test",
        ...     tool_name="DifferentialExpressionService.run_differential_expression",
        ...     description="DESeq2 Wald test treated vs control (HT55)",
        ...     library="pydeseq2",
        ...     parameters={"contrast": ["condition", "treated", "control"]},
        ... )
    """

    operation: str
    tool_name: str
    description: str
    library: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)
    execution_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.execution_context.setdefault("timestamp", datetime.now().isoformat())
        if self.library and "library_version" not in self.execution_context:
            self.execution_context["library_version"] = library_version(self.library)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = ["operation", "tool_name", "description", "library"]
        missing_fields = [f for f in required_fields if f not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {missing_fields}")
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def steps_to_frame(steps: List[AnalysisStep]) -> pd.DataFrame:
    """
    Flatten a list of steps into a table for the report appendix.

    Parameters are rendered as `key=value` pairs; long lists are truncated
    to their length so gene lists do not flood the document.
    """
    rows = []
    for step in steps:
        rendered = []
        for key, value in step.parameters.items():
            if isinstance(value, (list, tuple, set)) and len(value) > 10:
                value = f"<{len(value)} items>"
            rendered.append(f"{key}={value}")
        rows.append(
            {
                "operation": step.operation,
                "description": step.description,
                "library": step.library,
                "version": step.execution_context.get("library_version") or "n/a",
                "parameters": "; ".join(rendered),
            }
        )
    return pd.DataFrame(
        rows, columns=["operation", "description", "library", "version", "parameters"]
    )
