from dereport.services.analysis.annotation_service import (
    AnnotationError,
    AnnotationService,
    AnnotationTableError,
    MyGeneAnnotationSource,
    TableAnnotationSource,
    call_significance,
)
from dereport.services.analysis.differential_expression_service import (
    DESeq2LikeEngine,
    DifferentialExpressionError,
    DifferentialExpressionService,
    PyDESeq2Engine,
)
from dereport.services.analysis.enrichment_service import (
    EnrichmentError,
    EnrichmentService,
    EnrichrBackend,
)

__all__ = [
    "AnnotationService",
    "AnnotationError",
    "AnnotationTableError",
    "MyGeneAnnotationSource",
    "TableAnnotationSource",
    "call_significance",
    "DifferentialExpressionService",
    "DifferentialExpressionError",
    "PyDESeq2Engine",
    "DESeq2LikeEngine",
    "EnrichmentService",
    "EnrichmentError",
    "EnrichrBackend",
]
