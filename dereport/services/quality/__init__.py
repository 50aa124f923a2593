from dereport.services.quality.normalization_service import (
    NormalizationError,
    NormalizationService,
)

__all__ = ["NormalizationService", "NormalizationError"]
