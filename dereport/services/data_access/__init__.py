from dereport.services.data_access.quantification_service import (
    QuantificationError,
    QuantificationService,
)

__all__ = ["QuantificationService", "QuantificationError"]
