from dereport.services.visualization.bulk_visualization_service import (
    BulkVisualizationError,
    BulkVisualizationService,
)

__all__ = ["BulkVisualizationService", "BulkVisualizationError"]
