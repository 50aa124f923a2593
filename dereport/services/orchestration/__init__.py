from dereport.services.orchestration.report_pipeline import ReportPipeline, ReportResult

__all__ = ["ReportPipeline", "ReportResult"]
