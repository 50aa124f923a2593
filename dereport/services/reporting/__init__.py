from dereport.services.reporting.report_service import ReportError, ReportSection, ReportService

__all__ = ["ReportService", "ReportSection", "ReportError"]
