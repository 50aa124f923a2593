"""Configuration: fixed constants, environment settings and per-run report config."""

from dereport.config.report_config import ReportConfig, ReportConfigError
from dereport.config.settings import Settings, get_settings

__all__ = ["ReportConfig", "ReportConfigError", "Settings", "get_settings"]
