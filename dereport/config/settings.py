"""
Application settings and configuration.

Environment-level settings (log level, species, default output directory).
Per-run analysis parameters live in ReportConfig (report_config.py).
"""

import os
from pathlib import Path

from dotenv import load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    Values are read once at construction; a `.env` file in the working
    directory is honoured through python-dotenv.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        self.BASE_DIR = Path(__file__).resolve().parent.parent

        # Logging settings
        self.LOG_LEVEL = os.environ.get("DEREPORT_LOG_LEVEL", "INFO").upper()

        # Annotation / enrichment defaults
        self.SPECIES = os.environ.get("DEREPORT_SPECIES", "human")
        self.ENRICHR_ORGANISM = os.environ.get("DEREPORT_ENRICHR_ORGANISM", "human")

        # Output
        self.OUTPUT_DIR = Path(os.environ.get("DEREPORT_OUTPUT_DIR", "report"))

    def __repr__(self) -> str:
        return (
            f"Settings(LOG_LEVEL={self.LOG_LEVEL}, SPECIES={self.SPECIES}, "
            f"OUTPUT_DIR={self.OUTPUT_DIR})"
        )


_settings = None


def get_settings() -> Settings:
    """Return the process settings, constructing them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
