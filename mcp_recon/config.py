"""
Server configuration.

Values come from environment variables and can be overridden by CLI flags:

    RECON_DATA_PATH      path to the .csv/.xlsx reconciliation export (required)
    RECON_LOG_LEVEL      loguru level for the stderr sink (default INFO)
    RECON_DEFAULT_LIMIT  page size when a query omits ``limit`` (default 100)
"""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

SERVER_NAME = "LoanReconMcpServer"
SERVER_VERSION = "1.0.0"
PROTOCOL_VERSION = "2024-11-05"


class Settings(BaseModel):
    data_path: Optional[Path] = Field(None, description="Reconciliation export to load at startup")
    log_level: str = Field("INFO", description="Minimum log level written to stderr")
    default_limit: int = Field(100, ge=0, description="Page size used when a query omits limit")

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from RECON_* environment variables."""
        values = {}
        if os.environ.get("RECON_DATA_PATH"):
            values["data_path"] = Path(os.environ["RECON_DATA_PATH"]).expanduser()
        if os.environ.get("RECON_LOG_LEVEL"):
            values["log_level"] = os.environ["RECON_LOG_LEVEL"]
        if os.environ.get("RECON_DEFAULT_LIMIT"):
            values["default_limit"] = os.environ["RECON_DEFAULT_LIMIT"]
        return cls(**values)

    def with_overrides(self, **overrides) -> "Settings":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return self.model_validate({**self.model_dump(), **changes})
