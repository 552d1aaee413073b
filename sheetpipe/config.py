"""Configuration management for SheetPipe.

Settings are read from environment variables with the SHEETPIPE_ prefix,
or from a .env file in the working directory.

Environment Variables:
    SHEETPIPE_STREAMING_THRESHOLD_MB: Input size at which reads switch to
        row-by-row streaming (default: 20)
    SHEETPIPE_IO_TIMEOUT_SECONDS: Default job I/O deadline, unset for none
    SHEETPIPE_MAX_WORKERS: Parallel jobs for batch runs (default: 4)
    SHEETPIPE_WRITER_ENGINE: openpyxl or xlsxwriter (default: openpyxl)
    SHEETPIPE_XLSXWRITER_CONSTANT_MEMORY: Stream rows with XlsxWriter
        instead of building a shared-string table (default: false)
    SHEETPIPE_LOG_LEVEL: Logging level (default: INFO)
    SHEETPIPE_SERVER_HOST: REST bind host (default: 0.0.0.0)
    SHEETPIPE_SERVER_PORT: REST bind port (default: 8000)
"""

from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SHEETPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    streaming_threshold_mb: float = 20.0
    io_timeout_seconds: float | None = None
    max_workers: int = 4
    writer_engine: Literal["openpyxl", "xlsxwriter"] = "openpyxl"
    xlsxwriter_constant_memory: bool = False
    log_level: str = "INFO"
    server_host: str = "0.0.0.0"
    server_port: int = 8000

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        return upper_v

    @field_validator("streaming_threshold_mb")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Streaming threshold must be >= 0, got {v}")
        return v

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"max_workers must be at least 1, got {v}")
        return v

    @property
    def streaming_threshold_bytes(self) -> int:
        return int(self.streaming_threshold_mb * 1024 * 1024)


# Create the global settings instance
settings = Settings()
