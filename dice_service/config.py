"""Service settings loaded from the environment (prefix ``DICE_``)."""
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ExporterName = Literal["otlp", "console", "none"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Resource attributes
    service_name: str = Field(default="dice", description="Resource service.name")
    service_version: str = Field(default="0.1.0", description="Resource service.version")
    environment: str = Field(default="development", description="Deployment environment")

    # HTTP server
    host: str = Field(default="0.0.0.0", description="Listening host")
    port: int = Field(default=8080, ge=0, le=65535, description="Listening port")
    read_timeout: float = Field(default=1.0, gt=0, description="Request read bound (seconds)")
    write_timeout: float = Field(default=10.0, gt=0, description="Response write bound (seconds)")
    shutdown_timeout: float = Field(
        default=30.0, gt=0, description="Drain deadline for in-flight requests (seconds)"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(default="json", description="Log output format")

    # OpenTelemetry export
    traces_exporter: ExporterName = Field(default="console", description="Span exporter")
    metrics_exporter: Literal["otlp", "console", "prometheus", "none"] = Field(
        default="console", description="Metric exporter"
    )
    logs_exporter: ExporterName = Field(default="console", description="Log record exporter")
    otlp_endpoint: str = Field(
        default="http://localhost:4317", description="OTel Collector gRPC endpoint"
    )
    metric_export_interval_ms: int = Field(
        default=10000, gt=0, description="How often metrics are pushed (milliseconds)"
    )
    batch_export: bool = Field(
        default=True, description="Batch spans/logs in the background instead of exporting inline"
    )

    model_config = SettingsConfigDict(
        env_prefix="DICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
