"""Application configuration via Pydantic Settings.

All configuration is loaded from environment variables following 12-factor principles.
"""

import re
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        description="PostgreSQL async connection string",
    )
    database_schema: str | None = Field(
        default=None,
        description="PostgreSQL schema for isolated environments (e.g., pr_42)",
    )

    @field_validator("database_schema")
    @classmethod
    def validate_database_schema(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not re.match(r"^[a-z_][a-z0-9_]{0,62}$", v):
            msg = "Invalid database_schema: must match ^[a-z_][a-z0-9_]{0,62}$"
            raise ValueError(msg)
        return v

    # Import pipeline
    import_batch_size: int = Field(
        default=2500,
        description="Source rows per batch unit",
        gt=0,
    )
    import_work_dir: str = Field(
        default="./data/imports",
        description="Directory for downloaded archives, extracted CSVs and uploads",
    )
    max_active_jobs: int = Field(
        default=1,
        description="Import jobs allowed in the active download/extract/process phase at once",
        gt=0,
    )
    max_upload_size_mb: int = Field(
        default=1024,
        description="Maximum size of an uploaded source file in megabytes",
        gt=0,
    )
    upload_grace_seconds: float = Field(
        default=300.0,
        description="Files in the uploads bucket newer than this are kept when it is emptied",
        ge=0,
    )
    progress_update_interval: float = Field(
        default=2.0,
        description="Minimum seconds between persisted download progress updates",
        ge=0,
    )

    # Download
    download_timeout: float = Field(
        default=300.0,
        description="Timeout in seconds for source archive downloads",
        gt=0,
    )
    download_chunk_size: int = Field(
        default=65536,
        description="Bytes per streamed download chunk",
        gt=0,
    )
    download_progress_bar: bool = Field(
        default=False,
        description="Draw a tqdm progress bar on stderr while downloading (CLI runs)",
    )
    import_allowed_domains: str = Field(
        default="cdn.tse.jus.br,dadosabertos.tse.jus.br",
        description="Comma-separated list of allowed domains for source archive URLs",
    )

    @property
    def import_allowed_domain_list(self) -> list[str]:
        """Parse allowed domains string into a lowercase list."""
        if not self.import_allowed_domains.strip():
            return []
        return [d.strip().lower() for d in self.import_allowed_domains.split(",") if d.strip()]

    @property
    def import_work_path(self) -> Path:
        """Import working directory as a Path."""
        return Path(self.import_work_dir)

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for log files (enables file logging with 24h rotation when set)",
    )

    # CORS
    cors_origins: str = Field(
        default="",
        description="Comma-separated list of allowed CORS origins (must be explicitly configured)",
    )

    # Environment
    environment: str = Field(
        default="production",
        description="Deployment environment name (e.g. production, dev, staging)",
    )

    # API
    api_v1_prefix: str = Field(
        default="/api/v1",
        description="API version prefix",
    )

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        if not self.cors_origins.strip():
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()  # type: ignore[call-arg]
