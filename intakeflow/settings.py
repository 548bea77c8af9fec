"""
Configuration settings for Intakeflow.

This module provides a settings class for Intakeflow, with support for loading
configuration from TOML files and environment variables.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)


class DatabaseDriver(str, Enum):
    """Supported database drivers."""

    SQLITE = "sqlite"
    POSTGRESQL_ASYNC = "postgresql+asyncpg"


class Settings(BaseSettings):
    """Main settings class for Intakeflow.

    Values come from ``settings.toml`` / ``settings.custom.toml`` and from
    ``INTAKEFLOW_*`` environment variables, the latter taking precedence.
    """

    model_config = SettingsConfigDict(
        toml_file=["settings.toml", "settings.custom.toml"],
        env_prefix="INTAKEFLOW_",
        extra="ignore",
    )

    # Server settings
    port: int = 8000
    host: str = "127.0.0.1"
    root_url: str = "/"
    debug: bool = False

    # Storage settings
    storage_path: str = str(Path.home() / "intakeflow/data")
    flows_path: str | None = None  # If None, will use {storage_path}/flows

    # Database settings
    database_driver: DatabaseDriver = DatabaseDriver.SQLITE
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "intakeflow"
    database_username: str = "postgres"
    database_password: str = "postgres"

    # Review claims
    claim_ttl_minutes: int = 30
    claim_sweep_interval: int = 60  # seconds
    claim_sweep_enabled: bool = True
    case_expiry_hours: int = 0  # 0 disables expiry of untouched cases

    # Drafts
    draft_autosave_interval: float = 30.0
    draft_retry_attempts: int = 3
    draft_retry_max_wait: float = 8.0
    draft_flush_timeout: float = 2.0

    # Issued documents
    document_template_id: str = "med_cert_v1"
    clinic_name: str = "Intakeflow Telehealth"
    clinic_provider_number: str | None = None

    # Client
    api_base_url: str = "http://127.0.0.1:8000/api"
    api_timeout: float = 10.0

    # Logging settings
    log_level: str = "INFO"
    log_to_file: bool = False
    log_dir: str | None = None  # If None, will use {storage_path}/logs
    log_rotation: str = "20 MB"
    log_retention: str = "1 week"
    log_format: str | None = None  # Use default if None

    @classmethod
    def settings_customize_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize the sources for settings.

        Priority order: explicit init kwargs, environment variables, then TOML config files
        """
        return init_settings, env_settings, TomlConfigSettingsSource(settings_cls)

    @property
    def database_url(self) -> str:
        """Get the async database URL for SQLAlchemy."""
        if self.database_driver == DatabaseDriver.SQLITE:
            return f"sqlite+aiosqlite:///{self.database_name}.db"
        return (
            f"{self.database_driver.value}://{self.database_username}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    def get_log_dir(self) -> Path:
        """Get the log directory path.

        Returns:
            Path to the log directory. Uses log_dir if specified,
            otherwise creates logs directory in storage_path.
        """
        if self.log_dir:
            return Path(self.log_dir)
        return Path(self.storage_path) / "logs"

    def get_flows_dir(self) -> Path:
        """Get the directory holding flow definition JSON files."""
        if self.flows_path:
            return Path(self.flows_path)
        return Path(self.storage_path) / "flows"

    def get_documents_dir(self) -> Path:
        """Get the directory used by the local blob storage."""
        return Path(self.storage_path) / "documents"


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance, with caching.

    Returns:
        Cached Settings instance
    """
    return Settings()


# Create a global settings instance for easy imports
settings = get_settings()
