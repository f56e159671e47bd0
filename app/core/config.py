# app/core/config.py
"""Configuration settings for the storage engine.

Uses Pydantic BaseSettings for environment variable management.
"""
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentEnum(str, Enum):
    development = "development"
    testing = "testing"
    staging = "staging"
    production = "production"


class LogLevelEnum(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormatEnum(str, Enum):
    simple = "simple"
    json = "json"


GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024


class Settings(BaseSettings):
    # Pydantic v2 settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Application Settings =====
    app_name: str = Field(default="Storage Engine API", description="Application name")
    environment: EnvironmentEnum = Field(
        default=EnvironmentEnum.development, description="Environment type"
    )
    debug: bool = Field(default=False, description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # ===== Database Settings =====
    database_url: str | None = Field(default=None, description="Database connection URL")
    db_pool_size: int = Field(default=20, description="Database connection pool size")
    db_max_overflow: int = Field(default=0, description="Database max overflow connections")

    # Test database URL
    test_database_url: str | None = Field(default=None, description="Test database URL")

    # ===== Blob Storage (S3 / MinIO) =====
    s3_endpoint_url: str | None = Field(default=None, description="S3 endpoint URL (MinIO in local)")
    s3_access_key_id: str | None = Field(default=None, description="S3 access key ID")
    s3_secret_access_key: str | None = Field(default=None, description="S3 secret access key")
    s3_bucket_name: str = Field(default="threadfilesharing-local", description="S3 bucket name")
    s3_region: str = Field(default="us-east-1", description="S3 region")
    s3_use_ssl: bool = Field(default=False, description="Use TLS for the S3 endpoint")

    blob_timeout_seconds: float = Field(default=60.0, description="Timeout for one blob operation")
    blob_max_retry_attempts: int = Field(default=3, description="Attempts for transient blob errors")
    blob_retry_min_wait: float = Field(default=0.5, description="Minimum retry wait in seconds")
    blob_retry_max_wait: float = Field(default=8.0, description="Maximum retry wait in seconds")

    # ===== Upload Settings =====
    default_chunk_size_bytes: int = Field(default=5 * MIB, description="Default chunk size")
    max_file_size_bytes: int = Field(default=100 * MIB, description="Maximum size of one file")
    max_files_per_session: int = Field(default=10, description="Maximum files per upload session")
    upload_stale_after_hours: int = Field(
        default=24, description="Hours without progress before an upload is failed"
    )
    upload_speed_smoothing: float = Field(
        default=0.3, description="Weight of the newest sample in the upload speed average"
    )

    # ===== Quota Settings =====
    plan_base_unit_bytes: int = Field(default=GIB, description="Base unit of plan storage limits")
    quota_warning_percent: float = Field(
        default=80.0, description="Usage percent that triggers an admission warning"
    )

    # ===== Download Tokens =====
    download_token_length: int = Field(default=32, description="Length of download token secrets")
    download_token_default_ttl: str = Field(default="1h", description="Default token lifetime")
    download_token_max_uses_limit: int = Field(
        default=100, description="Upper bound for max_uses on a single token"
    )

    # ===== Background Tasks (Celery) =====
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1", description="Celery broker URL"
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/2", description="Celery result backend"
    )

    # ===== Monitoring & Logging =====
    log_level: LogLevelEnum = Field(default=LogLevelEnum.INFO, description="Logging level")
    log_format: LogFormatEnum = Field(default=LogFormatEnum.json, description="Log format")

    # ===== Server Settings =====
    host: str = Field(default="127.0.0.1", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")

    # ===== Computed Properties =====
    @property
    def is_development(self) -> bool:
        return self.environment == EnvironmentEnum.development

    @property
    def is_production(self) -> bool:
        return self.environment == EnvironmentEnum.production

    @property
    def is_testing(self) -> bool:
        return self.environment == EnvironmentEnum.testing

    @property
    def has_blob_storage(self) -> bool:
        return bool(self.s3_access_key_id and self.s3_secret_access_key and self.s3_bucket_name)

    @property
    def storage_type(self) -> str:
        if not self.has_blob_storage:
            return "none"
        if self.s3_endpoint_url:
            return "minio"
        return "aws_s3"

    # ===== Validation Methods =====
    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        if v and isinstance(v, str):
            lv = v.lower()
            if lv in ["dev", "develop", "local"]:
                return "development"
            if lv in ["prod"]:
                return "production"
            if lv in ["test"]:
                return "testing"
            return lv
        return v

    @field_validator("download_token_length")
    @classmethod
    def validate_token_length(cls, v):
        if v < 32:
            raise ValueError("Download token secrets must be at least 32 characters")
        return v

    @field_validator("upload_speed_smoothing")
    @classmethod
    def validate_smoothing(cls, v):
        if not 0 < v <= 1:
            raise ValueError("Upload speed smoothing must be in (0, 1]")
        return v

    @model_validator(mode="after")
    def validate_sizes(self):
        if self.default_chunk_size_bytes <= 0:
            raise ValueError("Default chunk size must be positive")
        if self.max_file_size_bytes <= 0:
            raise ValueError("Maximum file size must be positive")
        return self


settings = Settings()


class ConfigValidator:
    @staticmethod
    def validate_required_settings(config: Settings | None = None):
        """Raise ValueError when settings the engine cannot start without are missing."""
        config = config or settings
        errors = []
        if not config.database_url:
            errors.append("DATABASE_URL is required")
        if config.is_production and not config.has_blob_storage:
            errors.append("S3 credentials are required in production")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    @staticmethod
    def get_feature_status() -> dict:
        return {
            "blob_storage": settings.has_blob_storage,
            "storage_type": settings.storage_type,
            "environment": settings.environment,
        }


def get_config_summary() -> dict:
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "environment": settings.environment,
        "debug": settings.debug,
        "features": ConfigValidator.get_feature_status(),
        "database_configured": bool(settings.database_url),
        "storage_type": settings.storage_type,
    }


__all__ = [
    "settings",
    "Settings",
    "ConfigValidator",
    "get_config_summary",
    "EnvironmentEnum",
    "LogLevelEnum",
    "LogFormatEnum",
    "GIB",
    "MIB",
]
