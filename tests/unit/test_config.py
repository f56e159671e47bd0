"""
Unit tests for Configuration module.
"""

import pytest
from pydantic import ValidationError

from app.core.config import (
    MIB,
    ConfigValidator,
    EnvironmentEnum,
    LogFormatEnum,
    Settings,
    get_config_summary,
)


class TestSettings:
    """Test cases for Settings configuration."""

    def test_storage_defaults(self):
        test_settings = Settings()

        assert test_settings.max_file_size_bytes == 100 * MIB
        assert test_settings.max_files_per_session == 10
        assert test_settings.upload_stale_after_hours == 24
        assert test_settings.download_token_length == 32
        assert test_settings.download_token_default_ttl == "1h"
        assert test_settings.quota_warning_percent == 80.0
        assert test_settings.plan_base_unit_bytes == 1024 * MIB

    def test_environment_shortcuts(self):
        assert Settings(environment="prod").environment == EnvironmentEnum.production
        assert Settings(environment="dev").environment == EnvironmentEnum.development
        assert Settings(environment="test").environment == EnvironmentEnum.testing
        assert Settings(environment="STAGING").environment == EnvironmentEnum.staging

    def test_token_length_minimum(self):
        with pytest.raises(ValidationError):
            Settings(download_token_length=16)

    def test_smoothing_bounds(self):
        with pytest.raises(ValidationError):
            Settings(upload_speed_smoothing=0)
        assert Settings(upload_speed_smoothing=1).upload_speed_smoothing == 1

    def test_chunk_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(default_chunk_size_bytes=0)

    def test_log_format(self):
        assert Settings(log_format="simple").log_format == LogFormatEnum.simple

    def test_storage_type(self):
        assert Settings(s3_access_key_id=None).storage_type == "none"
        minio = Settings(
            s3_access_key_id="key",
            s3_secret_access_key="secret",
            s3_endpoint_url="http://localhost:9000",
        )
        assert minio.has_blob_storage
        assert minio.storage_type == "minio"
        aws = Settings(s3_access_key_id="key", s3_secret_access_key="secret", s3_endpoint_url=None)
        assert aws.storage_type == "aws_s3"


class TestConfigSummary:
    def test_summary_keys(self):
        summary = get_config_summary()
        assert {"app_name", "version", "environment", "features", "storage_type"} <= set(summary)

    def test_feature_status(self):
        status = ConfigValidator.get_feature_status()
        assert "blob_storage" in status


class TestRequiredSettings:
    DB_URL = "sqlite+aiosqlite:///./startup.db"

    def test_development_without_blob_storage(self):
        config = Settings(environment="development", database_url=self.DB_URL, s3_access_key_id=None)

        ConfigValidator.validate_required_settings(config)

    def test_production_requires_blob_storage(self):
        config = Settings(environment="production", database_url=self.DB_URL, s3_access_key_id=None)

        with pytest.raises(ValueError, match="S3 credentials are required"):
            ConfigValidator.validate_required_settings(config)

    def test_production_with_blob_storage(self):
        config = Settings(
            environment="production",
            database_url=self.DB_URL,
            s3_access_key_id="key",
            s3_secret_access_key="secret",
        )

        ConfigValidator.validate_required_settings(config)

    def test_database_url_required(self):
        config = Settings(environment="development", database_url=None)

        with pytest.raises(ValueError, match="DATABASE_URL is required"):
            ConfigValidator.validate_required_settings(config)
