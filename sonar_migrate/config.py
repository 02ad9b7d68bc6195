"""Configuration models and environment variable parsing for the SonarQube migration tool."""

import json
import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic import ValidationError as PydanticValidationError

from sonar_migrate.errors import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_SONARCLOUD_URL = "https://sonarcloud.io"


def _require_token(v: str) -> str:
    if not v or v.strip() == "":
        raise ValueError("Token cannot be empty")
    return v.strip()


class SourceConfig(BaseModel):
    """Connection settings for the source SonarQube server."""

    url: HttpUrl = Field(..., description="SonarQube server URL")
    token: str = Field(..., description="SonarQube API token")

    @field_validator("token")
    def validate_token(cls, v: str) -> str:
        """Validate that the token is not empty."""
        return _require_token(v)


class TargetOrgConfig(BaseModel):
    """A destination SonarCloud organization (tenant)."""

    key: str = Field(..., min_length=1, description="SonarCloud organization key")
    token: str = Field(..., description="SonarCloud API token")
    url: HttpUrl = Field(default=DEFAULT_SONARCLOUD_URL, description="SonarCloud URL")

    @field_validator("token")
    def validate_token(cls, v: str) -> str:
        """Validate that the token is not empty."""
        return _require_token(v)


class TransferConfig(BaseModel):
    """Configuration for scanner report transfer."""

    mode: Literal["full", "incremental"] = Field(
        default="full", description="Transfer mode"
    )
    sync_all_branches: bool = Field(
        default=True,
        description="Transfer every branch; when False only the main branch is transferred",
    )
    exclude_branches: list[str] = Field(
        default_factory=list,
        description="Branch names never transferred",
    )


class MigrateSettings(BaseModel):
    """Configuration for full multi-organization migrations."""

    output_dir: Path = Field(
        default=Path("./migration-output"),
        description="Directory for mapping CSVs, state files and reports",
    )
    mappings_dir: Path | None = Field(
        default=None,
        description="Directory of operator-edited mapping CSVs to apply",
    )
    dry_run: bool = Field(
        default=False, description="Extract and generate mappings without migrating"
    )
    wait: bool = Field(
        default=False, description="Wait for server-side analysis of each upload"
    )
    skip_issue_sync: bool = Field(default=False)
    skip_hotspot_sync: bool = Field(default=False)
    skip_quality_profile_sync: bool = Field(default=False)

    def state_dir(self) -> Path:
        """Directory holding per-project state files."""
        return self.output_dir / "state"

    def state_file(self, project_key: str) -> Path:
        """Path of the state file for one project."""
        return self.state_dir() / f".state.{project_key}.json"


class RateLimitConfig(BaseModel):
    """Retry and throttling settings for destination write calls."""

    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries on HTTP 429/503 before giving up",
    )
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Delay before the first retry in seconds, doubled on each retry",
    )
    min_request_interval: float = Field(
        default=0.0,
        ge=0.0,
        le=60.0,
        description="Minimum seconds between two write requests on one connection",
    )


class PerformanceConfig(BaseModel):
    """Independent concurrency limits per operation class."""

    source_extraction: int = Field(default=10, ge=1, le=100)
    hotspot_extraction: int = Field(default=10, ge=1, le=100)
    issue_sync: int = Field(default=5, ge=1, le=50)
    hotspot_sync: int = Field(default=3, ge=1, le=50)
    project_migration: int = Field(default=1, ge=1, le=32)


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v.upper()

    @field_validator("format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v.lower() not in {"json", "text"}:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class Config(BaseModel):
    """Main configuration class for the migration tool."""

    model_config = ConfigDict(validate_assignment=True)

    source: SourceConfig
    organizations: list[TargetOrgConfig] = Field(..., min_length=1)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    migrate: MigrateSettings = Field(default_factory=MigrateSettings)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    report_pipeline: str | None = Field(
        default=None,
        description="Import path ('module:attribute') of the scanner report pipeline factory",
    )

    @field_validator("organizations")
    def validate_unique_org_keys(
        cls, v: list[TargetOrgConfig]
    ) -> list[TargetOrgConfig]:
        """Organization keys must be unique."""
        keys = [org.key for org in v]
        duplicates = {k for k in keys if keys.count(k) > 1}
        if duplicates:
            raise ValueError(
                f"Duplicate organization keys: {', '.join(sorted(duplicates))}"
            )
        return v

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables.

        ``SONARCLOUD_ORG`` may hold several comma-separated organization keys,
        all sharing ``SONARCLOUD_TOKEN``.

        Returns:
            Config instance populated from environment variables.

        Raises:
            ConfigurationError: If required environment variables are missing or invalid.
        """
        required = {
            name: os.getenv(name)
            for name in (
                "SONARQUBE_URL",
                "SONARQUBE_TOKEN",
                "SONARCLOUD_ORG",
                "SONARCLOUD_TOKEN",
            )
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

        sonarcloud_url = os.getenv("SONARCLOUD_URL", DEFAULT_SONARCLOUD_URL)
        org_keys = [
            k.strip() for k in required["SONARCLOUD_ORG"].split(",") if k.strip()
        ]

        try:
            return cls(
                source=SourceConfig(
                    url=required["SONARQUBE_URL"], token=required["SONARQUBE_TOKEN"]
                ),
                organizations=[
                    TargetOrgConfig(
                        key=key, token=required["SONARCLOUD_TOKEN"], url=sonarcloud_url
                    )
                    for key in org_keys
                ],
                transfer=TransferConfig(mode=os.getenv("TRANSFER_MODE", "full")),
                migrate=MigrateSettings(
                    output_dir=Path(
                        os.getenv("MIGRATION_OUTPUT_DIR", "./migration-output")
                    ),
                ),
                rate_limit=RateLimitConfig(
                    max_retries=int(os.getenv("RATE_LIMIT_MAX_RETRIES", "3")),
                    base_delay=float(os.getenv("RATE_LIMIT_BASE_DELAY", "1.0")),
                    min_request_interval=float(
                        os.getenv("RATE_LIMIT_MIN_REQUEST_INTERVAL", "0.0")
                    ),
                ),
                logging=LoggingConfig(
                    level=os.getenv("LOG_LEVEL", "INFO"),
                    format=os.getenv("LOG_FORMAT", "json"),
                ),
                report_pipeline=os.getenv("REPORT_PIPELINE"),
            )
        except (PydanticValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid environment configuration: {e}") from e

    @classmethod
    def from_file(cls, config_path: Path) -> "Config":
        """Create configuration from a YAML or JSON file.

        Args:
            config_path: Path to the configuration file

        Returns:
            Config instance populated from the file

        Raises:
            ConfigurationError: If the file is missing, unreadable, of an
                unsupported format, or fails validation
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        file_extension = config_path.suffix.lower()

        try:
            with open(config_path, encoding="utf-8") as f:
                if file_extension == ".json":
                    config_data = json.load(f)
                elif file_extension in [".yaml", ".yml"]:
                    config_data = yaml.safe_load(f)
                else:
                    raise ConfigurationError(
                        f"Unsupported configuration file format: {file_extension}. Supported formats: .json, .yaml, .yml"
                    )
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {config_path}"
            )

        try:
            return cls(**config_data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid configuration file: {e}") from e

    def org(self, key: str) -> TargetOrgConfig:
        """Look up a configured organization by key."""
        for org in self.organizations:
            if org.key == key:
                return org
        raise ConfigurationError(f"Organization not configured: {key}")
