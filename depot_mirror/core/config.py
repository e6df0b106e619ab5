"""Configuration management for depot-mirror."""

from __future__ import annotations

import json
import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

from depot_mirror.core.errors import ConfigError

logger = structlog.get_logger()

ENV_TOKEN = "DEPOT_MIRROR_GITHUB_TOKEN"
ENV_OWNER = "DEPOT_MIRROR_REPO_OWNER"
ENV_REPO = "DEPOT_MIRROR_REPO_NAME"


class EndpointPolicy(BaseModel):
    """Spacing and retry policy for one upstream endpoint class."""

    min_interval: float = Field(default=1.0, description="Minimum seconds between requests")
    max_retries: int = Field(default=3, description="Retries after the first attempt")
    base_delay: float = Field(default=1.0, description="First backoff delay in seconds")
    max_delay: float = Field(default=10.0, description="Backoff delay cap in seconds")
    timeout: float = Field(default=30.0, description="Request timeout in seconds")

    @field_validator("min_interval", "base_delay", "max_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        """Validate delay values."""
        if v < 0:
            raise ValueError("Delays must be non-negative")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate max retries value."""
        if v < 0:
            raise ValueError("Max retries must be non-negative")
        return v

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout value."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v


def default_endpoints() -> dict[str, EndpointPolicy]:
    """Endpoint classes used by the resolver, repository and manifest download."""
    return {
        "upstream": EndpointPolicy(min_interval=2.0, timeout=15.0),
        "store": EndpointPolicy(min_interval=1.5, timeout=15.0),
        "repository": EndpointPolicy(min_interval=0.25, timeout=30.0),
        "manifest": EndpointPolicy(min_interval=1.0, timeout=60.0),
    }


class UpstreamConfig(BaseModel):
    """Upstream catalog endpoints."""

    info_url: str = Field(
        default="https://api.steamcmd.net/v1/info/{title_id}",
        description="Depot table endpoint, formatted with title_id"
    )
    details_url: str = Field(
        default="https://store.steampowered.com/api/appdetails",
        description="Store details endpoint (DLC list and names)"
    )
    manifest_url: str | None = Field(
        default=None,
        description="Optional manifest download template with depot_id and manifest_id"
    )
    release_track: str = Field(default="public", description="Manifest track to mirror")
    user_agent: str = Field(default="depot-mirror/0.1.0", description="User-Agent header")

    @field_validator("info_url")
    @classmethod
    def validate_info_url(cls, v: str) -> str:
        """Validate info URL template."""
        if "{title_id}" not in v:
            raise ValueError("info_url must contain a {title_id} placeholder")
        return v


class RepositoryConfig(BaseModel):
    """Version-control host settings for the artifact repository."""

    api_base: str = Field(default="https://api.github.com", description="Hosting API base URL")
    owner: str | None = Field(default=None, description="Repository owner")
    name: str | None = Field(default=None, description="Repository name")
    token: str | None = Field(default=None, description="Write token", repr=False)
    base_branch: str = Field(default="main", description="Branch new title branches start from")
    commit_retries: int = Field(default=3, description="Conflict retries per Apply step")

    @field_validator("commit_retries")
    @classmethod
    def validate_commit_retries(cls, v: int) -> int:
        """Validate commit retries value."""
        if v < 0:
            raise ValueError("Commit retries must be non-negative")
        return v


class SchedulerConfig(BaseModel):
    """Batch reconciliation schedule."""

    interval_hours: float = Field(default=6.0, description="Hours between batch runs")
    initial_delay: float = Field(default=60.0, description="Seconds before the first run")
    inter_title_delay: float = Field(default=1.0, description="Seconds between titles")

    @field_validator("interval_hours")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        """Validate interval value."""
        if v <= 0:
            raise ValueError("Interval must be positive")
        return v

    @field_validator("initial_delay", "inter_title_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Validate delay values."""
        if v < 0:
            raise ValueError("Delays must be non-negative")
        return v


class CacheConfig(BaseModel):
    """Short-lived read cache configuration."""

    enabled: bool = Field(default=True, description="Whether caching is enabled")
    backend: str = Field(default="memory", description="memory or disk")
    cache_dir: Path = Field(
        default=Path.home() / ".cache" / "depot-mirror",
        description="Directory for the disk backend"
    )
    name_ttl: int = Field(default=3600, description="DLC name lifetime in seconds")
    analysis_ttl: int = Field(default=300, description="DLC analysis lifetime in seconds")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend name."""
        if v not in {"memory", "disk"}:
            raise ValueError(f"Invalid cache backend: {v}")
        return v

    @field_validator("name_ttl", "analysis_ttl")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Validate TTL value."""
        if v < 0:
            raise ValueError("TTL must be non-negative")
        return v


class AppConfig(BaseModel):
    """Application configuration."""

    config_dir: Path = Field(
        default=Path.home() / ".config" / "depot-mirror",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "depot-mirror",
        description="Data directory (state database lives here)"
    )

    endpoints: dict[str, EndpointPolicy] = Field(default_factory=default_endpoints)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    max_dlc_lookups: int = Field(default=50, description="DLC checked per completeness query")

    output_format: str = Field(default="rich", description="Output format (rich, json, plain)")
    log_level: str = Field(default="INFO", description="Log level")

    def model_post_init(self, __context) -> None:
        """Ensure directories exist and fill in missing endpoint classes."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for name, policy in default_endpoints().items():
            self.endpoints.setdefault(name, policy)

    @property
    def state_db_path(self) -> Path:
        """Path of the local state database."""
        return self.data_dir / "state.db"

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file, then apply environment credentials.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "depot-mirror" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
            config = cls(**data)
        else:
            config = cls()

        config.apply_environment()
        return config

    def apply_environment(self) -> None:
        """Override repository credentials from the environment."""
        token = os.environ.get(ENV_TOKEN)
        owner = os.environ.get(ENV_OWNER)
        name = os.environ.get(ENV_REPO)
        if token:
            self.repository.token = token
        if owner:
            self.repository.owner = owner
        if name:
            self.repository.name = name

    def require_repository(self) -> RepositoryConfig:
        """Return repository settings, failing if any credential is missing.

        Raises:
            ConfigError: If owner, name or token is unset
        """
        missing = [
            label for label, value in (
                (ENV_OWNER, self.repository.owner),
                (ENV_REPO, self.repository.name),
                (ENV_TOKEN, self.repository.token),
            ) if not value
        ]
        if missing:
            logger.error("repository_config_missing", missing=missing)
            raise ConfigError(f"Missing repository configuration: {', '.join(missing)}")
        return self.repository

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file. The token is never written.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")
        data["repository"]["token"] = None
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v

    @field_validator("max_dlc_lookups")
    @classmethod
    def validate_max_dlc_lookups(cls, v: int) -> int:
        """Validate lookup cap."""
        if v < 0:
            raise ValueError("DLC lookup cap must be non-negative")
        return v
