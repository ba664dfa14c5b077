"""
Configuration loader for Feed Sentry.

Loads settings from an optional YAML file, applies environment overrides,
and validates thresholds.
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(Exception):
    """Configuration error."""

    pass


@dataclass(frozen=True)
class RetentionConfig:
    """Per-feed entry cap and eviction batch size."""

    max_entries_per_feed: int = 2000
    eviction_batch_size: int = 200

    def __post_init__(self):
        if self.max_entries_per_feed < 1:
            raise ValueError("max_entries_per_feed must be positive")
        if not 0 <= self.eviction_batch_size < self.max_entries_per_feed:
            raise ValueError(
                "eviction_batch_size must be non-negative and below max_entries_per_feed"
            )


@dataclass(frozen=True)
class PollingConfig:
    """Scheduler cadence and failure escalation."""

    alarm_name: str = "rss-poller"
    min_interval_seconds: int = 60
    default_interval_seconds: int = 600
    max_failure_count: int = 100
    fetch_max_retries: int = 2
    fetch_retry_delay: float = 1.0

    def __post_init__(self):
        if self.min_interval_seconds < 1:
            raise ValueError("min_interval_seconds must be positive")
        if self.default_interval_seconds < self.min_interval_seconds:
            raise ValueError("default_interval_seconds must be >= min_interval_seconds")
        if self.max_failure_count < 1:
            raise ValueError("max_failure_count must be positive")


@dataclass(frozen=True)
class HttpConfig:
    timeout: float = 15.0
    max_retries: int = 3
    retry_delay: float = 1.0
    user_agent: str = "FeedSentry/0.1.0"


@dataclass(frozen=True)
class PagingConfig:
    page_size: int = 50
    infinite_limit: int = 20
    infinite_max: int = 100


@dataclass(frozen=True)
class NotificationConfig:
    failure_warning_every: int = 10
    badge_max_display: int = 999


@dataclass(frozen=True)
class PermissionConfig:
    """Hosts the process may fetch from."""

    allow_all: bool = True
    origins: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Settings:
    """
    Full Feed Sentry configuration.

    Immutable (frozen) to prevent accidental modification after loading.
    """

    db_path: str = "feed_sentry.db"
    checkpoint_path: str = "feed_sentry_checkpoints.db"
    log_level: str = "info"
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    paging: PagingConfig = field(default_factory=PagingConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    permissions: PermissionConfig = field(default_factory=PermissionConfig)


class ConfigLoader:
    """
    Loads and validates Feed Sentry configuration.

    Supports:
    - Loading from an optional YAML file
    - Environment variable overrides
    - Validation of thresholds
    """

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config.yaml file, or None for defaults only
        """
        self.config_path = Path(config_path) if config_path else None

    def load(self) -> Settings:
        """
        Load and validate configuration.

        Returns:
            Settings object

        Raises:
            ConfigError: If config is invalid or the given file is missing
        """
        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise ConfigError(f"Configuration file not found: {self.config_path}")
            try:
                with open(self.config_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse YAML: {e}")
            if not isinstance(config_data, dict):
                raise ConfigError("Configuration root must be a mapping")

        try:
            return self._parse_config(config_data)
        except ConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}")

    def _parse_config(self, data: Dict[str, Any]) -> Settings:
        """
        Parse and validate configuration data.

        Args:
            data: Parsed YAML data

        Returns:
            Settings object

        Raises:
            ConfigError: If validation fails
        """
        log_level = str(
            os.getenv("FEED_SENTRY_LOG_LEVEL", data.get("log_level", "info"))
        ).lower()
        if log_level not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log_level '{log_level}'. Valid values: {list(VALID_LOG_LEVELS)}"
            )

        permissions_data = self._section(data, "permissions")
        origins = permissions_data.pop("origins", ()) or ()
        if isinstance(origins, str):
            raise ConfigError("permissions.origins must be a list")

        settings = Settings(
            db_path=os.getenv("FEED_SENTRY_DB_PATH", data.get("db_path", Settings.db_path)),
            checkpoint_path=os.getenv(
                "FEED_SENTRY_CHECKPOINT_PATH",
                data.get("checkpoint_path", Settings.checkpoint_path),
            ),
            log_level=log_level,
            retention=RetentionConfig(**self._section(data, "retention")),
            polling=PollingConfig(**self._section(data, "polling")),
            http=HttpConfig(**self._section(data, "http")),
            paging=PagingConfig(**self._section(data, "paging")),
            notifications=NotificationConfig(**self._section(data, "notifications")),
            permissions=PermissionConfig(origins=tuple(origins), **permissions_data),
        )

        logger.info(
            "Loaded configuration (db=%s, cap=%d/%d, min interval=%ds)",
            settings.db_path,
            settings.retention.max_entries_per_feed,
            settings.retention.eviction_batch_size,
            settings.polling.min_interval_seconds,
        )
        return settings

    def _section(self, data: Dict[str, Any], name: str) -> Dict[str, Any]:
        section = data.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        return dict(section)


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from the given path or FEED_SENTRY_CONFIG."""
    path = config_path or os.getenv("FEED_SENTRY_CONFIG")
    return ConfigLoader(Path(path) if path else None).load()
