"""Settings management using Pydantic for type validation and configuration."""

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, PrivateAttr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..ics.models import PrivacyLevel
from ..sync.identity import SOURCE_UID_PATTERN

ENV_PREFIX = "CALENDARSYNC_"


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    # Console Logging
    console_enabled: bool = Field(default=True, description="Enable console logging")
    console_level: str = Field(
        default="INFO",
        description="Console log level: DEBUG, VERBOSE, INFO, WARNING, ERROR, CRITICAL",
    )
    console_colors: bool = Field(
        default=True, description="Enable colored console output (auto-detected)"
    )

    # File Logging
    file_enabled: bool = Field(default=False, description="Enable rotating file logging")
    file_level: str = Field(
        default="DEBUG",
        description="File log level: DEBUG, VERBOSE, INFO, WARNING, ERROR, CRITICAL",
    )
    file_directory: Optional[str] = Field(
        default=None, description="Custom log directory (defaults to data_dir/logs)"
    )
    file_prefix: str = Field(default="calendarsync", description="Log file prefix")
    max_log_files: int = Field(default=5, description="Rotated log files to keep")
    max_file_bytes: int = Field(default=10 * 1024 * 1024, description="Rotate at this size")
    include_function_names: bool = Field(
        default=True, description="Include function names and line numbers in file logs"
    )

    # Third-party Libraries
    third_party_level: str = Field(
        default="WARNING", description="Log level for third-party libraries"
    )


class CleanupPatternRule(BaseModel):
    """Regex rule used by the pattern matcher of the cleanup analyzer.

    Events whose title or description match ``regex`` are grouped by the value of
    the first capture group (or the whole match when the regex has no groups).
    """

    name: str = Field(..., description="Rule name shown in group reasons")
    regex: str = Field(..., description="Regular expression applied to title/description")
    fields: list[str] = Field(
        default_factory=lambda: ["description"], description="Event fields to search"
    )

    @field_validator("regex")
    @classmethod
    def _check_regex(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid regular expression {value!r}: {e}") from e
        return value


def _default_pattern_rules() -> list[CleanupPatternRule]:
    return [
        CleanupPatternRule(
            name="source-uid-marker", regex=SOURCE_UID_PATTERN, fields=["description"]
        )
    ]


class CleanupSettings(BaseModel):
    """Duplicate cleanup configuration."""

    fuzzy_similarity_threshold: float = Field(
        default=0.85, description="Minimum normalized title similarity for fuzzy matches"
    )
    fuzzy_time_tolerance_minutes: int = Field(
        default=5, description="Maximum start difference for fuzzy matches"
    )
    max_deletions: int = Field(default=50, description="Safety cap on deletions per operation")
    skip_with_attendees: bool = Field(
        default=True, description="Never delete duplicates that carry attendees"
    )
    preserve_newest: bool = Field(
        default=False, description="Keep the newest event instead of the oldest"
    )
    create_backup: bool = Field(default=True, description="Back up events before deleting")
    analysis_days_past: int = Field(default=90, description="Analysis window start offset")
    analysis_days_future: int = Field(default=365, description="Analysis window end offset")
    patterns: list[CleanupPatternRule] = Field(
        default_factory=_default_pattern_rules, description="Pattern matcher rules"
    )

    @field_validator("fuzzy_similarity_threshold")
    @classmethod
    def _check_threshold(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("fuzzy_similarity_threshold must be between 0 and 1")
        return value

    @field_validator(
        "fuzzy_time_tolerance_minutes", "max_deletions", "analysis_days_past", "analysis_days_future"
    )
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value


class SyncSettings(BaseSettings):
    """Application settings with environment variable support."""

    # Private attributes
    _explicit_args: set = PrivateAttr(default_factory=set)
    _env_vars_set: set = PrivateAttr(default_factory=set)

    # Application Configuration
    app_name: str = Field(default="CalendarSync", description="Application name")
    sync_id: str = Field(default="default", description="Identifier of this sync configuration")

    # Source feed
    feed_url: Optional[str] = Field(default=None, description="ICS feed URL")
    request_timeout: float = Field(default=30.0, description="HTTP timeout for feed requests")
    max_retries: int = Field(default=2, description="Feed fetch retries on network errors")
    retry_backoff_factor: float = Field(default=1.5, description="Feed retry backoff factor")

    # Target calendar
    target_calendar_id: str = Field(default="primary", description="Target calendar id")
    target_timezone: Optional[str] = Field(
        default=None, description="IANA timezone attached to written events"
    )
    store_call_timeout: float = Field(
        default=30.0, description="Timeout in seconds for every target store call"
    )
    store_max_attempts: int = Field(
        default=5, description="Rate-limit attempts made by the Google store adapter"
    )
    store_api_delay: float = Field(
        default=0.0, description="Base delay before each Google API request"
    )
    apply_concurrency: int = Field(
        default=1, description="Concurrent store calls during the apply phase"
    )
    privacy_level: Optional[PrivacyLevel] = Field(
        default=None,
        description="Busy/free mode: how much of each event is copied (full copy when unset)",
    )

    # Sync window
    sync_days_past: int = Field(default=0, description="Days before now included in a run")
    sync_days_future: int = Field(default=31, description="Days after now included in a run")
    default_timezone: str = Field(
        default="UTC", description="Timezone applied to floating feed times"
    )
    rrule_max_occurrences: int = Field(
        default=1000, description="Maximum occurrences generated per recurring series"
    )

    # File Paths
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config" / "calendarsync")
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "calendarsync"
    )
    config_path: Optional[Path] = Field(
        default=None, description="Explicit YAML configuration file"
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    def __init__(self, **kwargs: Any) -> None:
        env_vars_set = {
            key[len(ENV_PREFIX) :].lower() for key in os.environ if key.startswith(ENV_PREFIX)
        }

        super().__init__(**kwargs)

        self._explicit_args = set(kwargs.keys())
        self._env_vars_set = env_vars_set

        self._load_yaml_config()

    @field_validator("sync_days_past", "sync_days_future", "rrule_max_occurrences", "max_retries")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("value must not be negative")
        return value

    @field_validator("apply_concurrency", "store_max_attempts")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @field_validator("request_timeout", "store_call_timeout")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    def _find_config_file(self) -> Optional[Path]:
        """Find config file, checking an explicit path, the working directory, then user home."""
        if self.config_path is not None:
            return self.config_path if self.config_path.exists() else None

        local_config = Path.cwd() / "config.yaml"
        if local_config.exists():
            return local_config

        user_config = self.config_dir / "config.yaml"
        if user_config.exists():
            return user_config

        return None

    def _is_overridden(self, setting: str) -> bool:
        return setting in self._explicit_args or setting in self._env_vars_set

    def _load_basic_settings(self, config_data: dict) -> None:
        """Load top-level scalar settings from YAML data."""
        basic_settings = [
            "app_name",
            "sync_id",
            "default_timezone",
            "sync_days_past",
            "sync_days_future",
            "rrule_max_occurrences",
        ]

        for setting in basic_settings:
            if setting in config_data and not self._is_overridden(setting):
                setattr(self, setting, config_data[setting])

    def _load_feed_config(self, config_data: dict) -> None:
        """Load source feed configuration from YAML data."""
        feed_config = config_data.get("feed")
        if not feed_config:
            return

        mapping = {
            "url": "feed_url",
            "timeout": "request_timeout",
            "max_retries": "max_retries",
            "retry_backoff_factor": "retry_backoff_factor",
        }
        for key, setting in mapping.items():
            if key in feed_config and not self._is_overridden(setting):
                setattr(self, setting, feed_config[key])

    def _load_target_config(self, config_data: dict) -> None:
        """Load target calendar configuration from YAML data."""
        target_config = config_data.get("target")
        if not target_config:
            return

        mapping = {
            "calendar_id": "target_calendar_id",
            "timezone": "target_timezone",
            "call_timeout": "store_call_timeout",
            "max_attempts": "store_max_attempts",
            "api_delay": "store_api_delay",
            "apply_concurrency": "apply_concurrency",
        }
        for key, setting in mapping.items():
            if key in target_config and not self._is_overridden(setting):
                setattr(self, setting, target_config[key])

        if "privacy_level" in target_config and not self._is_overridden("privacy_level"):
            value = target_config["privacy_level"]
            self.privacy_level = PrivacyLevel(value) if value else None

    def _load_logging_config(self, config_data: dict) -> None:
        """Load logging configuration from YAML data."""
        logging_config = config_data.get("logging")
        if not logging_config or self._is_overridden("logging"):
            return

        self.logging = self.logging.model_copy(update=logging_config)

    def _load_cleanup_config(self, config_data: dict) -> None:
        """Load duplicate cleanup configuration from YAML data."""
        cleanup_config = config_data.get("cleanup")
        if not cleanup_config or self._is_overridden("cleanup"):
            return

        merged = self.cleanup.model_dump()
        merged.update(cleanup_config)
        self.cleanup = CleanupSettings.model_validate(merged)

    def _load_yaml_config(self) -> None:
        """Load configuration from YAML file if it exists."""
        config_file = self._find_config_file()
        if not config_file:
            return

        try:
            with config_file.open() as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger(__name__).warning(
                f"Could not load YAML config from {config_file}: {e}"
            )
            return

        if not config_data:
            return

        self._load_basic_settings(config_data)
        self._load_feed_config(config_data)
        self._load_target_config(config_data)
        self._load_logging_config(config_data)
        self._load_cleanup_config(config_data)

    @property
    def database_file(self) -> Path:
        """Path to SQLite run log database."""
        return self.data_dir / "calendarsync.db"

    @property
    def config_file(self) -> Path:
        """Path to YAML configuration file."""
        return self.config_dir / "config.yaml"
