"""Unit tests for settings loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from calendarsync.config import CleanupSettings, SyncSettings
from calendarsync.ics.models import PrivacyLevel

pytestmark = pytest.mark.unit


def write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


def make_settings(tmp_path: Path, **kwargs: object) -> SyncSettings:
    kwargs.setdefault("config_dir", tmp_path / "config")
    kwargs.setdefault("data_dir", tmp_path / "data")
    return SyncSettings(**kwargs)


YAML_CONFIG = {
    "sync_id": "work",
    "sync_days_future": 14,
    "feed": {"url": "https://example.com/yaml.ics", "timeout": 10},
    "target": {"calendar_id": "work@example.com", "timezone": "Europe/Berlin", "call_timeout": 5},
    "logging": {"console_level": "VERBOSE", "file_enabled": True},
    "cleanup": {"fuzzy_similarity_threshold": 0.9, "max_deletions": 10},
}


class TestDefaults:
    """Test built-in defaults."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Test values without any configuration file."""
        settings = make_settings(tmp_path)

        assert settings.feed_url is None
        assert settings.target_calendar_id == "primary"
        assert settings.sync_days_past == 0
        assert settings.sync_days_future == 31
        assert settings.store_call_timeout == 30.0
        assert settings.cleanup.max_deletions == 50
        assert settings.database_file == tmp_path / "data" / "calendarsync.db"
        assert settings.config_file == tmp_path / "config" / "config.yaml"

    def test_default_pattern_rule_uses_source_marker(self) -> None:
        """Test the built-in cleanup pattern."""
        (rule,) = CleanupSettings().patterns
        assert "Original UID" in rule.regex


class TestYamlLoading:
    """Test YAML configuration files."""

    @pytest.mark.critical_path
    def test_explicit_config_path(self, tmp_path: Path) -> None:
        """Test that every YAML section is applied."""
        config = write_config(tmp_path / "sync.yaml", YAML_CONFIG)

        settings = make_settings(tmp_path, config_path=config)

        assert settings.sync_id == "work"
        assert settings.sync_days_future == 14
        assert settings.feed_url == "https://example.com/yaml.ics"
        assert settings.request_timeout == 10
        assert settings.target_calendar_id == "work@example.com"
        assert settings.target_timezone == "Europe/Berlin"
        assert settings.store_call_timeout == 5
        assert settings.logging.console_level == "VERBOSE"
        assert settings.logging.file_enabled is True
        assert settings.cleanup.fuzzy_similarity_threshold == 0.9
        assert settings.cleanup.max_deletions == 10
        assert settings.cleanup.skip_with_attendees is True
        assert settings.privacy_level is None

    def test_busy_free_privacy_level(self, tmp_path: Path) -> None:
        """Test that target.privacy_level switches on busy/free mode."""
        config = write_config(
            tmp_path / "sync.yaml", {"target": {"calendar_id": "shared", "privacy_level": "busy_only"}}
        )

        settings = make_settings(tmp_path, config_path=config)

        assert settings.privacy_level == PrivacyLevel.BUSY_ONLY

    def test_working_directory_config_is_found(self, tmp_path: Path) -> None:
        """Test discovery of ./config.yaml (tests run with tmp_path as cwd)."""
        write_config(tmp_path / "config.yaml", {"feed": {"url": "https://example.com/cwd.ics"}})

        assert make_settings(tmp_path).feed_url == "https://example.com/cwd.ics"

    def test_user_config_dir_is_found(self, tmp_path: Path) -> None:
        """Test discovery in the config directory."""
        config_dir = tmp_path / "config"
        config_dir.mkdir()
        write_config(config_dir / "config.yaml", {"target": {"calendar_id": "from-home"}})

        assert make_settings(tmp_path).target_calendar_id == "from-home"

    def test_missing_explicit_path_uses_defaults(self, tmp_path: Path) -> None:
        """Test a configured path that does not exist."""
        write_config(tmp_path / "config.yaml", {"sync_id": "ignored"})

        settings = make_settings(tmp_path, config_path=tmp_path / "nope.yaml")
        assert settings.sync_id == "default"

    def test_invalid_yaml_is_ignored(self, tmp_path: Path) -> None:
        """Test that a broken file falls back to defaults."""
        config = tmp_path / "broken.yaml"
        config.write_text("feed: [unclosed")

        settings = make_settings(tmp_path, config_path=config)
        assert settings.feed_url is None


class TestPrecedence:
    """Test override order: arguments, environment, YAML, defaults."""

    def test_explicit_arguments_beat_yaml(self, tmp_path: Path) -> None:
        """Test constructor arguments."""
        config = write_config(tmp_path / "sync.yaml", YAML_CONFIG)

        settings = make_settings(
            tmp_path, config_path=config, feed_url="https://example.com/arg.ics"
        )

        assert settings.feed_url == "https://example.com/arg.ics"
        assert settings.target_calendar_id == "work@example.com"

    def test_environment_beats_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test CALENDARSYNC_ environment variables."""
        monkeypatch.setenv("CALENDARSYNC_TARGET_CALENDAR_ID", "from-env")
        config = write_config(tmp_path / "sync.yaml", YAML_CONFIG)

        settings = make_settings(tmp_path, config_path=config)

        assert settings.target_calendar_id == "from-env"
        assert settings.sync_id == "work"

    def test_nested_environment_variable(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the nested delimiter for section values."""
        monkeypatch.setenv("CALENDARSYNC_CLEANUP__MAX_DELETIONS", "7")

        assert make_settings(tmp_path).cleanup.max_deletions == 7

    def test_privacy_level_from_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that the privacy level can come from the environment."""
        monkeypatch.setenv("CALENDARSYNC_PRIVACY_LEVEL", "show_free_busy")

        assert make_settings(tmp_path).privacy_level == PrivacyLevel.SHOW_FREE_BUSY


class TestValidation:
    """Test rejected values."""

    @pytest.mark.parametrize(
        "values",
        [
            {"apply_concurrency": 0},
            {"store_call_timeout": 0},
            {"sync_days_future": -1},
            {"store_max_attempts": 0},
        ],
    )
    def test_invalid_values(self, tmp_path: Path, values: dict) -> None:
        """Test field validators."""
        with pytest.raises(ValidationError):
            make_settings(tmp_path, **values)

    @pytest.mark.parametrize(
        "values",
        [
            {"fuzzy_similarity_threshold": 1.5},
            {"max_deletions": -1},
            {"patterns": [{"name": "ticket", "regex": "[T-"}]},
        ],
    )
    def test_invalid_cleanup_values(self, values: dict) -> None:
        """Test cleanup section validators."""
        with pytest.raises(ValidationError):
            CleanupSettings(**values)
