"""Tests for YAML-backed application settings."""
import pytest
from pydantic import ValidationError as PydanticValidationError

from heartlock.config import (
    CONFIG_DIR_ENV,
    AppSettings,
    ChatSettings,
    get_config,
    load_settings,
    reset_config,
)


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestDefaults:
    def test_missing_files_fall_back_to_defaults(self, tmp_path):
        settings = load_settings(tmp_path)

        assert settings == AppSettings()
        assert settings.chat.edit_window_seconds == 300
        assert settings.chat.retention_hours == 24
        assert settings.secrets.jwt.algorithm == "HS256"

    def test_non_positive_chat_windows_rejected(self):
        with pytest.raises(PydanticValidationError):
            ChatSettings(edit_window_seconds=0)
        with pytest.raises(PydanticValidationError):
            ChatSettings(retention_hours=-1)


class TestLoadSettings:
    def test_settings_and_secrets_are_merged(self, tmp_path):
        (tmp_path / "heartlock.settings.yaml").write_text(
            "server:\n"
            "  port: 9001\n"
            "  allowed_origins: ['https://heartlock.example']\n"
            "database:\n"
            "  path: /var/lib/heartlock/chat.duckdb\n"
            "chat:\n"
            "  retention_hours: 48\n"
        )
        (tmp_path / "heartlock.secrets.yaml").write_text(
            "jwt:\n"
            "  secret_key: s3cret\n"
        )

        settings = load_settings(tmp_path)

        assert settings.server.port == 9001
        assert settings.server.allowed_origins == ["https://heartlock.example"]
        assert settings.database.path == "/var/lib/heartlock/chat.duckdb"
        assert settings.chat.retention_hours == 48
        assert settings.chat.edit_window_seconds == 300
        assert settings.secrets.jwt.secret_key == "s3cret"

    def test_empty_file_is_tolerated(self, tmp_path):
        (tmp_path / "heartlock.settings.yaml").write_text("")
        assert load_settings(tmp_path).server.port == 8000

    def test_env_var_selects_directory(self, tmp_path, monkeypatch):
        (tmp_path / "heartlock.settings.yaml").write_text("logging:\n  level: debug\n")
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path))

        assert get_config().logging.level == "debug"

    def test_get_config_is_cached_until_reset(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path))
        first = get_config()
        assert get_config() is first

        reset_config()
        assert get_config() is not first
