"""Tests for YAML settings loading."""
import pytest
import yaml
from pydantic import ValidationError

from chatdesk.config import AppSettings, get_config, load_settings, reset_config, set_config


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadSettings:

    def test_missing_files_give_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "none.yaml", tmp_path / "none.secrets.yaml")

        assert settings.server.port == 8000
        assert settings.database.path == "chatdesk.duckdb"
        assert settings.chat.history_limit == 50
        assert settings.chat.max_content_length == 2000
        assert settings.chat.allowed_url_schemes == ["https"]
        assert settings.auth.token_expire_minutes == 15
        assert settings.secrets.jwt.algorithm == "HS256"

    def test_values_from_both_files(self, tmp_path):
        settings_file = write_yaml(tmp_path / "chatdesk.settings.yaml", {
            "server": {"port": 9100, "allowed_origins": ["https://shop.example.com"]},
            "logging": {"level": "DEBUG"},
            "database": {"path": str(tmp_path / "chat.duckdb")},
            "chat": {
                "history_limit": 20,
                "seed_users": [
                    {"id": "agent-1", "name": "Ada", "role": "admin"},
                ],
            },
        })
        secrets_file = write_yaml(tmp_path / "chatdesk.secrets.yaml", {
            "jwt": {"secret_key": "s3cret"},
        })

        settings = load_settings(settings_file, secrets_file)

        assert settings.server.port == 9100
        assert settings.server.allowed_origins == ["https://shop.example.com"]
        assert settings.logging.level == "debug"
        assert settings.chat.history_limit == 20
        assert settings.chat.seed_users[0].role == "admin"
        assert settings.chat.seed_users[0].is_active is True
        assert settings.secrets.jwt.secret_key == "s3cret"

    def test_empty_yaml_is_allowed(self, tmp_path):
        settings_file = tmp_path / "chatdesk.settings.yaml"
        settings_file.write_text("", encoding="utf-8")

        assert load_settings(settings_file, tmp_path / "none.yaml").server.host == "0.0.0.0"

    def test_unknown_log_level_is_rejected(self, tmp_path):
        settings_file = write_yaml(tmp_path / "chatdesk.settings.yaml", {"logging": {"level": "loud"}})

        with pytest.raises(ValidationError):
            load_settings(settings_file, tmp_path / "none.yaml")

    def test_unknown_seed_role_is_rejected(self, tmp_path):
        settings_file = write_yaml(tmp_path / "chatdesk.settings.yaml", {
            "chat": {"seed_users": [{"id": "x", "name": "X", "role": "vendor"}]},
        })

        with pytest.raises(ValidationError):
            load_settings(settings_file, tmp_path / "none.yaml")


class TestProcessConfig:

    def test_set_and_reset(self):
        custom = AppSettings()
        custom.chat.history_limit = 7
        set_config(custom)
        try:
            assert get_config().chat.history_limit == 7
        finally:
            reset_config()
