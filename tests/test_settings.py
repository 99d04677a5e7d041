"""Tests for YAML settings loading."""
import pytest

from config.settings import Settings, load_settings


@pytest.fixture(autouse=True)
def _restore_cached_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


class TestLoadSettings:

    def test_sections_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SUPPORT_BOT_TOKEN", "123:abc")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "app_name: Support\n"
            "engine:\n"
            "  max_steps_per_event: 40\n"
            "  not_a_setting: 1\n"
            "broadcast:\n"
            "  concurrency: 8\n"
            "bots:\n"
            "  - id: 42\n"
            "    token: ${SUPPORT_BOT_TOKEN}\n"
            "  - id: other\n"
            "    token: ${UNSET_TOKEN_VAR}\n"
        )
        settings = load_settings(str(path))

        assert settings.app_name == "Support"
        assert settings.engine.max_steps_per_event == 40
        assert settings.engine.start_command == "/start"
        assert settings.broadcast.concurrency == 8
        assert settings.broadcast.send_delay_ms == 50
        assert settings.get_bot("42").token == "123:abc"
        assert settings.get_bot("other").token == "${UNSET_TOKEN_VAR}"
        assert settings.get_bot("missing") is None

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings == Settings()
        assert settings.webhook.user_agent == "BotManager-Webhook/1.0"
        assert settings.database.history_backend == "memory"
