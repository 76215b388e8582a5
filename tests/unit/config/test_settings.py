"""Unit tests for orchestrator settings loading."""

from __future__ import annotations

import pytest

from preview_orchestrator.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache(monkeypatch, tmp_path):
    # Keep a developer's ./config.yaml out of the picture
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.session.ttl_seconds == 1800
        assert settings.session.extend_seconds == 1800
        assert settings.session.failure_threshold == 3
        assert settings.provisioner.type == "static"
        assert settings.provisioner.fly.sync_port == 3001
        assert settings.provisioner.fly.preview_port == 5173
        assert settings.sweep.expired_session.enabled is True

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("PREVIEW_SESSION__TTL_SECONDS", "600")
        monkeypatch.setenv("PREVIEW_PROVISIONER__TYPE", "fly")
        monkeypatch.setenv("PREVIEW_PROVISIONER__FLY__API_TOKEN", "secret")

        settings = Settings()

        assert settings.session.ttl_seconds == 600
        assert settings.provisioner.type == "fly"
        assert settings.provisioner.fly.api_token == "secret"

    def test_yaml_config_file(self, monkeypatch, tmp_path):
        config_file = tmp_path / "preview.yaml"
        config_file.write_text(
            "session:\n"
            "  ttl_seconds: 120\n"
            "provisioner:\n"
            "  type: fly\n"
            "  fly:\n"
            "    app_name: my-previews\n"
            "sweep:\n"
            "  enabled: false\n"
        )
        monkeypatch.setenv("PREVIEW_CONFIG_FILE", str(config_file))

        settings = get_settings()

        assert settings.session.ttl_seconds == 120
        assert settings.provisioner.fly.app_name == "my-previews"
        assert settings.sweep.enabled is False
        # Unset keys keep their defaults
        assert settings.session.extend_seconds == 1800

    def test_config_yaml_in_cwd(self, tmp_path):
        (tmp_path / "config.yaml").write_text("content:\n  root_path: /srv/workspaces\n")

        assert get_settings().content.root_path == "/srv/workspaces"

    def test_empty_config_file(self, monkeypatch, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        monkeypatch.setenv("PREVIEW_CONFIG_FILE", str(config_file))

        assert get_settings().session.ttl_seconds == 1800

    def test_invalid_provisioner_type(self, monkeypatch):
        monkeypatch.setenv("PREVIEW_PROVISIONER__TYPE", "docker")

        with pytest.raises(ValueError):
            Settings()

    def test_missing_explicit_config_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PREVIEW_CONFIG_FILE", str(tmp_path / "absent.yaml"))

        with pytest.raises(FileNotFoundError):
            get_settings()

    def test_yaml_wins_over_env(self, monkeypatch, tmp_path):
        (tmp_path / "config.yaml").write_text("session:\n  ttl_seconds: 90\n")
        monkeypatch.setenv("PREVIEW_SESSION__TTL_SECONDS", "600")

        assert get_settings().session.ttl_seconds == 90
