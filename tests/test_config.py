"""Tests for configuration loading and path resolution."""

import json
from pathlib import Path

import pytest
from killfeed import config as config_module
from killfeed.config import AppConfig, SettingsStore, ensure_client_id, resolve_log_path


@pytest.fixture
def config_path(tmp_path):
    return str(tmp_path / "config.json")


class TestLoadSave:
    """Test JSON persistence."""

    def test_missing_file_gives_defaults(self, config_path):
        config = AppConfig.load(config_path)
        assert config == AppConfig()
        assert config.correlation_window == 5.0

    def test_roundtrip(self, config_path):
        AppConfig(server_url="ws://localhost:5324", max_events=50).save(config_path)
        loaded = AppConfig.load(config_path)
        assert loaded.server_url == "ws://localhost:5324"
        assert loaded.max_events == 50

    def test_partial_file_uses_defaults(self, config_path):
        Path(config_path).write_text(json.dumps({"csv_path": "out.csv"}), encoding="utf-8")
        loaded = AppConfig.load(config_path)
        assert loaded.csv_path == "out.csv"
        assert loaded.fetch_profiles is True

    def test_unknown_keys_ignored(self, config_path):
        Path(config_path).write_text(json.dumps({"legacy_option": 1}), encoding="utf-8")
        assert AppConfig.load(config_path) == AppConfig()

    def test_corrupt_file(self, config_path):
        Path(config_path).write_text("{not json", encoding="utf-8")
        assert AppConfig.load(config_path) == AppConfig()


class TestOverrides:
    """Test environment overrides and the settings store."""

    def test_env_overrides(self):
        config = AppConfig().apply_env({
            "KILLFEED_LOG_PATH": "/tmp/Game.log",
            "KILLFEED_ACCESS_TOKEN": "secret",
            "UNRELATED": "x",
        })
        assert config.log_path == "/tmp/Game.log"
        assert config.access_token == "secret"
        assert config.server_url == config_module.DEFAULT_SERVER_URL

    def test_settings_store_persists(self, config_path):
        store = SettingsStore(AppConfig(), config_path)
        store.set("guest_token", "g-1")
        assert store.get("guest_token") == "g-1"
        assert AppConfig.load(config_path).guest_token == "g-1"

    def test_settings_store_unknown_key(self, config_path):
        store = SettingsStore(AppConfig(), config_path)
        assert store.get("nope", "fallback") == "fallback"
        with pytest.raises(KeyError):
            store.set("nope", 1)


class TestClientId:
    """Test the persistent client identifier."""

    def test_generated_once(self, config_path):
        config = AppConfig()
        first = ensure_client_id(config, config_path)
        assert first
        assert ensure_client_id(config, config_path) == first
        assert AppConfig.load(config_path).client_id == first


class TestResolveLogPath:
    """Test Game.log discovery."""

    def test_explicit_path(self):
        assert resolve_log_path(AppConfig(log_path="/x/Game.log")) == Path("/x/Game.log")

    def test_game_path(self, tmp_path):
        config = AppConfig(game_path=str(tmp_path))
        assert resolve_log_path(config) == tmp_path / "LIVE" / "Game.log"

    def test_detected_install(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "_GAME_PATHS", [tmp_path / "missing", tmp_path])
        assert resolve_log_path(AppConfig()) == tmp_path / "LIVE" / "Game.log"

    def test_fallback(self, monkeypatch):
        monkeypatch.setattr(config_module, "_GAME_PATHS", [])
        assert resolve_log_path(AppConfig()) == Path("Game.log")
