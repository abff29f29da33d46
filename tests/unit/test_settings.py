"""Unit tests for settings loading and project paths."""

import json

import pytest

from browsermonitor.settings import (
    ConfigurationLoader,
    MonitorSettings,
    ProjectPaths,
    is_initialized,
    load_settings,
    save_settings,
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for suffix in ConfigurationLoader.ENV_MAPPING:
        monkeypatch.delenv(f"{ConfigurationLoader.ENV_PREFIX}{suffix}", raising=False)


class TestMonitorSettings:
    """Tests for the settings model."""

    def test_defaults(self):
        settings = MonitorSettings()

        assert settings.default_url == "https://localhost:4000/"
        assert settings.headless is False
        assert settings.navigation_timeout == 60000
        assert settings.http_port == 60001
        assert settings.http_host == "127.0.0.1"
        assert settings.realtime is False
        assert settings.hard_timeout == 0
        assert settings.debug_port == 9222

    def test_camel_case_keys(self):
        settings = MonitorSettings(**{"defaultUrl": "http://localhost:3000/", "httpPort": 7000})

        assert settings.default_url == "http://localhost:3000/"
        assert settings.http_port == 7000

    def test_file_dict_uses_camel_case(self):
        data = MonitorSettings().to_file_dict()

        assert data["defaultUrl"] == "https://localhost:4000/"
        assert "navigationTimeout" in data
        assert "loadedFrom" not in data

    def test_ignore_patterns_from_string(self):
        settings = MonitorSettings(ignore_patterns="[analytics], [ads] ,")
        assert settings.ignore_patterns == ["[analytics]", "[ads]"]

    def test_invalid_port_rejected(self):
        with pytest.raises(ValueError):
            MonitorSettings(http_port=70000)


class TestConfigurationLoader:
    """Tests for source precedence."""

    def test_defaults_only(self, tmp_path):
        settings = load_settings(tmp_path)

        assert settings.model_dump() == MonitorSettings().model_dump()
        assert settings.loaded_from == ["defaults"]

    def test_settings_json_is_discovered(self, tmp_path):
        save_settings(tmp_path, MonitorSettings(default_url="http://localhost:8080/", realtime=True))

        settings = load_settings(tmp_path)

        assert settings.default_url == "http://localhost:8080/"
        assert settings.realtime is True
        assert any("auto-discovered" in source for source in settings.loaded_from)

    def test_yaml_file(self, tmp_path):
        config = tmp_path / "browsermonitor.yaml"
        config.write_text("httpPort: 61000\nignorePatterns:\n  - '[HMR]'\nheadless: true\n")

        settings = load_settings(tmp_path)

        assert settings.http_port == 61000
        assert settings.ignore_patterns == ["[HMR]"]
        assert settings.headless is True

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        save_settings(tmp_path, MonitorSettings(http_port=61000, headless=False))
        monkeypatch.setenv("BROWSERMONITOR_HTTP_PORT", "62000")
        monkeypatch.setenv("BROWSERMONITOR_HEADLESS", "yes")

        settings = load_settings(tmp_path)

        assert settings.http_port == 62000
        assert settings.headless is True

    def test_cli_overrides_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BROWSERMONITOR_HTTP_PORT", "62000")

        settings = load_settings(tmp_path, cli_overrides={"http_port": 63000, "realtime": None})

        assert settings.http_port == 63000
        assert settings.realtime is False
        assert settings.loaded_from[-1] == "CLI flags"

    def test_explicit_file_wins_over_discovery(self, tmp_path):
        save_settings(tmp_path, MonitorSettings(http_port=61000))
        explicit = tmp_path / "other.json"
        explicit.write_text(json.dumps({"httpPort": 64000}))

        settings = load_settings(tmp_path, config_file=explicit)

        assert settings.http_port == 64000

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path, config_file=tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        config = tmp_path / "broken.yaml"
        config.write_text("httpPort: [unclosed\n")

        with pytest.raises(ValueError, match="broken.yaml"):
            load_settings(tmp_path, config_file=config)

    def test_non_mapping_file(self, tmp_path):
        config = tmp_path / "list.json"
        config.write_text("[1, 2]")

        with pytest.raises(ValueError, match="mapping"):
            load_settings(tmp_path, config_file=config)


class TestProjectPaths:
    """Tests for project path layout."""

    def test_layout(self, tmp_path):
        paths = ProjectPaths.from_root(tmp_path)
        root = tmp_path.resolve()

        assert paths.settings_file == root / ".browsermonitor" / "settings.json"
        assert paths.console_log == root / ".browsermonitor" / ".puppeteer" / "console.log"
        assert paths.network_dir == root / ".browsermonitor" / ".puppeteer" / "network-log"
        assert paths.pid_file == root / ".browsermonitor" / "browsermonitor.pid"

    def test_initialization(self, tmp_path):
        assert is_initialized(tmp_path) is False

        save_settings(tmp_path, MonitorSettings())

        assert is_initialized(tmp_path) is True
        data = json.loads(ProjectPaths.from_root(tmp_path).settings_file.read_text())
        assert data["httpPort"] == 60001
