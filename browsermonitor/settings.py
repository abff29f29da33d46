"""Settings and project paths for browsermonitor.

All project-specific state lives in ``<project>/.browsermonitor/``. Settings
are merged from several sources with this precedence:
CLI flags > environment variables > config files > defaults
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


BROWSERMONITOR_DIR = ".browsermonitor"
OUTPUT_DIR = ".puppeteer"
CHROME_PROFILE_DIR = ".chrome-profile"
SETTINGS_FILE = "settings.json"
PID_FILE = "browsermonitor.pid"

DEFAULT_HTTP_PORT = 60001
DEFAULT_DEBUG_PORT = 9222


class ProjectPaths(BaseModel):
    """Resolved paths for one project root."""

    root: Path
    bm_dir: Path
    settings_file: Path
    output_dir: Path
    chrome_profile_dir: Path
    pid_file: Path
    console_log: Path
    network_log: Path
    network_dir: Path
    cookies_dir: Path
    dom_html: Path
    screenshot: Path

    @classmethod
    def from_root(cls, root: Path) -> "ProjectPaths":
        root = Path(root).resolve()
        bm_dir = root / BROWSERMONITOR_DIR
        output_dir = bm_dir / OUTPUT_DIR
        return cls(
            root=root,
            bm_dir=bm_dir,
            settings_file=bm_dir / SETTINGS_FILE,
            output_dir=output_dir,
            chrome_profile_dir=bm_dir / CHROME_PROFILE_DIR,
            pid_file=bm_dir / PID_FILE,
            console_log=output_dir / "console.log",
            network_log=output_dir / "network.log",
            network_dir=output_dir / "network-log",
            cookies_dir=output_dir / "cookies",
            dom_html=output_dir / "dom.html",
            screenshot=output_dir / "screenshot.png",
        )

    def ensure_directories(self) -> None:
        """Create the .browsermonitor directory tree."""
        for directory in (self.bm_dir, self.output_dir, self.chrome_profile_dir):
            directory.mkdir(parents=True, exist_ok=True)


def _to_camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.title() for part in rest)


class MonitorSettings(BaseModel):
    """Effective monitor settings."""

    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)

    default_url: str = Field(default="https://localhost:4000/", description="URL opened in open mode")
    headless: bool = Field(default=False, description="Run Chrome without GUI")
    navigation_timeout: int = Field(default=60000, ge=0, description="Navigation timeout in ms (0 = no limit)")
    ignore_patterns: List[str] = Field(default_factory=list, description="Console substrings to drop")
    http_port: int = Field(default=DEFAULT_HTTP_PORT, ge=1, le=65535, description="HTTP control port")
    http_host: str = Field(default="127.0.0.1", description="HTTP control bind address")
    realtime: bool = Field(default=False, description="Write each event to files immediately")
    hard_timeout: int = Field(default=0, ge=0, description="Force exit after this many ms (0 = disabled)")
    debug_port: int = Field(default=DEFAULT_DEBUG_PORT, ge=1, le=65535, description="Chrome remote debugging port")

    loaded_from: List[str] = Field(default_factory=list, exclude=True)

    @field_validator('ignore_patterns', mode='before')
    @classmethod
    def split_patterns(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [p.strip() for p in v.split(',') if p.strip()]
        return v

    def to_file_dict(self) -> Dict[str, Any]:
        """Form written to settings.json (camelCase keys)."""
        return self.model_dump(by_alias=True, mode='json')


_CAMEL_RE = re.compile(r'(?<!^)(?=[A-Z])')


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert camelCase keys from settings.json to field names."""
    return {_CAMEL_RE.sub('_', key).lower(): value for key, value in data.items()}


class ConfigurationLoader:
    """Loads and merges settings from multiple sources with proper precedence."""

    ENV_PREFIX = "BROWSERMONITOR_"

    # Searched in order, relative to the project root
    DEFAULT_CONFIG_FILES = [
        f"{BROWSERMONITOR_DIR}/{SETTINGS_FILE}",
        "browsermonitor.yaml",
        "browsermonitor.yml",
        ".browsermonitor.yaml",
        "browsermonitor.json",
    ]

    ENV_MAPPING = {
        "DEFAULT_URL": "default_url",
        "HEADLESS": "headless",
        "NAVIGATION_TIMEOUT": "navigation_timeout",
        "IGNORE_PATTERNS": "ignore_patterns",
        "HTTP_PORT": "http_port",
        "HTTP_HOST": "http_host",
        "REALTIME": "realtime",
        "HARD_TIMEOUT": "hard_timeout",
        "DEBUG_PORT": "debug_port",
    }

    BOOL_FIELDS = {"headless", "realtime"}
    INT_FIELDS = {"navigation_timeout", "http_port", "hard_timeout", "debug_port"}

    def __init__(self):
        self.loaded_sources: List[str] = []

    def load(
        self,
        project_root: Path,
        config_file: Optional[Path] = None,
        cli_overrides: Optional[Dict[str, Any]] = None,
    ) -> MonitorSettings:
        """Load settings with proper precedence.

        Precedence (highest to lowest):
        1. CLI overrides (flags)
        2. Environment variables
        3. Specified config file
        4. Auto-discovered config file
        5. Defaults

        Args:
            project_root: Project directory searched for config files
            config_file: Explicitly specified config file
            cli_overrides: CLI flag overrides (None values are ignored)

        Returns:
            Merged settings

        Raises:
            FileNotFoundError: If config_file does not exist
            ValueError: If a config file cannot be parsed
        """
        self.loaded_sources = ["defaults"]
        data: Dict[str, Any] = {}

        if config_file:
            if not config_file.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_file}")
            data.update(self._load_config_file(config_file))
            self.loaded_sources.append(f"config file: {config_file}")
        else:
            discovered = self._discover_config_file(Path(project_root))
            if discovered:
                path, file_data = discovered
                data.update(file_data)
                self.loaded_sources.append(f"auto-discovered: {path}")

        env_data = self._load_environment_variables()
        if env_data:
            data.update(env_data)
            self.loaded_sources.append("environment variables")

        overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}
        if overrides:
            data.update(overrides)
            self.loaded_sources.append("CLI flags")

        settings = MonitorSettings(**data)
        settings.loaded_from = list(self.loaded_sources)
        return settings

    def _discover_config_file(self, project_root: Path):
        for name in self.DEFAULT_CONFIG_FILES:
            path = project_root / name
            if path.exists() and path.is_file():
                return path, self._load_config_file(path)
        return None

    def _load_config_file(self, config_path: Path) -> Dict[str, Any]:
        """Load settings from a JSON or YAML file."""
        try:
            content = config_path.read_text(encoding='utf-8')
            if config_path.suffix.lower() in ('.yaml', '.yml'):
                raw = yaml.safe_load(content) or {}
            elif config_path.suffix.lower() == '.json':
                raw = json.loads(content) if content.strip() else {}
            else:
                raise ValueError(f"Unsupported config file format: {config_path.suffix}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {config_path}: {e}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {config_path}: {e}")

        if not isinstance(raw, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping")
        return _normalize_keys(raw)

    def _load_environment_variables(self) -> Dict[str, Any]:
        config = {}
        for suffix, field_name in self.ENV_MAPPING.items():
            value = os.getenv(f"{self.ENV_PREFIX}{suffix}")
            if value is not None:
                config[field_name] = self._convert_env_value(value, field_name)
        return config

    def _convert_env_value(self, value: str, field_name: str) -> Any:
        if field_name in self.BOOL_FIELDS:
            return value.lower() in ('true', '1', 'yes', 'on')
        if field_name in self.INT_FIELDS:
            return int(value)
        return value


def load_settings(
    project_root: Path,
    config_file: Optional[Path] = None,
    cli_overrides: Optional[Dict[str, Any]] = None,
) -> MonitorSettings:
    """Convenience function to load settings."""
    return ConfigurationLoader().load(project_root, config_file, cli_overrides)


def is_initialized(project_root: Path) -> bool:
    """Check whether .browsermonitor/settings.json exists."""
    return ProjectPaths.from_root(project_root).settings_file.exists()


def save_settings(project_root: Path, settings: MonitorSettings) -> Path:
    """Write settings.json, creating .browsermonitor/ if needed."""
    paths = ProjectPaths.from_root(project_root)
    paths.bm_dir.mkdir(parents=True, exist_ok=True)
    paths.settings_file.write_text(json.dumps(settings.to_file_dict(), indent=2) + "\n", encoding='utf-8')
    return paths.settings_file
