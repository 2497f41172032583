"""Settings loader.

Reads settings from <home>/settings.yaml (a YAML mapping, optionally wrapped
in ``---`` frontmatter), then applies environment overrides.

Settings file format:
```
---
supabase_url: https://xyz.supabase.co
supabase_anon_key: eyJ...
display_timezone: America/Los_Angeles
processing_timeout: 30
---

# Optional notes below
```
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, Field, ValidationError

from .constants import MAX_RECORDING_SECONDS, PROCESSING_TIMEOUT_SECONDS, STORAGE_BUCKET
from .errors import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.yaml"

ENV_OVERRIDES = {
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_ANON_KEY": "supabase_anon_key",
    "SUPERNANNY_TZ": "display_timezone",
    "SUPERNANNY_LOG_LEVEL": "log_level",
}


class Settings(BaseModel):
    home: Path
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    storage_bucket: str = STORAGE_BUCKET
    display_timezone: str = "UTC"
    processing_timeout: float = Field(default=PROCESSING_TIMEOUT_SECONDS, gt=0)
    max_recording_seconds: int = Field(default=MAX_RECORDING_SECONDS, gt=0)
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.home / "supernanny.db"

    @property
    def log_file(self) -> Path:
        return self.home / "supernanny.log"

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.display_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(
                f"Invalid timezone '{self.display_timezone}'. "
                f"Use an IANA identifier such as 'America/Los_Angeles'."
            ) from e

    def require_platform(self) -> tuple[str, str]:
        """Return (url, anon_key) or raise if either is missing."""
        if not self.supabase_url or not self.supabase_anon_key:
            raise ConfigError(
                "Supabase credentials not found. Set SUPABASE_URL and SUPABASE_ANON_KEY "
                f"or add them to {self.home / SETTINGS_FILE}"
            )
        return self.supabase_url, self.supabase_anon_key


def get_home() -> Path:
    """Find the supernanny home directory from SUPERNANNY_HOME or ~/.supernanny."""
    if env_path := os.environ.get("SUPERNANNY_HOME"):
        return Path(env_path).expanduser()
    return Path.home() / ".supernanny"


def _read_settings_file(path: Path) -> dict[str, Any]:
    content = path.read_text()

    if content.startswith("---"):
        parts = content.split("---", 2)
        if len(parts) >= 3:
            content = parts[1]

    try:
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(home: str | Path | None = None, environ: dict[str, str] | None = None) -> Settings:
    """Load settings: defaults < settings file < environment.

    Args:
        home: Home directory (default: SUPERNANNY_HOME or ~/.supernanny)
        environ: Environment mapping (default: os.environ)

    Raises:
        ConfigError: If the settings file or a value is invalid
    """
    environ = os.environ if environ is None else environ
    home_path = Path(home).expanduser() if home else get_home()

    values: dict[str, Any] = {}
    settings_path = home_path / SETTINGS_FILE
    if settings_path.exists():
        values.update(_read_settings_file(settings_path))
        logger.debug(f"Loaded settings from {settings_path}")

    for env_name, key in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[key] = environ[env_name]

    values["home"] = home_path
    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e
