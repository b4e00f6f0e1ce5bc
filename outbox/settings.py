"""Load engine settings from config/settings.yaml."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

_DEFAULTS: dict[str, Any] = {
    "outbox": {
        "db_path": "data/outbox.db",
        "batch_size": 10,
        "tick_interval": 30.0,
        "max_attempts": 3,
        "backoff_cap_minutes": 60,
        "backoff_jitter": False,
        "lease_seconds": 300.0,
        "reaper_interval": 60.0,
        # Must stay below lease_seconds, otherwise a slow handler is reaped mid-flight
        "handler_timeout": 120.0,
        "busy_timeout": 5000,
        "concurrent_dispatch": False,
    },
    "notifications": {
        "webhook_url": None,
        "timeout": 10.0,
    },
    "logging": {
        "file": "logs/outbox.log",
        "level": "INFO",
        "log_to_console": True,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}

_cached: dict[str, Any] | None = None


class OutboxConfig(BaseModel):
    """Validated view of the `outbox` settings section."""

    db_path: str = "data/outbox.db"
    batch_size: int = Field(default=10, gt=0)
    tick_interval: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_cap_minutes: int = Field(default=60, ge=1)
    backoff_jitter: bool = False
    lease_seconds: float = Field(default=300.0, gt=0)
    reaper_interval: float = Field(default=60.0, gt=0)
    handler_timeout: float = Field(default=120.0, gt=0)
    busy_timeout: int = Field(default=5000, ge=0)
    concurrent_dispatch: bool = False

    @model_validator(mode="after")
    def _timeout_below_lease(self) -> "OutboxConfig":
        if self.handler_timeout >= self.lease_seconds:
            raise ValueError(
                f"handler_timeout ({self.handler_timeout}s) must be shorter than "
                f"lease_seconds ({self.lease_seconds}s)"
            )
        return self


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base."""
    for key, value in overlay.items():
        if value is None:
            continue
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    """Return a deep copy of default settings."""
    return _deep_copy_nested(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'outbox.batch_size')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def reload_settings() -> None:
    """Clear the settings cache. Call after config files change."""
    global _cached
    _cached = None


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Load settings from config/settings.yaml. Returns merged defaults + file values.

    Environment variable OUTBOX_DB_PATH, when set, wins over the file.
    """
    global _cached
    if _cached is not None:
        return _cached

    if config_dir is None:
        config_dir = Path(__file__).resolve().parent.parent / "config"
    path = config_dir / "settings.yaml"

    result = get_default_settings()

    if path.exists():
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                _deep_merge(result, data)
        except (yaml.YAMLError, OSError):
            pass

    db_override = os.environ.get("OUTBOX_DB_PATH")
    if db_override:
        result["outbox"]["db_path"] = db_override

    _cached = result
    return result


def load_outbox_config(settings: dict[str, Any]) -> OutboxConfig:
    """Build the validated engine config. Raises pydantic.ValidationError on bad values."""
    return OutboxConfig(**(settings.get("outbox") or {}))


def _deep_copy_nested(obj: Any) -> Any:
    """Return a deep copy of nested dicts/lists for defaults."""
    if isinstance(obj, dict):
        return {k: _deep_copy_nested(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_deep_copy_nested(x) for x in obj]
    return obj
