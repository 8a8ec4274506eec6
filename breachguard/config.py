"""
Runtime settings.

Defaults live on the dataclasses below.  ``load_settings`` overlays an optional
YAML file shaped like::

    detection:
      timeout_seconds: 2.5
      workers: 8
    safety:
      high_threshold: 0.75
    backup:
      backup_dir: /var/backups/breachguard
"""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class DetectionSettings:
    sanitizer_window: int = 200
    context_lines: int = 3
    context_window: int = 200
    timeout_seconds: float = 5.0
    workers: int = 4
    taint_propagation: bool = True
    max_file_bytes: int = 2_000_000


@dataclass
class SafetySettings:
    safe_threshold: float = 0.3
    moderate_threshold: float = 0.6
    high_threshold: float = 0.8
    consider_business_hours: bool = True
    business_days: List[int] = field(default_factory=lambda: [0, 1, 2, 3, 4])
    business_start_hour: int = 9
    business_end_hour: int = 17
    default_estimated_time: int = 60


@dataclass
class BackupSettings:
    backup_dir: str = "breachguard-backups"
    prefix: str = "breachguard-fix-"
    max_backups: int = 50
    retention_days: int = 30
    compression_enabled: bool = True
    include_database: bool = True
    verify_backups: bool = True
    config_options: List[str] = field(default_factory=lambda: [
        "siteurl", "home", "admin_email", "users_can_register", "default_role",
        "active_plugins", "template", "stylesheet",
    ])


@dataclass
class LockSettings:
    timeout_seconds: float = 30.0
    poll_interval: float = 0.05


@dataclass
class FixSettings:
    safety_threshold: float = 0.7
    dry_run: bool = False
    allow_high_risk: bool = False
    workers: int = 2
    protected_categories: List[str] = field(default_factory=lambda: [
        "security", "backup", "maintenance",
    ])
    protected_severity_threshold: str = "high"


@dataclass
class Settings:
    detection: DetectionSettings = field(default_factory=DetectionSettings)
    safety: SafetySettings = field(default_factory=SafetySettings)
    backup: BackupSettings = field(default_factory=BackupSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    fix: FixSettings = field(default_factory=FixSettings)
    rules_dir: Optional[str] = None


def _coerce(section: str, name: str, default: Any, value: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{section}.{name}: expected true/false, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{section}.{name}: expected a number, got {value!r}")
        return float(value)
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{section}.{name}: expected an integer, got {value!r}")
        return value
    if isinstance(default, list):
        if not isinstance(value, list):
            raise ConfigError(f"{section}.{name}: expected a list, got {value!r}")
        return list(value)
    if isinstance(default, str) or default is None:
        if not isinstance(value, str):
            raise ConfigError(f"{section}.{name}: expected a string, got {value!r}")
        return value
    return value


def _overlay(section_name: str, target: Any, data: Dict[str, Any]) -> None:
    known = {f.name for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown setting %s.%s", section_name, key)
            continue
        setattr(target, key, _coerce(section_name, key, getattr(target, key), value))


def load_settings(path: Optional[str] = None) -> Settings:
    """Build Settings from defaults plus an optional YAML file."""
    settings = Settings()
    if path is None:
        return settings
    if not os.path.exists(path):
        raise ConfigError(f"Settings file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    for key, value in data.items():
        if key == "rules_dir":
            settings.rules_dir = _coerce("settings", key, "", value)
            continue
        section = getattr(settings, key, None)
        if section is None or not hasattr(section, "__dataclass_fields__"):
            logger.warning("Ignoring unknown settings section %s", key)
            continue
        if not isinstance(value, dict):
            raise ConfigError(f"{key}: expected a mapping")
        _overlay(key, section, value)

    s = settings.safety
    if not (0.0 <= s.safe_threshold <= s.moderate_threshold <= s.high_threshold <= 1.0):
        raise ConfigError("safety thresholds must be ordered within [0, 1]")
    logger.debug("Loaded settings from %s", path)
    return settings
