"""Configuration Manager for DentVault"""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .verifier import DEFAULT_EXPECTED_TABLES

DB_FILENAME = "dental_clinic.db"
ASSETS_DIRNAME = "dental_images"
REGISTRY_FILENAME = "backup_registry.json"
SUPPORTED_LOCALES = ("en", "ar")


@dataclass(frozen=True)
class AppConfig:
    """Every path and tunable the engine needs, resolved once at startup"""

    base_dir: Path
    database_path: Path
    assets_dir: Path
    backup_dir: Path
    registry_file: Path
    max_registry_entries: int = 50
    keep_count: int = 10
    expected_tables: tuple[str, ...] = DEFAULT_EXPECTED_TABLES
    schedule_frequency: str | None = None
    locale: str = "en"
    notifications_enabled: bool = False
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5

    @property
    def log_dir(self) -> Path:
        return self.backup_dir / "logs"

    @property
    def lock_file(self) -> Path:
        return self.backup_dir / ".dentvault.lock"


def is_development() -> bool:
    """True when running from a source checkout rather than a packaged executable"""
    env = os.environ.get("DENTVAULT_ENV", "").lower()
    if env:
        return env == "development"
    return not getattr(sys, "frozen", False)


def detect_base_dir() -> Path:
    """Directory holding the live database and assets

    ``DENTVAULT_HOME`` wins; otherwise the working directory in development
    and the executable's directory when frozen.
    """
    home = os.environ.get("DENTVAULT_HOME")
    if home:
        return Path(home).expanduser()
    if is_development():
        return Path.cwd()
    return Path(sys.executable).resolve().parent


class ConfigManager:
    """Loads settings.yaml and turns it into an AppConfig"""

    def __init__(self, config_dir: str | None = None):
        self.config_dir = Path(config_dir or Path(__file__).parent.parent.parent.parent / "config")
        self.settings_file = self.config_dir / "settings.yaml"

        self._check_config_exists()
        self.settings = self._load_yaml(self.settings_file)

    def _check_config_exists(self) -> None:
        """Point the user at the example settings when none are present"""
        if not self.settings_file.exists():
            example = self.config_dir / "settings.yaml.example"
            if example.exists():
                logging.info(
                    f"No settings file at {self.settings_file}, using defaults. "
                    f"To customize, copy the example:\n  cp {example} {self.settings_file}"
                )

    def _load_yaml(self, file_path: Path) -> dict[str, Any]:
        """Load YAML configuration file"""
        if not file_path.exists():
            return {}

        with open(file_path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _save_yaml(self, data: dict[str, Any], file_path: Path) -> None:
        """Save configuration to YAML file"""
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a setting value with optional default

        Args:
            key: Setting key (supports nested keys with dot notation, e.g., 'storage.backup_dir')
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        keys = key.split(".")
        value: Any = self.settings

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def set_setting(self, key: str, value: Any) -> None:
        """Set a dot-notation setting and persist settings.yaml"""
        keys = key.split(".")
        node = self.settings
        for k in keys[:-1]:
            child = node.get(k)
            if not isinstance(child, dict):
                child = {}
                node[k] = child
            node = child
        node[keys[-1]] = value
        self._save_yaml(self.settings, self.settings_file)

    def _path_setting(self, key: str, default: Path, base_dir: Path) -> Path:
        raw = self.get_setting(key)
        if raw is None:
            return default
        path = Path(str(raw)).expanduser()
        return path if path.is_absolute() else base_dir / path

    def build_app_config(self) -> AppConfig:
        """Resolve every path once; the only place the environment is inspected"""
        base_setting = self.get_setting("storage.base_dir")
        base_dir = Path(str(base_setting)).expanduser() if base_setting else detect_base_dir()

        database_path = self._path_setting("storage.database_path", base_dir / DB_FILENAME, base_dir)
        db_dir = database_path.parent
        assets_dir = self._path_setting("storage.assets_dir", base_dir / ASSETS_DIRNAME, base_dir)
        backup_dir = self._path_setting("storage.backup_dir", db_dir / "backups", base_dir)
        registry_file = self._path_setting("storage.registry_file", db_dir / REGISTRY_FILENAME, base_dir)

        locale = str(self.get_setting("locale", "en"))
        if locale not in SUPPORTED_LOCALES:
            logging.warning(f"Unsupported locale '{locale}', falling back to English")
            locale = "en"

        return AppConfig(
            base_dir=base_dir,
            database_path=database_path,
            assets_dir=assets_dir,
            backup_dir=backup_dir,
            registry_file=registry_file,
            max_registry_entries=int(self.get_setting("registry.max_entries", 50)),
            keep_count=int(self.get_setting("retention.keep_count", 10)),
            expected_tables=tuple(self.get_setting("verification.expected_tables", DEFAULT_EXPECTED_TABLES)),
            schedule_frequency=self.get_setting("schedule.frequency"),
            locale=locale,
            notifications_enabled=bool(self.get_setting("notifications.enabled", False)),
            log_max_bytes=int(self.get_setting("logging.max_bytes", 10 * 1024 * 1024)),
            log_backup_count=int(self.get_setting("logging.backup_count", 5)),
        )
