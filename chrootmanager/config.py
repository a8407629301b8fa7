from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .catalog import DEFAULT_INDEX_URL
from .errors import ConfigError


def _home() -> Path:
    return Path(os.environ.get("HOME") or "/tmp")


def default_config_path() -> str:
    return str(_home() / ".config" / "chrootmanager" / "config.yaml")


def default_log_path() -> str:
    return str(_home() / ".local" / "state" / "chrootmanager" / "chrootmanager.log")


@dataclass(frozen=True)
class ManagerConfig:
    raw: Dict[str, Any] = field(default_factory=dict)

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    def _path(self, key: str, default: Path) -> str:
        value = self._section("paths").get(key)
        return str(Path(str(value)).expanduser()) if value else str(default)

    @property
    def chroot_base_dir(self) -> str:
        return self._path("chroot_base_dir", _home() / ".local" / "share" / "chrootmanager" / "chroots")

    @property
    def stage3_cache_dir(self) -> str:
        return self._path("stage3_cache_dir", _home() / ".cache" / "chrootmanager" / "stage3")

    @property
    def selection_path(self) -> str:
        return self._path("selection", _home() / ".config" / "chrootmanager" / "selection.json")

    @property
    def catalog_cache(self) -> str:
        return self._path("catalog_cache", _home() / ".cache" / "chrootmanager" / "distfiles.xml")

    @property
    def state_dir(self) -> str:
        return str(Path(self.chroot_base_dir) / ".state")

    @property
    def index_url(self) -> str:
        return str(self._section("mirrors").get("index_url") or DEFAULT_INDEX_URL)

    @property
    def timeout(self) -> float:
        return float(self._section("mirrors").get("timeout") or 30.0)

    @property
    def retries(self) -> int:
        value = self._section("mirrors").get("retries")
        return 2 if value is None else max(0, int(value))

    @property
    def backoff(self) -> float:
        value = self._section("mirrors").get("backoff")
        return 1.0 if value is None else float(value)

    @property
    def location(self) -> Optional[str]:
        value = self._section("mirrors").get("location")
        return str(value) if value else None

    @property
    def workers(self) -> int:
        return max(1, int(self._section("mirrors").get("workers") or 1))

    @property
    def max_age_days(self) -> int:
        return int(self._section("selection").get("max_age_days") or 30)


def load_config(path: Optional[str] = None) -> ManagerConfig:
    """Load the YAML config; a missing file means all defaults."""

    p = Path(path or default_config_path()).expanduser()
    if not p.exists():
        return ManagerConfig(raw={})

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{p} must contain a mapping/object")

    return ManagerConfig(raw=raw)
