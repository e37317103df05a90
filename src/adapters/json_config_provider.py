"""Organization configuration provider backed by config.json.

Every organization block is validated once when the file is (re)loaded; the
pipeline only ever sees immutable ``OrganizationConfig`` values.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Optional

from core.config import OrganizationConfig, build_organization_config
from core.errors import ConfigError

LOGGER = logging.getLogger(__name__)


def parse_organizations(raw: dict) -> tuple[OrganizationConfig, dict[str, OrganizationConfig]]:
    """Build the default config and the per-organization overrides."""

    defaults = build_organization_config(raw.get("defaults", {}))
    organizations: dict[str, OrganizationConfig] = {}
    raw_orgs = raw.get("organizations", {})
    if not isinstance(raw_orgs, dict):
        raise ConfigError("organizations must be an object keyed by organization id")
    for org, block in raw_orgs.items():
        try:
            organizations[org] = build_organization_config(block, fallback=defaults)
        except ConfigError as exc:
            raise ConfigError(f"organization {org}: {exc}") from exc
    return defaults, organizations


class JsonConfigProvider:
    """Serves organization configs, reloading when the file changes."""

    def __init__(self, raw: dict, path: Optional[str] = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._mtime = self._stat_mtime()
        self._defaults, self._organizations = parse_organizations(raw)

    @classmethod
    def from_file(cls, path: str) -> "JsonConfigProvider":
        with open(path, "r", encoding="utf-8") as handle:
            raw = json.load(handle)
        return cls(raw, path=path)

    def _stat_mtime(self) -> Optional[float]:
        if not self._path:
            return None
        try:
            return os.path.getmtime(self._path)
        except OSError:
            return None

    def reload(self, raw: dict) -> None:
        """Swap in a new configuration; invalid input keeps the old one."""

        defaults, organizations = parse_organizations(raw)
        with self._lock:
            self._defaults, self._organizations = defaults, organizations

    def _refresh_if_changed(self) -> None:
        mtime = self._stat_mtime()
        if mtime is None or mtime == self._mtime:
            return
        self._mtime = mtime
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                self.reload(json.load(handle))
            LOGGER.info("Organization config reloaded from %s", self._path)
        except (OSError, ValueError, ConfigError) as exc:
            LOGGER.error("Config reload failed, keeping previous version: %s", exc)

    def get_organization_config(self, organization_id: str) -> OrganizationConfig:
        self._refresh_if_changed()
        with self._lock:
            return self._organizations.get(organization_id, self._defaults)

    def known_organizations(self) -> list[str]:
        with self._lock:
            return sorted(self._organizations)
