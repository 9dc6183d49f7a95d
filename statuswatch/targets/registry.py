"""Target registry — loads targets.yaml and syncs it into the record store.

Example file:

    targets:
      - name: Public API
        slug: public-api
        monitoring:
          enabled: true
          type: http
          url: https://api.example.com/health
          interval: 60
      - name: Survival server
        monitoring:
          enabled: true
          type: game-query
          host: mc.example.com
          game_type: minecraft

Only configuration fields are synced; check state stays whatever the
monitoring engine last wrote.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import CHECK_STATE_FIELDS, MonitoringSettings, Target
from .store import SQLiteTargetStore

logger = logging.getLogger(__name__)

REGISTRY_PATH = Path(__file__).parent.parent.parent / "targets.yaml"


class TargetRegistry:
    """Parses targets.yaml into typed ``Target`` records."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else REGISTRY_PATH
        self._targets: list[Target] = []
        self._loaded = False

    def load(self, force: bool = False) -> list[Target]:
        if self._loaded and not force:
            return self._targets

        self._targets = []
        if not self._path.exists():
            logger.warning("Targets file not found: %s", self._path)
            self._loaded = True
            return self._targets

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except Exception as e:
            logger.error("Failed to parse %s: %s", self._path, e)
            self._loaded = True
            return self._targets

        if not isinstance(raw, dict):
            logger.warning("Ignoring %s: expected a mapping with a 'targets' list", self._path)
            self._loaded = True
            return self._targets

        for entry in raw.get("targets", []) or []:
            try:
                self._targets.append(_parse_target(entry))
            except (ValidationError, KeyError, TypeError) as e:
                logger.warning("Skipping malformed target entry: %s", e)

        self._loaded = True
        logger.info("Loaded %d targets from %s", len(self._targets), self._path)
        return self._targets

    @property
    def targets(self) -> list[Target]:
        return self.load()

    def sync(self, store: SQLiteTargetStore) -> int:
        """Upsert every parsed target into ``store`` by slug. Returns the count."""
        count = 0
        for target in self.targets:
            existing = store.find_target_by_slug(target.slug)
            if existing is None:
                store.create_target(target)
            else:
                config = target.monitoring.model_dump(exclude=set(CHECK_STATE_FIELDS))
                store.update_target(existing.id, {"name": target.name, "monitoring": config})
            count += 1
        return count


def _parse_target(raw: dict[str, Any]) -> Target:
    name = raw["name"]
    slug = raw.get("slug") or _slugify(name)
    monitoring = MonitoringSettings.model_validate(raw.get("monitoring") or {})
    data: dict[str, Any] = {"name": name, "slug": slug, "monitoring": monitoring}
    if raw.get("status"):
        data["status"] = raw["status"]
    return Target.model_validate(data)


def _slugify(name: str) -> str:
    out = []
    for ch in name.lower():
        out.append(ch if ch.isalnum() else "-")
    return "-".join(part for part in "".join(out).split("-") if part)
