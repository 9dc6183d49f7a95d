"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from statuswatch.health.probes import CheckResult
from statuswatch.targets.models import MonitoringSettings, ServiceStatus, Target
from statuswatch.targets.store import SQLiteTargetStore


@pytest.fixture
def store(tmp_path: Path) -> SQLiteTargetStore:
    """SQLiteTargetStore backed by a temp file."""
    s = SQLiteTargetStore(db_path=tmp_path / "test_targets.db")
    yield s
    s.close()


@pytest.fixture
def make_target(store: SQLiteTargetStore) -> Callable[..., Target]:
    """Create a monitored HTTP target; keyword args override monitoring fields."""
    counter = {"n": 0}

    def _make(
        name: str | None = None,
        status: ServiceStatus = ServiceStatus.OPERATIONAL,
        **monitoring: Any,
    ) -> Target:
        counter["n"] += 1
        fields: dict[str, Any] = {
            "enabled": True,
            "type": "http",
            "url": "https://example.com/health",
        }
        fields.update(monitoring)
        return store.create_target(Target(
            name=name or f"svc-{counter['n']}",
            slug=f"svc-{counter['n']}",
            status=status,
            monitoring=MonitoringSettings(**fields),
        ))

    return _make


def fixed_prober(*results: CheckResult):
    """Async prober returning the given results in order (last one repeats)."""
    calls: list[Any] = []

    async def _probe(config: Any) -> CheckResult:
        calls.append(config)
        return results[min(len(calls) - 1, len(results) - 1)]

    _probe.calls = calls  # type: ignore[attr-defined]
    return _probe


@pytest.fixture
def prober() -> Callable[..., Any]:
    return fixed_prober
