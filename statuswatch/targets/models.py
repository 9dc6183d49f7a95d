"""Target records and their monitoring sub-fields.

The record itself belongs to the store. The monitoring engine only reads the
configuration part of ``MonitoringSettings`` and writes back the check-state
fields (``last_checked_at``, ``last_check_status``, ``consecutive_failures``)
plus, when the transition gate allows it, ``Target.status``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ServiceStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    MAJOR = "major"
    MAINTENANCE = "maintenance"


class CheckStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


MonitoringType = Literal["http", "tcp", "ping", "game-query"]
HttpMethod = Literal["GET", "HEAD", "POST"]

# Monitoring fields owned by the check task. Config edits never set them.
CHECK_STATE_FIELDS = frozenset({"last_checked_at", "last_check_status", "consecutive_failures"})


class MonitoringSettings(BaseModel):
    """Monitoring group embedded in a target record.

    Type-specific fields are all optional here because the record may be
    half-filled; ``health.probes.build_probe_config`` decides whether the
    combination is usable.
    """

    type: MonitoringType = "http"
    enabled: bool = False
    interval: int = Field(default=60, ge=30, le=3600)  # seconds
    timeout: int = Field(default=10, ge=1, le=60)  # seconds
    failure_threshold: int = Field(default=3, ge=1, le=10)

    # http
    url: str | None = None
    method: HttpMethod = "GET"
    expected_status_code: int = 200
    # tcp / ping / game-query
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    # game-query
    game_type: str | None = None

    # check state, written by the check task only
    last_checked_at: datetime | None = None
    last_check_status: CheckStatus | None = None
    consecutive_failures: int = Field(default=0, ge=0)


class Target(BaseModel):
    """A monitored service record."""

    id: int | None = None
    name: str
    slug: str = ""
    status: ServiceStatus = ServiceStatus.OPERATIONAL
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class GlobalSettings(BaseModel):
    """Site-wide monitoring switches (the ``settings`` global)."""

    monitoring_enabled: bool = True
    monitoring_schedule_cron: str | None = None
