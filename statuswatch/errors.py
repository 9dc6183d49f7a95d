"""Exception hierarchy for the monitoring engine.

Probe failures are data (``CheckResult.success=False``) and never show up
here. Only infrastructure problems and lifecycle validation raise.
"""

from __future__ import annotations


class MonitoringError(Exception):
    """Base class for monitoring infrastructure errors."""


class StoreError(MonitoringError):
    """The record store could not be read or written."""


class TargetNotFoundError(StoreError):
    """No target record exists for the given id."""

    def __init__(self, target_id: int | str) -> None:
        self.target_id = target_id
        super().__init__(f"Target not found: {target_id}")


class MisconfiguredTargetError(MonitoringError):
    """Required type-specific monitoring fields are missing or invalid."""


class InvalidScheduleError(MonitoringError, ValueError):
    """A cron expression failed validation."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        super().__init__(f"Invalid cron schedule: {expression}")


class StatusConflictError(StoreError):
    """A conditional write found a different status than the caller read."""

    def __init__(self, target_id: int | str, expected: object) -> None:
        self.target_id = target_id
        self.expected = expected
        super().__init__(f"Target {target_id} status is no longer {expected}")
