"""Status resolver — consecutive failures → service status, plus the gate
deciding whether a computed status may replace the stored one.

The gate holds a target at ``major`` until a fully successful check: a
failed check that leaves the count below the threshold never moves a
``major`` target back to ``degraded``.
"""

from __future__ import annotations

from ..targets.models import ServiceStatus


def next_failure_count(success: bool, previous: int) -> int:
    return 0 if success else previous + 1


def status_for_failures(failures: int, threshold: int) -> ServiceStatus:
    if failures == 0:
        return ServiceStatus.OPERATIONAL
    if failures < threshold:
        return ServiceStatus.DEGRADED
    return ServiceStatus.MAJOR


def should_update_status(
    current: ServiceStatus,
    computed: ServiceStatus,
    success: bool,
    failures: int,
    threshold: int,
) -> bool:
    """Transition gate."""
    if current == ServiceStatus.MAINTENANCE:
        return False
    return computed != current and (success or failures >= threshold)
