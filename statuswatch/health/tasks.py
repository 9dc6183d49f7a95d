"""Monitoring job units: the per-target check task and the scan coordinator.

Both are plain coroutines taking their collaborators explicitly so the job
runtime, the scheduler, and the operator routes can all call them.

Neither raises for ordinary probe or configuration problems. ``check_one``
also absorbs store errors into its output; ``scan`` reports a failed target
query the same way.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..errors import MisconfiguredTargetError, StatusConflictError, StoreError
from ..targets.models import CheckStatus, ServiceStatus, Target
from ..targets.store import EligibilityFilter, TargetStore
from .probes import CheckResult, build_probe_config, config_problem, probe
from .status import next_failure_count, should_update_status, status_for_failures

if TYPE_CHECKING:
    from .jobs import JobQueue

logger = logging.getLogger(__name__)

CHECK_TASK = "check_one"
SCAN_TASK = "scan"

Prober = Callable[[Any], Awaitable[CheckResult]]

_WRITE_ATTEMPTS = 3


# ── Outputs ──────────────────────────────────────────────────────────────────


@dataclass
class CheckOutcome:
    """Structured result of one check task run."""

    success: bool
    message: str = ""
    check_result: CheckResult | None = None
    consecutive_failures: int | None = None
    computed_status: ServiceStatus | None = None
    status_changed: bool = False
    new_status: ServiceStatus | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SkippedTarget:
    name: str
    reason: str  # "misconfigured" | "too_soon" | "in_progress"
    detail: str = ""
    remaining_seconds: int | None = None


@dataclass
class ScanSummary:
    success: bool = True
    message: str = ""
    total_targets: int = 0
    maintenance_targets: int = 0
    tasks_queued: int = 0
    tasks_skipped: int = 0
    queued_targets: list[str] = field(default_factory=list)
    skipped_targets: list[SkippedTarget] = field(default_factory=list)
    maintenance_list: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ── Per-target check ─────────────────────────────────────────────────────────


def _parse_target_id(target_id: int | str) -> int | None:
    try:
        return int(target_id)
    except (TypeError, ValueError):
        return None


def _not_checkable(target: Target) -> CheckOutcome | None:
    """Outcome for a target that must not be probed or written, else None."""
    if not target.monitoring.enabled:
        logger.warning("Monitoring is not enabled for target: %s", target.name)
        return CheckOutcome(success=False, message="Monitoring is not enabled for this target")
    if target.status == ServiceStatus.MAINTENANCE:
        logger.info("Target %s is in maintenance, not checking", target.name)
        return CheckOutcome(success=False, message="Target is in maintenance")
    return None


async def check_one(
    store: TargetStore,
    target_id: int | str,
    *,
    prober: Prober | None = None,
    now: datetime | None = None,
) -> CheckOutcome:
    """Probe one target and persist its new check state in one update."""
    tid = _parse_target_id(target_id)
    if tid is None:
        logger.error("Invalid target id: %r", target_id)
        return CheckOutcome(success=False, message="Invalid target id")

    try:
        target = store.find_target_by_id(tid)
        skip = _not_checkable(target)
        if skip is not None:
            return skip

        try:
            config = build_probe_config(target.monitoring)
        except MisconfiguredTargetError as e:
            logger.warning("Target %s misconfigured: %s", target.name, e)
            return CheckOutcome(success=False, message=str(e))

        result = await (prober or probe)(config)
        checked_at = now or datetime.now(timezone.utc)

        # The record may have changed while the probe was in flight. The write
        # only lands against the status it was computed from.
        for _ in range(_WRITE_ATTEMPTS):
            m = target.monitoring
            failures = next_failure_count(result.success, m.consecutive_failures)
            computed = status_for_failures(failures, m.failure_threshold)
            changed = should_update_status(
                target.status, computed, result.success, failures, m.failure_threshold,
            )

            patch: dict[str, Any] = {
                "monitoring": {
                    "last_checked_at": checked_at,
                    "last_check_status": CheckStatus.SUCCESS if result.success else CheckStatus.FAILED,
                    "consecutive_failures": failures,
                },
            }
            if changed:
                patch["status"] = computed

            try:
                store.update_target(tid, patch, expected_status=target.status)
                break
            except StatusConflictError:
                logger.info("Target %s changed during its check, re-reading", target.name)
                target = store.find_target_by_id(tid)
                skip = _not_checkable(target)
                if skip is not None:
                    return skip
        else:
            raise StoreError(f"Target {tid} kept changing during its check")

        if changed:
            logger.info("Target %s status %s -> %s", target.name, target.status.value, computed.value)
        logger.info(
            "Checked %s: %s (failures %d -> %d)",
            target.name, "SUCCESS" if result.success else "FAILURE",
            m.consecutive_failures, failures,
        )
        return CheckOutcome(
            success=True,
            check_result=result,
            consecutive_failures=failures,
            computed_status=computed,
            status_changed=changed,
            new_status=computed if changed else target.status,
        )
    except Exception as e:
        logger.exception("Error checking target %s", target_id)
        return CheckOutcome(success=False, message=str(e) or type(e).__name__)


# ── Scan coordinator ─────────────────────────────────────────────────────────


def is_due(target: Target, now: datetime) -> tuple[bool, float]:
    """Return (due, remaining_seconds). No last check means always due."""
    last = target.monitoring.last_checked_at
    if last is None:
        return True, 0.0
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    elapsed = (now - last).total_seconds()
    remaining = target.monitoring.interval - elapsed
    return remaining <= 0, max(remaining, 0.0)


async def scan(
    store: TargetStore,
    queue: JobQueue,
    *,
    now: datetime | None = None,
) -> ScanSummary:
    """Enqueue a check for every eligible target whose interval has elapsed."""
    now = now or datetime.now(timezone.utc)
    try:
        targets = store.find_eligible_targets(EligibilityFilter(
            monitoring_enabled=True, exclude_status=ServiceStatus.MAINTENANCE,
        ))
        in_maintenance = store.find_eligible_targets(EligibilityFilter(
            monitoring_enabled=True, status=ServiceStatus.MAINTENANCE,
        ))
    except Exception as e:
        logger.exception("Error scheduling monitoring checks")
        return ScanSummary(success=False, message=str(e) or type(e).__name__)

    summary = ScanSummary(
        total_targets=len(targets),
        maintenance_targets=len(in_maintenance),
        maintenance_list=[t.name for t in in_maintenance],
    )

    for target in targets:
        problem = config_problem(target.monitoring)
        if problem:
            summary.skipped_targets.append(SkippedTarget(
                name=target.name, reason="misconfigured", detail=problem,
            ))
            continue

        due, remaining = is_due(target, now)
        if not due:
            secs = round(remaining)
            summary.skipped_targets.append(SkippedTarget(
                name=target.name, reason="too_soon",
                detail=f"Too soon ({secs}s remaining)", remaining_seconds=secs,
            ))
            continue

        payload = {"target_id": str(target.id)}
        active = queue.find_active(CHECK_TASK, payload)
        if active is not None:
            summary.skipped_targets.append(SkippedTarget(
                name=target.name, reason="in_progress",
                detail=f"Check already {active.status} (job {active.id})",
            ))
            continue

        queue.enqueue(CHECK_TASK, payload)
        summary.queued_targets.append(target.name)

    summary.tasks_queued = len(summary.queued_targets)
    summary.tasks_skipped = len(summary.skipped_targets)
    logger.info(
        "Scan: %d eligible, %d queued, %d skipped, %d in maintenance",
        summary.total_targets, summary.tasks_queued, summary.tasks_skipped,
        summary.maintenance_targets,
    )
    return summary
