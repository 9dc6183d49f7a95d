"""API routes for the monitoring engine.

Endpoints:
  POST /api/monitoring/check                 — queue a check for one target
  GET  /api/monitoring/check                 — queue a scan of all targets
  POST /api/monitoring/run                   — run a scan now and wait
  POST /api/monitoring/run/{target_id}       — run one check now and wait
  GET  /api/monitoring/jobs/{job_id}         — queued job state
  GET  /api/monitoring/scheduler             — scheduler status
  POST /api/monitoring/scheduler/start       — start (optional schedule)
  POST /api/monitoring/scheduler/stop        — stop
  POST /api/monitoring/scheduler/restart     — restart with fresh settings
  GET  /api/targets                          — list target records
  PATCH /api/targets/{target_id}             — edit a target record

Record edits only ever enqueue checks (via the store's change hook); the
``/run`` endpoints are the explicit wait-for-it operator path.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from statuswatch.errors import InvalidScheduleError, StoreError, TargetNotFoundError
from statuswatch.health.tasks import CHECK_TASK, SCAN_TASK
from statuswatch.targets.models import CHECK_STATE_FIELDS, MonitoringSettings, ServiceStatus

logger = logging.getLogger(__name__)

monitoring_router = APIRouter()


class CheckRequest(BaseModel):
    serviceId: str | None = None


class StartRequest(BaseModel):
    schedule: str | None = None


class TargetPatch(BaseModel):
    name: str | None = None
    status: ServiceStatus | None = None
    monitoring: dict[str, Any] | None = None


# ── Queueing ─────────────────────────────────────────────────────────────────


@monitoring_router.post("/monitoring/check")
def queue_check(body: CheckRequest, request: Request) -> dict[str, Any]:
    """Queue a health check for one target."""
    ctx = request.app.state.monitor
    if not body.serviceId:
        raise HTTPException(status_code=400, detail="serviceId is required")

    try:
        target = ctx.store.find_target_by_id(int(body.serviceId))
    except ValueError:
        raise HTTPException(status_code=400, detail="serviceId must be numeric")
    except TargetNotFoundError:
        raise HTTPException(status_code=404, detail="Service not found")

    job = ctx.queue.enqueue(CHECK_TASK, {"target_id": body.serviceId})
    return {
        "message": "Health check queued successfully",
        "serviceId": body.serviceId,
        "serviceName": target.name,
        "jobId": job.id,
    }


@monitoring_router.get("/monitoring/check")
def queue_scan(request: Request) -> dict[str, Any]:
    """Queue a scan over all eligible targets."""
    job = request.app.state.monitor.queue.enqueue(SCAN_TASK, {})
    return {"message": "Monitoring checks scheduled successfully", "jobId": job.id}


@monitoring_router.get("/monitoring/jobs/{job_id}")
def get_job(job_id: str, request: Request) -> dict[str, Any]:
    job = request.app.state.monitor.queue.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
    return job.to_dict()


# ── Run now (operator) ───────────────────────────────────────────────────────


@monitoring_router.post("/monitoring/run")
async def run_scan_now(request: Request) -> dict[str, Any]:
    """Scan now, then drain every queued check and wait for them."""
    ctx = request.app.state.monitor
    scan_job = await ctx.runner.run_now(SCAN_TASK, {})
    checks = await ctx.runner.run()
    summary = scan_job.output.to_dict() if scan_job.output is not None else None
    return {
        "status": scan_job.status,
        "error": scan_job.error,
        "summary": summary,
        "checks": [
            {"job": j.to_dict(), "outcome": j.output.to_dict() if j.output is not None else None}
            for j in checks
        ],
    }


@monitoring_router.post("/monitoring/run/{target_id}")
async def run_check_now(target_id: int, request: Request) -> dict[str, Any]:
    ctx = request.app.state.monitor
    try:
        ctx.store.find_target_by_id(target_id)
    except TargetNotFoundError:
        raise HTTPException(status_code=404, detail=f"Target not found: {target_id}")

    job = await ctx.runner.run_now(CHECK_TASK, {"target_id": str(target_id)})
    return {
        "status": job.status,
        "error": job.error,
        "outcome": job.output.to_dict() if job.output is not None else None,
    }


# ── Scheduler ────────────────────────────────────────────────────────────────


@monitoring_router.get("/monitoring/scheduler")
def scheduler_status(request: Request) -> dict[str, Any]:
    scheduler = request.app.state.scheduler
    return {**scheduler.status(), "last_run": scheduler.last_run}


@monitoring_router.post("/monitoring/scheduler/start")
async def scheduler_start(request: Request, body: StartRequest | None = None) -> dict[str, Any]:
    scheduler = request.app.state.scheduler
    try:
        await scheduler.start(body.schedule if body else None, context=request.app.state.monitor)
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return scheduler.status()


@monitoring_router.post("/monitoring/scheduler/stop")
async def scheduler_stop(request: Request) -> dict[str, Any]:
    scheduler = request.app.state.scheduler
    await scheduler.stop()
    return scheduler.status()


@monitoring_router.post("/monitoring/scheduler/restart")
async def scheduler_restart(request: Request) -> dict[str, Any]:
    scheduler = request.app.state.scheduler
    try:
        await scheduler.restart()
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return scheduler.status()


# ── Target records ───────────────────────────────────────────────────────────


@monitoring_router.get("/targets")
def list_targets(request: Request) -> dict[str, Any]:
    targets = request.app.state.monitor.store.list_targets()
    return {"targets": [t.to_dict() for t in targets]}


@monitoring_router.patch("/targets/{target_id}")
def update_target(target_id: int, body: TargetPatch, request: Request) -> dict[str, Any]:
    """Edit a target. A monitoring change queues a check; it never runs one here."""
    store = request.app.state.monitor.store
    patch = body.model_dump(exclude_none=True)

    if "monitoring" in patch:
        unknown = set(patch["monitoring"]) - set(MonitoringSettings.model_fields)
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown monitoring fields: {sorted(unknown)}")
        read_only = set(patch["monitoring"]) & CHECK_STATE_FIELDS
        if read_only:
            raise HTTPException(
                status_code=400, detail=f"Check state fields are read-only: {sorted(read_only)}",
            )
        try:
            current = store.find_target_by_id(target_id)
        except TargetNotFoundError:
            raise HTTPException(status_code=404, detail=f"Target not found: {target_id}")
        merged = {**current.monitoring.model_dump(), **patch["monitoring"]}
        try:
            validated = MonitoringSettings.model_validate(merged)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False))
        patch["monitoring"] = {k: getattr(validated, k) for k in patch["monitoring"]}

    try:
        target = store.update_target(target_id, patch)
    except TargetNotFoundError:
        raise HTTPException(status_code=404, detail=f"Target not found: {target_id}")
    except StoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return target.to_dict()
