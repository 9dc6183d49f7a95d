"""Health subsystem — probes, status resolver, check/scan tasks, job runtime, scheduler."""

from .context import MonitorContext, MonitorHost, build_context
from .jobs import Job, JobQueue, JobRunner
from .probes import CheckResult, build_probe_config, probe
from .scheduler import MonitoringScheduler, validate_schedule
from .status import should_update_status, status_for_failures
from .tasks import CheckOutcome, ScanSummary, check_one, scan
