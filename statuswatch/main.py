"""Entry point for statuswatch — `statuswatch` console script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from statuswatch.config import settings
from statuswatch.errors import InvalidScheduleError
from statuswatch.health.context import open_context
from statuswatch.health.scheduler import seconds_until_next, validate_schedule
from statuswatch.health.tasks import CHECK_TASK, SCAN_TASK
from statuswatch.targets.registry import TargetRegistry

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server (scheduler starts in its lifespan)."""
    console.print(Panel(
        f"[bold]statuswatch[/bold]\n"
        f"Bind:     {settings.api_host}:{settings.api_port}\n"
        f"Schedule: {settings.monitoring_schedule}\n"
        f"Auto:     {'on' if settings.enable_auto_monitoring else 'off'}",
        style="bold green",
    ))
    uvicorn.run(
        "statuswatch.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def _scan_now() -> None:
    ctx = open_context(settings.db_path, settings.max_concurrent_checks)
    TargetRegistry(settings.targets_file).sync(ctx.store)

    scan_job = await ctx.runner.run_now(SCAN_TASK, {})
    checks = await ctx.runner.run()
    summary = scan_job.output
    if summary is None or not summary.success:
        console.print(f"[red]Scan failed: {scan_job.error or (summary and summary.message)}[/red]")
        return

    table = Table(title="Scan")
    table.add_column("Target")
    table.add_column("Result")
    table.add_column("Detail", style="dim")
    for name in summary.queued_targets:
        table.add_row(name, "[cyan]queued[/cyan]", "")
    for s in summary.skipped_targets:
        table.add_row(s.name, f"[yellow]skipped ({s.reason})[/yellow]", s.detail)
    for name in summary.maintenance_list:
        table.add_row(name, "[magenta]maintenance[/magenta]", "")
    console.print(table)

    for job in checks:
        outcome = job.output
        if outcome is None:
            console.print(f"[red]{job.input.get('target_id')}: {job.error}[/red]")
        elif outcome.check_result is not None:
            r = outcome.check_result
            mark = "[green]✓[/green]" if r.success else "[red]✗[/red]"
            console.print(f"{mark} target {job.input.get('target_id')}: "
                          f"{outcome.new_status.value if outcome.new_status else '-'} "
                          f"{r.error or r.details or ''}")
        else:
            console.print(f"[yellow]target {job.input.get('target_id')}: {outcome.message}[/yellow]")


async def _check_now(target_id: str) -> int:
    ctx = open_context(settings.db_path, settings.max_concurrent_checks)
    job = await ctx.runner.run_now(CHECK_TASK, {"target_id": target_id})
    outcome = job.output
    if outcome is None or not outcome.success:
        console.print(f"[red]{job.error or outcome.message}[/red]")
        return 1
    console.print(outcome.to_dict())
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="statuswatch service monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server and scheduler")
    sub.add_parser("scan", help="Run one scan now and wait for its checks")

    check_parser = sub.add_parser("check", help="Check one target now")
    check_parser.add_argument("target_id", help="Target record id")

    cron_parser = sub.add_parser("validate-schedule", help="Validate a cron expression")
    cron_parser.add_argument("expression")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "scan":
        asyncio.run(_scan_now())
    elif args.command == "check":
        sys.exit(asyncio.run(_check_now(args.target_id)))
    elif args.command == "validate-schedule":
        try:
            validate_schedule(args.expression)
        except InvalidScheduleError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)
        console.print(f"[green]valid[/green], next run in {seconds_until_next(args.expression):.0f}s")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
