"""Extension attribute synchronizer CLI (extattr).

Usage:
    extattr run                       # Reconcile every device once
    extattr device PC-0042            # Reconcile one device by display name
    extattr device-id <object-id>     # Reconcile one device by directory object id
    extattr audit logs --device PC-0042 --page 2
    extattr audit summary --from 2024-01-01
    extattr audit export --output audit.csv
    extattr audit event-types
    extattr serve                     # Run the periodic worker loop

Configuration is read from the environment (see Config.from_env). Results are
printed as JSON. Exit code 0 means every device succeeded, 1 means a failure,
2 means a security violation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click

from .audit import AuditEventType, as_utc
from .config import Config, ConfigurationError
from .main import EXIT_FAILURE, EXIT_SECURITY_VIOLATION, serve, setup_logging
from .mapping_loader import MappingLoadError
from .security import SecretlessViolationError
from .service import (
    DEFAULT_AUDIT_PAGE_SIZE,
    MAX_AUDIT_PAGE_SIZE,
    OperationsService,
    build_service,
)

T = TypeVar("T")

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]
EVENT_TYPE_CHOICES = [event_type.value for event_type in AuditEventType]


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _get_service(ctx: click.Context) -> OperationsService:
    """Build the service once per invocation; tests inject a factory via ctx.obj."""
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        factory: Callable[[], OperationsService] = obj.get(
            "service_factory", lambda: build_service(Config.from_env())
        )
        try:
            obj["service"] = factory()
        except SecretlessViolationError as e:
            click.echo(str(e), err=True)
            ctx.exit(EXIT_SECURITY_VIOLATION)
        except (ConfigurationError, MappingLoadError) as e:
            raise click.ClickException(str(e)) from e
    return obj["service"]


def _execute(ctx: click.Context, operation: Callable[[OperationsService], Awaitable[T]]) -> T:
    """Run one async operation and flush the audit store afterwards."""
    service = _get_service(ctx)

    async def runner() -> T:
        try:
            return await operation(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _event_type(value: str | None) -> AuditEventType | None:
    return AuditEventType(value) if value else None


def _window(from_date: datetime | None, to_date: datetime | None) -> tuple[datetime | None, datetime | None]:
    return as_utc(from_date), as_utc(to_date)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="1.0.0", prog_name="extattr")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for the JSON log stream",
)
@click.pass_context
def cli(ctx: click.Context, log_level: str) -> None:
    """Extension attribute synchronizer.

    Keeps Entra device extension attributes in sync with on-premises
    Active Directory and Intune.
    """
    ctx.ensure_object(dict)
    # Results go to stdout; keep the log stream separate
    setup_logging(getattr(logging, log_level.upper()), stream=sys.stderr)


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command("run")
@click.pass_context
def run_command(ctx: click.Context) -> None:
    """Reconcile every device once."""
    stats = _execute(ctx, lambda service: service.run_reconciliation())
    _echo_json(stats.to_dict())
    if not stats.success:
        ctx.exit(EXIT_FAILURE)


@cli.command("device")
@click.argument("name")
@click.pass_context
def device_command(ctx: click.Context, name: str) -> None:
    """Reconcile one device by display name."""
    result = _execute(ctx, lambda service: service.process_device_by_name(name))
    if result is None:
        click.echo(f"Device not found: {name}", err=True)
        ctx.exit(EXIT_FAILURE)
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(EXIT_FAILURE)


@cli.command("device-id")
@click.argument("device_object_id")
@click.pass_context
def device_id_command(ctx: click.Context, device_object_id: str) -> None:
    """Reconcile one device by directory object id."""
    result = _execute(ctx, lambda service: service.process_device_by_id(device_object_id))
    if result is None:
        click.echo(f"Device not found: {device_object_id}", err=True)
        ctx.exit(EXIT_FAILURE)
    _echo_json(result.to_dict())
    if not result.success:
        ctx.exit(EXIT_FAILURE)


@cli.command("serve")
@click.pass_context
def serve_command(ctx: click.Context) -> None:
    """Run reconciliation on an interval until SIGTERM/SIGINT."""
    service = _get_service(ctx)
    exit_code = asyncio.run(serve(service))
    ctx.exit(exit_code)


# =============================================================================
# Audit Commands
# =============================================================================


@cli.group()
def audit() -> None:
    """Query and export the audit trail."""
    pass


@audit.command("logs")
@click.option("--from", "from_date", type=click.DateTime(formats=DATE_FORMATS), help="Start (UTC)")
@click.option("--to", "to_date", type=click.DateTime(formats=DATE_FORMATS), help="End (UTC)")
@click.option("--event-type", type=click.Choice(EVENT_TYPE_CHOICES), help="Event type filter")
@click.option("--device", "device_name", help="Device name filter (substring)")
@click.option(
    "--page", default=1, show_default=True, type=click.IntRange(min=1), help="Page number"
)
@click.option(
    "--page-size",
    default=DEFAULT_AUDIT_PAGE_SIZE,
    show_default=True,
    type=click.IntRange(1, MAX_AUDIT_PAGE_SIZE),
    help="Page size",
)
@click.pass_context
def audit_logs(
    ctx: click.Context,
    from_date: datetime | None,
    to_date: datetime | None,
    event_type: str | None,
    device_name: str | None,
    page: int,
    page_size: int,
) -> None:
    """Show audit entries, newest first."""
    start, end = _window(from_date, to_date)
    result = _execute(
        ctx,
        lambda service: service.get_audit_logs(
            start, end, _event_type(event_type), device_name, page=page, page_size=page_size
        ),
    )
    _echo_json(result.to_dict())


@audit.command("summary")
@click.option("--from", "from_date", type=click.DateTime(formats=DATE_FORMATS), help="Start (UTC)")
@click.option("--to", "to_date", type=click.DateTime(formats=DATE_FORMATS), help="End (UTC)")
@click.pass_context
def audit_summary(ctx: click.Context, from_date: datetime | None, to_date: datetime | None) -> None:
    """Show audit statistics."""
    start, end = _window(from_date, to_date)
    summary = _execute(ctx, lambda service: service.get_audit_summary(start, end))
    _echo_json(summary.to_dict())


@audit.command("export")
@click.option("--from", "from_date", type=click.DateTime(formats=DATE_FORMATS), help="Start (UTC)")
@click.option("--to", "to_date", type=click.DateTime(formats=DATE_FORMATS), help="End (UTC)")
@click.option("--event-type", type=click.Choice(EVENT_TYPE_CHOICES), help="Event type filter")
@click.option("--device", "device_name", help="Device name filter (substring)")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write to file"
)
@click.pass_context
def audit_export(
    ctx: click.Context,
    from_date: datetime | None,
    to_date: datetime | None,
    event_type: str | None,
    device_name: str | None,
    output: Path | None,
) -> None:
    """Export audit entries as CSV."""
    start, end = _window(from_date, to_date)
    csv_text = _execute(
        ctx,
        lambda service: service.export_audit_logs(start, end, _event_type(event_type), device_name),
    )
    if output is None:
        click.echo(csv_text, nl=False)
        return

    output.write_text(csv_text, encoding="utf-8")
    click.echo(f"Exported audit entries to {output}", err=True)


@audit.command("event-types")
def audit_event_types() -> None:
    """List audit event types."""
    _echo_json(OperationsService.list_event_types())


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
