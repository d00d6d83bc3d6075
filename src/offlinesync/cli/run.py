"""Run command for the offlinesync CLI.

Commands:
- run: Start the sync service
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import click

from offlinesync.cli.common import config_from_context, fail
from offlinesync.core.errors import SyncError
from offlinesync.core.sizes import format_size
from offlinesync.sync.types import SyncResult

if TYPE_CHECKING:
    from offlinesync.service import SyncService

logger = logging.getLogger(__name__)


def _echo_result(result: SyncResult) -> None:
    """Print a one-line summary of a job result."""
    if result.aborted:
        status = "aborted"
    elif result.cancelled:
        status = "cancelled"
    elif result.errors:
        status = "partial"
    else:
        status = "ok"
    click.echo(
        f"  [{result.target_id}] {result.job}: {status} - "
        f"{result.fetched} fetched, {result.evicted} evicted, {result.kept} kept, "
        f"{format_size(result.bytes_moved)} in {result.duration:.1f}s"
    )
    for error in result.errors:
        label = error.item_id or "cycle"
        click.echo(f"    ! {label}: {error.message}", err=True)


@click.command()
@click.option("--once", is_flag=True, help="Run one cycle on every ready target and exit.")
@click.option("--target", "target_id", default=None, help="Only sync this target.")
@click.option("--serve", is_flag=True, help="Expose the HTTP status and control API.")
@click.option("--host", default="127.0.0.1", show_default=True, help="API bind address.")
@click.option("--port", default=8080, show_default=True, type=int, help="API port.")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def run(
    ctx: click.Context,
    once: bool,
    target_id: str | None,
    serve: bool,
    host: str,
    port: int,
    log_file: Path | None,
    verbose: bool,
) -> None:
    """Run the sync service.

    Without options the service runs until interrupted: targets are
    watched, scheduled jobs run on their interval and every attached
    device gets a cycle. Use --once for a single pass (cron friendly).

    Examples:

        # Daemon with the HTTP API on port 8080
        offlinesync run --serve

        # One pass on the "usb" target
        offlinesync run --once --target usb
    """
    from offlinesync.server.app import setup_logging
    from offlinesync.service import SyncService
    from offlinesync.sync.notifications import NotificationDispatcher

    if once and serve:
        fail("--once and --serve are mutually exclusive")

    config = config_from_context(ctx)
    setup_logging(logging.DEBUG if verbose else logging.INFO, log_file)

    service = SyncService(config)
    dispatcher = NotificationDispatcher.from_config(config.notifications, service.registry)
    dispatcher.attach(service.events)

    try:
        if once:
            _run_once(service, target_id)
        elif serve:
            _serve(service, host, port)
        else:
            _run_forever(service)
    finally:
        dispatcher.detach()


def _run_once(service: SyncService, target_id: str | None) -> None:
    # Static and already mounted targets are probed synchronously here
    service.manager.start()
    try:
        results = service.run_once(target_id)
    except SyncError as e:
        fail(e.message)
    finally:
        service.manager.stop()
        service.state.close()

    if not results:
        click.echo("No ready target to sync.")
        return
    click.echo("Sync results:")
    for result in results:
        _echo_result(result)
    if not all(r.success for r in results):
        sys.exit(1)


def _serve(service: SyncService, host: str, port: int) -> None:
    import uvicorn

    from offlinesync.server.app import create_app

    app = create_app(service)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _run_forever(service: SyncService) -> None:
    stop_event = threading.Event()

    def handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}, stopping")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_signal)

    service.start()
    click.echo("offlinesync running. Press Ctrl+C to stop.")
    try:
        while not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        click.echo("\nStopping...")
    finally:
        service.close()
