"""Entry point for the pulsecheck monitoring pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import sys
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pulsecheck.config import CLAIM_REPORT_MARGIN_SECONDS, settings
from pulsecheck.health.probe import ProbeExecutor
from pulsecheck.monitors.seed import seed_from_file
from pulsecheck.monitors.store import MonitorStore
from pulsecheck.poller.client import CheckApiClient, CheckApiError, CheckApiOfflineError
from pulsecheck.poller.worker import CheckPoller, JobSource, LocalJobSource
from pulsecheck.scheduling.claims import ClaimEngine
from pulsecheck.scheduling.reconciler import ResultReconciler

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting pulsecheck API server", style="bold green"))
    uvicorn.run(
        "pulsecheck.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def _build_source(local: bool, base_url: str | None) -> JobSource:
    if local:
        store = MonitorStore(settings.database_path)
        return LocalJobSource(ClaimEngine(store), ResultReconciler(store))
    return CheckApiClient(base_url or settings.poller_base_url)


def run_poller(once: bool, local: bool, count: int | None, base_url: str | None) -> None:
    """Claim, probe and report: one cycle or forever."""
    source = _build_source(local, base_url)
    poller = CheckPoller(
        source,
        ProbeExecutor.from_settings(),
        batch_size=count or settings.poller_batch_size,
        interval=settings.poller_interval,
        max_interval=settings.poller_max_interval,
        concurrency=settings.poller_concurrency,
    )
    rounds = math.ceil(poller.batch_size / poller.concurrency)
    if rounds * settings.probe_total_timeout + CLAIM_REPORT_MARGIN_SECONDS > settings.claim_timeout_seconds:
        console.print(
            f"[yellow]Batch of {poller.batch_size} may outlast the {settings.claim_timeout_seconds}s "
            "claim timeout; monitors could be reclaimed mid-cycle[/yellow]"
        )
    where = "local database" if local else (base_url or settings.poller_base_url)

    if once:
        console.print(Panel(f"Polling once against {where}", title="pulsecheck", style="bold blue"))
        try:
            summary = poller.run_once()
        except (CheckApiOfflineError, CheckApiError) as e:
            console.print(f"[bold red]Poll failed:[/bold red] {e}")
            sys.exit(2)
        console.print(
            f"[dim]{summary.claimed} claimed | {summary.reported} reported | {summary.failed} failed[/dim]"
        )
        return

    console.print(Panel(f"Polling {where} every {settings.poller_interval:.0f}s", title="pulsecheck", style="bold blue"))
    try:
        asyncio.run(poller.run_forever())
    except KeyboardInterrupt:
        console.print("[dim]Poller stopped[/dim]")


def run_sweep() -> None:
    """Release claims left behind by crashed pollers."""
    store = MonitorStore(settings.database_path)
    released = ClaimEngine(store).reclaim_stale()

    table = Table(title="In-progress monitors")
    table.add_column("ID", justify="right")
    table.add_column("URL")
    table.add_column("Claimed at")
    for m in store.list_in_progress():
        table.add_row(str(m.id), m.url, m.claimed_at.isoformat() if m.claimed_at else "-")

    console.print(f"[bold]Released {released} stale claim(s)[/bold]")
    console.print(table)


def run_seed(path: Path) -> None:
    """Load accounts and monitors from a YAML file."""
    if not path.exists():
        console.print(f"[bold red]Seed file not found:[/bold red] {path}")
        sys.exit(1)
    report = seed_from_file(MonitorStore(settings.database_path), path)
    console.print(
        Panel(
            f"{report.accounts_created} account(s), {report.monitors_created} monitor(s) created",
            title="Seed",
            style="bold green",
        )
    )
    for reason in report.skipped:
        console.print(f"[yellow]skipped[/yellow] {reason}")


def run_init_db() -> None:
    store = MonitorStore(settings.database_path)
    console.print(f"[bold green]Database ready:[/bold green] {store.db_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="pulsecheck URL monitoring")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")

    poll_parser = sub.add_parser("poll", help="Run the check poller")
    poll_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    poll_parser.add_argument("--local", action="store_true", help="Use the database directly instead of the API")
    poll_parser.add_argument("--count", type=int, default=None, help="Jobs to claim per cycle")
    poll_parser.add_argument("--base-url", default=None, help="Check API base URL")

    sub.add_parser("sweep", help="Release stale claims")

    seed_parser = sub.add_parser("seed", help="Load monitors from a YAML file")
    seed_parser.add_argument("path", type=Path, help="Path to monitors.yaml")

    sub.add_parser("init-db", help="Create the database schema")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "poll":
        run_poller(args.once, args.local, args.count, args.base_url)
    elif args.command == "sweep":
        run_sweep()
    elif args.command == "seed":
        run_seed(args.path)
    elif args.command == "init-db":
        run_init_db()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
