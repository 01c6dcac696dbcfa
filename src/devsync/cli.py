"""DEVSYNC CLI entry point."""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from devsync import __version__
from devsync.config import (
    ensure_config_dir,
    get_config_path,
    get_default_config,
    get_nested_value,
    load_config,
    save_config,
    set_nested_value,
)
from devsync.errors import DevSyncError

console = Console()

DEFAULT_API_URL = "http://127.0.0.1:7787"


def api_request(method: str, endpoint: str, **kwargs) -> dict | None:
    """Make API request to daemon."""
    url = f"{DEFAULT_API_URL}{endpoint}"
    try:
        response = httpx.request(method, url, timeout=30, **kwargs)
        return response.json()
    except httpx.ConnectError:
        return None
    except httpx.TimeoutException:
        console.print("[yellow]⚠ Request timed out[/yellow]")
        return None
    except Exception as e:
        console.print(f"[red]✗ API error: {e}[/red]")
        return None


def is_daemon_running() -> bool:
    """Check if daemon is running."""
    try:
        response = httpx.get(f"{DEFAULT_API_URL}/api/v1/health", timeout=10)
        return response.status_code == 200
    except httpx.HTTPError:
        return False


def print_success(message: str) -> None:
    """Print success message."""
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str, detail: str | None = None) -> None:
    """Print error message."""
    console.print(f"[red]✗[/red] {message}")
    if detail:
        console.print(f"  [dim]{detail}[/dim]")


def print_warning(message: str) -> None:
    """Print warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    """Print info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


def _format_uptime(uptime: float) -> str:
    if uptime > 3600:
        return f"{uptime / 3600:.1f}h"
    if uptime > 60:
        return f"{uptime / 60:.1f}m"
    return f"{uptime:.0f}s"


def run_with_daemon(action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Open a local (non-scheduling) daemon, run ``action`` on it, close it."""
    from devsync.daemon import SyncDaemon

    async def runner() -> Any:
        daemon = SyncDaemon(config=load_config())
        await daemon.open()
        try:
            return await action(daemon)
        finally:
            await daemon.close()

    return asyncio.run(runner())


def print_sync_summary(summary: dict) -> None:
    """Render a cross-sync summary as Rich tables."""
    status = summary.get("status", "unknown")
    color = "green" if status == "success" else "yellow"
    console.print(Panel.fit(f"[{color}]●[/{color}] [bold]Cross-sync {status}[/bold]", border_style=color))

    stats = summary.get("statistics", {})
    percentages = stats.get("percentages", {})
    table = Table(show_header=True, box=None, padding=(0, 2))
    table.add_column("State", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Share", justify="right")
    table.add_row("matched", str(stats.get("matched", 0)), percentages.get("matched", ""))
    table.add_row("only_intune", str(stats.get("onlyIntune", 0)), percentages.get("onlyIntune", ""))
    table.add_row("only_defender", str(stats.get("onlyDefender", 0)), percentages.get("onlyDefender", ""))
    table.add_row("[bold]total[/bold]", str(stats.get("totalProcessed", 0)), "")
    console.print(table)

    perf = summary.get("performance", {})
    cost = summary.get("cost", {})
    console.print(
        f"\n[cyan]Time:[/cyan] {perf.get('totalMs', 0):.0f}ms "
        f"[dim](fetch {max(perf.get('fetchIntuneMs', 0), perf.get('fetchDefenderMs', 0)):.0f}ms, "
        f"match {perf.get('matchingMs', 0):.0f}ms, clear {perf.get('clearMs', 0):.0f}ms, "
        f"upsert {perf.get('upsertMs', 0):.0f}ms)[/dim]"
    )
    console.print(f"[cyan]Cost:[/cyan] {cost.get('total', 0):.2f} RU")
    console.print(f"[cyan]Deleted:[/cyan] {stats.get('deletedCount', 0)} previous records")

    errors = summary.get("errors", [])
    if errors:
        print_warning(f"{len(errors)} records failed to write")
        for error in errors[:10]:
            console.print(f"  [dim]{error.get('syncKey')}: {error.get('error')}[/dim]")


@click.group()
@click.version_option(version=__version__, prog_name="devsync")
def main() -> None:
    """DEVSYNC: Intune / Defender device cross-sync daemon."""
    pass


@main.command()
def init() -> None:
    """Initialize DEVSYNC configuration."""
    console.print("[bold]Initializing DEVSYNC...[/bold]")

    config_dir = ensure_config_dir()
    console.print(f"  ✅ {config_dir}")

    from devsync.config import DEFAULT_CONFIG_FILE

    if DEFAULT_CONFIG_FILE.exists():
        console.print(f"  [dim]Config exists: {DEFAULT_CONFIG_FILE}[/dim]")
    else:
        cfg = get_default_config()
        save_config(cfg)
        console.print(f"  ✅ Created: {DEFAULT_CONFIG_FILE}")

    console.print("\n[green]✅ DEVSYNC initialized.[/green]")
    console.print("\nNext: [cyan]devsync serve[/cyan]")


@main.command()
@click.option("--dev", is_flag=True, help="Run in development mode")
@click.option("--host", default=None, help="API host (default from config)")
@click.option("--port", default=None, type=int, help="API port (default from config)")
def serve(dev: bool, host: str | None, port: int | None) -> None:
    """Start the DEVSYNC daemon."""
    cfg = load_config()
    host = host or cfg.api.host
    port = port or cfg.api.port

    console.print(f"[bold green]Starting DEVSYNC daemon v{__version__}[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Dev mode: {dev}")
    console.print()

    from devsync.daemon import run_daemon
    run_daemon(host=host, port=port, dev_mode=dev, config=cfg)


@main.command()
def stop() -> None:
    """Stop the DEVSYNC daemon."""
    if not is_daemon_running():
        print_error("Daemon is not running")
        return

    with console.status("[yellow]Stopping daemon...[/yellow]", spinner="dots") as status:
        result = api_request("POST", "/api/v1/shutdown")

        if result and result.get("status") == "shutting_down":
            for i in range(20):
                time.sleep(0.5)
                status.update(f"[yellow]Stopping daemon{'.' * (i % 4)}[/yellow]")
                if not is_daemon_running():
                    break

    if not is_daemon_running():
        print_success("Daemon stopped")
    else:
        print_warning("Daemon may still be shutting down...")


@main.command()
def status() -> None:
    """Show DEVSYNC daemon status."""
    result = api_request("GET", "/api/v1/status")

    if result is None:
        console.print("[red]●[/red] [bold]DEVSYNC[/bold] — [red]Daemon not running[/red]")
        console.print("\nStart with: [cyan]devsync serve[/cyan]")
        return

    if result.get("error"):
        console.print(f"[red]●[/red] [bold]DEVSYNC[/bold] — [red]{result['error']}[/red]")
        return

    console.print(Panel.fit("[green]●[/green] [bold]DEVSYNC Status[/bold]", border_style="green"))

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    table.add_row("Version", result.get("version", "unknown"))
    table.add_row("Running", "✅" if result.get("running") else "❌")
    table.add_row("Uptime", _format_uptime(result.get("uptime_seconds", 0)))
    table.add_row("Sync in progress", "yes" if result.get("sync_in_progress") else "no")
    table.add_row("Next run", result.get("next_run") or "-")

    stats = result.get("stats", {})
    table.add_row("", "")
    table.add_row("Runs completed", str(stats.get("runs_completed", 0)))
    table.add_row("Runs failed", str(stats.get("runs_failed", 0)))
    table.add_row("Runs rejected", str(stats.get("runs_rejected", 0)))

    last_run = result.get("last_run")
    if last_run:
        table.add_row("", "")
        table.add_row("Last run", f"{last_run.get('status')} at {last_run.get('finished_at')}")
        if last_run.get("error"):
            table.add_row("Last error", last_run["error"])

    store = result.get("store", {})
    if store:
        table.add_row("", "")
        for collection, count in store.items():
            table.add_row(collection, str(count))

    console.print(table)


@main.command()
@click.option("--remote", is_flag=True, help="Trigger the run on the running daemon")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sync(remote: bool, as_json: bool) -> None:
    """Run a device cross-sync now."""
    from devsync.sync.runner import summarize_result

    if remote:
        result = api_request("POST", "/api/v1/devices/sync-cross", timeout=3600)
        if result is None:
            print_error("Cannot connect to daemon. Is it running?")
            raise SystemExit(1)
        if "data" not in result:
            print_error("Cross-sync failed", result.get("detail"))
            raise SystemExit(1)
        summary = result["data"]
    else:
        try:
            with console.status("[cyan]Running cross-sync...[/cyan]", spinner="dots"):
                outcome = run_with_daemon(lambda daemon: daemon.trigger_sync())
        except DevSyncError as e:
            print_error("Cross-sync failed", str(e))
            raise SystemExit(1)
        summary = summarize_result(outcome)

    if as_json:
        console.print_json(json.dumps(summary))
    else:
        print_sync_summary(summary)


@main.command()
@click.option(
    "--state",
    "sync_state",
    type=click.Choice(["matched", "only_intune", "only_defender"]),
    help="Filter by sync state",
)
@click.option("--page-size", "-n", default=50, type=int, help="Records per page (1-100)")
@click.option("--token", "continuation_token", help="Continuation token from a previous page")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def devices(sync_state: str | None, page_size: int, continuation_token: str | None, as_json: bool) -> None:
    """List cross-synced device records."""

    async def query(daemon: Any) -> Any:
        return await daemon.query_service().get_synced_devices(
            sync_state=sync_state,
            page_size=page_size,
            continuation_token=continuation_token,
        )

    try:
        page = run_with_daemon(query)
    except DevSyncError as e:
        print_error("Query failed", str(e))
        raise SystemExit(1)

    if as_json:
        console.print_json(json.dumps(page.to_dict()))
        return

    if not page.devices:
        print_info("No synced devices found")
        return

    table = Table(title=f"Synced devices ({page.count})")
    table.add_column("Sync key", style="cyan")
    table.add_column("State")
    table.add_column("Intune device")
    table.add_column("Defender machine")
    table.add_column("Synced at", style="dim")

    for doc in page.devices:
        intune = doc.get("intune") or {}
        defender = doc.get("defender") or {}
        table.add_row(
            doc.get("syncKey", ""),
            doc.get("syncState", ""),
            intune.get("deviceName") or intune.get("id") or "-",
            defender.get("computerDnsName") or defender.get("id") or "-",
            doc.get("syncTimestamp", ""),
        )
    console.print(table)

    if page.has_more:
        console.print(f"\n[dim]More results: --token {page.continuation_token}[/dim]")


@main.command()
@click.argument("source", type=click.Choice(["intune", "defender"]))
def ingest(source: str) -> None:
    """Copy a source API inventory into the document store."""
    try:
        with console.status(f"[cyan]Ingesting {source} devices...[/cyan]", spinner="dots"):
            result = run_with_daemon(lambda daemon: daemon.ingest(source))
    except DevSyncError as e:
        print_error(f"Ingest of {source} failed", str(e))
        raise SystemExit(1)

    print_success(
        f"Ingested {result.written}/{result.fetched} {source} devices "
        f"({result.deleted} replaced, {result.execution_time_ms:.0f}ms)"
    )
    if result.failed:
        print_warning(f"{result.failed} devices failed to write")
        for error in result.errors[:10]:
            console.print(f"  [dim]{error.get('syncKey')}: {error.get('error')}[/dim]")


@main.group(invoke_without_command=True)
@click.pass_context
def config(ctx) -> None:
    """Configuration management.

    Without subcommand, shows current configuration.
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(config_show)


@config.command("show")
def config_show() -> None:
    """Show current configuration."""
    cfg = load_config()

    console.print(Panel.fit("[bold]DEVSYNC Configuration[/bold]", border_style="cyan"))

    console.print(f"\n[cyan]Version:[/cyan] {cfg.version}")

    console.print("\n[cyan]Store:[/cyan]")
    console.print(f"  Database: {cfg.store.resolve_db_path()}")
    console.print(f"  Sync collection: {cfg.store.sync_collection}")
    console.print(f"  Intune collection: {cfg.store.intune_collection}")
    console.print(f"  Defender collection: {cfg.store.defender_collection}")

    cs = cfg.cross_sync
    console.print("\n[cyan]Cross-sync:[/cyan]")
    console.print(f"  Scheduled: {'✅' if cs.enabled else '❌'} ({', '.join(cs.run_times)})")
    console.print(f"  Batch size: {cs.batch_size}, concurrency: {cs.max_concurrency}")
    console.print(f"  Retries: {cs.max_retries} (from {cs.initial_retry_delay}s), run retry after {cs.run_retry_delay:.0f}s")

    console.print(f"\n[cyan]Sources:[/cyan] {cfg.sources.mode}")
    for name in ("graph", "defender"):
        creds = getattr(cfg.sources, name)
        if creds.is_complete:
            console.print(f"  {name}: [green]✓[/green] tenant {creds.tenant_id}")
        else:
            console.print(f"  {name}: [dim]not configured[/dim]")

    console.print(f"\n[cyan]API:[/cyan] {cfg.api.host}:{cfg.api.port}")

    console.print(f"\n[dim]Config file: {get_config_path()}[/dim]")


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a configuration value.

    Examples:
        devsync config set cross_sync.batch_size 50
        devsync config set cross_sync.run_times 06:00,18:00
        devsync config set sources.mode api
    """
    cfg = load_config()

    try:
        set_nested_value(cfg, key, value)
        save_config(cfg)
        print_success(f"Set {key} = {value}")
    except KeyError as e:
        print_error(f"Invalid config key: {key}", str(e))
    except ValueError as e:
        print_error(f"Invalid value for {key}", str(e))


@config.command("get")
@click.argument("key")
def config_get(key: str) -> None:
    """Get a configuration value.

    Examples:
        devsync config get cross_sync.batch_size
        devsync config get cross_sync.run_times.0
    """
    cfg = load_config()
    value = get_nested_value(cfg, key)

    if value is None:
        print_error(f"Key not found: {key}")
    else:
        console.print(f"{key} = {value}")


if __name__ == "__main__":
    main()
