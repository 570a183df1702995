"""Command line interface for dexsync."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from dexsync.client.connectivity import ConnectivityMonitor, http_probe
from dexsync.client.fetcher import HttpFetcher
from dexsync.client.store import LocalStore
from dexsync.client.sync import SyncEngine
from dexsync.client.version import VersionManager
from dexsync.config import DEFAULT_BASE_URL, MANIFEST_FILENAME, AppConfig
from dexsync.errors import DexSyncError
from dexsync.pipeline.manifest import ManifestBuilder
from dexsync.pipeline.registry import SourceRegistry
from dexsync.pipeline.runner import PipelineRunner
from dexsync.web.app import create_app


console = Console()
app = typer.Typer(help="dexsync - publish and sync versioned Pokédex tidbit datasets")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _ensure_db_parent(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{message}[/red]")
    return typer.Exit(code=1)


@app.command()
def publish(
    enriched_json: Path = typer.Argument(..., help="JSON file of enriched species data.", exists=True, dir_okay=False),
    species: Optional[List[str]] = typer.Option(None, "--species", "-s", help="Restrict to these species ids"),
    force: bool = typer.Option(False, "--force", help="Re-index every target even if unchanged"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build the manifest without writing anything"),
    allow_empty_registry: bool = typer.Option(
        False, "--allow-empty-registry", help="Start from an empty registry if the existing one is corrupt"
    ),
    registry: Path = typer.Option(None, "--registry", help="Registry JSON path"),
    output: Path = typer.Option(None, "--output", "-o", help="Distribution root directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index enriched data and publish a new dataset revision."""
    _setup_logging(verbose)
    defaults = AppConfig()
    config = AppConfig(
        registry_path=registry if registry is not None else defaults.registry_path,
        output_dir=output if output is not None else defaults.output_dir,
    )
    registry_path = config.resolve_registry_path(Path.cwd())
    output_dir = config.resolve_output_dir(Path.cwd())

    try:
        enriched = json.loads(enriched_json.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise _fail(f"Cannot read {enriched_json}: {exc}") from exc
    if not isinstance(enriched, dict):
        raise _fail(f"{enriched_json} must contain a JSON object keyed by species id")

    runner = PipelineRunner(
        SourceRegistry(registry_path, allow_reset=allow_empty_registry),
        ManifestBuilder(output_dir),
        sources=config.source_names(),
    )
    try:
        outcome = runner.publish_enriched(enriched, targets=species or None, force=force, dry_run=dry_run)
    except DexSyncError as exc:
        raise _fail(str(exc)) from exc

    colour = "green" if outcome.published else "yellow"
    console.print(f"[{colour}]{outcome.message}[/{colour}]")
    if outcome.result is not None:
        result = outcome.result
        console.print(
            f"Species: {result.species_count}, changed: {len(result.changed_species)}, "
            f"new tidbits: {len(result.new_tidbit_ids)}, removed: {len(result.removed_tidbit_ids)}"
        )
    for species_id, reason in sorted(outcome.failed_species.items()):
        console.print(f"[red]Failed {species_id}:[/red] {reason}")


@app.command()
def sync(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--base-url", envvar="DEXSYNC_BASE_URL", help="Distribution root URL"
    ),
    db: Path = typer.Option(None, "--db", help="Local SQLite database path"),
    chunk_size: int = typer.Option(AppConfig().chunk_size, "--chunk-size", min=1, help="Species per chunk"),
    force: bool = typer.Option(False, "--force", help="Re-download everything"),
    attempts: int = typer.Option(3, "--attempts", min=1, help="Whole-sync attempts before giving up"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Download the published dataset into the local store."""
    _setup_logging(verbose)
    config = AppConfig(db_path=db if db is not None else AppConfig().db_path, base_url=base_url, chunk_size=chunk_size)
    resolved_db = config.resolve_db_path(Path.cwd())
    _ensure_db_parent(resolved_db)

    store = LocalStore(resolved_db)
    fetcher = HttpFetcher(config.base_url, retry=config.retry)
    engine = SyncEngine(
        store,
        fetcher,
        connectivity=ConnectivityMonitor(http_probe(fetcher.client, fetcher.url_for("health"))),
        chunk_size=config.chunk_size,
        integrity_retries=config.integrity_retries,
        retry=config.retry,
    )
    engine.on_progress(
        lambda current, total, percentage: console.print(f"Chunk {current}/{total} ({percentage:.1f}%)")
    )

    console.print(f"Syncing from [bold]{config.base_url}[/bold] into [bold]{resolved_db}[/bold]...")
    try:
        report = engine.sync_until_complete(attempts, force=force)
    except DexSyncError as exc:
        raise _fail(f"Sync failed: {exc}") from exc
    finally:
        fetcher.close()
        store.close()

    if report.up_to_date:
        console.print(f"[green]{report.message}[/green]")
        return
    console.print(
        f"[green]{report.message}[/green] downloaded: {report.downloaded}, "
        f"skipped: {report.skipped}, removed: {report.removed}"
    )


@app.command()
def status(
    db: Path = typer.Option(None, "--db", help="Local SQLite database path"),
) -> None:
    """Show the locally synced dataset version and its history."""
    config = AppConfig(db_path=db if db is not None else AppConfig().db_path)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]No local dataset yet. Run 'dexsync sync' first.[/yellow]")
        return

    store = LocalStore(resolved_db)
    try:
        record = VersionManager(store).initialize()
        species_count = store.count_records()
    finally:
        store.close()

    console.print(f"Current version: [bold]{record.current_version or 'none'}[/bold] ({species_count} species)")
    if not record.version_history:
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Version")
    table.add_column("Synced at")
    table.add_column("Species")
    table.add_column("Duration (ms)")
    for entry in reversed(record.version_history):
        synced_at = datetime.fromtimestamp(entry.timestamp / 1000, tz=timezone.utc)
        table.add_row(
            entry.version,
            synced_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.total_entities),
            str(entry.sync_duration_ms),
        )
    console.print(table)


@app.command()
def verify(
    output: Path = typer.Option(None, "--output", "-o", help="Distribution root directory"),
) -> None:
    """Check that every published manifest entry has an intact payload file."""
    config = AppConfig(output_dir=output if output is not None else AppConfig().output_dir)
    builder = ManifestBuilder(config.resolve_output_dir(Path.cwd()))
    try:
        problems = builder.verify_distribution()
    except (DexSyncError, ValueError, KeyError) as exc:
        raise _fail(f"Unreadable distribution: {exc}") from exc

    if problems:
        for problem in problems:
            console.print(f"[red]{problem}[/red]")
        raise typer.Exit(code=1)
    console.print("[green]Distribution is consistent.[/green]")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8080, help="Server port"),
    output: Path = typer.Option(None, "--output", "-o", help="Distribution root directory"),
) -> None:
    """Serve the distribution root over HTTP."""
    config = AppConfig(output_dir=output if output is not None else AppConfig().output_dir)
    root = config.resolve_output_dir(Path.cwd())
    if not (root / MANIFEST_FILENAME).exists():
        console.print("[yellow]Warning: nothing published yet, manifest requests will 404.[/yellow]")

    console.print(f"Serving {root} on http://{host}:{port}")
    uvicorn.run(create_app(root), host=host, port=port, reload=False, log_level="info")

