"""Typer-based CLI for ForgeSync with Pydantic v2 configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ForgeSync.acquisition import AcquisitionOrchestrator, CopyImporter
from ForgeSync.catalog import CatalogClient, ForgeCatalogClient
from ForgeSync.config import ForgeSyncConfig, export_config_schema, load_config
from ForgeSync.downloader import ResilientDownloader
from ForgeSync.enrich import EnrichmentPass
from ForgeSync.errors import ConfigError, ForgeSyncError
from ForgeSync.logging_utils import setup_logging
from ForgeSync.matching import CandidateMatcher
from ForgeSync.overrides import OverrideTable
from ForgeSync.registry import InstallRecord, JsonInstallRegistry, records_from_folders
from ForgeSync.scanner import FilesystemInstallScanner

console = Console()
app = typer.Typer(help="ForgeSync: match local installs to the Forge catalog")
overrides_app = typer.Typer(help="Manage install-to-catalog overrides")
app.add_typer(overrides_app, name="overrides")

ConfigOption = typer.Option(
    None, "--config", "-c", help="Path to config file", envvar="FORGESYNC_CONFIG"
)
VerboseOption = typer.Option(False, "-v", "--verbose", help="Verbose")
RegistryOption = typer.Option(
    Path("installs.json"), "--registry", help="Install registry JSON file"
)

# ============================================================================
# Setup
# ============================================================================


def _setup_logging(cfg: ForgeSyncConfig, verbose: bool) -> None:
    level = "DEBUG" if verbose else cfg.logging.level
    log_dir = Path(cfg.logging.log_dir) if cfg.logging.log_dir else None
    setup_logging(level=level, log_dir=log_dir, retention_days=cfg.logging.retention_days)


def _load(config: Optional[str], verbose: bool, cli_overrides: Optional[Dict[str, Any]] = None) -> ForgeSyncConfig:
    try:
        cfg = load_config(path=config, cli_overrides=cli_overrides)
    except ConfigError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(code=1)
    _setup_logging(cfg, verbose)
    return cfg


def _build_catalog(cfg: ForgeSyncConfig) -> CatalogClient:
    return ForgeCatalogClient(cfg.catalog)


def _build_scanner(cfg: ForgeSyncConfig) -> FilesystemInstallScanner:
    if not cfg.scan.install_root:
        console.print("[red]✗ Configuration error: scan.install_root is not set[/red]")
        raise typer.Exit(code=1)
    return FilesystemInstallScanner(Path(cfg.scan.install_root))


def _load_overrides(cfg: ForgeSyncConfig) -> OverrideTable:
    try:
        return OverrideTable.load(Path(cfg.overrides.path))
    except ForgeSyncError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(code=1)


def _load_registry(path: Path) -> JsonInstallRegistry:
    try:
        return JsonInstallRegistry(path)
    except ConfigError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(code=1)


def _build_orchestrator(cfg: ForgeSyncConfig, catalog: CatalogClient) -> AcquisitionOrchestrator:
    lock_dir = Path(cfg.download.lock_dir) if cfg.download.lock_dir else None
    downloader = ResilientDownloader(lock_dir=lock_dir, user_agent=cfg.catalog.user_agent)
    importer = CopyImporter(Path(cfg.download.import_dir))
    return AcquisitionOrchestrator(catalog, downloader, importer, cfg)


def _close(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if callable(close):
        close()


# ============================================================================
# Commands
# ============================================================================


@app.command()
def enrich(
    config: Optional[str] = ConfigOption,
    install_root: Optional[Path] = typer.Option(None, "--root", help="Install root directory"),
    registry_path: Path = RegistryOption,
    verbose: bool = VerboseOption,
) -> None:
    """Match every install to a catalog entry and record its attributes."""
    overrides: Dict[str, Any] = {}
    if install_root is not None:
        overrides["scan"] = {"install_root": str(install_root)}
    cfg = _load(config, verbose, overrides)
    scanner = _build_scanner(cfg)
    registry = _load_registry(registry_path)
    table = _load_overrides(cfg)

    records: List[InstallRecord] = registry.records()
    if not records:
        records = records_from_folders(scanner.list_install_folders())
        for record in records:
            registry.upsert(record)

    catalog = _build_catalog(cfg)
    try:
        matcher = CandidateMatcher(
            catalog, table, cfg.matching, max_results=cfg.catalog.search_max_results
        )
        report = EnrichmentPass(matcher, scanner, registry, scan_config=cfg.scan).run(records)
    finally:
        _close(catalog)
    registry.save()

    results = Table(title="Enrichment")
    results.add_column("Install")
    results.add_column("Identifier")
    results.add_column("Method")
    results.add_column("Confidence", justify="right")
    for outcome in report.outcomes:
        if outcome.match is not None:
            results.add_row(
                outcome.install_id,
                outcome.match.entry.guid or "",
                outcome.match.method,
                str(outcome.match.confidence),
            )
        else:
            results.add_row(outcome.install_id, "[yellow]unmatched[/yellow]", "", "")
    console.print(results)
    console.print(
        Panel(
            f"[bold green]Matched: {report.matched}[/bold green]\nSkipped: {report.skipped}",
            title="Enrichment Summary",
        )
    )


@app.command()
def diagnose(
    folder: str = typer.Argument(..., help="Install folder name"),
    config: Optional[str] = ConfigOption,
    install_root: Optional[Path] = typer.Option(None, "--root", help="Install root directory"),
    verbose: bool = VerboseOption,
) -> None:
    """Show evidence, search terms and the match for one install folder."""
    overrides: Dict[str, Any] = {}
    if install_root is not None:
        overrides["scan"] = {"install_root": str(install_root)}
    cfg = _load(config, verbose, overrides)
    scanner = _build_scanner(cfg)
    table = _load_overrides(cfg)
    catalog = _build_catalog(cfg)
    try:
        matcher = CandidateMatcher(
            catalog, table, cfg.matching, max_results=cfg.catalog.search_max_results
        )
        diagnosis = EnrichmentPass(matcher, scanner, scan_config=cfg.scan).diagnose(folder)
    finally:
        _close(catalog)

    evidence = diagnosis.evidence
    lines = [
        f"Identifier: {evidence.guid or '-'}",
        f"Version: {evidence.version or '-'}",
        f"Display name: {evidence.display_name or '-'}",
        f"Guesses: {', '.join(evidence.guesses) or '-'}",
        f"Override: {diagnosis.override.target if diagnosis.override else '-'}",
        f"Terms: {', '.join(diagnosis.terms) or '-'}",
    ]
    if diagnosis.match is not None:
        match = diagnosis.match
        lines.append(
            f"[bold green]Match: {match.entry.guid} ({match.method}, {match.confidence})[/bold green]"
        )
    else:
        lines.append("[yellow]Match: none[/yellow]")
    console.print(Panel("\n".join(lines), title=f"Diagnosis: {folder}"))


@app.command("check-updates")
def check_updates(
    config: Optional[str] = ConfigOption,
    registry_path: Path = RegistryOption,
    verbose: bool = VerboseOption,
) -> None:
    """Query the catalog for updates of enriched installs."""
    cfg = _load(config, verbose)
    registry = _load_registry(registry_path)
    catalog = _build_catalog(cfg)
    orchestrator = _build_orchestrator(cfg, catalog)
    try:
        status = orchestrator.check_updates(registry.records())
    except ForgeSyncError as e:
        console.print(f"[red]✗ Update check failed: {e}[/red]")
        return
    finally:
        _close(orchestrator.downloader)
        _close(catalog)

    table = Table(title="Available Updates")
    table.add_column("Identifier")
    table.add_column("Installed")
    table.add_column("Latest")
    for update in status.updates:
        table.add_row(update.identifier, update.current_version or "", update.latest_version or "")
    console.print(table)
    console.print(
        Panel(
            f"Updates: {len(status.updates)}\n"
            f"Blocked: {len(status.blocked)}\n"
            f"Incompatible: {len(status.incompatible)}\n"
            f"Up to date: {len(status.up_to_date)}",
            title="Update Status",
        )
    )


@app.command("download-updates")
def download_updates(
    config: Optional[str] = ConfigOption,
    registry_path: Path = RegistryOption,
    max_workers: Optional[int] = typer.Option(None, "--workers", help="Concurrent downloads"),
    verbose: bool = VerboseOption,
) -> None:
    """Download, verify and import every available update."""
    overrides: Dict[str, Any] = {}
    if max_workers:
        overrides["download"] = {"max_workers": max_workers}
    cfg = _load(config, verbose, overrides)
    registry = _load_registry(registry_path)
    catalog = _build_catalog(cfg)
    orchestrator = _build_orchestrator(cfg, catalog)
    try:
        report = orchestrator.download_and_import_updates(registry.records())
    except ForgeSyncError as e:
        console.print(f"[red]✗ Update download failed: {e}[/red]")
        return
    finally:
        _close(orchestrator.downloader)
        _close(catalog)

    for result in report.results:
        if result.ok:
            console.print(f"[green]✓ {result.guid or result.reference} → {result.imported_to}[/green]")
        else:
            console.print(f"[red]✗ {result.guid or result.reference}: {result.reason} ({result.error})[/red]")
    console.print(
        Panel(
            f"[bold green]Succeeded: {report.succeeded}[/bold green]\nFailed: {report.failed}",
            title="Download Summary",
        )
    )


@overrides_app.command("import")
def overrides_import(
    source: Path = typer.Argument(..., exists=True, dir_okay=False, help="Override content file"),
    merge: bool = typer.Option(False, "--merge", help="Merge into existing overrides"),
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """Import overrides from JSON or `key -> value` text."""
    cfg = _load(config, verbose)
    table = _load_overrides(cfg)
    try:
        count = table.import_content(source.read_text(encoding="utf-8"), merge=merge)
    except (ForgeSyncError, OSError) as e:
        console.print(f"[red]✗ Import failed: {e}[/red]")
        return
    console.print(f"[green]✓ Imported {count} overrides ({len(table)} total)[/green]")


@overrides_app.command("show")
def overrides_show(
    config: Optional[str] = ConfigOption,
    verbose: bool = VerboseOption,
) -> None:
    """List stored overrides."""
    cfg = _load(config, verbose)
    table = _load_overrides(cfg)
    output = Table(title=f"Overrides ({len(table)})")
    output.add_column("Key")
    output.add_column("Target")
    output.add_column("Type")
    for entry in table.entries():
        output.add_row(entry.key_raw, entry.target, entry.target_type)
    console.print(output)


@app.command("print-config")
def print_config(
    config: Optional[str] = ConfigOption,
    schema: bool = typer.Option(False, "--schema", help="Print the JSON schema instead"),
) -> None:
    """Print the merged configuration (secrets masked)."""
    if schema:
        console.print_json(json.dumps(export_config_schema()))
        return
    try:
        cfg = load_config(path=config)
    except ConfigError as e:
        console.print(f"[red]✗ Configuration error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(Panel(f"Hash: {cfg.config_hash()[:8]}...", title="ForgeSync Config"))
    console.print_json(cfg.model_dump_json())


def main() -> None:
    logging.captureWarnings(True)
    app()


if __name__ == "__main__":
    main()
