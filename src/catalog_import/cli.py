from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
import typer

from .config import Settings, load_settings
from .export_parquet import MANIFEST_FILENAME, export_catalog_to_parquet
from .models import ContentKind, ImportCounters
from .pipeline import DB_FILENAME, RunMode, RunPlan, RunResult, run_import
from .storage_sqlite import FAILED, CatalogStorage


app = typer.Typer(help="Import the AniList anime and manga catalog into SQLite", no_args_is_help=True)
console = Console()


class KindChoice(str, Enum):
    ANIME = "anime"
    MANGA = "manga"
    BOTH = "both"

    def kinds(self) -> tuple[ContentKind, ...]:
        if self is KindChoice.BOTH:
            return (ContentKind.ANIME, ContentKind.MANGA)
        return (ContentKind(self.value),)


class StrategyChoice(str, Enum):
    STANDARD = "standard"
    ENHANCED = "enhanced"


OUT_DIR_OPTION = typer.Option(Path("./output"), "--out-dir", file_okay=False, dir_okay=True, writable=True)
CONFIG_OPTION = typer.Option(None, "--config", exists=True, dir_okay=False, help="TOML file with an [import] section")
STRATEGY_OPTION = typer.Option(None, "--strategy", help="AniList field set to request")


def _settings(config: Path | None, **overrides) -> Settings:
    try:
        return load_settings(config, **overrides)
    except RuntimeError as exc:
        raise typer.BadParameter(str(exc)) from exc


def _open_storage(out_dir: Path) -> CatalogStorage:
    db_path = out_dir / DB_FILENAME
    if not db_path.exists():
        raise typer.BadParameter(f"Catalog database not found at {db_path}")
    storage = CatalogStorage(db_path)
    storage.initialize()
    return storage


def _execute(plan: RunPlan, *, out_dir: Path, settings: Settings) -> None:
    out_dir = out_dir.resolve()
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=console,
    )
    page_task = progress.add_task(f"{plan.mode.value} import", total=None)

    def page_callback(kind: ContentKind, page: int, last_page: int | None, counters: ImportCounters) -> None:
        progress.update(
            page_task,
            description=(
                f"{kind.value} page {page} "
                f"[ok={counters.imported} skipped={counters.skipped} err={counters.errors}]"
            ),
            total=last_page,
            completed=page,
        )

    with progress:
        result = asyncio.run(
            run_import(
                plan,
                out_dir=out_dir,
                settings=settings,
                console=console,
                page_callback=page_callback,
            )
        )

    _print_summary(result, out_dir)
    if result.status == FAILED:
        raise typer.Exit(code=1)


def _print_summary(result: RunResult, out_dir: Path) -> None:
    counters = result.counters
    elapsed = max(0.001, result.elapsed_seconds)

    summary = Table(title="Import Summary")
    summary.add_column("Metric")
    summary.add_column("Value", justify="right")
    summary.add_row("Run id", result.run_id)
    summary.add_row("Status", result.status)
    summary.add_row("Database", str(out_dir / DB_FILENAME))
    summary.add_row("Pages", str(counters.pages))
    summary.add_row("Imported", str(counters.imported))
    summary.add_row("Skipped", str(counters.skipped))
    summary.add_row("Errors", str(counters.errors))
    summary.add_row("Filtered (unchanged)", str(counters.filtered))
    summary.add_row("Elapsed (min)", f"{elapsed / 60:.1f}")
    summary.add_row("Titles/sec", f"{counters.imported / elapsed:.2f}")
    summary.add_row("Requests", str(result.telemetry.total_requests))
    summary.add_row("429 responses", str(result.telemetry.rate_limited))
    summary.add_row("Budget waits", str(result.telemetry.low_budget_waits))
    summary.add_row("Mean latency (ms)", f"{result.telemetry.mean_latency_ms:.1f}")
    for kind, page in result.last_page.items():
        summary.add_row(f"Last {kind} page", str(page))
    console.print(summary)

    if result.error_messages:
        console.print("[bold yellow]First errors:[/bold yellow]")
        for message in result.error_messages:
            console.print(f"  - {message}")
        if result.suppressed_errors:
            console.print(f"  ... and {result.suppressed_errors} more")
    if result.fatal_error:
        console.print(f"[bold red]Run failed:[/bold red] {result.fatal_error}")
    elif result.interrupted:
        console.print("[yellow]Interrupted. Progress has been saved; run again to resume.[/yellow]")


@app.command()
def full(
    kind: ContentKind = typer.Option(ContentKind.ANIME, "--type"),
    per_page: int | None = typer.Option(None, min=1, max=50),
    max_pages: int | None = typer.Option(None, min=0, help="Stop after this many pages (0 = no cap)"),
    batch_size: int | None = typer.Option(None, min=1),
    reset: bool = typer.Option(False, "--reset", help="Discard the checkpoint and start from page 1"),
    strategy: StrategyChoice | None = STRATEGY_OPTION,
    out_dir: Path = OUT_DIR_OPTION,
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Crawl the whole catalog for one content kind, resuming from the last checkpoint."""

    settings = _settings(
        config,
        per_page=per_page,
        max_pages=max_pages,
        batch_size=batch_size,
        strategy=strategy.value if strategy else None,
    )
    plan = RunPlan(
        mode=RunMode.FULL,
        kinds=(kind,),
        per_page=settings.per_page,
        max_pages=settings.max_pages,
        reset=reset,
    )
    _execute(plan, out_dir=out_dir, settings=settings)


@app.command()
def daily(
    kind: KindChoice = typer.Option(KindChoice.BOTH, "--type"),
    pages: int | None = typer.Option(None, min=1),
    per_page: int | None = typer.Option(None, min=1, max=50),
    min_score: int | None = typer.Option(None, min=0, max=100, help="Skip titles with averageScore below this"),
    strategy: StrategyChoice | None = STRATEGY_OPTION,
    out_dir: Path = OUT_DIR_OPTION,
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Import recently updated titles changed since the last sync."""

    settings = _settings(
        config,
        incremental_pages=pages,
        per_page=per_page,
        min_score=min_score,
        strategy=strategy.value if strategy else None,
    )
    plan = RunPlan(
        mode=RunMode.DAILY,
        kinds=kind.kinds(),
        per_page=settings.per_page,
        pages=settings.incremental_pages,
    )
    _execute(plan, out_dir=out_dir, settings=settings)


@app.command()
def scheduled(
    kind: KindChoice = typer.Option(KindChoice.BOTH, "--type"),
    pages: int | None = typer.Option(None, min=1),
    per_page: int | None = typer.Option(None, min=1, max=50),
    strategy: StrategyChoice | None = STRATEGY_OPTION,
    out_dir: Path = OUT_DIR_OPTION,
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Incremental import that records the sync time for each content kind."""

    settings = _settings(
        config,
        incremental_pages=pages,
        per_page=per_page,
        strategy=strategy.value if strategy else None,
    )
    plan = RunPlan(
        mode=RunMode.SCHEDULED,
        kinds=kind.kinds(),
        per_page=settings.per_page,
        pages=settings.incremental_pages,
    )
    _execute(plan, out_dir=out_dir, settings=settings)


@app.command()
def page(
    kind: ContentKind = typer.Option(ContentKind.ANIME, "--type"),
    page_number: int = typer.Option(1, "--page", min=1),
    per_page: int | None = typer.Option(None, min=1, max=50),
    strategy: StrategyChoice | None = STRATEGY_OPTION,
    out_dir: Path = OUT_DIR_OPTION,
    config: Path | None = CONFIG_OPTION,
) -> None:
    """Import a single page of the catalog sorted by popularity."""

    settings = _settings(config, per_page=per_page, strategy=strategy.value if strategy else None)
    plan = RunPlan(
        mode=RunMode.PAGE,
        kinds=(kind,),
        per_page=settings.per_page,
        page=page_number,
    )
    _execute(plan, out_dir=out_dir, settings=settings)


@app.command()
def stats(
    runs: int = typer.Option(5, min=1, help="Number of recent runs to show"),
    out_dir: Path = OUT_DIR_OPTION,
) -> None:
    """Print catalog row counts, sync status and recent runs."""

    storage = _open_storage(out_dir.resolve())
    try:
        counts = Table(title="Catalog")
        counts.add_column("Table")
        counts.add_column("Rows", justify="right")
        for kind in ContentKind:
            counts.add_row(f"titles ({kind.value})", str(storage.count_titles(kind)))
        for table_name, count in storage.table_counts().items():
            counts.add_row(table_name, str(count))
        console.print(counts)

        sync = Table(title="Sync Status")
        sync.add_column("Type")
        sync.add_column("Last sync")
        for kind in ContentKind:
            sync.add_row(kind.value, storage.get_last_sync(kind))
        console.print(sync)

        recent = Table(title="Recent Runs")
        for column in ("Run id", "Mode", "Types", "Status", "Started", "Imported", "Skipped", "Errors", "Filtered"):
            recent.add_column(column)
        for record in storage.recent_runs(runs):
            recent.add_row(
                record.run_id,
                record.mode,
                record.content_types,
                record.status,
                record.started_at,
                str(record.imported),
                str(record.skipped),
                str(record.errors),
                str(record.filtered),
            )
        console.print(recent)
    finally:
        storage.close()


@app.command()
def export(out_dir: Path = OUT_DIR_OPTION) -> None:
    """Write parquet snapshots of the catalog tables and a manifest."""

    out_dir = out_dir.resolve()
    db_path = out_dir / DB_FILENAME
    if not db_path.exists():
        raise typer.BadParameter(f"Catalog database not found at {db_path}")

    manifest = export_catalog_to_parquet(db_path=db_path, out_dir=out_dir)

    table = Table(title="Export Summary")
    table.add_column("Dataset")
    table.add_column("Rows", justify="right")
    for dataset, count in manifest["counts"].items():
        table.add_row(dataset, str(count))
    console.print(table)
    console.print(f"Manifest: {out_dir / MANIFEST_FILENAME}")


if __name__ == "__main__":
    app()
