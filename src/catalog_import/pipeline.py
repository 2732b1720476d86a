from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
import signal
import time
from typing import Any
import uuid

from rich.console import Console

from .anilist_client import AniListClient, CatalogImportError, RateLimitedError, RequestTelemetry
from .config import Settings
from .mapper import map_media
from .models import CatalogPage, ContentKind, ImportCounters, SkippedRecord
from .progress import ProgressTracker, checkpoint_path
from .queries import FULL_CRAWL_SORT, INCREMENTAL_SORT, MANUAL_SORT
from .storage_sqlite import COMPLETED, FAILED, INTERRUPTED, CatalogStorage
from .upsert import UpsertEngine


DB_FILENAME = "catalog.sqlite3"


class RunMode(str, Enum):
    FULL = "full"
    DAILY = "daily"
    SCHEDULED = "scheduled"
    PAGE = "page"


@dataclass(slots=True)
class RunPlan:
    mode: RunMode
    kinds: tuple[ContentKind, ...]
    per_page: int = 50
    pages: int = 2
    page: int = 1
    max_pages: int = 0
    reset: bool = False


@dataclass(slots=True)
class RunResult:
    run_id: str
    status: str
    counters: ImportCounters
    elapsed_seconds: float
    telemetry: RequestTelemetry
    error_messages: list[str] = field(default_factory=list)
    suppressed_errors: int = 0
    fatal_error: str | None = None
    last_page: dict[str, int] = field(default_factory=dict)

    @property
    def interrupted(self) -> bool:
        return self.status == INTERRUPTED


PageCallback = Callable[[ContentKind, int, int | None, ImportCounters], None] | None


def _make_run_id() -> str:
    stamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
    suffix = uuid.uuid4().hex[:8]
    return f"run_{stamp}_{suffix}"


def _changed_since(record: dict[str, Any], since_ts: float) -> bool:
    updated_at = record.get("updatedAt")
    if not updated_at:
        return False
    return float(updated_at) > since_ts


class ImportRunner:
    """Sequential page loop: fetch, map, persist, checkpoint, repeat."""

    def __init__(
        self,
        *,
        client,
        storage: CatalogStorage,
        settings: Settings,
        out_dir: Path,
        console: Console,
        stop_event: asyncio.Event,
        page_callback: PageCallback = None,
    ) -> None:
        self.client = client
        self.storage = storage
        self.settings = settings
        self.out_dir = out_dir
        self.console = console
        self.stop_event = stop_event
        self.page_callback = page_callback
        self.engine = UpsertEngine(storage, batch_size=settings.batch_size)
        self.counters = ImportCounters()
        self.error_messages: list[str] = []
        self.suppressed_errors = 0
        self.last_page: dict[str, int] = {}
        self.interrupted = False
        self._started_at = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started_at

    async def run(self, plan: RunPlan) -> None:
        if plan.mode == RunMode.FULL:
            for kind in plan.kinds:
                if self._should_stop():
                    break
                await self._run_full(kind, plan)
            return
        if plan.mode in (RunMode.DAILY, RunMode.SCHEDULED):
            sync_started_at = datetime.now(UTC).isoformat()
            for kind in plan.kinds:
                if self._should_stop():
                    break
                completed = await self._run_incremental(kind, plan)
                if plan.mode == RunMode.SCHEDULED and completed:
                    self.storage.set_last_sync(kind, sync_started_at)
                    self.console.log(f"Sync status for {kind.value} set to {sync_started_at}")
            return
        if plan.mode == RunMode.PAGE:
            for kind in plan.kinds:
                if self._should_stop():
                    break
                page = await self._fetch(kind, plan.page, plan.per_page, MANUAL_SORT)
                self._handle_page(kind, plan.page, page, since_ts=None)
            return

        raise RuntimeError(f"Unsupported run mode: {plan.mode}")

    def _should_stop(self) -> bool:
        if self.stop_event.is_set():
            self.interrupted = True
        return self.interrupted

    async def _run_full(self, kind: ContentKind, plan: RunPlan) -> None:
        tracker = ProgressTracker(checkpoint_path(self.out_dir, kind))
        if plan.reset:
            tracker.clear()
            self.console.log(f"[yellow]Checkpoint for {kind.value} cleared.[/yellow]")
        checkpoint = tracker.load()
        page_number = tracker.resume_page(checkpoint)
        crawl_totals = ImportCounters(
            imported=checkpoint.total_imported,
            skipped=checkpoint.total_skipped,
            errors=checkpoint.total_errors,
        )
        self.console.rule(f"[bold]Full {kind.value} crawl")
        self.console.log(f"Starting from page {page_number}")

        pages_done = 0
        while not self._should_stop():
            if plan.max_pages and pages_done >= plan.max_pages:
                self.console.log(f"Page cap of {plan.max_pages} reached at page {page_number - 1}")
                break
            page = await self._fetch(kind, page_number, plan.per_page, FULL_CRAWL_SORT)
            page_counters = self._handle_page(kind, page_number, page, since_ts=None)
            crawl_totals.absorb(page_counters)
            tracker.save(page_number, page.last_page, crawl_totals)
            pages_done += 1
            if not page.has_next_page:
                self.console.log(f"[green]Catalog exhausted[/green] after page {page_number}")
                break
            page_number += 1

    async def _run_incremental(self, kind: ContentKind, plan: RunPlan) -> bool:
        last_sync = self.storage.get_last_sync(kind)
        since_ts = datetime.fromisoformat(last_sync).timestamp()
        self.console.rule(f"[bold]Incremental {kind.value} import")
        self.console.log(f"Importing up to {plan.pages} pages updated after {last_sync}")

        for page_number in range(1, plan.pages + 1):
            if self._should_stop():
                return False
            page = await self._fetch(kind, page_number, plan.per_page, INCREMENTAL_SORT)
            self._handle_page(kind, page_number, page, since_ts=since_ts)
            if not page.has_next_page:
                break
        return True

    async def _fetch(self, kind: ContentKind, page_number: int, per_page: int, sort: str) -> CatalogPage:
        attempts = 0
        while True:
            try:
                return await self.client.fetch_page(
                    kind,
                    page_number,
                    per_page,
                    strategy=self.settings.strategy,
                    sort=sort,
                )
            except RateLimitedError:
                attempts += 1
                if attempts > self.settings.max_rate_limit_retries:
                    raise
                self.console.log(
                    f"[yellow]Rate limited on {kind.value} page {page_number}; "
                    f"retrying same page ({attempts}/{self.settings.max_rate_limit_retries})[/yellow]"
                )

    def _handle_page(
        self,
        kind: ContentKind,
        page_number: int,
        page: CatalogPage,
        since_ts: float | None,
    ) -> ImportCounters:
        page_counters = self._process_page(kind, page, since_ts)
        self.counters.absorb(page_counters)
        self.last_page[kind.value] = page_number

        progress = f"{page_number}/{page.last_page}" if page.last_page else str(page_number)
        self.console.log(
            f"{kind.value} page {progress}: imported={page_counters.imported} "
            f"skipped={page_counters.skipped} errors={page_counters.errors} "
            f"filtered={page_counters.filtered}"
        )
        if self.counters.pages % self.settings.progress_every_pages == 0:
            self.log_overall()
        if self.page_callback:
            self.page_callback(kind, page_number, page.last_page, self.counters)
        return page_counters

    def _process_page(self, kind: ContentKind, page: CatalogPage, since_ts: float | None) -> ImportCounters:
        counters = ImportCounters(pages=1)
        mapped = []
        for record in page.media:
            try:
                if since_ts is not None and not _changed_since(record, since_ts):
                    counters.filtered += 1
                    continue
                result = map_media(
                    record,
                    kind,
                    disallowed_genres=self.settings.disallowed_genres,
                    min_score=self.settings.min_score,
                )
            except (AttributeError, TypeError, ValueError, KeyError) as exc:
                counters.errors += 1
                self._record_error(f"Map {kind.value} {record.get('id')}: {exc}")
                continue
            if isinstance(result, SkippedRecord):
                counters.skipped += 1
                continue
            mapped.append(result)

        persisted = self.engine.persist(mapped)
        counters.imported += persisted.imported
        counters.errors += persisted.errors
        for message in persisted.messages:
            self._record_error(f"Persist {kind.value}: {message}")
        return counters

    def _record_error(self, message: str) -> None:
        if len(self.error_messages) < self.settings.error_sample_size:
            self.error_messages.append(message)
            self.console.log(f"[red]Error[/red] {message}")
        else:
            self.suppressed_errors += 1

    def log_overall(self, label: str = "Overall progress") -> None:
        elapsed = max(0.001, self.elapsed_seconds)
        self.console.log(
            f"{label} after {self.counters.pages} pages: "
            f"imported {self.counters.imported:,}, skipped {self.counters.skipped:,}, "
            f"errors {self.counters.errors:,}, filtered {self.counters.filtered:,}, "
            f"{self.counters.imported / elapsed:.1f} titles/sec over {elapsed / 60:.1f} min"
        )


def _install_stop_handlers(stop_event: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    return installed


async def run_import(
    plan: RunPlan,
    *,
    out_dir: Path,
    settings: Settings | None = None,
    client=None,
    console: Console | None = None,
    stop_event: asyncio.Event | None = None,
    page_callback: PageCallback = None,
    run_id: str | None = None,
) -> RunResult:
    settings = settings or Settings()
    console = console or Console()
    out_dir.mkdir(parents=True, exist_ok=True)

    storage = CatalogStorage(out_dir / DB_FILENAME)
    storage.initialize()
    resolved_run_id = run_id or _make_run_id()
    storage.create_run(resolved_run_id, plan.mode.value, plan.kinds)

    installed_signals: list[signal.Signals] = []
    if stop_event is None:
        stop_event = asyncio.Event()
        installed_signals = _install_stop_handlers(stop_event)

    runner: ImportRunner | None = None
    status = FAILED
    fatal_error: str | None = None
    try:
        async with AsyncExitStack() as stack:
            if client is None:
                client = AniListClient(settings=settings)
                await stack.enter_async_context(client)
            runner = ImportRunner(
                client=client,
                storage=storage,
                settings=settings,
                out_dir=out_dir,
                console=console,
                stop_event=stop_event,
                page_callback=page_callback,
            )
            try:
                await runner.run(plan)
            except CatalogImportError as exc:
                fatal_error = str(exc)
                console.log(f"[bold red]Import aborted:[/bold red] {exc}")
            else:
                status = INTERRUPTED if runner.interrupted else COMPLETED
                runner.log_overall("Run finished")
            finally:
                storage.finish_run(resolved_run_id, status, runner.counters, fatal_error)
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed_signals:
            loop.remove_signal_handler(sig)
        storage.close()

    if status == INTERRUPTED:
        console.log("[yellow]Import interrupted, progress saved.[/yellow] Run again to resume.")

    return RunResult(
        run_id=resolved_run_id,
        status=status,
        counters=runner.counters,
        elapsed_seconds=runner.elapsed_seconds,
        telemetry=getattr(client, "telemetry", None) or RequestTelemetry(),
        error_messages=list(runner.error_messages),
        suppressed_errors=runner.suppressed_errors,
        fatal_error=fatal_error,
        last_page=dict(runner.last_page),
    )
