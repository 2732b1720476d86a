from __future__ import annotations

import asyncio
import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from catalog_import.config import Settings
from catalog_import.models import ContentKind
from catalog_import import pipeline as pipeline_module
from catalog_import.pipeline import DB_FILENAME, RunMode, RunPlan, run_import
from catalog_import.progress import checkpoint_path
from catalog_import.queries import FULL_CRAWL_SORT, INCREMENTAL_SORT
from catalog_import.storage_sqlite import COMPLETED, DEFAULT_LAST_SYNC, FAILED, INTERRUPTED, CatalogStorage
from tests.fakes import FakeAniListClient, FakeClientConfig, make_media


def _settings(**overrides) -> Settings:
    return Settings(rate_limit_calls=100, **overrides)


def _quiet_console() -> Console:
    return Console(quiet=True)


def _open(out_dir: Path) -> CatalogStorage:
    storage = CatalogStorage(out_dir / DB_FILENAME)
    storage.initialize()
    return storage


@pytest.mark.asyncio
async def test_single_page_with_one_adult_record(tmp_path: Path) -> None:
    client = FakeAniListClient(
        FakeClientConfig(pages={ContentKind.ANIME: [[make_media(1), make_media(2, is_adult=True)]]})
    )

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.status == COMPLETED
    assert result.run_id.startswith("run_")
    assert (result.counters.imported, result.counters.skipped, result.counters.errors) == (1, 1, 0)
    assert client.calls == [(ContentKind.ANIME, 1, 50, FULL_CRAWL_SORT)]

    storage = _open(tmp_path)
    assert storage.count_titles(ContentKind.ANIME) == 1
    run = storage.recent_runs(1)[0]
    storage.close()
    assert run.status == COMPLETED
    assert run.imported == 1


@pytest.mark.asyncio
async def test_full_crawl_resumes_after_checkpoint_and_restores_totals(tmp_path: Path) -> None:
    pages = [[make_media(i * 10 + j) for j in range(2)] for i in range(1, 5)]
    first = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))

    await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,), max_pages=2),
        out_dir=tmp_path,
        settings=_settings(),
        client=first,
        console=_quiet_console(),
    )
    stored = json.loads(checkpoint_path(tmp_path, ContentKind.ANIME).read_text(encoding="utf-8"))
    assert stored["lastPage"] == 2
    assert stored["totalImported"] == 4

    second = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))
    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=second,
        console=_quiet_console(),
    )

    assert [call[1] for call in second.calls] == [3, 4]
    assert result.counters.imported == 4
    stored = json.loads(checkpoint_path(tmp_path, ContentKind.ANIME).read_text(encoding="utf-8"))
    assert stored["lastPage"] == 4
    assert stored["totalImported"] == 8


@pytest.mark.asyncio
async def test_reset_discards_checkpoint(tmp_path: Path) -> None:
    pages = [[make_media(1)], [make_media(2)]]
    await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages})),
        console=_quiet_console(),
    )

    again = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))
    await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,), reset=True),
        out_dir=tmp_path,
        settings=_settings(),
        client=again,
        console=_quiet_console(),
    )

    assert [call[1] for call in again.calls] == [1, 2]


@pytest.mark.asyncio
async def test_rate_limited_page_is_retried_not_skipped(tmp_path: Path) -> None:
    client = FakeAniListClient(
        FakeClientConfig(
            pages={ContentKind.ANIME: [[make_media(1)], [make_media(2)]]},
            rate_limited_once={(ContentKind.ANIME, 2)},
        )
    )

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert [call[1] for call in client.calls] == [1, 2, 2]
    assert result.counters.imported == 2
    assert result.status == COMPLETED


@pytest.mark.asyncio
async def test_persistent_rate_limiting_fails_the_run(tmp_path: Path) -> None:
    client = FakeAniListClient(FakeClientConfig(always_rate_limited=True))

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(max_rate_limit_retries=2),
        client=client,
        console=_quiet_console(),
    )

    assert len(client.calls) == 3
    assert result.status == FAILED
    assert "429" in (result.fatal_error or "")


@pytest.mark.asyncio
async def test_remote_error_aborts_and_keeps_earlier_pages(tmp_path: Path) -> None:
    client = FakeAniListClient(
        FakeClientConfig(
            pages={ContentKind.ANIME: [[make_media(1)], [make_media(2)], [make_media(3)]]},
            failing_pages={(ContentKind.ANIME, 2)},
        )
    )

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.status == FAILED
    assert result.counters.imported == 1
    stored = json.loads(checkpoint_path(tmp_path, ContentKind.ANIME).read_text(encoding="utf-8"))
    assert stored["lastPage"] == 1

    storage = _open(tmp_path)
    run = storage.recent_runs(1)[0]
    storage.close()
    assert run.status == FAILED
    assert run.error_message


@pytest.mark.asyncio
async def test_stop_event_interrupts_between_pages(tmp_path: Path) -> None:
    stop_event = asyncio.Event()
    pages = [[make_media(i)] for i in range(1, 6)]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))

    def stop_after_second_page(kind, page, last_page, counters) -> None:
        if page == 2:
            stop_event.set()

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
        stop_event=stop_event,
        page_callback=stop_after_second_page,
    )

    assert result.status == INTERRUPTED
    assert result.interrupted
    assert [call[1] for call in client.calls] == [1, 2]
    stored = json.loads(checkpoint_path(tmp_path, ContentKind.ANIME).read_text(encoding="utf-8"))
    assert stored["lastPage"] == 2


@pytest.mark.asyncio
async def test_daily_filters_unchanged_records_and_leaves_sync_status(tmp_path: Path) -> None:
    storage = _open(tmp_path)
    storage.set_last_sync(ContentKind.ANIME, "2024-01-01T00:00:00+00:00")
    storage.close()

    fresh = make_media(1, updated_at=1_720_000_000)
    stale = make_media(2, updated_at=1_600_000_000)
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: [[fresh, stale]]}))

    result = await run_import(
        RunPlan(mode=RunMode.DAILY, kinds=(ContentKind.ANIME,), pages=2),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.counters.imported == 1
    assert result.counters.filtered == 1
    assert client.calls == [(ContentKind.ANIME, 1, 50, INCREMENTAL_SORT)]

    storage = _open(tmp_path)
    assert storage.get_last_sync(ContentKind.ANIME) == "2024-01-01T00:00:00+00:00"
    assert storage.get_last_sync(ContentKind.MANGA) == DEFAULT_LAST_SYNC
    storage.close()


@pytest.mark.asyncio
async def test_daily_min_score_skips_low_rated_titles(tmp_path: Path) -> None:
    client = FakeAniListClient(
        FakeClientConfig(pages={ContentKind.MANGA: [[make_media(1, score=80), make_media(2, score=40)]]})
    )

    result = await run_import(
        RunPlan(mode=RunMode.DAILY, kinds=(ContentKind.MANGA,)),
        out_dir=tmp_path,
        settings=_settings(min_score=60),
        client=client,
        console=_quiet_console(),
    )

    assert (result.counters.imported, result.counters.skipped) == (1, 1)


@pytest.mark.asyncio
async def test_scheduled_updates_sync_status_for_each_kind(tmp_path: Path) -> None:
    client = FakeAniListClient(
        FakeClientConfig(
            pages={
                ContentKind.ANIME: [[make_media(1)]],
                ContentKind.MANGA: [[make_media(1, kind=ContentKind.MANGA)]],
            }
        )
    )

    result = await run_import(
        RunPlan(mode=RunMode.SCHEDULED, kinds=(ContentKind.ANIME, ContentKind.MANGA)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.counters.imported == 2
    storage = _open(tmp_path)
    status = storage.sync_status()
    storage.close()
    assert set(status) == {"anime", "manga"}
    assert all(value and value > DEFAULT_LAST_SYNC for value in status.values())


@pytest.mark.asyncio
async def test_page_mode_imports_exactly_one_page(tmp_path: Path) -> None:
    pages = [[make_media(1)], [make_media(2), make_media(3)], [make_media(4)]]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))

    result = await run_import(
        RunPlan(mode=RunMode.PAGE, kinds=(ContentKind.ANIME,), page=2, per_page=2),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert len(client.calls) == 1
    assert client.calls[0][1:3] == (2, 2)
    assert result.counters.imported == 2
    assert not checkpoint_path(tmp_path, ContentKind.ANIME).exists()


@pytest.mark.asyncio
async def test_error_messages_are_capped_to_sample_size(tmp_path: Path) -> None:
    broken = [{"id": i, "title": {"romaji": f"T{i}"}, "episodes": "many"} for i in range(1, 9)]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: [broken]}))

    result = await run_import(
        RunPlan(mode=RunMode.PAGE, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(error_sample_size=3),
        client=client,
        console=_quiet_console(),
    )

    assert result.counters.errors == 8
    assert len(result.error_messages) == 3
    assert result.suppressed_errors == 5
    assert result.status == COMPLETED


@pytest.mark.asyncio
async def test_records_without_any_title_are_skipped_one_each(tmp_path: Path) -> None:
    untitled = [{"id": i, "title": {"romaji": None, "english": " ", "native": None}} for i in range(1, 4)]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: [untitled + [make_media(9)]]}))

    result = await run_import(
        RunPlan(mode=RunMode.PAGE, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert (result.counters.imported, result.counters.skipped, result.counters.errors) == (1, 3, 0)
    storage = _open(tmp_path)
    assert storage.count_titles() == 1
    storage.close()


def _recording_console() -> Console:
    return Console(record=True, file=io.StringIO(), width=400)


@pytest.mark.asyncio
async def test_malformed_record_is_tallied_and_crawl_checkpoints_past_it(tmp_path: Path, monkeypatch) -> None:
    real_map_media = pipeline_module.map_media

    def map_media_failing_on_two(record, kind, **kwargs):
        if record.get("id") == 2:
            raise AttributeError("'str' object has no attribute 'get'")
        return real_map_media(record, kind, **kwargs)

    monkeypatch.setattr(pipeline_module, "map_media", map_media_failing_on_two)
    odd_shapes = make_media(3)
    odd_shapes.update({"startDate": "2020-01-01", "rankings": [None], "trailer": "youtube"})
    pages = [[make_media(1), make_media(2), odd_shapes], [make_media(4)]]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))

    result = await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.status == COMPLETED
    assert (result.counters.imported, result.counters.skipped, result.counters.errors) == (3, 0, 1)
    assert result.error_messages[0].startswith("Map anime 2:")
    stored = json.loads(checkpoint_path(tmp_path, ContentKind.ANIME).read_text(encoding="utf-8"))
    assert stored["lastPage"] == 2
    assert stored["totalErrors"] == 1


@pytest.mark.asyncio
async def test_unparseable_updated_at_counts_as_record_error(tmp_path: Path) -> None:
    bad = make_media(2)
    bad["updatedAt"] = "yesterday"
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: [[make_media(1), bad, make_media(3)]]}))

    result = await run_import(
        RunPlan(mode=RunMode.DAILY, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(),
        client=client,
        console=_quiet_console(),
    )

    assert result.status == COMPLETED
    assert (result.counters.imported, result.counters.errors, result.counters.filtered) == (2, 1, 0)


@pytest.mark.asyncio
async def test_overall_progress_is_logged_every_n_pages_and_at_completion(tmp_path: Path) -> None:
    pages = [[make_media(i)] for i in range(1, 6)]
    client = FakeAniListClient(FakeClientConfig(pages={ContentKind.ANIME: pages}))
    console = _recording_console()

    await run_import(
        RunPlan(mode=RunMode.FULL, kinds=(ContentKind.ANIME,)),
        out_dir=tmp_path,
        settings=_settings(progress_every_pages=2),
        client=client,
        console=console,
    )

    output = console.export_text()
    overall = [line for line in output.splitlines() if "Overall progress after" in line]
    assert len(overall) == 2
    assert "Overall progress after 2 pages" in overall[0]
    assert "Overall progress after 4 pages" in overall[1]
    assert "Run finished after 5 pages: imported 5" in output
