from __future__ import annotations

from datetime import UTC, datetime
import json
from pathlib import Path
import sqlite3
from typing import Any

import pandas as pd


MANIFEST_FILENAME = "catalog_manifest.json"

_DATASETS = {
    "titles": """
        SELECT id, anilist_id, content_type, title, title_english, title_native, synonyms_json,
               synopsis, image_url, banner_image, color_theme, score, mean_score, popularity,
               favorites, trending, year, rank, status, country_of_origin, source_updated_at,
               created_at, updated_at
        FROM titles
    """,
    "anime_details": """
        SELECT t.anilist_id, d.episodes, d.duration, d.status, d.format, d.season, d.season_year,
               d.aired_from, d.aired_to, d.trailer_url, d.next_episode_date, d.next_episode_number,
               d.updated_at
        FROM anime_details d
        JOIN titles t ON t.id = d.title_id
    """,
    "manga_details": """
        SELECT t.anilist_id, d.chapters, d.volumes, d.status, d.format,
               d.published_from, d.published_to, d.updated_at
        FROM manga_details d
        JOIN titles t ON t.id = d.title_id
    """,
    "title_genres": """
        SELECT t.anilist_id, t.content_type, g.name AS genre
        FROM title_genres tg
        JOIN titles t ON t.id = tg.title_id
        JOIN genres g ON g.id = tg.genre_id
    """,
    "title_studios": """
        SELECT t.anilist_id, s.name AS studio
        FROM title_studios ts
        JOIN titles t ON t.id = ts.title_id
        JOIN studios s ON s.id = ts.studio_id
    """,
    "title_authors": """
        SELECT t.anilist_id, a.name AS author, ta.role
        FROM title_authors ta
        JOIN titles t ON t.id = ta.title_id
        JOIN authors a ON a.id = ta.author_id
    """,
}

_QUALITY_CHECKS = {
    "titles_without_details": """
        SELECT COUNT(*) AS c
        FROM titles t
        LEFT JOIN anime_details ad ON ad.title_id = t.id
        LEFT JOIN manga_details md ON md.title_id = t.id
        WHERE ad.id IS NULL AND md.id IS NULL
    """,
    "titles_without_genres": """
        SELECT COUNT(*) AS c
        FROM titles t
        WHERE NOT EXISTS (SELECT 1 FROM title_genres tg WHERE tg.title_id = t.id)
    """,
    "unused_genres": """
        SELECT COUNT(*) AS c
        FROM genres g
        WHERE NOT EXISTS (SELECT 1 FROM title_genres tg WHERE tg.genre_id = g.id)
    """,
}


def _read_query(conn: sqlite3.Connection, query: str, params: tuple[Any, ...] = ()) -> pd.DataFrame:
    return pd.read_sql_query(query, conn, params=params)


def _plain_record(row: pd.Series) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for key, value in row.to_dict().items():
        if pd.isna(value):
            record[key] = None
        elif hasattr(value, "item"):
            record[key] = value.item()
        else:
            record[key] = value
    return record


def export_catalog_to_parquet(*, db_path: Path, out_dir: Path) -> dict[str, Any]:
    """Snapshot the catalog tables into parquet files and write ``catalog_manifest.json``."""

    out_dir.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        counts: dict[str, int] = {}
        for name, query in _DATASETS.items():
            df = _read_query(conn, query)
            df.to_parquet(out_dir / f"{name}.parquet", index=False)
            counts[name] = int(len(df))

        by_kind = _read_query(conn, "SELECT content_type, COUNT(*) AS c FROM titles GROUP BY content_type")
        titles_by_kind = {str(row.content_type): int(row.c) for row in by_kind.itertuples()}

        quality = {name: int(_read_query(conn, query)["c"].iloc[0]) for name, query in _QUALITY_CHECKS.items()}

        sync_df = _read_query(conn, "SELECT content_type, last_sync_at, status FROM sync_status")
        sync_status = {str(row.content_type): row.last_sync_at for row in sync_df.itertuples()}

        run_df = _read_query(
            conn,
            """
            SELECT run_id, mode, content_types, status, started_at, finished_at,
                   imported, skipped, errors, filtered, pages
            FROM runs
            ORDER BY started_at DESC
            LIMIT 1
            """,
        )
        latest_run = None if run_df.empty else _plain_record(run_df.iloc[0])
    finally:
        conn.close()

    manifest = {
        "schema_version": 1,
        "generated_at": datetime.now(UTC).isoformat(),
        "latest_run": latest_run,
        "counts": counts,
        "titles_by_kind": titles_by_kind,
        "sync_status": sync_status,
        "quality_checks": quality,
    }

    with (out_dir / MANIFEST_FILENAME).open("w", encoding="utf-8") as handle:
        json.dump(manifest, handle, indent=2)

    return manifest
