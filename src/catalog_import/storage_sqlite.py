from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
import sqlite3
from typing import Any

from .models import ContentKind, ImportCounters


RUNNING = "running"
COMPLETED = "completed"
INTERRUPTED = "interrupted"
FAILED = "failed"

DEFAULT_LAST_SYNC = "2000-01-01T00:00:00+00:00"

TITLE_TABLES = ("titles", "anime_details", "manga_details")
LOOKUP_TABLES = ("genres", "studios", "authors")
JUNCTION_TABLES = ("title_genres", "title_studios", "title_authors")
_KNOWN_TABLES = set(TITLE_TABLES + LOOKUP_TABLES + JUNCTION_TABLES + ("sync_status", "runs"))


@dataclass(slots=True)
class RunRecord:
    run_id: str
    mode: str
    content_types: str
    status: str
    started_at: str
    finished_at: str | None
    imported: int
    skipped: int
    errors: int
    filtered: int
    pages: int
    error_message: str | None


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _check_table(table: str) -> str:
    if table not in _KNOWN_TABLES:
        raise ValueError(f"Unknown table: {table}")
    return table


class CatalogStorage:
    """Row store for the imported catalog.

    The import path relies on four primitives only: upsert with a conflict key,
    select ids by key, delete by filter and batch insert. None of them commit;
    callers group them with :meth:`transaction`.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA foreign_keys=ON;")

    def close(self) -> None:
        self.conn.close()

    def initialize(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS titles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                anilist_id INTEGER NOT NULL,
                content_type TEXT NOT NULL CHECK (content_type IN ('anime', 'manga')),
                title TEXT NOT NULL,
                title_english TEXT,
                title_native TEXT,
                synonyms_json TEXT NOT NULL DEFAULT '[]',
                synopsis TEXT,
                image_url TEXT,
                banner_image TEXT,
                color_theme TEXT,
                score REAL,
                mean_score REAL,
                popularity INTEGER,
                favorites INTEGER,
                trending INTEGER,
                year INTEGER,
                rank INTEGER,
                status TEXT,
                country_of_origin TEXT,
                source_updated_at INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (anilist_id, content_type)
            );

            CREATE TABLE IF NOT EXISTS anime_details (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title_id INTEGER NOT NULL UNIQUE REFERENCES titles(id) ON DELETE CASCADE,
                episodes INTEGER,
                duration INTEGER,
                status TEXT,
                format TEXT,
                season TEXT,
                season_year INTEGER,
                aired_from TEXT,
                aired_to TEXT,
                trailer_url TEXT,
                next_episode_date TEXT,
                next_episode_number INTEGER,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS manga_details (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title_id INTEGER NOT NULL UNIQUE REFERENCES titles(id) ON DELETE CASCADE,
                chapters INTEGER,
                volumes INTEGER,
                status TEXT,
                format TEXT,
                published_from TEXT,
                published_to TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS genres (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS studios (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS authors (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS title_genres (
                title_id INTEGER NOT NULL REFERENCES titles(id) ON DELETE CASCADE,
                genre_id INTEGER NOT NULL REFERENCES genres(id) ON DELETE CASCADE,
                PRIMARY KEY (title_id, genre_id)
            );

            CREATE TABLE IF NOT EXISTS title_studios (
                title_id INTEGER NOT NULL REFERENCES titles(id) ON DELETE CASCADE,
                studio_id INTEGER NOT NULL REFERENCES studios(id) ON DELETE CASCADE,
                PRIMARY KEY (title_id, studio_id)
            );

            CREATE TABLE IF NOT EXISTS title_authors (
                title_id INTEGER NOT NULL REFERENCES titles(id) ON DELETE CASCADE,
                author_id INTEGER NOT NULL REFERENCES authors(id) ON DELETE CASCADE,
                role TEXT,
                PRIMARY KEY (title_id, author_id)
            );

            CREATE TABLE IF NOT EXISTS sync_status (
                content_type TEXT PRIMARY KEY CHECK (content_type IN ('anime', 'manga')),
                last_sync_at TEXT,
                status TEXT,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                mode TEXT NOT NULL,
                content_types TEXT NOT NULL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                status TEXT NOT NULL,
                imported INTEGER NOT NULL DEFAULT 0,
                skipped INTEGER NOT NULL DEFAULT 0,
                errors INTEGER NOT NULL DEFAULT 0,
                filtered INTEGER NOT NULL DEFAULT 0,
                pages INTEGER NOT NULL DEFAULT 0,
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_titles_content_type ON titles(content_type);
            CREATE INDEX IF NOT EXISTS idx_titles_score ON titles(score DESC);
            CREATE INDEX IF NOT EXISTS idx_title_genres_genre ON title_genres(genre_id);
            CREATE INDEX IF NOT EXISTS idx_title_studios_studio ON title_studios(studio_id);
            CREATE INDEX IF NOT EXISTS idx_title_authors_author ON title_authors(author_id);
            """
        )
        self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    def upsert_rows(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        conflict_columns: Sequence[str],
        keep_on_update: Iterable[str] = (),
    ) -> None:
        if not rows:
            return
        columns = list(rows[0].keys())
        preserved = set(conflict_columns) | set(keep_on_update)
        updates = ", ".join(f"{col}=excluded.{col}" for col in columns if col not in preserved)
        action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
        self.conn.executemany(
            f"""
            INSERT INTO {_check_table(table)}({", ".join(columns)})
            VALUES({", ".join("?" for _ in columns)})
            ON CONFLICT({", ".join(conflict_columns)}) {action}
            """,
            [tuple(row[col] for col in columns) for row in rows],
        )

    def select_ids(
        self,
        table: str,
        key_column: str,
        keys: Sequence[Any],
        filters: dict[str, Any] | None = None,
    ) -> dict[Any, int]:
        if not keys:
            return {}
        filters = filters or {}
        clauses = [f"{key_column} IN ({', '.join('?' for _ in keys)})"]
        params: list[Any] = list(keys)
        for column, value in filters.items():
            clauses.append(f"{column}=?")
            params.append(value)
        rows = self.conn.execute(
            f"SELECT id, {key_column} AS key FROM {_check_table(table)} WHERE {' AND '.join(clauses)}",
            params,
        ).fetchall()
        return {row["key"]: int(row["id"]) for row in rows}

    def delete_where_in(self, table: str, column: str, values: Sequence[Any]) -> int:
        if not values:
            return 0
        cursor = self.conn.execute(
            f"DELETE FROM {_check_table(table)} WHERE {column} IN ({', '.join('?' for _ in values)})",
            list(values),
        )
        return cursor.rowcount

    def insert_rows(self, table: str, rows: Sequence[dict[str, Any]], ignore_conflicts: bool = False) -> None:
        if not rows:
            return
        columns = list(rows[0].keys())
        verb = "INSERT OR IGNORE" if ignore_conflicts else "INSERT"
        self.conn.executemany(
            f"{verb} INTO {_check_table(table)}({', '.join(columns)}) "
            f"VALUES({', '.join('?' for _ in columns)})",
            [tuple(row[col] for col in columns) for row in rows],
        )

    def get_last_sync(self, kind: ContentKind) -> str:
        row = self.conn.execute(
            "SELECT last_sync_at FROM sync_status WHERE content_type=?",
            (kind.value,),
        ).fetchone()
        if row is None or not row["last_sync_at"]:
            return DEFAULT_LAST_SYNC
        return str(row["last_sync_at"])

    def set_last_sync(self, kind: ContentKind, synced_at: str, status: str = COMPLETED) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_status(content_type, last_sync_at, status, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(content_type)
            DO UPDATE SET
                last_sync_at=excluded.last_sync_at,
                status=excluded.status,
                updated_at=excluded.updated_at
            """,
            (kind.value, synced_at, status, utc_now_iso()),
        )
        self.conn.commit()

    def sync_status(self) -> dict[str, str | None]:
        rows = self.conn.execute(
            "SELECT content_type, last_sync_at FROM sync_status ORDER BY content_type"
        ).fetchall()
        return {str(row["content_type"]): row["last_sync_at"] for row in rows}

    def create_run(self, run_id: str, mode: str, content_types: Sequence[ContentKind]) -> None:
        self.conn.execute(
            """
            INSERT OR IGNORE INTO runs(run_id, mode, content_types, started_at, status)
            VALUES(?, ?, ?, ?, ?)
            """,
            (run_id, mode, ",".join(kind.value for kind in content_types), utc_now_iso(), RUNNING),
        )
        self.conn.commit()

    def finish_run(
        self,
        run_id: str,
        status: str,
        counters: ImportCounters,
        error_message: str | None = None,
    ) -> None:
        self.conn.execute(
            """
            UPDATE runs
            SET status=?, finished_at=?, imported=?, skipped=?, errors=?, filtered=?, pages=?, error_message=?
            WHERE run_id=?
            """,
            (
                status,
                utc_now_iso(),
                counters.imported,
                counters.skipped,
                counters.errors,
                counters.filtered,
                counters.pages,
                error_message,
                run_id,
            ),
        )
        self.conn.commit()

    def recent_runs(self, limit: int = 10) -> list[RunRecord]:
        rows = self.conn.execute(
            """
            SELECT run_id, mode, content_types, status, started_at, finished_at,
                   imported, skipped, errors, filtered, pages, error_message
            FROM runs
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [RunRecord(**dict(row)) for row in rows]

    def count_rows(self, table: str) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) AS c FROM {_check_table(table)}").fetchone()
        return int(row["c"])

    def count_titles(self, kind: ContentKind | None = None) -> int:
        if kind is None:
            return self.count_rows("titles")
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM titles WHERE content_type=?",
            (kind.value,),
        ).fetchone()
        return int(row["c"])

    def table_counts(self) -> dict[str, int]:
        return {table: self.count_rows(table) for table in TITLE_TABLES + LOOKUP_TABLES + JUNCTION_TABLES}
