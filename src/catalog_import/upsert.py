from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import json
import sqlite3

from .anilist_client import CatalogImportError
from .models import AnimeDetailRow, ContentKind, MappedTitle
from .storage_sqlite import CatalogStorage, utc_now_iso


class PersistenceError(CatalogImportError):
    pass


@dataclass(slots=True)
class PersistResult:
    imported: int = 0
    errors: int = 0
    messages: list[str] = field(default_factory=list)


_LOOKUPS = (
    # (lookup table, junction table, junction fk column)
    ("genres", "title_genres", "genre_id"),
    ("studios", "title_studios", "studio_id"),
    ("authors", "title_authors", "author_id"),
)


def _lookup_names(record: MappedTitle, table: str) -> list[str]:
    if table == "genres":
        return record.genres
    if table == "studios":
        return record.studios
    return [credit.name for credit in record.authors]


class UpsertEngine:
    def __init__(self, storage: CatalogStorage, batch_size: int = 10) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.storage = storage
        self.batch_size = batch_size

    def persist(self, records: Sequence[MappedTitle]) -> PersistResult:
        """Write records batch by batch; a failing batch is rolled back and tallied, the rest continue."""

        result = PersistResult()
        for index, start in enumerate(range(0, len(records), self.batch_size)):
            batch = records[start : start + self.batch_size]
            try:
                self.persist_batch(batch)
            except PersistenceError as exc:
                result.errors += len(batch)
                result.messages.append(f"Batch {index}: {exc}")
                continue
            result.imported += len(batch)
        return result

    def persist_batch(self, batch: Sequence[MappedTitle]) -> list[int]:
        """Upsert one batch atomically and return internal title ids in input order."""

        if not batch:
            return []
        try:
            with self.storage.transaction():
                title_ids = self._upsert_titles(batch)
                self._upsert_details(batch, title_ids)
                name_maps = {table: self._resolve_lookup(table, batch) for table, _, _ in _LOOKUPS}
                self._replace_junctions(batch, title_ids, name_maps)
        except (sqlite3.Error, KeyError) as exc:
            raise PersistenceError(str(exc)) from exc
        return title_ids

    def _upsert_titles(self, batch: Sequence[MappedTitle]) -> list[int]:
        now = utc_now_iso()
        rows = []
        for record in batch:
            row = record.title.model_dump(exclude={"synonyms"})
            row["content_type"] = record.kind.value
            row["synonyms_json"] = json.dumps(record.title.synonyms, ensure_ascii=True)
            row["created_at"] = now
            row["updated_at"] = now
            rows.append(row)
        self.storage.upsert_rows(
            "titles",
            rows,
            conflict_columns=("anilist_id", "content_type"),
            keep_on_update=("created_at",),
        )

        ids_by_kind: dict[ContentKind, dict[int, int]] = {}
        for kind in {record.kind for record in batch}:
            ids_by_kind[kind] = self.storage.select_ids(
                "titles",
                "anilist_id",
                [record.title.anilist_id for record in batch if record.kind is kind],
                filters={"content_type": kind.value},
            )
        title_ids: list[int] = []
        for record in batch:
            title_id = ids_by_kind[record.kind].get(record.title.anilist_id)
            if title_id is None:
                raise PersistenceError(f"title {record.title.anilist_id} missing after upsert")
            title_ids.append(title_id)
        return title_ids

    def _upsert_details(self, batch: Sequence[MappedTitle], title_ids: list[int]) -> None:
        now = utc_now_iso()
        anime_rows = []
        manga_rows = []
        for record, title_id in zip(batch, title_ids, strict=True):
            row = {"title_id": title_id, **record.detail.model_dump(), "updated_at": now}
            if isinstance(record.detail, AnimeDetailRow):
                anime_rows.append(row)
            else:
                manga_rows.append(row)
        self.storage.upsert_rows("anime_details", anime_rows, conflict_columns=("title_id",))
        self.storage.upsert_rows("manga_details", manga_rows, conflict_columns=("title_id",))

    def _resolve_lookup(self, table: str, batch: Sequence[MappedTitle]) -> dict[str, int]:
        names = list(dict.fromkeys(name for record in batch for name in _lookup_names(record, table)))
        if not names:
            return {}
        known = self.storage.select_ids(table, "name", names)
        missing = [name for name in names if name not in known]
        if missing:
            now = utc_now_iso()
            self.storage.insert_rows(
                table,
                [{"name": name, "created_at": now} for name in missing],
                ignore_conflicts=True,
            )
            known.update(self.storage.select_ids(table, "name", missing))
        return known

    def _replace_junctions(
        self,
        batch: Sequence[MappedTitle],
        title_ids: list[int],
        name_maps: dict[str, dict[str, int]],
    ) -> None:
        for lookup_table, junction_table, fk_column in _LOOKUPS:
            self.storage.delete_where_in(junction_table, "title_id", title_ids)
            name_map = name_maps[lookup_table]
            rows = []
            for record, title_id in zip(batch, title_ids, strict=True):
                if lookup_table == "authors":
                    for credit in record.authors:
                        rows.append({"title_id": title_id, fk_column: name_map[credit.name], "role": credit.role})
                else:
                    for name in _lookup_names(record, lookup_table):
                        rows.append({"title_id": title_id, fk_column: name_map[name]})
            self.storage.insert_rows(junction_table, rows, ignore_conflicts=True)
