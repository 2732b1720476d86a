from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ContentKind(str, Enum):
    ANIME = "anime"
    MANGA = "manga"


class TitleRow(BaseModel):
    anilist_id: int
    content_type: ContentKind
    title: str
    title_english: str | None = None
    title_native: str | None = None
    synonyms: list[str] = Field(default_factory=list)
    synopsis: str | None = None
    image_url: str | None = None
    banner_image: str | None = None
    color_theme: str | None = None
    score: float | None = None
    mean_score: float | None = None
    popularity: int | None = None
    favorites: int | None = None
    trending: int | None = None
    year: int | None = None
    rank: int | None = None
    status: str | None = None
    country_of_origin: str | None = None
    source_updated_at: int | None = None


class AnimeDetailRow(BaseModel):
    episodes: int | None = None
    duration: int | None = None
    status: str | None = None
    format: str | None = None
    season: str | None = None
    season_year: int | None = None
    aired_from: str | None = None
    aired_to: str | None = None
    trailer_url: str | None = None
    next_episode_date: str | None = None
    next_episode_number: int | None = None


class MangaDetailRow(BaseModel):
    chapters: int | None = None
    volumes: int | None = None
    status: str | None = None
    format: str | None = None
    published_from: str | None = None
    published_to: str | None = None


class AuthorCredit(BaseModel):
    name: str
    role: str


class MappedTitle(BaseModel):
    title: TitleRow
    detail: AnimeDetailRow | MangaDetailRow
    genres: list[str] = Field(default_factory=list)
    studios: list[str] = Field(default_factory=list)
    authors: list[AuthorCredit] = Field(default_factory=list)

    @property
    def kind(self) -> ContentKind:
        return self.title.content_type


@dataclass(slots=True, frozen=True)
class SkippedRecord:
    """A record deliberately left out of the import; not an error."""

    anilist_id: int | None
    reason: str


@dataclass(slots=True)
class CatalogPage:
    media: list[dict[str, Any]]
    current_page: int
    last_page: int | None
    has_next_page: bool
    total: int | None = None


@dataclass(slots=True)
class ImportCounters:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    filtered: int = 0
    pages: int = 0

    def absorb(self, other: ImportCounters) -> None:
        self.imported += other.imported
        self.skipped += other.skipped
        self.errors += other.errors
        self.filtered += other.filtered
        self.pages += other.pages


class Checkpoint(BaseModel):
    """On-disk resume state of a full crawl, written after each completed page."""

    model_config = ConfigDict(populate_by_name=True)

    last_page: int = Field(default=0, alias="lastPage")
    total_pages: int | None = Field(default=None, alias="totalPages")
    total_imported: int = Field(default=0, alias="totalImported")
    total_skipped: int = Field(default=0, alias="totalSkipped")
    total_errors: int = Field(default=0, alias="totalErrors")
    timestamp: str | None = None


def parse_page(payload: dict[str, Any], requested_page: int) -> CatalogPage:
    page = (payload.get("data") or {}).get("Page") or {}
    info = page.get("pageInfo") or {}
    return CatalogPage(
        media=[item for item in page.get("media") or [] if isinstance(item, dict)],
        current_page=int(info.get("currentPage") or requested_page),
        last_page=info.get("lastPage"),
        has_next_page=bool(info.get("hasNextPage")),
        total=info.get("total"),
    )
