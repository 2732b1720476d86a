from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, date, datetime
import html
import re
from typing import Any

from .config import DEFAULT_DISALLOWED_GENRES
from .models import (
    AnimeDetailRow,
    AuthorCredit,
    ContentKind,
    MangaDetailRow,
    MappedTitle,
    SkippedRecord,
    TitleRow,
)


AUTHOR_ROLES = {"Story & Art", "Story", "Art"}

SKIP_MISSING_ID = "missing_id"
SKIP_MISSING_TITLE = "missing_title"
SKIP_ADULT = "adult"
SKIP_DISALLOWED_GENRE = "disallowed_genre"
SKIP_BELOW_MIN_SCORE = "below_min_score"

_BREAK_TAG = re.compile(r"<br\s*/?>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]*>")


def format_fuzzy_date(value: dict[str, Any] | None) -> str | None:
    """AniList ``{year, month, day}`` to ``YYYY-MM-DD``; missing month/day default to 1.

    Dates that do not exist on the calendar map to ``None``.
    """

    value = _as_dict(value)
    if not value.get("year"):
        return None
    month = value.get("month")
    day = value.get("day")
    try:
        return date(
            int(value["year"]),
            1 if month is None else int(month),
            1 if day is None else int(day),
        ).isoformat()
    except ValueError:
        return None


def normalize_score(value: Any) -> float | None:
    """0-100 AniList score to the 0-10 scale used by ``titles.score``."""

    if value is None:
        return None
    return round(float(value) / 10.0, 1)


def strip_html(text: str | None) -> str | None:
    if text is None:
        return None
    cleaned = _BREAK_TAG.sub("\n", text)
    cleaned = _ANY_TAG.sub("", cleaned)
    cleaned = html.unescape(cleaned).strip()
    return cleaned or None


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def _unique(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(name for name in names if name))


def _title_strings(record: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
    titles = _as_dict(record.get("title"))
    return (
        _clean_text(titles.get("romaji")),
        _clean_text(titles.get("english")),
        _clean_text(titles.get("native")),
    )


def skip_reason(
    record: dict[str, Any],
    *,
    disallowed_genres: Iterable[str] = DEFAULT_DISALLOWED_GENRES,
    min_score: int | None = None,
) -> str | None:
    if record.get("id") is None:
        return SKIP_MISSING_ID
    if not any(_title_strings(record)):
        return SKIP_MISSING_TITLE
    if record.get("isAdult"):
        return SKIP_ADULT

    blocked = {name.lower() for name in disallowed_genres}
    genres = {str(name).lower() for name in _as_list(record.get("genres"))}
    if genres & blocked:
        return SKIP_DISALLOWED_GENRE
    for tag in _as_list(record.get("tags")):
        if not isinstance(tag, dict):
            continue
        if tag.get("isAdult") or str(tag.get("name") or "").lower() in blocked:
            return SKIP_DISALLOWED_GENRE

    score = record.get("averageScore")
    if min_score is not None and score is not None and score < min_score:
        return SKIP_BELOW_MIN_SCORE
    return None


def _all_time_rank(record: dict[str, Any]) -> int | None:
    for ranking in _as_list(record.get("rankings")):
        ranking = _as_dict(ranking)
        if ranking.get("type") == "RATED" and ranking.get("allTime"):
            return _as_int(ranking.get("rank"))
    return None


def _trailer_url(record: dict[str, Any]) -> str | None:
    trailer = _as_dict(record.get("trailer"))
    if trailer.get("site") == "youtube" and trailer.get("id"):
        return f"https://www.youtube.com/watch?v={trailer['id']}"
    return None


def _next_episode(record: dict[str, Any]) -> tuple[str | None, int | None]:
    upcoming = _as_dict(record.get("nextAiringEpisode"))
    airing_at = upcoming.get("airingAt")
    airing_date = datetime.fromtimestamp(int(airing_at), UTC).isoformat() if airing_at else None
    return airing_date, _as_int(upcoming.get("episode"))


def parse_studios(record: dict[str, Any]) -> list[str]:
    nodes = _as_list(_as_dict(record.get("studios")).get("nodes"))
    return _unique(_clean_text(node.get("name")) or "" for node in nodes if isinstance(node, dict))


def parse_authors(record: dict[str, Any]) -> list[AuthorCredit]:
    credits: dict[str, AuthorCredit] = {}
    for edge in _as_list(_as_dict(record.get("staff")).get("edges")):
        edge = _as_dict(edge)
        role = edge.get("role")
        if role not in AUTHOR_ROLES:
            continue
        name = _clean_text(_as_dict(_as_dict(edge.get("node")).get("name")).get("full"))
        if name and name not in credits:
            credits[name] = AuthorCredit(name=name, role=role)
    return list(credits.values())


def _title_row(record: dict[str, Any], kind: ContentKind) -> TitleRow:
    romaji, english, native = _title_strings(record)
    cover = _as_dict(record.get("coverImage"))
    start = _as_dict(record.get("startDate"))
    year = record.get("seasonYear") if kind is ContentKind.ANIME else None
    return TitleRow(
        anilist_id=int(record["id"]),
        content_type=kind,
        title=romaji or english or native,
        title_english=english,
        title_native=native,
        synonyms=_unique(_clean_text(name) or "" for name in _as_list(record.get("synonyms"))),
        synopsis=strip_html(record.get("description")),
        image_url=cover.get("large") or cover.get("medium"),
        banner_image=record.get("bannerImage"),
        color_theme=cover.get("color"),
        score=normalize_score(record.get("averageScore")),
        mean_score=normalize_score(record.get("meanScore")),
        popularity=_as_int(record.get("popularity")),
        favorites=_as_int(record.get("favourites")),
        trending=_as_int(record.get("trending")),
        year=_as_int(year or start.get("year")),
        rank=_all_time_rank(record),
        status=record.get("status"),
        country_of_origin=record.get("countryOfOrigin"),
        source_updated_at=_as_int(record.get("updatedAt")),
    )


def _anime_detail(record: dict[str, Any]) -> AnimeDetailRow:
    next_date, next_number = _next_episode(record)
    return AnimeDetailRow(
        episodes=_as_int(record.get("episodes")),
        duration=_as_int(record.get("duration")),
        status=record.get("status"),
        format=record.get("format"),
        season=record.get("season"),
        season_year=_as_int(record.get("seasonYear")),
        aired_from=format_fuzzy_date(record.get("startDate")),
        aired_to=format_fuzzy_date(record.get("endDate")),
        trailer_url=_trailer_url(record),
        next_episode_date=next_date,
        next_episode_number=next_number,
    )


def _manga_detail(record: dict[str, Any]) -> MangaDetailRow:
    return MangaDetailRow(
        chapters=_as_int(record.get("chapters")),
        volumes=_as_int(record.get("volumes")),
        status=record.get("status"),
        format=record.get("format"),
        published_from=format_fuzzy_date(record.get("startDate")),
        published_to=format_fuzzy_date(record.get("endDate")),
    )


def map_media(
    record: dict[str, Any],
    kind: ContentKind,
    *,
    disallowed_genres: Iterable[str] = DEFAULT_DISALLOWED_GENRES,
    min_score: int | None = None,
) -> MappedTitle | SkippedRecord:
    """Normalize one AniList media record into the rows written for a title.

    Returns a ``SkippedRecord`` for records that are deliberately not imported:
    no id, no usable title, adult content, a disallowed genre or tag, or a score
    under ``min_score``. Only the id and one title string are required; every
    other field may be null.
    """

    reason = skip_reason(record, disallowed_genres=disallowed_genres, min_score=min_score)
    if reason is not None:
        raw_id = record.get("id")
        return SkippedRecord(anilist_id=int(raw_id) if raw_id is not None else None, reason=reason)

    detail = _anime_detail(record) if kind is ContentKind.ANIME else _manga_detail(record)
    return MappedTitle(
        title=_title_row(record, kind),
        detail=detail,
        genres=_unique(_clean_text(name) or "" for name in _as_list(record.get("genres"))),
        studios=parse_studios(record) if kind is ContentKind.ANIME else [],
        authors=parse_authors(record) if kind is ContentKind.MANGA else [],
    )
