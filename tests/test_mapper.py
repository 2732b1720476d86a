from __future__ import annotations

from catalog_import.mapper import (
    SKIP_ADULT,
    SKIP_BELOW_MIN_SCORE,
    SKIP_DISALLOWED_GENRE,
    SKIP_MISSING_ID,
    SKIP_MISSING_TITLE,
    format_fuzzy_date,
    map_media,
    normalize_score,
    skip_reason,
    strip_html,
)
from catalog_import.models import AnimeDetailRow, ContentKind, MangaDetailRow, MappedTitle, SkippedRecord
from tests.fakes import make_media


def test_fuzzy_dates_default_missing_parts_to_first() -> None:
    assert format_fuzzy_date({"year": 2021, "month": 3, "day": 9}) == "2021-03-09"
    assert format_fuzzy_date({"year": 2021, "month": None, "day": None}) == "2021-01-01"
    assert format_fuzzy_date({"year": 2021, "month": 7}) == "2021-07-01"
    assert format_fuzzy_date({"year": None, "month": 7, "day": 2}) is None
    assert format_fuzzy_date(None) is None


def test_score_is_scaled_to_ten_with_one_decimal() -> None:
    assert normalize_score(85) == 8.5
    assert normalize_score(77) == 7.7
    assert normalize_score(None) is None


def test_html_is_stripped_from_descriptions() -> None:
    assert strip_html("<i>Bold</i> move<br>next &amp; last") == "Bold move\nnext & last"
    assert strip_html("<br/>") is None
    assert strip_html(None) is None


def test_skip_reasons() -> None:
    assert skip_reason({"title": {"romaji": "x"}}) == SKIP_MISSING_ID
    assert skip_reason({"id": 1, "title": {}}) == SKIP_MISSING_TITLE
    assert skip_reason(make_media(1, is_adult=True)) == SKIP_ADULT
    assert skip_reason(make_media(1, genres=["Comedy", "Hentai"])) == SKIP_DISALLOWED_GENRE
    assert skip_reason(make_media(1, score=55), min_score=60) == SKIP_BELOW_MIN_SCORE
    assert skip_reason(make_media(1, score=None), min_score=60) is None
    assert skip_reason(make_media(1)) is None


def test_adult_tag_marks_record_disallowed() -> None:
    record = make_media(1)
    record["tags"] = [{"name": "Nudity", "isAdult": True}]

    assert skip_reason(record) == SKIP_DISALLOWED_GENRE


def test_skipped_record_is_a_value_not_an_error() -> None:
    result = map_media(make_media(44, is_adult=True), ContentKind.ANIME)

    assert result == SkippedRecord(anilist_id=44, reason=SKIP_ADULT)


def test_anime_record_maps_to_title_and_detail_rows() -> None:
    result = map_media(make_media(5, genres=["Action", "Drama", "Action"]), ContentKind.ANIME)

    assert isinstance(result, MappedTitle)
    assert result.kind is ContentKind.ANIME
    assert result.title.anilist_id == 5
    assert result.title.title == "Title 5"
    assert result.title.synopsis == "Synopsis 5\nsecond line"
    assert result.title.score == 7.5
    assert result.title.year == 2020
    assert result.title.rank == 12
    assert result.genres == ["Action", "Drama"]
    assert result.studios == ["Studio A"]
    assert result.authors == []

    assert isinstance(result.detail, AnimeDetailRow)
    assert result.detail.aired_from == "2020-04-01"
    assert result.detail.aired_to == "2020-06-30"
    assert result.detail.trailer_url == "https://www.youtube.com/watch?v=abc123"


def test_manga_record_keeps_only_writing_and_art_credits() -> None:
    result = map_media(make_media(9, kind=ContentKind.MANGA), ContentKind.MANGA)

    assert isinstance(result, MappedTitle)
    assert isinstance(result.detail, MangaDetailRow)
    assert result.detail.chapters == 100
    assert result.detail.published_from == "2020-04-01"
    assert [(credit.name, credit.role) for credit in result.authors] == [("Author A", "Story & Art")]
    assert result.studios == []


def test_record_with_only_id_and_title_maps_with_nulls() -> None:
    result = map_media({"id": 3, "title": {"english": "Only English"}}, ContentKind.ANIME)

    assert isinstance(result, MappedTitle)
    assert result.title.title == "Only English"
    assert result.title.score is None
    assert result.title.year is None
    assert result.genres == []
    assert result.detail.aired_from is None


def test_impossible_calendar_dates_map_to_none() -> None:
    assert format_fuzzy_date({"year": 2020, "month": 2, "day": 31}) is None
    assert format_fuzzy_date({"year": 2021, "month": 13, "day": None}) is None
    assert format_fuzzy_date({"year": 2021, "month": 6, "day": 0}) is None
    assert format_fuzzy_date({"year": 2024, "month": 2, "day": 29}) == "2024-02-29"


def test_malformed_nested_fields_are_treated_as_absent() -> None:
    record = make_media(8)
    record.update(
        {
            "startDate": "2020-01-01",
            "endDate": ["2020"],
            "rankings": [None, "top"],
            "trailer": "youtube",
            "nextAiringEpisode": 5,
            "studios": {"nodes": "Studio A"},
            "coverImage": None,
        }
    )

    result = map_media(record, ContentKind.ANIME)

    assert isinstance(result, MappedTitle)
    assert result.title.rank is None
    assert result.title.image_url is None
    assert result.studios == []
    assert result.detail.aired_from is None
    assert result.detail.aired_to is None
    assert result.detail.trailer_url is None
    assert result.detail.next_episode_date is None


def test_malformed_staff_edges_are_ignored() -> None:
    record = make_media(4, kind=ContentKind.MANGA)
    record["staff"]["edges"].insert(0, None)
    record["staff"]["edges"].append({"role": "Story", "node": "Author C"})

    result = map_media(record, ContentKind.MANGA)

    assert isinstance(result, MappedTitle)
    assert [credit.name for credit in result.authors] == ["Author A"]


def test_title_that_is_not_an_object_is_skipped_as_untitled() -> None:
    record = make_media(6)
    record["title"] = "Plain"

    assert map_media(record, ContentKind.ANIME) == SkippedRecord(anilist_id=6, reason=SKIP_MISSING_TITLE)
