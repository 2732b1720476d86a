from __future__ import annotations

from .models import ContentKind


FULL_CRAWL_SORT = "ID_DESC"
INCREMENTAL_SORT = "UPDATED_AT_DESC"
MANUAL_SORT = "POPULARITY_DESC"

_BASE_FIELDS = """
      id
      title { romaji english native }
      synonyms
      description
      coverImage { large medium color }
      averageScore
      meanScore
      popularity
      favourites
      bannerImage
      status
      format
      countryOfOrigin
      startDate { year month day }
      endDate { year month day }
      genres
      isAdult
      updatedAt
      rankings { rank type allTime }
"""

_ANIME_FIELDS = """
      episodes
      duration
      season
      seasonYear
      trailer { id site }
      nextAiringEpisode { airingAt episode }
      studios(isMain: true) { nodes { name } }
"""

_MANGA_FIELDS = """
      chapters
      volumes
      staff(perPage: 10) { edges { role node { name { full } } } }
"""

_ENHANCED_FIELDS = """
      trending
      tags { name isAdult }
"""


def build_page_query(kind: ContentKind, strategy: str = "standard", sort: str = FULL_CRAWL_SORT) -> str:
    fields = _BASE_FIELDS
    if kind is ContentKind.ANIME:
        fields += _ANIME_FIELDS
    else:
        fields += _MANGA_FIELDS
    if strategy == "enhanced":
        fields += _ENHANCED_FIELDS

    # The full crawl walks ids downward and never needs adult entries.
    adult_filter = ", isAdult: false" if sort == FULL_CRAWL_SORT else ""
    return f"""
query ($page: Int, $perPage: Int) {{
  Page(page: $page, perPage: $perPage) {{
    pageInfo {{ total currentPage lastPage hasNextPage }}
    media(type: {kind.value.upper()}, sort: {sort}{adult_filter}) {{{fields}    }}
  }}
}}
"""
