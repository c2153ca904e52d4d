import functools
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import Settings
from models import DetailResult

logger = logging.getLogger(__name__)

TMDB_BASE = "https://api.themoviedb.org/3"
POSTER_BASE_URL = "https://image.tmdb.org/t/p/w500"

DIRECTOR_SEPARATOR = ", "

Lookup = Callable[[str], Awaitable[DetailResult]]


async def search_movie(
    client: httpx.AsyncClient, api_key: str, title: str, language: str
) -> Optional[int]:
    """Search TMDB by title. Returns tmdb_id of first result, or None."""
    response = await client.get(
        f"{TMDB_BASE}/search/movie",
        params={
            "api_key": api_key,
            "query": title,
            "language": language,
            "include_adult": "false",
        },
    )
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"unexpected search response: {type(data).__name__}")
    results = data.get("results") or []
    return results[0]["id"] if results else None


def _pick_country(countries: list[dict[str, Any]], home: str, fallback: str) -> Optional[str]:
    if not countries:
        return None
    chosen = (
        next((c for c in countries if c.get("iso_3166_1") == home), None)
        or next((c for c in countries if c.get("iso_3166_1") == fallback), None)
        or countries[0]
    )
    return chosen.get("name") or None


def _release_year(release_date: Optional[str]) -> Optional[int]:
    if not release_date:
        return None
    try:
        return int(release_date[:4])
    except ValueError:
        return None


def parse_details(data: dict[str, Any], home: str, fallback: str) -> DetailResult:
    poster_path = data.get("poster_path")
    crew = (data.get("credits") or {}).get("crew") or []
    directors = [member["name"] for member in crew if member.get("job") == "Director" and member.get("name")]
    return DetailResult(
        poster_url=f"{POSTER_BASE_URL}{poster_path}" if poster_path else None,
        director=DIRECTOR_SEPARATOR.join(directors) if directors else None,
        year=_release_year(data.get("release_date")),
        country=_pick_country(data.get("production_countries") or [], home, fallback),
    )


async def get_movie_details(
    client: httpx.AsyncClient,
    api_key: str,
    tmdb_id: int,
    language: str,
    home: str,
    fallback: str,
) -> DetailResult:
    """Fetch poster, release year, production country and directors in one call."""
    response = await client.get(
        f"{TMDB_BASE}/movie/{tmdb_id}",
        params={"api_key": api_key, "language": language, "append_to_response": "credits"},
    )
    response.raise_for_status()
    return parse_details(response.json(), home, fallback)


async def lookup_details(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    title: str,
    language: str,
    home: str,
    fallback: str,
) -> DetailResult:
    """
    Best-effort detail lookup for a title. Never raises: a missing key, no
    match or any provider/network failure gives an all-empty DetailResult.
    """
    if not api_key or not title:
        logger.warning("TMDb API key or title missing, skipping lookup.")
        return DetailResult()

    try:
        tmdb_id = await search_movie(client, api_key, title, language)
    except Exception as exc:
        logger.error("TMDb search failed for %r: %s", title, exc)
        return DetailResult()
    if tmdb_id is None:
        logger.info("No TMDb match for %r", title)
        return DetailResult()

    try:
        details = await get_movie_details(client, api_key, tmdb_id, language, home, fallback)
    except Exception as exc:
        logger.error("TMDb details failed for id %s (%r): %s", tmdb_id, title, exc)
        return DetailResult()

    logger.debug("Fetched TMDb details for %r: %s", title, details)
    return details


def make_lookup(client: httpx.AsyncClient, settings: Settings, api_key: str) -> Lookup:
    """Bind a client and the configured provider options into a title -> details lookup."""
    return functools.partial(
        lookup_details,
        client,
        api_key,
        language=settings.tmdb_language,
        home=settings.home_country,
        fallback=settings.fallback_country,
    )
