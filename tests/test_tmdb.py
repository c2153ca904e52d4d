import httpx
import respx

from config import Settings
from models import DetailResult
from tmdb import get_movie_details, lookup_details, make_lookup, parse_details, search_movie

TMDB_SEARCH_RESPONSE = {
    "results": [
        {"id": 27205, "title": "盗梦空间", "release_date": "2010-07-15"},
        {"id": 64956, "title": "Inception: The Cobol Job", "release_date": "2010-12-07"},
    ]
}

TMDB_MOVIE_DETAILS_RESPONSE = {
    "id": 27205,
    "title": "盗梦空间",
    "release_date": "2010-07-15",
    "poster_path": "/inception.jpg",
    "production_countries": [
        {"iso_3166_1": "GB", "name": "United Kingdom"},
        {"iso_3166_1": "US", "name": "United States of America"},
    ],
    "credits": {
        "crew": [
            {"job": "Producer", "name": "Emma Thomas"},
            {"job": "Director", "name": "Christopher Nolan"},
        ]
    },
}

TMDB_EMPTY_SEARCH = {"results": []}

API_KEY = "0123456789abcdef0123456789abcdef"
LANGUAGE, HOME, FALLBACK = "zh-CN", "CN", "US"


@respx.mock
async def test_search_movie_returns_first_result():
    route = respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    async with httpx.AsyncClient() as client:
        tmdb_id = await search_movie(client, API_KEY, "Inception", LANGUAGE)
    assert tmdb_id == 27205
    params = route.calls.last.request.url.params
    assert params["query"] == "Inception"
    assert params["language"] == "zh-CN"
    assert params["include_adult"] == "false"


@respx.mock
async def test_search_movie_returns_none_when_not_found():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_EMPTY_SEARCH)
    )
    async with httpx.AsyncClient() as client:
        tmdb_id = await search_movie(client, API_KEY, "Nonexistent Film XYZ", LANGUAGE)
    assert tmdb_id is None


@respx.mock
async def test_get_movie_details_extracts_fields():
    route = respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        return_value=httpx.Response(200, json=TMDB_MOVIE_DETAILS_RESPONSE)
    )
    async with httpx.AsyncClient() as client:
        details = await get_movie_details(client, API_KEY, 27205, LANGUAGE, HOME, FALLBACK)
    assert details == DetailResult(
        poster_url="https://image.tmdb.org/t/p/w500/inception.jpg",
        director="Christopher Nolan",
        year=2010,
        country="United States of America",
    )
    assert route.calls.last.request.url.params["append_to_response"] == "credits"


def test_parse_details_prefers_home_country():
    data = {
        "production_countries": [
            {"iso_3166_1": "US", "name": "United States of America"},
            {"iso_3166_1": "CN", "name": "China"},
        ]
    }
    assert parse_details(data, HOME, FALLBACK).country == "China"


def test_parse_details_falls_back_to_first_country():
    data = {
        "production_countries": [
            {"iso_3166_1": "FR", "name": "France"},
            {"iso_3166_1": "DE", "name": "Germany"},
        ]
    }
    assert parse_details(data, HOME, FALLBACK).country == "France"


def test_parse_details_joins_directors_in_order():
    data = {
        "credits": {
            "crew": [
                {"job": "Director", "name": "Lana Wachowski"},
                {"job": "Writer", "name": "Someone Else"},
                {"job": "Director", "name": "Lilly Wachowski"},
            ]
        }
    }
    assert parse_details(data, HOME, FALLBACK).director == "Lana Wachowski, Lilly Wachowski"


def test_parse_details_missing_fields_are_absent():
    details = parse_details(
        {"release_date": "TBA", "production_countries": [], "poster_path": None}, HOME, FALLBACK
    )
    assert details == DetailResult()


@respx.mock
async def test_lookup_details_found():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        return_value=httpx.Response(200, json=TMDB_MOVIE_DETAILS_RESPONSE)
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.director == "Christopher Nolan"
    assert details.year == 2010


@respx.mock
async def test_lookup_details_no_match_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_EMPTY_SEARCH)
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Unknown XYZ", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty


@respx.mock
async def test_lookup_details_search_error_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(401, json={"status_message": "Invalid API key"})
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty


@respx.mock
async def test_lookup_details_timeout_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        side_effect=httpx.ReadTimeout("timed out")
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details == DetailResult(poster_url=None, director=None, year=None, country=None)


@respx.mock
async def test_lookup_details_bad_json_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, text="<html>oops</html>")
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty


async def test_lookup_details_without_key_makes_no_request():
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as mock:
            details = await lookup_details(client, None, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty
    assert not mock.calls


@respx.mock
async def test_make_lookup_uses_settings():
    search = respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        return_value=httpx.Response(200, json=TMDB_MOVIE_DETAILS_RESPONSE)
    )
    settings = Settings(_env_file=None, tmdb_language="en-US", home_country="GB")
    async with httpx.AsyncClient() as client:
        lookup = make_lookup(client, settings, API_KEY)
        details = await lookup("Inception")
    assert search.calls.last.request.url.params["language"] == "en-US"
    assert details.country == "United Kingdom"


@respx.mock
async def test_lookup_details_list_shaped_search_body_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=[1, 2])
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty


@respx.mock
async def test_lookup_details_malformed_crew_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        return_value=httpx.Response(
            200, json={**TMDB_MOVIE_DETAILS_RESPONSE, "credits": {"crew": ["Christopher Nolan"]}}
        )
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty


@respx.mock
async def test_lookup_details_malformed_countries_is_empty():
    respx.get("https://api.themoviedb.org/3/search/movie").mock(
        return_value=httpx.Response(200, json=TMDB_SEARCH_RESPONSE)
    )
    respx.get("https://api.themoviedb.org/3/movie/27205").mock(
        return_value=httpx.Response(
            200, json={**TMDB_MOVIE_DETAILS_RESPONSE, "production_countries": ["GB"]}
        )
    )
    async with httpx.AsyncClient() as client:
        details = await lookup_details(client, API_KEY, "Inception", LANGUAGE, HOME, FALLBACK)
    assert details.is_empty
