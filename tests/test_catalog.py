import json

import httpx
import pytest

from anime_rec import catalog as catalog_mod
from anime_rec.catalog import (
    AsyncShikimoriClient,
    Catalog,
    ResolvedTitles,
    ShikimoriClient,
    parse_anime_node,
    prefetch_titles,
)

from helpers import entry, sample_catalog


def _node(anime_id, name, genres=(), russian="", english=""):
    return {
        "id": str(anime_id),
        "name": name,
        "russian": russian,
        "english": english,
        "genres": [{"name": g, "russian": f"ru-{g}", "kind": "genre"} for g in genres],
    }


def _graphql(nodes):
    return httpx.Response(200, json={"data": {"animes": nodes}})


def test_parse_anime_node_prefers_romaji_title():
    node = _node(5114, "Fullmetal Alchemist: Brotherhood", ["Action", "Drama", "Action"],
                 russian="Стальной алхимик: Братство", english="Fullmetal Alchemist: Brotherhood")

    parsed = parse_anime_node(node, locale="en")

    assert parsed.id == 5114
    assert parsed.title == "Fullmetal Alchemist: Brotherhood"
    assert parsed.genres == ("Action", "Drama")
    assert parsed.alt_titles == ("Стальной алхимик: Братство",)


def test_parse_anime_node_russian_locale():
    node = _node(1, "Gintama", ["Comedy"], russian="Гинтама")

    parsed = parse_anime_node(node, locale="ru")

    assert parsed.title == "Гинтама"
    assert parsed.genres == ("ru-Comedy",)
    assert parsed.alt_titles == ("Gintama",)


def test_parse_anime_node_rejects_bad_nodes():
    assert parse_anime_node({"name": "No id"}) is None
    assert parse_anime_node({"id": "abc", "name": "Bad id"}) is None
    assert parse_anime_node({"id": "3", "name": "", "russian": None}) is None


def test_catalog_deduplicates_by_id_and_tracks_positions():
    first = entry(1, "One", "Action")
    catalog = Catalog([first, entry(2, "Two"), entry(1, "One again")])

    assert len(catalog) == 2
    assert catalog.add(entry(1, "Duplicate")) is first
    assert catalog.position(2) == 1
    assert catalog.position(99) is None
    assert 1 in catalog and first in catalog
    assert catalog.get(2).title == "Two"
    assert catalog.find_exact("ONE").id == 1
    assert catalog.find_exact("  ") is None


def test_fetch_top_ranked_pages_through_results():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body["variables"])
        page, limit = body["variables"]["page"], body["variables"]["limit"]
        start = (page - 1) * limit
        return _graphql([_node(start + i + 1, f"Anime {start + i + 1}", ["Action"]) for i in range(limit)])

    client = ShikimoriClient(delay=0, transport=httpx.MockTransport(handler))
    try:
        entries = client.fetch_top_ranked(120)
    finally:
        client.close()

    assert len(entries) == 120
    assert [e.id for e in entries[:3]] == [1, 2, 3]
    assert entries[-1].id == 120
    assert [r["page"] for r in requests] == [1, 2, 3]
    assert all(r["order"] == "ranked" and r["limit"] == 50 for r in requests)


def test_fetch_top_ranked_stops_on_short_page():
    def handler(request: httpx.Request) -> httpx.Response:
        return _graphql([_node(1, "Only"), _node(2, "Two")])

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        entries = client.fetch_top_ranked(150)

    assert [e.id for e in entries] == [1, 2]


def test_fetch_top_ranked_failure_returns_empty(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        assert client.fetch_top_ranked(10) == []

    assert "HTTP error" in caplog.text


def test_graphql_errors_are_logged_and_treated_as_failure(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "limit is too big"}]})

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        assert client.fetch_top_ranked(10) == []
        assert client.find_by_title("anything") is None

    assert "limit is too big" in caplog.text


def test_rate_limited_request_is_retried(monkeypatch):
    monkeypatch.setattr(catalog_mod.time, "sleep", lambda seconds: None)
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "1"})
        return _graphql([_node(7, "Retried")])

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        found = client.find_by_title("Retried")

    assert found.id == 7
    assert calls["n"] == 2


@pytest.mark.parametrize("header", ["Wed, 21 Oct 2015 07:28:00 GMT", "soon", ""])
def test_rate_limit_header_in_date_or_garbage_form(monkeypatch, header):
    waits = []
    monkeypatch.setattr(catalog_mod.time, "sleep", waits.append)
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": header})
        return _graphql([_node(1, "One"), _node(2, "Two")])

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        entries = client.fetch_top_ranked(10)

    assert [e.id for e in entries] == [1, 2]
    assert len(waits) == 2


def test_retry_after_seconds_forms():
    assert catalog_mod._retry_after_seconds(httpx.Response(429, headers={"Retry-After": "7"})) == 7
    assert catalog_mod._retry_after_seconds(httpx.Response(429)) == catalog_mod.DEFAULT_RETRY_AFTER
    assert catalog_mod._retry_after_seconds(
        httpx.Response(429, headers={"Retry-After": "Mon, 01 Jan 2001 00:00:00 GMT"})
    ) == 0
    assert catalog_mod._retry_after_seconds(
        httpx.Response(429, headers={"Retry-After": "not a date"})
    ) == catalog_mod.DEFAULT_RETRY_AFTER

def test_find_by_title_sends_search_and_handles_miss():
    searches = []

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        searches.append(variables)
        if variables["search"] == "monster":
            return _graphql([_node(19, "Monster", ["Mystery"])])
        return _graphql([])

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        assert client.find_by_title("monster").title == "Monster"
        assert client.find_by_title("missing") is None

    assert searches[0] == {"search": "monster", "limit": 1}


def test_client_sends_user_agent():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["ua"] = request.headers.get("User-Agent")
        return _graphql([])

    with ShikimoriClient(delay=0, transport=httpx.MockTransport(handler)) as client:
        client.find_by_title("x")

    assert seen["ua"].startswith("anime-rec/")


def test_resolved_titles_lookup_is_case_insensitive():
    found = entry(3, "Gintama")
    lookup = ResolvedTitles({"Gintama ": found, "Missing": None})

    assert lookup.find_by_title("gintama") is found
    assert lookup.find_by_title("missing") is None
    assert lookup.find_by_title("never asked") is None


@pytest.mark.asyncio
async def test_async_find_by_titles_keeps_input_order():
    def handler(request: httpx.Request) -> httpx.Response:
        title = json.loads(request.content)["variables"]["search"]
        if title == "none":
            return _graphql([])
        return _graphql([_node(len(title), title)])

    client = AsyncShikimoriClient(delay=0, max_concurrent=3, transport=httpx.MockTransport(handler))
    async with client:
        results = await client.find_by_titles(["aaa", "none", "a", "aaaaa"], progress=False)

    assert [r.id if r else None for r in results] == [3, None, 1, 5]


@pytest.mark.asyncio
async def test_async_client_requires_context_manager():
    client = AsyncShikimoriClient(delay=0)

    with pytest.raises(RuntimeError):
        await client.find_by_title("x")


@pytest.mark.asyncio
async def test_prefetch_skips_local_matches_and_duplicate_titles():
    searched = []

    def handler(request: httpx.Request) -> httpx.Response:
        title = json.loads(request.content)["variables"]["search"]
        searched.append(title)
        return _graphql([_node(99, "Monster")])

    catalog = sample_catalog()
    client = AsyncShikimoriClient(delay=0, transport=httpx.MockTransport(handler))

    lookup = await prefetch_titles(["Gintama", "monstr", "MONSTR", "  "], catalog, client)

    assert searched == ["monstr"]
    assert lookup.find_by_title("Monstr").id == 99
    # Prefetching never touches the catalog; the reconciler does
    assert len(catalog) == 5
