from anime_rec.catalog import Catalog
from anime_rec.watchlist import dedupe_by_id, import_titles, merge_watched, parse_indices, select_from_top

from helpers import FakeSource, entry, numbered_catalog, sample_catalog


def test_manual_selection_drops_invalid_and_duplicate_indices():
    catalog = numbered_catalog(50)

    selected = select_from_top("1,2,2,99,abc", catalog)

    assert [e.id for e in selected] == [1, 2]


def test_manual_selection_window_is_capped_by_catalog_size():
    catalog = numbered_catalog(60)

    # 51 is outside the displayed window even though the catalog has it
    assert [e.id for e in select_from_top("51, 50, 0, -3", catalog)] == [50]
    assert [e.id for e in select_from_top("4,5", numbered_catalog(4))] == [4]


def test_manual_selection_empty_input_yields_empty_list():
    catalog = sample_catalog()

    assert select_from_top("", catalog) == []
    assert select_from_top("   ", catalog) == []
    assert select_from_top(None, catalog) == []
    assert select_from_top(",,x,", catalog) == []


def test_parse_indices_keeps_input_order():
    assert parse_indices(" 3 , 1,2 ", 5) == [3, 1, 2]


def test_merge_preserves_first_list_order_for_shared_ids():
    a = [entry(1, "A"), entry(2, "B"), entry(3, "C")]
    b = [entry(2, "B"), entry(3, "C"), entry(4, "D")]

    assert [e.id for e in merge_watched(a, b)] == [1, 2, 3, 4]
    assert [e.id for e in merge_watched(b, a)] == [2, 3, 4, 1]


def test_dedupe_by_id_keeps_first_occurrence():
    first = entry(7, "First title")
    second = entry(7, "Same id, other title")

    assert dedupe_by_id([first, second]) == [first]


def test_import_prefers_exact_catalog_match_case_insensitively():
    catalog = sample_catalog()
    source = FakeSource([])

    result = import_titles(["  gintama ", "STEINS;GATE"], catalog, source)

    assert [e.id for e in result] == [3, 2]
    assert source.lookups == []


def test_import_matches_alternative_titles():
    catalog = Catalog([entry(10, "Shingeki no Kyojin", "Action", alt_titles=("Attack on Titan",))])

    result = import_titles(["attack on titan"], catalog, FakeSource([]))

    assert [e.id for e in result] == [10]


def test_import_falls_back_to_lookup_and_grows_catalog():
    catalog = sample_catalog()
    found = entry(99, "Monster", "Mystery", "Thriller")
    source = FakeSource([], extra={"monstr": found})
    missing = []

    result = import_titles(["Monstr", "No Such Show", "K-On!"], catalog, source, on_missing=missing.append)

    assert [e.id for e in result] == [99, 5]
    assert missing == ["No Such Show"]
    assert len(catalog) == 6
    assert catalog.position(99) == 5


def test_import_deduplicates_titles_resolving_to_same_id():
    catalog = sample_catalog()
    # Lookup hit for an entry the catalog already holds under another name
    source = FakeSource([], extra={"fma": entry(1, "Hagane no Renkinjutsushi", "Action")})

    result = import_titles(["FMA", "Fullmetal Alchemist: Brotherhood", "", "   "], catalog, source)

    assert [e.id for e in result] == [1]
    assert len(catalog) == 5
    # The catalog's own copy is used
    assert result[0].title == "Fullmetal Alchemist: Brotherhood"


def test_import_with_only_misses_returns_empty_list(caplog):
    result = import_titles(["Nothing"], sample_catalog(), FakeSource([]))

    assert result == []
    assert 'Could not find anime "Nothing"' in caplog.text
