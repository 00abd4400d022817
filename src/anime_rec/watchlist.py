"""
Reconcile watch-history input into one deduplicated, ordered list.

Three channels feed the watched list: manual selection from the displayed top
window, import of free-text titles, and a merge of the two. Every channel
signals "nothing usable" with an empty list; re-prompting is up to the caller.
"""
import logging
from typing import Callable, Iterable

from .catalog import Catalog, CatalogEntry, TitleLookup
from .config import TOP_TO_DISPLAY

logger = logging.getLogger(__name__)


def dedupe_by_id(entries: Iterable[CatalogEntry]) -> list[CatalogEntry]:
    """Keep the first occurrence of each Id, preserving order."""
    result: list[CatalogEntry] = []
    seen: set[int] = set()
    for entry in entries:
        if entry.id not in seen:
            seen.add(entry.id)
            result.append(entry)
    return result


def parse_indices(raw: str | None, upper: int) -> list[int]:
    """
    Parse a comma-separated list of 1-based indices.

    Non-numeric tokens and indices outside [1, upper] are dropped silently.
    """
    if not raw or not raw.strip():
        return []

    indices: list[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            index = int(token)
        except ValueError:
            logger.debug(f"Ignoring non-numeric selection '{token}'")
            continue
        if 0 < index <= upper:
            indices.append(index)
    return indices


def select_from_top(raw: str | None, catalog: Catalog, window: int = TOP_TO_DISPLAY) -> list[CatalogEntry]:
    """Resolve a manual selection against the first `window` catalog entries."""
    upper = min(window, len(catalog))
    return dedupe_by_id(catalog[i - 1] for i in parse_indices(raw, upper))


def import_titles(
    titles: Iterable[str],
    catalog: Catalog,
    lookup: TitleLookup,
    on_missing: Callable[[str], None] | None = None,
) -> list[CatalogEntry]:
    """
    Resolve free-text titles to catalog entries.

    Exact case-insensitive catalog matches win; everything else goes through
    `lookup.find_by_title`. Hits not yet in the catalog are appended to it.
    Misses are reported through `on_missing` and skipped.
    """
    result: list[CatalogEntry] = []
    seen: set[int] = set()

    for raw_title in titles:
        title = raw_title.strip()
        if not title:
            continue

        match = catalog.find_exact(title)
        if match is None:
            found = lookup.find_by_title(title)
            if found is not None:
                # The catalog hands back its own copy when the Id is already known
                match = catalog.add(found)

        if match is None:
            logger.warning(f"Could not find anime \"{title}\"")
            if on_missing is not None:
                on_missing(title)
            continue

        if match.id not in seen:
            seen.add(match.id)
            result.append(match)

    return result


def merge_watched(first: list[CatalogEntry], second: list[CatalogEntry]) -> list[CatalogEntry]:
    """Concatenate two watched lists; on a shared Id the first list's position wins."""
    return dedupe_by_id([*first, *second])
