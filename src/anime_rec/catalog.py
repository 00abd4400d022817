import httpx
import time
import random
import logging
import asyncio
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from dataclasses import dataclass
from typing import Iterable, Iterator, Protocol
from tqdm.asyncio import tqdm_asyncio
from .config import (
    API_URL,
    USER_AGENT,
    LOCALE,
    PAGE_SIZE,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
    MAX_429_RETRY_SECONDS,
    DEFAULT_RETRY_AFTER,
    DEFAULT_REQUEST_DELAY,
    DEFAULT_MAX_CONCURRENT,
)

logger = logging.getLogger(__name__)

ANIME_QUERY = """
query($page: PositiveInt, $limit: PositiveInt, $order: OrderEnum, $search: String) {
  animes(page: $page, limit: $limit, order: $order, search: $search) {
    id
    name
    russian
    english
    genres { name russian kind }
  }
}
"""


@dataclass(frozen=True)
class CatalogEntry:
    id: int
    title: str
    genres: tuple[str, ...] = ()
    alt_titles: tuple[str, ...] = ()


class TitleLookup(Protocol):
    """Anything that can resolve a free-text title to a catalog entry."""

    def find_by_title(self, title: str) -> CatalogEntry | None: ...


class CatalogSource(TitleLookup, Protocol):
    """Remote ranked catalog. Failures surface as an empty list or None."""

    def fetch_top_ranked(self, count: int) -> list[CatalogEntry]: ...


class Catalog:
    """
    Ordered, Id-unique list of entries available for one session.

    Position in the catalog is the popularity rank. Entries discovered by
    title lookup are appended at the end and live only as long as the session.
    """

    def __init__(self, entries: Iterable[CatalogEntry] = ()):
        self._entries: list[CatalogEntry] = []
        self._positions: dict[int, int] = {}
        for entry in entries:
            self.add(entry)

    def add(self, entry: CatalogEntry) -> CatalogEntry:
        """Append entry unless its Id is known; return the stored entry."""
        pos = self._positions.get(entry.id)
        if pos is not None:
            return self._entries[pos]
        self._positions[entry.id] = len(self._entries)
        self._entries.append(entry)
        return entry

    def get(self, anime_id: int) -> CatalogEntry | None:
        pos = self._positions.get(anime_id)
        return self._entries[pos] if pos is not None else None

    def position(self, anime_id: int) -> int | None:
        return self._positions.get(anime_id)

    def find_exact(self, title: str) -> CatalogEntry | None:
        """Case-insensitive match on the display title, then on alternative names."""
        needle = title.strip().casefold()
        if not needle:
            return None
        for entry in self._entries:
            if entry.title.casefold() == needle:
                return entry
        for entry in self._entries:
            if any(alt.casefold() == needle for alt in entry.alt_titles):
                return entry
        return None

    @property
    def entries(self) -> list[CatalogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries)

    def __getitem__(self, index):
        return self._entries[index]

    def __contains__(self, item) -> bool:
        anime_id = item.id if isinstance(item, CatalogEntry) else item
        return anime_id in self._positions


def parse_anime_node(node: dict, locale: str = LOCALE) -> CatalogEntry | None:
    """
    Build a CatalogEntry from one GraphQL `animes` node.

    Shikimori returns ids as strings. Genres keep source order with duplicates
    removed; the display title follows the configured locale.
    """
    try:
        anime_id = int(node["id"])
    except (KeyError, TypeError, ValueError):
        logger.warning(f"Skipping anime node without a valid id: {node!r:.80}")
        return None

    names = {
        "name": (node.get("name") or "").strip(),
        "russian": (node.get("russian") or "").strip(),
        "english": (node.get("english") or "").strip(),
    }
    preferred = ("russian", "name", "english") if locale == "ru" else ("name", "english", "russian")
    title = next((names[key] for key in preferred if names[key]), "")
    if not title:
        logger.warning(f"Skipping anime {anime_id} without a title")
        return None

    alt_titles: list[str] = []
    for value in names.values():
        if value and value != title and value not in alt_titles:
            alt_titles.append(value)

    genre_key = "russian" if locale == "ru" else "name"
    genres: list[str] = []
    for genre in node.get("genres") or []:
        name = (genre.get(genre_key) or genre.get("name") or "").strip()
        if name and name not in genres:
            genres.append(name)

    return CatalogEntry(id=anime_id, title=title, genres=tuple(genres), alt_titles=tuple(alt_titles))


def _retry_after_seconds(resp: httpx.Response) -> int:
    """
    Seconds to wait after a 429, from either form of the Retry-After header.

    An absent or unparseable header means DEFAULT_RETRY_AFTER.
    """
    raw = (resp.headers.get("Retry-After") or "").strip()
    if not raw:
        return DEFAULT_RETRY_AFTER
    try:
        return max(0, int(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After header {raw!r}")
        return DEFAULT_RETRY_AFTER
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, math.ceil((when - datetime.now(timezone.utc)).total_seconds()))


def _extract_animes(resp: httpx.Response, variables: dict) -> list[dict] | None:
    """Pull the `animes` list out of a GraphQL response, logging API errors."""
    try:
        payload = resp.json()
    except ValueError as exc:
        logger.error(f"Malformed JSON from catalog API for {variables}: {exc}")
        return None

    if payload.get("errors"):
        messages = "; ".join(str(err.get("message", err)) for err in payload["errors"])
        logger.error(f"Catalog API returned errors for {variables}: {messages}")
        return None

    animes = (payload.get("data") or {}).get("animes")
    if not isinstance(animes, list):
        logger.error(f"Unexpected catalog API payload for {variables}")
        return None
    return animes


class ShikimoriClient:
    """Synchronous catalog source backed by the Shikimori GraphQL API."""

    def __init__(
        self,
        api_url: str = API_URL,
        delay: float = DEFAULT_REQUEST_DELAY,
        locale: str = LOCALE,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url
        self.delay = delay
        self.locale = locale
        self.client = httpx.Client(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=HTTP_TIMEOUT,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _post(self, variables: dict, max_retries: int = MAX_HTTP_RETRIES) -> list[dict] | None:
        time.sleep(self.delay)

        retries = 0
        total_429_wait_time = 0

        while retries < max_retries:
            try:
                resp = self.client.post(self.api_url, json={"query": ANIME_QUERY, "variables": variables})

                if resp.status_code == 429:
                    retry_after = _retry_after_seconds(resp)

                    if total_429_wait_time + retry_after > MAX_429_RETRY_SECONDS:
                        logger.error(f"Max 429 wait time exceeded (waited {total_429_wait_time}s, would need {retry_after}s more)")
                        return None

                    logger.warning(f"Rate limited (429), waiting {retry_after}s... (total 429 wait: {total_429_wait_time}s)")
                    time.sleep(retry_after + random.uniform(0, self.delay))
                    total_429_wait_time += retry_after
                    continue

                resp.raise_for_status()
                return _extract_animes(resp, variables)
            except httpx.TimeoutException as e:
                if retries < max_retries - 1:
                    wait_time = 2 ** retries
                    logger.warning(f"Timeout on catalog API, retrying in {wait_time}s... (attempt {retries + 1}/{max_retries})")
                    time.sleep(wait_time)
                    retries += 1
                else:
                    logger.error(f"Max retries exceeded on catalog API: {e}")
                    return None
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error from catalog API: {e}")
                return None
            except httpx.HTTPError as e:
                logger.error(f"Request error on catalog API: {e}")
                return None

        return None

    def fetch_top_ranked(self, count: int) -> list[CatalogEntry]:
        """
        Fetch the `count` highest-ranked titles, page by page.

        Returns an empty list when the first page cannot be fetched. A failure
        on a later page keeps what was already collected.
        """
        catalog = Catalog()
        # Pagination offsets are page * limit, so the limit stays fixed across pages
        limit = min(PAGE_SIZE, count)
        page = 1
        while len(catalog) < count:
            nodes = self._post({"page": page, "limit": limit, "order": "ranked"})
            if nodes is None:
                if len(catalog):
                    logger.warning(f"Catalog page {page} failed, continuing with {len(catalog)} titles")
                break

            for node in nodes:
                entry = parse_anime_node(node, self.locale)
                if entry is not None:
                    catalog.add(entry)

            if len(nodes) < limit:
                break
            page += 1

        logger.debug(f"Fetched {len(catalog)} ranked titles")
        return catalog.entries[:count]

    def find_by_title(self, title: str) -> CatalogEntry | None:
        """Best search hit for a free-text title, or None."""
        nodes = self._post({"search": title, "limit": 1})
        if not nodes:
            return None
        return parse_anime_node(nodes[0], self.locale)

    def close(self):
        self.client.close()


class AsyncShikimoriClient:
    """Async catalog source for resolving many titles concurrently."""

    def __init__(
        self,
        api_url: str = API_URL,
        delay: float = DEFAULT_REQUEST_DELAY,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        locale: str = LOCALE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.delay = delay
        self.locale = locale
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = None
        self._transport = transport
        # Coordinated rate limiting: when one task hits 429, all tasks pause
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            timeout=HTTP_TIMEOUT,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
        return False

    async def _post(self, variables: dict) -> list[dict] | None:
        if not self.client:
            raise RuntimeError("AsyncShikimoriClient must be used as an async context manager")

        async with self.semaphore:
            await asyncio.sleep(self.delay)

            for attempt in range(MAX_HTTP_RETRIES):
                await self._rate_limit_event.wait()

                try:
                    resp = await self.client.post(
                        self.api_url, json={"query": ANIME_QUERY, "variables": variables}
                    )

                    if resp.status_code == 429:
                        retry_after = _retry_after_seconds(resp)
                        logger.warning(
                            f"Rate limited, pausing ALL lookups for {retry_after}s "
                            f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                        )
                        self._rate_limit_event.clear()
                        await asyncio.sleep(retry_after)
                        self._rate_limit_event.set()
                        continue

                    resp.raise_for_status()
                    return _extract_animes(resp, variables)

                except httpx.TimeoutException:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Timeout on catalog API, retrying in {wait_time}s (attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    await asyncio.sleep(wait_time)

                except httpx.HTTPStatusError as exc:
                    logger.error(f"HTTP {exc.response.status_code} from catalog API: {exc}")
                    return None

                except httpx.HTTPError as exc:
                    logger.error(f"Request error on catalog API: {type(exc).__name__}: {exc}")
                    return None

            logger.error(f"Max retries exceeded for lookup {variables}")
            return None

    async def find_by_title(self, title: str) -> CatalogEntry | None:
        nodes = await self._post({"search": title, "limit": 1})
        if not nodes:
            return None
        return parse_anime_node(nodes[0], self.locale)

    async def find_by_titles(self, titles: list[str], progress: bool = True) -> list[CatalogEntry | None]:
        """Resolve titles concurrently; results are aligned with the input order."""
        return await tqdm_asyncio.gather(
            *(self.find_by_title(title) for title in titles),
            desc="Lookups",
            disable=not progress or len(titles) < 2,
        )


class ResolvedTitles:
    """
    Title lookup served from answers fetched ahead of time.

    Titles are matched case-insensitively; anything not prefetched is a miss.
    """

    def __init__(self, resolved: dict[str, CatalogEntry | None]):
        self._resolved = {title.strip().casefold(): entry for title, entry in resolved.items()}

    def find_by_title(self, title: str) -> CatalogEntry | None:
        return self._resolved.get(title.strip().casefold())


async def prefetch_titles(
    titles: list[str],
    catalog: Catalog,
    client: AsyncShikimoriClient,
) -> ResolvedTitles:
    """Resolve, concurrently, every title that has no exact match in the catalog."""
    pending: list[str] = []
    seen: set[str] = set()
    for title in titles:
        key = title.strip().casefold()
        if not key or key in seen or catalog.find_exact(title) is not None:
            continue
        seen.add(key)
        pending.append(title.strip())

    if not pending:
        return ResolvedTitles({})

    logger.debug(f"Resolving {len(pending)} titles via catalog search")
    async with client:
        results = await client.find_by_titles(pending)
    return ResolvedTitles(dict(zip(pending, results)))
