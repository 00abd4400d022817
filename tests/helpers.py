from anime_rec.catalog import Catalog, CatalogEntry


def entry(anime_id: int, title: str, *genres: str, alt_titles: tuple[str, ...] = ()) -> CatalogEntry:
    return CatalogEntry(id=anime_id, title=title, genres=tuple(genres), alt_titles=alt_titles)


def sample_catalog() -> Catalog:
    return Catalog([
        entry(1, "Fullmetal Alchemist: Brotherhood", "Action", "Adventure", "Drama"),
        entry(2, "Steins;Gate", "Sci-Fi", "Thriller", "Drama"),
        entry(3, "Gintama", "Action", "Comedy", "Sci-Fi"),
        entry(4, "Clannad: After Story", "Drama", "Romance"),
        entry(5, "K-On!", "Comedy", "Music"),
    ])


def numbered_catalog(size: int) -> Catalog:
    return Catalog(entry(i, f"Anime {i}", "Action") for i in range(1, size + 1))


class FakeSource:
    """Deterministic stand-in for the remote catalog."""

    def __init__(self, entries, extra: dict | None = None):
        self.entries = list(entries)
        self.extra = {title.casefold(): found for title, found in (extra or {}).items()}
        self.lookups: list[str] = []

    def fetch_top_ranked(self, count):
        return self.entries[:count]

    def find_by_title(self, title):
        self.lookups.append(title)
        return self.extra.get(title.casefold())


def scripted(*answers):
    """Prompt function replaying fixed answers; records the prompts it was shown."""
    replies = iter(answers)
    prompts: list[str] = []

    def ask(prompt: str) -> str:
        prompts.append(prompt)
        return next(replies)

    ask.prompts = prompts
    return ask
