"""
One interactive recommendation session.

The session owns the console-facing state (catalog window, prompt function,
random source, file locations) and threads it through the reconciler and the
engine explicitly. Prompts go through `Session.ask` so a session can be driven
by scripted answers.
"""
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import database
from .catalog import Catalog, CatalogEntry, CatalogSource, TitleLookup
from .config import (
    AFFIRMATIVE_PREFIXES,
    DEFAULT_PROFILE_NAME,
    DEFAULT_RECOMMENDATIONS,
    FETCH_COUNT,
    MAX_RECOMMENDATIONS,
    RECOMMENDATIONS_PATH,
    SUMMARY_TOP_GENRES,
    TOP_TO_DISPLAY,
    WATCHED_PATH,
)
from .profile import UserProfile, summarize_profile, update_profile, watched_genre_counts
from .recommender import GenreRecommender, RecommendationResult, random_fallback
from .watchfile import load_watched_titles, save_recommendations, save_watched
from .watchlist import import_titles, merge_watched, select_from_top

logger = logging.getLogger(__name__)

SOURCE_MANUAL = "1"
SOURCE_FILE = "2"
SOURCE_MERGE = "3"


@dataclass
class Session:
    source: CatalogSource
    ask: Callable[[str], str] | None = None  # defaults to input()
    rng: random.Random = field(default_factory=random.Random)
    profile_name: str = DEFAULT_PROFILE_NAME
    fetch_count: int = FETCH_COUNT
    watched_path: Path = WATCHED_PATH
    recommendations_path: Path = RECOMMENDATIONS_PATH
    # Optional batch resolver: (titles, catalog) -> lookup answering those titles
    prefetch: Callable[[list[str], Catalog], TitleLookup] | None = None
    catalog: Catalog = field(default_factory=Catalog)
    not_found: list[str] = field(default_factory=list)

    def prompt(self, text: str) -> str:
        ask = self.ask or input
        return (ask(text) or "").strip()


def is_affirmative(answer: str | None) -> bool:
    answer = (answer or "").strip().lower()
    return bool(answer) and answer.startswith(AFFIRMATIVE_PREFIXES)


def parse_recommendation_count(raw: str | None) -> int:
    """Requested count in [1, MAX_RECOMMENDATIONS]; anything else means the default."""
    try:
        value = int((raw or "").strip())
    except ValueError:
        return DEFAULT_RECOMMENDATIONS
    if 0 < value <= MAX_RECOMMENDATIONS:
        return value
    return DEFAULT_RECOMMENDATIONS


def confirm(session: Session, text: str) -> bool:
    return is_affirmative(session.prompt(f"\n{text} (y/n): "))


def ask_recommendation_count(session: Session) -> int:
    return parse_recommendation_count(
        session.prompt(f"\nHow many recommendations to show (default {DEFAULT_RECOMMENDATIONS})? ")
    )


def show_top(catalog: Catalog, window: int = TOP_TO_DISPLAY) -> None:
    logger.info(f"\nTop {min(window, len(catalog))} anime on Shikimori:")
    for i, entry in enumerate(catalog[:window], 1):
        logger.info(f"{i}. {entry.title}")


def collect_from_top(session: Session) -> list[CatalogEntry]:
    show_top(session.catalog)
    raw = session.prompt("Enter the numbers of watched anime, separated by commas: ")
    return select_from_top(raw, session.catalog)


def collect_from_file(session: Session) -> list[CatalogEntry]:
    titles = load_watched_titles(session.watched_path)
    if not titles:
        logger.info(f"File {session.watched_path} is empty or missing.")
        return []

    logger.info(f"Loading watched anime from {session.watched_path}...")
    lookup = session.prefetch(titles, session.catalog) if session.prefetch else session.source
    loaded = import_titles(titles, session.catalog, lookup, on_missing=session.not_found.append)

    if loaded:
        logger.info("Loaded as watched:")
        for entry in loaded:
            logger.info(f"- {entry.title}")
    return loaded


def collect_watched(session: Session) -> list[CatalogEntry]:
    """Ask for a watch-history source until one yields at least one title."""
    watched: list[CatalogEntry] = []

    while not watched:
        logger.info("\nChoose where your watched anime come from:")
        logger.info(f"{SOURCE_MANUAL} - pick from the current top")
        logger.info(f"{SOURCE_FILE} - load from {session.watched_path}")
        logger.info(f"{SOURCE_MERGE} - combine the file and a manual pick")
        choice = session.prompt("Your choice: ")

        if choice == SOURCE_MANUAL:
            watched = collect_from_top(session)
        elif choice == SOURCE_FILE:
            watched = collect_from_file(session)
        elif choice == SOURCE_MERGE:
            from_file = collect_from_file(session)
            from_top = collect_from_top(session)
            watched = merge_watched(from_file, from_top)
        else:
            logger.info("Please choose 1, 2 or 3.")
            continue

        if not watched:
            logger.info("Could not build a watched list. Please try again.")

    return watched


def recommend_for_session(
    session: Session,
    watched: list[CatalogEntry],
    profile: UserProfile,
    limit: int,
    engine: GenreRecommender | None = None,
) -> tuple[list[RecommendationResult], bool]:
    """
    Genre-based recommendations, or a random pick of unseen titles when
    scoring finds nothing. The flag tells whether the fallback was used.

    Titles recorded as watched in earlier sessions are excluded as well.
    """
    engine = engine or GenreRecommender()
    seen = {entry.id for entry in watched} | set(profile.watched_anime_ids)
    recommendations = engine.recommend(session.catalog, seen, profile.genre_preferences, limit)
    if recommendations:
        return recommendations, False
    return random_fallback(session.catalog, seen, limit, session.rng), True


def show_recommendations(recommendations: list[RecommendationResult]) -> None:
    logger.info("\nPicked for you:")
    for rec in recommendations:
        logger.info(f"- {rec.title} (match score: {rec.score:.2f})")
        logger.info(f"  {rec.explanation}")


def show_profile_summary(profile: UserProfile, top: int = SUMMARY_TOP_GENRES) -> None:
    logger.info(f"Total watched: {len(profile.watched_anime_ids)}")
    top_genres = summarize_profile(profile, top)
    if top_genres:
        logger.info("Favourite genres:")
        for genre, weight in top_genres:
            logger.info(f"- {genre}: {weight}")
    else:
        logger.info("No genre statistics collected yet.")


def run_session(session: Session, engine: GenreRecommender | None = None) -> int:
    """
    Run one full session; returns a process exit status.

    Nothing is persisted unless the catalog fetch succeeds, and the profile is
    updated only after recommendations have been computed.
    """
    logger.info("Welcome to the anime recommender!")
    logger.info("Fetching the Shikimori catalog, please wait...")
    entries = session.source.fetch_top_ranked(session.fetch_count)
    if not entries:
        logger.error("Could not fetch the anime catalog.")
        return 1
    session.catalog = Catalog(entries)

    profile = database.load_profile(session.profile_name) or UserProfile()
    watched = collect_watched(session)

    if session.not_found:
        logger.info(f"Skipped {len(session.not_found)} title(s) that could not be found.")

    logger.info("\nMarked as watched:")
    for entry in watched:
        logger.info(f"- {entry.title}")

    if confirm(session, f"Save the list to {session.watched_path}?"):
        save_watched(watched, session.watched_path)
        logger.info("List saved.")

    logger.info("\nMost common genres:")
    for genre, count in watched_genre_counts(watched):
        logger.info(f"- {genre}: {count}")

    limit = ask_recommendation_count(session)
    recommendations, used_fallback = recommend_for_session(session, watched, profile, limit, engine)
    if used_fallback:
        logger.info("\nNo relevant recommendations found, here is a random selection instead.")
    show_recommendations(recommendations)

    if recommendations and confirm(session, f"Save recommendations to {session.recommendations_path}?"):
        save_recommendations(recommendations, session.recommendations_path)
        logger.info("Recommendations saved.")

    update_profile(profile, watched, recommendations)
    database.save_profile(profile, session.profile_name)

    logger.info("\nUser profile updated:")
    show_profile_summary(profile)
    return 0
