"""Flat-file collaborators: the watched-titles list and the recommendations report."""
import logging
from pathlib import Path
from typing import Iterable

from .catalog import CatalogEntry
from .config import WATCHED_PATH, RECOMMENDATIONS_PATH
from .recommender import RecommendationResult

logger = logging.getLogger(__name__)


def load_watched_titles(path: str | Path = WATCHED_PATH) -> list[str]:
    """One title per line; a missing file is an empty list, not an error."""
    source = Path(path)
    if not source.exists():
        logger.debug(f"Watch list {source} not found")
        return []
    return [line.strip() for line in source.read_text(encoding="utf-8-sig").splitlines() if line.strip()]


def save_watched(entries: Iterable[CatalogEntry], path: str | Path = WATCHED_PATH) -> Path:
    """Write one title per line so the file can be imported again."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("".join(f"{entry.title}\n" for entry in entries), encoding="utf-8")
    return target


def format_recommendation(rec: RecommendationResult) -> str:
    return f"{rec.anime.title} — {rec.explanation} (score {rec.score:.2f})"


def save_recommendations(
    recommendations: Iterable[RecommendationResult],
    path: str | Path = RECOMMENDATIONS_PATH,
) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("".join(f"{format_recommendation(rec)}\n" for rec in recommendations), encoding="utf-8")
    return target
