from dataclasses import dataclass, field
import logging
import random
from typing import Iterable

import numpy as np

from .catalog import Catalog, CatalogEntry
from .config import DEFAULT_RECOMMENDATIONS

logger = logging.getLogger(__name__)

RANDOM_PICK_EXPLANATION = "random pick"


@dataclass
class RecommendationResult:
    anime: CatalogEntry
    score: float
    explanation: str = ""
    matched_genres: list[str] = field(default_factory=list)

    @property
    def title(self) -> str:
        return self.anime.title


def _watched_ids(watched: Iterable[CatalogEntry | int]) -> set[int]:
    return {item.id if isinstance(item, CatalogEntry) else int(item) for item in watched}


def explain_match(matched_genres: list[str]) -> str:
    return f"Matched genres: {', '.join(matched_genres)}"


class GenreRecommender:
    """
    Content-based recommender over accumulated genre affinity weights.

    A candidate's score is the plain sum of the weights of its genres that
    carry a positive weight in the profile. The sum is monotone in overlap
    weight and is exactly 0 when nothing overlaps; such candidates are never
    returned. Ties on score keep catalog (popularity) order.
    """

    def _score_matrix(
        self,
        candidates: list[CatalogEntry],
        preferences: dict[str, float],
    ) -> np.ndarray:
        """Candidate x genre incidence matrix times the weight vector."""
        vocab = list(preferences)
        column = {genre: i for i, genre in enumerate(vocab)}
        weights = np.array([preferences[g] for g in vocab], dtype=float)

        incidence = np.zeros((len(candidates), len(vocab)), dtype=float)
        for row, entry in enumerate(candidates):
            for genre in entry.genres:
                col = column.get(genre)
                if col is not None:
                    incidence[row, col] = 1.0

        return incidence @ weights

    def recommend(
        self,
        catalog: Catalog | Iterable[CatalogEntry],
        watched: Iterable[CatalogEntry | int],
        genre_preferences: dict[str, float],
        limit: int = DEFAULT_RECOMMENDATIONS,
    ) -> list[RecommendationResult]:
        """
        Rank unseen catalog entries by genre overlap with the preferences.

        Returns at most `limit` results, fewer when fewer candidates score
        above zero. The range of `limit` is the caller's concern.
        """
        seen = _watched_ids(watched)
        candidates = [entry for entry in catalog if entry.id not in seen]
        positive = {genre: weight for genre, weight in genre_preferences.items() if weight > 0}

        if limit <= 0 or not candidates or not positive:
            return []

        scores = self._score_matrix(candidates, positive)
        # np.lexsort sorts by the last key first: score descending, then catalog position
        order = np.lexsort((np.arange(len(candidates)), -scores))

        results: list[RecommendationResult] = []
        for row in order:
            score = float(scores[row])
            if score <= 0:
                break

            entry = candidates[row]
            matched = sorted(
                {genre for genre in entry.genres if genre in positive},
                key=lambda g: (-positive[g], g),
            )
            results.append(RecommendationResult(
                anime=entry,
                score=score,
                explanation=explain_match(matched),
                matched_genres=matched,
            ))
            if len(results) >= limit:
                break

        logger.debug(f"Scored {len(candidates)} candidates, {len(results)} recommended")
        return results


def random_fallback(
    catalog: Catalog | Iterable[CatalogEntry],
    watched: Iterable[CatalogEntry | int],
    limit: int = DEFAULT_RECOMMENDATIONS,
    rng: random.Random | None = None,
) -> list[RecommendationResult]:
    """Uniform sample of unseen entries, used when genre scoring finds nothing."""
    rng = rng or random.Random()
    seen = _watched_ids(watched)
    unseen = [entry for entry in catalog if entry.id not in seen]
    picks = rng.sample(unseen, min(max(limit, 0), len(unseen)))
    return [
        RecommendationResult(anime=entry, score=0.0, explanation=RANDOM_PICK_EXPLANATION)
        for entry in picks
    ]
