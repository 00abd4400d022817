import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable
from .catalog import CatalogEntry
from .config import PROFILE_SCHEMA_VERSION, SUMMARY_TOP_GENRES
from .recommender import RecommendationResult

logger = logging.getLogger(__name__)

# Field names of the schema 1 record written by the first console release
_LEGACY_KEYS = {
    "GenrePreferences": "genre_preferences",
    "WatchedAnimeIds": "watched_anime_ids",
    "LastRecommendations": "last_recommendations",
}


@dataclass
class UserProfile:
    """Genre affinity profile carried from one session to the next."""
    genre_preferences: dict[str, int] = field(default_factory=dict)
    watched_anime_ids: list[int] = field(default_factory=list)
    last_recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "schema_version": PROFILE_SCHEMA_VERSION,
            "genre_preferences": dict(self.genre_preferences),
            "watched_anime_ids": list(self.watched_anime_ids),
            "last_recommendations": list(self.last_recommendations),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "UserProfile":
        """
        Build a profile from a stored record, upgrading older schemas.

        Invalid weights are dropped and watched ids are re-sorted so that a
        hand-edited or legacy record still satisfies the profile invariants.
        A field of the wrong JSON type is discarded as a whole.
        """
        data = _upgrade_payload(payload)
        return cls(
            genre_preferences=_clean_weights(_field(data, "genre_preferences", dict)),
            watched_anime_ids=_clean_ids(_field(data, "watched_anime_ids", list)),
            last_recommendations=[str(t) for t in _field(data, "last_recommendations", list)],
        )


def _field(data: dict, key: str, expected: type):
    value = data.get(key)
    if value is None:
        return expected()
    if not isinstance(value, expected):
        logger.warning(f"Ignoring profile field '{key}': expected {expected.__name__}, got {type(value).__name__}")
        return expected()
    return value


def _schema_version(payload: dict) -> int | None:
    raw = payload.get("schema_version")
    if raw is None:
        return None
    if not isinstance(raw, bool):
        try:
            return int(raw)
        except (TypeError, ValueError, OverflowError):
            pass
    logger.warning(f"Ignoring unreadable profile schema version {raw!r}")
    return None


def _upgrade_payload(payload: dict) -> dict:
    version = _schema_version(payload)
    if version is None:
        version = 1 if any(key in payload for key in _LEGACY_KEYS) else PROFILE_SCHEMA_VERSION

    if version == 1:
        logger.info("Upgrading profile record from schema 1")
        return {new: payload.get(old) for old, new in _LEGACY_KEYS.items()}

    if version > PROFILE_SCHEMA_VERSION:
        logger.warning(
            f"Profile schema {version} is newer than supported {PROFILE_SCHEMA_VERSION}; "
            f"reading known fields only"
        )
    return payload


def _clean_weights(raw: dict) -> dict[str, int]:
    weights: dict[str, int] = {}
    for genre, value in raw.items():
        valid = (
            isinstance(value, (int, float))
            and not isinstance(value, bool)
            and math.isfinite(value)
            and value >= 0
            and value == int(value)
        )
        if not valid:
            logger.warning(f"Dropping invalid weight {value!r} for genre '{genre}'")
            continue
        weights[str(genre)] = int(value)
    return weights


def _clean_ids(raw: Iterable) -> list[int]:
    ids: set[int] = set()
    for value in raw:
        try:
            ids.add(int(value))
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Dropping invalid watched id {value!r}")
    return sorted(ids)


def update_profile(
    profile: UserProfile,
    watched: Iterable[CatalogEntry],
    recommendations: Iterable[RecommendationResult],
) -> UserProfile:
    """
    Fold one session into the profile, in place.

    Genre weights grow only for entries whose Id the profile has not recorded
    yet, so replaying the same watched list leaves the weights unchanged.
    `last_recommendations` is replaced by this session's titles, in order.
    """
    known = set(profile.watched_anime_ids)

    for entry in watched:
        if entry.id in known:
            continue
        known.add(entry.id)
        for genre in dict.fromkeys(entry.genres):
            profile.genre_preferences[genre] = profile.genre_preferences.get(genre, 0) + 1

    profile.watched_anime_ids = sorted(known)
    profile.last_recommendations = [rec.anime.title for rec in recommendations]
    return profile


def summarize_profile(profile: UserProfile, n: int = SUMMARY_TOP_GENRES) -> list[tuple[str, int]]:
    """
    Top `n` genres by weight.

    Ties keep first-insertion order into `genre_preferences` (the sort is
    stable over dict order), i.e. the genre learned earlier ranks first.
    """
    ranked = sorted(profile.genre_preferences.items(), key=lambda item: -item[1])
    return ranked[:max(n, 0)]


def watched_genre_counts(entries: Iterable[CatalogEntry]) -> list[tuple[str, int]]:
    """Genre frequency across a watched list, most frequent first (ties: first seen)."""
    counts: Counter[str] = Counter()
    for entry in entries:
        counts.update(dict.fromkeys(entry.genres, 1))
    return counts.most_common()
