"""
Configuration constants for the anime recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_locale_env(key: str, default: str = "en") -> str:
    val = os.environ.get(key, default).strip().lower()
    if val not in SUPPORTED_LOCALES:
        logger.warning(f"Unsupported {key}='{val}', using default {default}")
        return default
    return val


SUPPORTED_LOCALES = ("en", "ru")

# Storage
DB_PATH = Path(os.environ.get("ANIMEREC_DB", "data/anime_rec.db"))
WATCHED_PATH = Path(os.environ.get("ANIMEREC_WATCHED_PATH", "data/watched.txt"))
RECOMMENDATIONS_PATH = Path(os.environ.get("ANIMEREC_RECOMMENDATIONS_PATH", "data/recommendations.txt"))
DEFAULT_PROFILE_NAME = "default"

# Catalog source (Shikimori GraphQL)
API_URL = os.environ.get("ANIMEREC_API_URL", "https://shikimori.one/api/graphql")
USER_AGENT = "anime-rec/0.1 (+https://github.com/anime-rec)"
LOCALE = _get_locale_env("ANIMEREC_LOCALE")
FETCH_COUNT = _get_int_env("ANIMEREC_FETCH_COUNT", 150, min_val=1)
PAGE_SIZE = 50  # Shikimori rejects limit > 50
DEFAULT_REQUEST_DELAY = _get_float_env("ANIMEREC_REQUEST_DELAY", 0.25, min_val=0.0)
DEFAULT_MAX_CONCURRENT = _get_int_env("ANIMEREC_MAX_CONCURRENT", 4, min_val=1)

# Retry and rate limiting
HTTP_TIMEOUT = 30.0  # seconds
MAX_HTTP_RETRIES = 3
MAX_429_RETRY_SECONDS = 60  # Maximum total time to wait for 429 responses
DEFAULT_RETRY_AFTER = 2  # Shikimori limits are per second, not per minute

# Interactive session
TOP_TO_DISPLAY = 50
DEFAULT_RECOMMENDATIONS = 10
MAX_RECOMMENDATIONS = 30
SUMMARY_TOP_GENRES = 5
AFFIRMATIVE_PREFIXES = ("y", "д")

# Profile Schema Versioning
# Increment this when UserProfile fields are added/removed or renamed.
# 1: original PascalCase record (GenrePreferences/WatchedAnimeIds/LastRecommendations)
# 2: snake_case record with explicit schema_version
PROFILE_SCHEMA_VERSION = 2
