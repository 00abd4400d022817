import argparse
import asyncio
import atexit
import json
import logging
import random

from .catalog import AsyncShikimoriClient, Catalog, ShikimoriClient, TitleLookup, prefetch_titles
from .config import (
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_PROFILE_NAME,
    FETCH_COUNT,
    SUMMARY_TOP_GENRES,
    TOP_TO_DISPLAY,
)
from .database import close_pool, delete_profile, export_profile, import_profile, list_profiles, load_profile
from .session import Session, run_session, show_profile_summary, show_top

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _concurrent_prefetch(titles: list[str], catalog: Catalog) -> TitleLookup:
    """Resolve file titles missing from the catalog with parallel searches."""
    return asyncio.run(prefetch_titles(titles, catalog, AsyncShikimoriClient()))


def cmd_run(args: argparse.Namespace) -> int:
    """Interactive session: pick watched anime, get recommendations, update the profile."""
    with ShikimoriClient() as client:
        session = Session(
            source=client,
            rng=random.Random(args.seed),
            profile_name=args.profile,
            fetch_count=args.fetch_count,
            prefetch=_concurrent_prefetch if DEFAULT_MAX_CONCURRENT > 1 else None,
        )
        try:
            return run_session(session)
        except (EOFError, KeyboardInterrupt):
            logger.info("\nSession aborted, nothing saved.")
            return 130


def cmd_top(args: argparse.Namespace) -> int:
    with ShikimoriClient() as client:
        entries = client.fetch_top_ranked(args.limit)
    if not entries:
        logger.error("Could not fetch the anime catalog.")
        return 1
    show_top(Catalog(entries), args.limit)
    return 0


def cmd_profile(args: argparse.Namespace) -> int:
    """Show the stored preference profile."""
    profile = load_profile(args.profile)
    if profile is None:
        logger.error(f"No profile named '{args.profile}'. Run: anime-rec run --profile {args.profile}")
        return 1

    if args.json:
        logger.info(json.dumps(profile.to_dict(), ensure_ascii=False, indent=2))
        return 0

    logger.info(f"\nProfile '{args.profile}'")
    show_profile_summary(profile, args.top)
    if profile.last_recommendations:
        logger.info("Last recommendations:")
        for title in profile.last_recommendations:
            logger.info(f"- {title}")
    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    profiles = list_profiles()
    if not profiles:
        logger.info("No stored profiles.")
        return 0
    for row in profiles:
        logger.info(f"{row['name']}  (updated {row['updated_at']}, schema {row['schema_version']})")
    return 0


def cmd_reset_profile(args: argparse.Namespace) -> int:
    if delete_profile(args.profile):
        logger.info(f"Profile '{args.profile}' deleted.")
    else:
        logger.info(f"No profile named '{args.profile}'.")
    return 0


def cmd_export_profile(args: argparse.Namespace) -> int:
    if not export_profile(args.path, args.profile):
        logger.error(f"No profile named '{args.profile}' to export.")
        return 1
    logger.info(f"Profile '{args.profile}' exported to {args.path}")
    return 0


def cmd_import_profile(args: argparse.Namespace) -> int:
    if import_profile(args.path, args.profile) is None:
        return 1
    logger.info(f"Profile '{args.profile}' imported from {args.path}")
    return 0


def _add_profile_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--profile", default=DEFAULT_PROFILE_NAME, help="Profile name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Anime Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Interactive recommendation session")
    _add_profile_arg(run_parser)
    run_parser.add_argument("--seed", type=int, help="Seed for the random fallback selection")
    run_parser.add_argument("--fetch-count", type=int, default=FETCH_COUNT,
                            help="Number of top-ranked titles to fetch")
    run_parser.set_defaults(func=cmd_run)

    top_parser = subparsers.add_parser("top", help="Show the top-ranked catalog")
    top_parser.add_argument("--limit", type=int, default=TOP_TO_DISPLAY, help="Number of titles")
    top_parser.set_defaults(func=cmd_top)

    profile_parser = subparsers.add_parser("profile", help="Show the stored preference profile")
    _add_profile_arg(profile_parser)
    profile_parser.add_argument("--top", type=int, default=SUMMARY_TOP_GENRES, help="Number of genres to show")
    profile_parser.add_argument("--json", action="store_true", help="Print the raw profile record")
    profile_parser.set_defaults(func=cmd_profile)

    profiles_parser = subparsers.add_parser("profiles", help="List stored profiles")
    profiles_parser.set_defaults(func=cmd_profiles)

    reset_parser = subparsers.add_parser("reset-profile", help="Delete a stored profile")
    _add_profile_arg(reset_parser)
    reset_parser.set_defaults(func=cmd_reset_profile)

    export_parser = subparsers.add_parser("export-profile", help="Export a profile to JSON")
    export_parser.add_argument("path", help="Output JSON file")
    _add_profile_arg(export_parser)
    export_parser.set_defaults(func=cmd_export_profile)

    import_parser = subparsers.add_parser("import-profile", help="Import a profile from JSON")
    import_parser.add_argument("path", help="Input JSON file")
    _add_profile_arg(import_parser)
    import_parser.set_defaults(func=cmd_import_profile)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Console output goes through logging; plain messages unless debugging
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')
        logging.getLogger("httpx").setLevel(logging.WARNING)

    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
