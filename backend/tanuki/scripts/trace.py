"""
Trace the relationship graph for a series and print it as JSON.

Usage:
    tanuki-trace https://www.crunchyroll.com/series/GRDV0019R/jujutsu-kaisen
    tanuki-trace --title "Frieren" --depth 2 --user alice
    tanuki-trace anilist://154587 --media-type MANGA
"""
import argparse
import asyncio
import json
import sys

from tanuki.core.database import SessionLocal, init_db
from tanuki.core.redis_client import close_redis
from tanuki.schemas import TraceProgress
from tanuki.services.anilist import anilist_url, parse_anilist_url
from tanuki.services.errors import TanukiError
from tanuki.services.personalization import PersonalizationService
from tanuki.services.relationship_tracer import RelationshipTracer
from tanuki.services.series_cache import SeriesCacheService
from tanuki.services.user_preferences import UserPreferenceService
from tanuki.utils.logger import logger, set_level


def _print_progress(progress: TraceProgress) -> None:
    logger.info(f"[{progress.step}] {progress.current}/{progress.total} {progress.message}")


async def run(args) -> dict:
    db = SessionLocal()
    try:
        series_cache = SeriesCacheService(db)
        tracer = RelationshipTracer(series_cache)

        root_url = args.url
        if args.title:
            root = await series_cache.search_and_cache_by_title(args.title, args.media_type)
            root_url = root.url
        else:
            anilist_id = int(root_url) if root_url.isdigit() else parse_anilist_url(root_url)
            if anilist_id is not None:
                root = await series_cache.resolve_by_external_id(anilist_id, args.media_type)
                root_url = root.url or anilist_url(anilist_id)

        graph = await tracer.trace(root_url, args.depth, on_progress=_print_progress if args.verbose else None)

        if args.user:
            prefs = UserPreferenceService(db)
            user = prefs.get_or_create_user(args.user)
            graph = await PersonalizationService(prefs, tracer).personalize(graph, user.id)

        return graph.model_dump(mode="json", by_alias=True)
    finally:
        db.close()
        await close_redis()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Trace the relationship graph of an anime or manga series.")
    parser.add_argument("url", nargs="?", default="", help="series URL, anilist://<id>, or a bare AniList id")
    parser.add_argument("--title", help="search AniList by title instead of passing a URL")
    parser.add_argument("--media-type", choices=["ANIME", "MANGA"], default="ANIME")
    parser.add_argument("--depth", type=int, default=3, help="maximum BFS depth (default: 3)")
    parser.add_argument("--user", help="personalize the graph for this username")
    parser.add_argument("--init-db", action="store_true", help="create database tables before tracing")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    if not args.url and not args.title:
        parser.error("either a URL or --title is required")

    set_level(args.verbose)
    if args.init_db:
        init_db()

    try:
        result = asyncio.run(run(args))
    except TanukiError as e:
        logger.error(f"Trace failed: {e}")
        return 1

    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
