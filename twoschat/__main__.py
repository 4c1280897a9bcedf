import argparse
import logging

from aiohttp import web

from . import VERSION
from .api import create_app
from .constants import APP_NAME
from .db import TwosCacheStore
from .settings import SettingsStore
from .vector_store import VectorStoreService

logger = logging.getLogger("TwosChat")


def build_parser():
    parser = argparse.ArgumentParser(prog="twoschat", description=f"{APP_NAME} local data service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--db", default=None, help="SQLite path (defaults to the data directory)")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = SettingsStore(args.db)
    settings.ensure_defaults()
    cache = TwosCacheStore(settings.db_path, settings=settings)
    index = VectorStoreService(settings)

    _banner = f" {APP_NAME} {VERSION} "
    logger.info("=" * 30 + _banner + "=" * 30)
    logger.info("Database: %s", cache.db_path)

    app = create_app(cache, index, settings)

    async def _close_cache(_app):
        cache.close()

    app.on_cleanup.append(_close_cache)
    web.run_app(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
