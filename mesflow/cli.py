import argparse
import asyncio
import logging

import uvicorn

from .core.database.db import Database
from .main import build_settings

logger = logging.getLogger("mesflow.cli")


async def init_db(database_url: str, drop_first: bool = False) -> None:
    """Create the schema on the configured database"""
    database = Database(database_url)
    try:
        await database.create_all(drop_first=drop_first)
    finally:
        await database.dispose()


def main(argv=None):
    parser = argparse.ArgumentParser(description="MesFlow CLI")
    parser.add_argument(
        "--config", "-c", default="config/config.json", help="Path to configuration file"
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind the server to")
    serve.add_argument("--port", type=int, default=8000, help="Port to bind the server to")
    serve.add_argument("--reload", action="store_true", help="Enable auto-reload (for development)")

    init = subparsers.add_parser("init-db", help="Create the database schema")
    init.add_argument("--drop", action="store_true", help="Drop existing tables first (development only)")

    args = parser.parse_args(argv)
    command = args.command or "serve"

    if command == "init-db":
        settings = build_settings(args.config)
        asyncio.run(init_db(settings.database_url, drop_first=args.drop))
        logger.info("Database schema ready")
        return

    host = getattr(args, "host", "0.0.0.0")
    port = getattr(args, "port", 8000)
    reload = getattr(args, "reload", False)
    logger.info(f"Starting MesFlow server on {host}:{port}")
    if reload:
        logger.info("Auto-reload enabled.")
        # Reload needs an import string; the factory reads MESFLOW_* environment variables
        uvicorn.run("mesflow.api.main:create_app", factory=True, host=host, port=port, reload=True)
        return

    from .api.main import create_app

    uvicorn.run(create_app(build_settings(args.config)), host=host, port=port)


if __name__ == "__main__":
    main()
