"""
Songbook entry point
Serves songs and setlists from Google Drive through the caching data API
"""

import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from loguru import logger

from songbook.api.server import create_app
from songbook.services.data_service import close_cache_service, get_cache_service
from songbook.settings import global_settings


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())


def build_app() -> FastAPI:
    """Build the app and tie the cache service to its lifespan."""
    service = get_cache_service()
    app = create_app(service, configured=global_settings.is_configured())

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("Songbook is running.")
        try:
            yield
        finally:
            logger.info("Closing cache service...")
            await close_cache_service()
            logger.info("Songbook stopped")

    app.router.lifespan_context = lifespan
    return app


def main() -> None:
    configure_logging()
    logger.info("Starting Songbook...")
    if not global_settings.is_configured():
        logger.warning("GOOGLE_API_KEY is not set; data endpoints will return errors")

    uvicorn.run(
        build_app(),
        host=global_settings.api_host,
        port=global_settings.api_port,
    )


if __name__ == "__main__":
    main()
