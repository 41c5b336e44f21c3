"""
Registers the application's job handlers.
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiori.v1.bookmarks.metadata import HttpMetadataFetcher, MetadataFetcher
from shiori.v1.bookmarks.service import BookmarkService
from shiori.v1.core.registries import JobRegistry
from shiori.v1.infra.jobs.handlers import (
    FETCH_BOOKMARK_METADATA,
    FetchBookmarkMetadataHandler,
)

logger = logging.getLogger(__name__)


def register_job_handlers(
    registry: JobRegistry,
    session_factory: async_sessionmaker[AsyncSession],
    fetcher: MetadataFetcher | None = None,
) -> None:
    """Register all job handlers with ``registry`` (process start only)."""

    if registry.is_frozen():
        logger.info(
            "Job registry already frozen; keeping existing handlers",
            extra={"registered_handlers": registry.list()},
        )
        return

    logger.info("Registering job handlers")

    # Bookmark enrichment
    registry.register(
        FETCH_BOOKMARK_METADATA,
        FetchBookmarkMetadataHandler(
            fetcher=fetcher or HttpMetadataFetcher(),
            bookmarks=BookmarkService(session_factory),
        ),
    )

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
