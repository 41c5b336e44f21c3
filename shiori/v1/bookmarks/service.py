"""
Bookmark writes needed by background jobs.
"""

import logging
from typing import Protocol

from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiori.v1.bookmarks.models import Bookmark
from shiori.v1.core.exceptions import PersistenceError
from shiori.v1.infra.jobs.models import utcnow

logger = logging.getLogger(__name__)


class BookmarkMetadataWriter(Protocol):
    """Persists fetched metadata onto the owning bookmark."""

    async def update_metadata(
        self,
        bookmark_id: str,
        user_id: str,
        description: str | None = None,
        website_icon: str | None = None,
        website_icon_mime_type: str | None = None,
    ) -> bool:
        ...


class BookmarkService:
    """Bookmark persistence used by the metadata job."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def update_metadata(
        self,
        bookmark_id: str,
        user_id: str,
        description: str | None = None,
        website_icon: str | None = None,
        website_icon_mime_type: str | None = None,
    ) -> bool:
        """
        Overwrite the bookmark's description and icon.

        Fields left as None are not touched. The write sets absolute values,
        so repeating it with the same arguments leaves the same row. Returns
        False if the bookmark does not exist for ``user_id``.
        """
        values: dict[str, object] = {}
        if description is not None:
            values["description"] = description
        if website_icon is not None:
            values["website_icon"] = website_icon
            values["website_icon_mime_type"] = website_icon_mime_type
        if not values:
            return False

        values["updated_at"] = utcnow()

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Bookmark)
                        .where(
                            and_(Bookmark.id == bookmark_id, Bookmark.user_id == user_id)
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to update bookmark metadata",
                details={"bookmark_id": bookmark_id},
            ) from e

        updated = result.rowcount > 0
        if not updated:
            logger.warning(
                "Bookmark not found for metadata update",
                extra={"bookmark_id": bookmark_id, "user_id": user_id},
            )
        return updated

    async def get(self, bookmark_id: str) -> Bookmark | None:
        async with self._session_factory() as session:
            return await session.get(Bookmark, bookmark_id)
