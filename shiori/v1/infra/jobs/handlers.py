"""
Job handlers registered with the job registry.

Handlers run once per claim and must be idempotent. Any retrying they do
internally (network backoff) is invisible to the job's attempt count.
"""

import asyncio
import base64
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from shiori.v1.bookmarks.metadata import (
    DescriptionCandidate,
    FetchedMetadata,
    IconCandidate,
    MetadataFetcher,
)
from shiori.v1.bookmarks.service import BookmarkMetadataWriter
from shiori.v1.core.exceptions import HandlerExecutionError
from shiori.v1.core.registries import JobContext
from shiori.v1.infra.jobs.schemas import JobDescriptor

logger = logging.getLogger(__name__)

FETCH_BOOKMARK_METADATA = "fetch-bookmark-metadata"

T = TypeVar("T")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    retries: int = 1,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Call ``fn`` up to ``retries + 1`` times, doubling the delay each time."""
    for attempt in range(retries + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt == retries:
                raise
            delay = base_delay * (2**attempt)
            logger.info(
                "Retrying after error",
                extra={"attempt": attempt + 1, "delay_s": delay, "error": str(e)},
            )
            await sleep(delay)

    raise AssertionError("unreachable")


def _icon_score(icon: IconCandidate) -> int:
    score = 0

    # Size
    size = icon.min_dimension
    if size >= 512:
        score += 150
    elif size >= 192:
        score += 120
        if size in (192, 256, 512):
            score += 30
    elif size >= 128:
        score += 80
    elif size >= 64:
        score += 60
    elif size >= 32:
        score += 40
    else:
        score += 20

    # Format
    score += {
        "svg": 100,
        "png": 80,
        "webp": 70,
        "jpg": 50,
        "jpeg": 50,
        "ico": 30,
    }.get((icon.format or "").lower(), 20)

    # Link type
    rel = icon.rel.lower()
    if "apple-touch-icon" in rel:
        score += 50
    elif rel in ("icon", "shortcut icon"):
        score += 40

    # Source
    score += {"manifest": 30, "html": 20}.get(icon.source, 0)

    return score


def select_best_icon(icons: Iterable[IconCandidate]) -> IconCandidate | None:
    """Pick the highest-scoring icon among those that were downloaded."""
    downloaded = [icon for icon in icons if icon.data]
    if not downloaded:
        return None
    return max(downloaded, key=_icon_score)


def select_best_description(
    descriptions: Iterable[DescriptionCandidate],
) -> str | None:
    """Prefer opengraph, then twitter, html and manifest descriptions."""
    by_source: dict[str, str] = {}
    for description in descriptions:
        if description.value and description.source not in by_source:
            by_source[description.source] = description.value

    for source in ("opengraph", "twitter", "html", "manifest"):
        if source in by_source:
            return by_source[source]
    return None


class FetchMetadataPayload(BaseModel):
    """Payload of a fetch-bookmark-metadata job."""

    model_config = ConfigDict(populate_by_name=True)

    url: str
    bookmark_id: str = Field(..., alias="bookmarkId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("url must be an absolute http(s) URL")
        return value


class FetchBookmarkMetadataHandler:
    """
    Fetches a bookmark's icon and description and writes them back.

    Payload expected:
    {
        "url": "https://example.com",
        "bookmarkId": "bookmark-id",
        "userId": "user-id"
    }

    The fetch is tried ``fetch_retries + 1`` times inside one invocation.
    A payload that does not validate fails the job without retry; a fetch
    that still fails is reported as retryable and left to the job's
    ``max_retries``.
    """

    def __init__(
        self,
        fetcher: MetadataFetcher,
        bookmarks: BookmarkMetadataWriter,
        fetch_timeout: float = 15.0,
        fetch_retries: int = 1,
        retry_base_delay: float = 1.0,
    ):
        self.fetcher = fetcher
        self.bookmarks = bookmarks
        self.fetch_timeout = fetch_timeout
        self.fetch_retries = fetch_retries
        self.retry_base_delay = retry_base_delay

    async def handle(self, payload: Any, context: JobContext) -> dict[str, Any]:
        try:
            params = FetchMetadataPayload.model_validate(payload)
        except PydanticValidationError as e:
            raise HandlerExecutionError(
                "Invalid fetch-bookmark-metadata payload",
                retryable=False,
                details={"errors": e.errors(include_url=False, include_input=False)},
            ) from e

        try:
            metadata: FetchedMetadata | None = await retry_with_backoff(
                lambda: self.fetcher.fetch(params.url, timeout=self.fetch_timeout),
                retries=self.fetch_retries,
                base_delay=self.retry_base_delay,
            )
        except Exception as e:
            raise HandlerExecutionError(
                f"Metadata fetch failed for {params.url}: {e}", retryable=True
            ) from e

        if metadata is None:
            return {"status": "skipped", "reason": "no_metadata"}

        best_icon = select_best_icon(metadata.icons)
        description = select_best_description(metadata.descriptions)
        if best_icon is None and description is None:
            return {"status": "skipped", "reason": "no_metadata"}

        updated = await self.bookmarks.update_metadata(
            bookmark_id=params.bookmark_id,
            user_id=params.user_id,
            description=description,
            website_icon=(
                base64.b64encode(best_icon.data).decode("ascii") if best_icon else None
            ),
            website_icon_mime_type=best_icon.mime_type if best_icon else None,
        )
        if not updated:
            return {"status": "skipped", "reason": "bookmark_not_found"}

        logger.info(
            "Bookmark metadata updated",
            extra={
                "bookmark_id": params.bookmark_id,
                "job_id": str(context.job_id),
                "icon": best_icon.href if best_icon else None,
            },
        )
        return {
            "status": "completed",
            "bookmark_id": params.bookmark_id,
            "description_updated": description is not None,
            "icon_updated": best_icon is not None,
        }


def build_fetch_metadata_jobs(
    bookmarks: Iterable[Any], owner_id: str, max_retries: int = 0
) -> list[JobDescriptor]:
    """
    Job descriptors for freshly imported bookmarks.

    ``bookmarks`` are objects with ``id`` and ``url`` attributes.
    ``max_retries`` defaults to 0 because the handler already retries the
    fetch itself.
    """
    return [
        JobDescriptor(
            type=FETCH_BOOKMARK_METADATA,
            owner_id=owner_id,
            payload={
                "url": bookmark.url,
                "bookmarkId": str(bookmark.id),
                "userId": owner_id,
            },
            max_retries=max_retries,
        )
        for bookmark in bookmarks
    ]
