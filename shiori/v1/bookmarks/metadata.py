"""
Website metadata fetching for bookmark enrichment.
"""

import io
import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

IconSource = Literal["html", "manifest", "default"]
DescriptionSource = Literal["opengraph", "twitter", "html", "manifest"]

_DESCRIPTION_META = {
    "og:description": "opengraph",
    "twitter:description": "twitter",
    "description": "html",
}

_MIME_FORMATS = {
    "image/png": "png",
    "image/svg+xml": "svg",
    "image/webp": "webp",
    "image/jpeg": "jpeg",
    "image/jpg": "jpeg",
    "image/gif": "gif",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
}


@dataclass
class IconCandidate:
    href: str
    rel: str
    source: IconSource
    width: int | None = None
    height: int | None = None
    format: str | None = None
    mime_type: str | None = None
    data: bytes | None = None

    @property
    def min_dimension(self) -> int:
        if self.width is None or self.height is None:
            return 0
        return min(self.width, self.height)


@dataclass
class DescriptionCandidate:
    value: str
    source: DescriptionSource


@dataclass
class FetchedMetadata:
    url: str
    title: str | None = None
    icons: list[IconCandidate] = field(default_factory=list)
    descriptions: list[DescriptionCandidate] = field(default_factory=list)


class MetadataFetcher(Protocol):
    """Fetches a page's icons and descriptions. Network errors propagate."""

    async def fetch(self, url: str, timeout: float = 15.0) -> FetchedMetadata:
        ...


def _read_head(html: str) -> tuple[str | None, dict[str, str], list[dict[str, str]], str | None]:
    """Collect the title, description <meta> tags and icon/manifest links."""
    soup = BeautifulSoup(html, "html.parser")

    title = None
    if soup.title is not None:
        title = soup.title.get_text(strip=True) or None

    meta: dict[str, str] = {}
    for tag in soup.find_all("meta", content=True):
        key = (tag.get("property") or tag.get("name") or "").lower()
        content = tag["content"].strip()
        if key in _DESCRIPTION_META and content:
            meta.setdefault(key, content)

    icon_links: list[dict[str, str]] = []
    manifest_href = None
    for tag in soup.find_all("link", rel=True, href=True):
        rel = " ".join(tag.get_attribute_list("rel", [])).lower()
        if "icon" in rel.split() or rel == "apple-touch-icon-precomposed":
            icon_links.append(
                {
                    "rel": rel,
                    "href": tag["href"],
                    "sizes": tag.get("sizes") or "",
                    "type": tag.get("type") or "",
                }
            )
        elif rel == "manifest" and manifest_href is None:
            manifest_href = tag["href"]

    return title, meta, icon_links, manifest_href


def _parse_sizes(sizes: str | None) -> tuple[int | None, int | None]:
    if not sizes or "x" not in sizes.lower():
        return None, None
    first = sizes.lower().split()[0]
    try:
        width, height = (int(part) for part in first.split("x", 1))
    except ValueError:
        return None, None
    return width, height


def _image_size(data: bytes) -> tuple[int | None, int | None]:
    """Read pixel dimensions of any raster format Pillow can identify."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return None, None


def _format_for(mime_type: str | None, href: str) -> str | None:
    if mime_type:
        mime_format = _MIME_FORMATS.get(mime_type.split(";")[0].strip().lower())
        if mime_format:
            return mime_format
    filename = href.split("?")[0].rsplit("/", 1)[-1]
    if "." not in filename:
        return None
    extension = filename.rsplit(".", 1)[-1].lower()
    return "jpeg" if extension == "jpg" else extension


class HttpMetadataFetcher:
    """
    Default MetadataFetcher backed by httpx.

    Downloads the page, reads icons from <link> tags and the web manifest,
    falls back to /favicon.ico, and downloads up to ``max_icons`` icon files
    so they can be ranked by real size and format.
    """

    def __init__(
        self,
        max_icons: int = 4,
        user_agent: str = "ShioriBot/1.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_icons = max_icons
        self.user_agent = user_agent
        self.transport = transport

    async def fetch(self, url: str, timeout: float = 15.0) -> FetchedMetadata:
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
            transport=self.transport,
        ) as client:
            response = await client.get(url)
            response.raise_for_status()

            base_url = str(response.url)
            title, meta, icon_links, manifest_href = _read_head(response.text)

            metadata = FetchedMetadata(url=base_url, title=title)
            for key, source in _DESCRIPTION_META.items():
                if key in meta:
                    metadata.descriptions.append(
                        DescriptionCandidate(value=meta[key], source=source)
                    )

            for link in icon_links:
                width, height = _parse_sizes(link.get("sizes"))
                metadata.icons.append(
                    IconCandidate(
                        href=urljoin(base_url, link["href"]),
                        rel=link["rel"],
                        source="html",
                        width=width,
                        height=height,
                        mime_type=link.get("type") or None,
                    )
                )

            if manifest_href:
                await self._read_manifest(
                    client, urljoin(base_url, manifest_href), metadata
                )

            metadata.icons.append(
                IconCandidate(
                    href=urljoin(base_url, "/favicon.ico"),
                    rel="icon",
                    source="default",
                )
            )

            for icon in metadata.icons[: self.max_icons]:
                await self._download_icon(client, icon)

        return metadata

    async def _read_manifest(
        self, client: httpx.AsyncClient, manifest_url: str, metadata: FetchedMetadata
    ) -> None:
        try:
            response = await client.get(manifest_url)
            response.raise_for_status()
            manifest = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(
                "Web manifest unavailable",
                extra={"manifest_url": manifest_url, "error": str(e)},
            )
            return

        if not isinstance(manifest, dict):
            return
        if isinstance(manifest.get("description"), str) and manifest["description"]:
            metadata.descriptions.append(
                DescriptionCandidate(value=manifest["description"], source="manifest")
            )
        for entry in manifest.get("icons") or []:
            if not isinstance(entry, dict) or not entry.get("src"):
                continue
            width, height = _parse_sizes(entry.get("sizes"))
            metadata.icons.append(
                IconCandidate(
                    href=urljoin(manifest_url, entry["src"]),
                    rel="icon",
                    source="manifest",
                    width=width,
                    height=height,
                    mime_type=entry.get("type") or None,
                )
            )

    async def _download_icon(self, client: httpx.AsyncClient, icon: IconCandidate) -> None:
        try:
            response = await client.get(icon.href)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug(
                "Icon download failed", extra={"href": icon.href, "error": str(e)}
            )
            return

        icon.data = response.content
        icon.mime_type = response.headers.get("content-type") or icon.mime_type
        icon.format = _format_for(icon.mime_type, icon.href)

        width, height = _image_size(icon.data)
        if width and height:
            icon.width, icon.height = width, height
