"""Resolve a document reference into rendered page images.

Two kinds of reference are understood:

* a local directory holding one image per page (``page-001.png`` ...), ordered
  by the numbers in the file names;
* an ``http(s)`` URL of a JSON manifest ``{"pages": [...]}`` whose entries are
  either image URLs or ``data:`` URLs.

Every loaded page is returned as a ``data:`` URL so it can be sent inline to
the vision model.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List

import httpx

from takeoff.utils.http import RetryConfig, request_with_retry


logger = logging.getLogger(__name__)

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
_DIGITS = re.compile(r"(\d+)")


class PageSourceError(Exception):
    """Raised when page images cannot be resolved or loaded."""


@dataclass(frozen=True, slots=True)
class PageImage:
    page: int
    data_url: str


def _natural_key(path: Path) -> list[Any]:
    return [int(part) if part.isdigit() else part.lower() for part in _DIGITS.split(path.name)]


def _to_data_url(data: bytes, mime_type: str | None) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'image/png'};base64,{encoded}"


class PageImageSource:
    """Load page images from local directories or remote manifests."""

    def __init__(self, *, timeout_seconds: float = 30.0, retry_config: RetryConfig | None = None) -> None:
        self._timeout = timeout_seconds
        self._retry = retry_config or RetryConfig()

    async def count_pages(self, reference: str) -> int:
        return len(await self._page_refs(reference))

    async def load_pages(self, reference: str, start: int, end: int) -> List[PageImage]:
        """Return pages ``start``..``end`` (1-based, inclusive)."""
        if start < 1 or end < start:
            raise PageSourceError(f"Invalid page range {start}-{end}")
        refs = await self._page_refs(reference)
        if end > len(refs):
            raise PageSourceError(
                f"Document has {len(refs)} pages; requested pages {start}-{end}"
            )
        pages: list[PageImage] = []
        for page_number in range(start, end + 1):
            data_url = await self._load_one(refs[page_number - 1])
            pages.append(PageImage(page=page_number, data_url=data_url))
        logger.debug("Loaded pages %d-%d from %s", start, end, reference)
        return pages

    async def _page_refs(self, reference: str) -> list[str]:
        if not reference:
            raise PageSourceError("Document reference is empty")
        if reference.startswith(("http://", "https://")):
            return await self._manifest_refs(reference)
        directory = Path(reference)
        if not directory.is_dir():
            raise PageSourceError(f"Page directory not found: {reference}")
        files = sorted(
            (path for path in directory.iterdir() if path.suffix.lower() in _IMAGE_SUFFIXES),
            key=_natural_key,
        )
        return [str(path) for path in files]

    async def _manifest_refs(self, url: str) -> list[str]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await request_with_retry(client.get, url, retry_config=self._retry)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PageSourceError(f"Could not fetch page manifest {url}: {exc}") from exc
        pages = payload.get("pages") if isinstance(payload, dict) else payload
        if not isinstance(pages, list) or not all(isinstance(entry, str) for entry in pages):
            raise PageSourceError(f"Manifest {url} has no list of page entries")
        return pages

    async def _load_one(self, ref: str) -> str:
        if ref.startswith("data:"):
            return ref
        if ref.startswith(("http://", "https://")):
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await request_with_retry(client.get, ref, retry_config=self._retry)
            except httpx.HTTPError as exc:
                raise PageSourceError(f"Could not fetch page image {ref}: {exc}") from exc
            mime_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
            return _to_data_url(response.content, mime_type or None)
        path = Path(ref)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise PageSourceError(f"Could not read page image {ref}: {exc}") from exc
        return _to_data_url(data, mimetypes.guess_type(path.name)[0])


__all__ = ["PageImage", "PageImageSource", "PageSourceError"]
