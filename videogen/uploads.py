# videogen/uploads.py
# Image host collaborator: upload raw bytes, fetch remote images

import logging
import mimetypes
from typing import Optional

import httpx

from .errors import RemoteJobError

logger = logging.getLogger(__name__)


def is_remote_url(source: Optional[str]) -> bool:
    source = (source or "").strip()
    return source.startswith("http://") or source.startswith("https://")


class ImageUploader:
    """POST multipart ``file`` to the image host, get back ``{"url": ...}``.

    No retries here; callers decide.
    """

    def __init__(self, upload_url: str, *, timeout: float = 120.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._upload_url = upload_url
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def upload(self, content: bytes, filename: str = "image.png", content_type: Optional[str] = None) -> str:
        if not content:
            raise ValueError("empty upload")
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            r = await self._http.post(self._upload_url, files={"file": (filename, content, content_type)})
        except httpx.RequestError as e:
            raise RemoteJobError(f"upload failed: {e}") from e
        if r.status_code >= 400:
            raise RemoteJobError(f"upload failed: {r.text[:300]}", status=r.status_code)

        try:
            url = r.json().get("url")
        except (ValueError, AttributeError):
            url = None
        if not url:
            raise RemoteJobError(f"no url in upload response: {r.text[:300]}", status=r.status_code)
        logger.info("[UPLOAD] %s (%d bytes) -> %s", filename, len(content), url)
        return url

    async def fetch(self, url: str) -> tuple[bytes, str]:
        """Download a remote image. Returns (content, content_type)."""
        try:
            r = await self._http.get(url)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteJobError(f"download failed: {url}", status=e.response.status_code) from e
        except httpx.RequestError as e:
            raise RemoteJobError(f"download failed: {url}: {e}") from e
        content_type = r.headers.get("content-type", "image/jpeg").split(";")[0]
        return r.content, content_type
