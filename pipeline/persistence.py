"""Asset persistence — copy generated media into durable storage.

Provider URLs expire, so results are re-hosted under the caller's prefix.
Persistence never fails a request: on any error the outcome carries the
original reference and persisted=False.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import urlparse

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import Config
from pipeline.errors import StorageFailure
from schemas.generation import InlineBytes, RemoteUrl

logger = logging.getLogger(__name__)

_MIME_TO_EXT = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-msvideo": "avi",
}

_EXT_TO_MIME = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
}

_DEFAULT_MIME = {"images": "image/png", "videos": "video/mp4"}


class BlobStore(Protocol):
    def upload(self, data: bytes, path: str, content_type: str) -> str:
        """Store bytes at path (never overwriting) and return the public URL."""


class LocalBlobStore:
    """Filesystem blob store served under a public base URL."""

    def __init__(self, root: Path, public_base_url: str):
        self._root = Path(root)
        self._public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_config(cls, config: Config) -> "LocalBlobStore":
        return cls(config.storage_dir, config.public_base_url)

    def upload(self, data: bytes, path: str, content_type: str) -> str:
        root = self._root.resolve()
        target = (root / path).resolve()
        if target == root or not target.is_relative_to(root):
            raise StorageFailure(f"Storage path escapes the storage root: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        # "xb" refuses to replace an existing object.
        fh = target.open("xb")
        try:
            with fh:
                fh.write(data)
        except Exception:
            target.unlink(missing_ok=True)
            raise
        logger.debug("Stored %d bytes (%s) at %s", len(data), content_type, target)
        return f"{self._public_base_url}/{path}"


@dataclass(frozen=True)
class PersistDestination:
    caller_id: str
    category: str = "images"
    name: str = ""


@dataclass
class PersistOutcome:
    url: str
    original: str
    persisted: bool
    error: str = ""


def _slug(name: str) -> str:
    clean = re.sub(r"[^a-z0-9]+", "-", str(name or "").lower()).strip("-")
    return clean[:48] or "generated"


def _mime_from_header(content_type: str | None) -> str:
    mime = str(content_type or "").split(";", 1)[0].strip().lower()
    if mime.startswith("image/") or mime.startswith("video/"):
        return mime
    return ""


def _mime_from_url(url: str) -> str:
    path = urlparse(url).path
    ext = path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
    return _EXT_TO_MIME.get(ext, "")


def resolve_mime(content_type: str | None, url: str, category: str) -> str:
    """Header first, then URL extension, then the category default."""
    return _mime_from_header(content_type) or _mime_from_url(url) or _DEFAULT_MIME.get(category, "image/png")


def extension_for(mime: str) -> str:
    return _MIME_TO_EXT.get(mime, mime.split("/", 1)[-1] or "bin")


class AssetPersister:
    def __init__(
        self,
        blob_store: BlobStore,
        http_client: httpx.Client,
        clock: Callable[[], float] = time.time,
    ):
        self._blob_store = blob_store
        self._client = http_client
        self._clock = clock

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    def _download(self, url: str) -> tuple[bytes, str | None]:
        response = self._client.get(url, follow_redirects=True)
        response.raise_for_status()
        return response.content, response.headers.get("content-type")

    def _load(self, locator: RemoteUrl | InlineBytes, category: str) -> tuple[bytes, str]:
        if isinstance(locator, InlineBytes):
            try:
                data = base64.b64decode(locator.b64, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise StorageFailure("Inline media is not valid base64") from exc
            return data, locator.mime
        try:
            data, content_type = self._download(locator.url)
        except httpx.HTTPError as exc:
            raise StorageFailure(f"Failed to download media: {exc}") from exc
        return data, resolve_mime(content_type, locator.url, category)

    def build_path(self, destination: PersistDestination, mime: str) -> str:
        stamp = int(self._clock() * 1000)
        return (
            f"{destination.caller_id}/{destination.category}/"
            f"{stamp}-{_slug(destination.name)}.{extension_for(mime)}"
        )

    def persist(self, locator: RemoteUrl | InlineBytes, destination: PersistDestination) -> PersistOutcome:
        original = locator.reference()
        try:
            data, mime = self._load(locator, destination.category)
            if not data:
                raise StorageFailure("Downloaded media is empty")
            path = self.build_path(destination, mime)
            try:
                url = self._blob_store.upload(data, path, mime)
            except FileExistsError as exc:
                raise StorageFailure(f"Storage object already exists: {path}") from exc
            except OSError as exc:
                raise StorageFailure(f"Upload failed: {exc}") from exc
        except StorageFailure as exc:
            logger.warning("Keeping original media reference: %s", exc)
            return PersistOutcome(url=original, original=original, persisted=False, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected persistence failure")
            return PersistOutcome(url=original, original=original, persisted=False, error=str(exc))

        logger.info("Persisted %s (%d bytes) to %s", mime, len(data), url)
        return PersistOutcome(url=url, original=original, persisted=True)
