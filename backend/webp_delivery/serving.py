"""Serve cached WebP artifacts in place of upload images, with ETag/304 handling."""
import hashlib
import logging
from pathlib import Path
from typing import Optional

from starlette.responses import Response

from webp_delivery.cache import CacheStore
from webp_delivery.capability import ClientCapability
from webp_delivery.config import CACHE_MAX_AGE, SOURCE_EXTENSIONS

logger = logging.getLogger("webp_delivery.serving")

WEBP_MEDIA_TYPE = "image/webp"


def compute_etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """If-None-Match comparison: comma-separated list, weak prefix ignored, '*' matches anything."""
    if not if_none_match:
        return False
    for candidate in if_none_match.split(","):
        candidate = candidate.strip()
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


def artifact_response(artifact: Path, if_none_match: Optional[str] = None) -> Response:
    """200 with the artifact bytes, or 304 with no body when the validator matches. Raises OSError if unreadable."""
    data = artifact.read_bytes()
    etag = compute_etag(data)
    headers = {
        "Cache-Control": f"public, max-age={CACHE_MAX_AGE}",
        "ETag": etag,
        "Vary": "Accept",
    }
    if etag_matches(if_none_match, etag):
        return Response(status_code=304, headers=headers)
    return Response(content=data, media_type=WEBP_MEDIA_TYPE, headers=headers)


class ImageInterceptor:
    """Decides whether an upload request is answered with a WebP artifact."""

    def __init__(self, store: CacheStore):
        self.store = store

    def resolve_source(self, relative_path: str) -> Optional[Path]:
        """Absolute source path under the image root, or None for anything that escapes it."""
        candidate = (self.store.image_root / relative_path.lstrip("/")).resolve()
        try:
            candidate.relative_to(self.store.image_root)
        except ValueError:
            return None
        return candidate

    def handle(
        self,
        relative_path: str,
        capability: ClientCapability,
        if_none_match: Optional[str] = None,
    ) -> Optional[Response]:
        """Return a response that ends the request, or None to let the original be served."""
        if Path(relative_path).suffix.lower() not in SOURCE_EXTENSIONS:
            return None
        source = self.resolve_source(relative_path)
        if source is None or not source.is_file():
            return None
        if not capability.accepts_webp:
            return None
        artifact = self.store.get_or_create(source)
        if artifact is None:
            return None
        try:
            return artifact_response(artifact, if_none_match)
        except OSError as e:
            logger.warning("Artifact %s disappeared before it could be served: %s", artifact, e)
            return None
