"""Upload and cache serving routes."""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse

from webp_delivery.cache import ARTIFACT_SUFFIX, CacheStore, get_cache_store, is_cache_key
from webp_delivery.capability import ClientCapability, capability_for_request
from webp_delivery.config import CACHE_URL_PATH, SOURCE_EXTENSIONS, UPLOAD_URL_PATH
from webp_delivery.serving import ImageInterceptor, artifact_response

logger = logging.getLogger("webp_delivery.api.media")
media_router = APIRouter(tags=["media"])


@media_router.get(CACHE_URL_PATH + "/{filename}")
def serve_artifact(
    filename: str,
    request: Request,
    store: CacheStore = Depends(get_cache_store),
):
    """Serve a cache artifact by key (the URLs emitted into rewritten HTML)."""
    key = filename[: -len(ARTIFACT_SUFFIX)]
    if not filename.endswith(ARTIFACT_SUFFIX) or not is_cache_key(key):
        raise HTTPException(404, "Not found")
    try:
        return artifact_response(store.artifact_path(key), request.headers.get("if-none-match"))
    except OSError:
        raise HTTPException(404, "Not found")


@media_router.get(UPLOAD_URL_PATH + "/{path:path}")
def serve_upload(
    path: str,
    request: Request,
    store: CacheStore = Depends(get_cache_store),
    capability: ClientCapability = Depends(capability_for_request),
):
    """Serve the WebP artifact to capable clients, otherwise the original file."""
    interceptor = ImageInterceptor(store)
    response = interceptor.handle(path, capability, request.headers.get("if-none-match"))
    if response is not None:
        return response
    source = interceptor.resolve_source(path)
    if source is None or not source.is_file():
        raise HTTPException(404, "File not found")
    headers = {"Vary": "Accept"} if source.suffix.lower() in SOURCE_EXTENSIONS else None
    return FileResponse(source, headers=headers)
