"""Admin API: bulk conversion boundary calls and library import."""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException

from webp_delivery import config as app_config
from webp_delivery.bulk import BulkConversionJob, get_bulk_job
from webp_delivery.cache import CacheStore, get_cache_store
from webp_delivery.conversion.service import get_conversion_engine
from webp_delivery.errors import JobError, Unauthorized
from webp_delivery.library import import_directory

logger = logging.getLogger("webp_delivery.api")
router = APIRouter(prefix="/api", tags=["webp"])


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """When ADMIN_TOKEN is configured, admin calls must present it in X-Admin-Token."""
    expected = app_config.ADMIN_TOKEN
    if not expected:
        return
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        logger.warning("Rejected admin request with missing or invalid token")
        raise HTTPException(403, Unauthorized("Unauthorized").to_dict())


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/settings", dependencies=[Depends(require_admin)])
def get_settings():
    """Conversion tunables and batch sizes offered to the admin UI."""
    engine = get_conversion_engine()
    return {
        "default_quality": engine.default_quality,
        "high_compression_quality": engine.high_compression_quality,
        "size_threshold": engine.size_threshold,
        "batch_sizes": app_config.BATCH_SIZES,
        "default_batch_size": app_config.DEFAULT_BATCH_SIZE,
        "max_batch_size": app_config.MAX_BATCH_SIZE,
    }


@router.post("/bulk/advance", dependencies=[Depends(require_admin)])
def bulk_advance(
    batch_size: int = Body(app_config.DEFAULT_BATCH_SIZE, embed=True, ge=1, le=app_config.MAX_BATCH_SIZE),
    delete_originals: bool = Body(False, embed=True),
    job: BulkConversionJob = Depends(get_bulk_job),
):
    """Convert the next batch of library images; returns progress, percentage and remaining count."""
    try:
        result = job.advance(batch_size, delete_originals=delete_originals)
    except JobError as e:
        logger.info("Bulk advance refused: %s", e.message)
        raise HTTPException(e.status_code, e.to_dict())
    return result.to_dict()


@router.get("/bulk/progress", dependencies=[Depends(require_admin)])
def bulk_progress(job: BulkConversionJob = Depends(get_bulk_job)):
    progress = job.get_progress()
    return {
        "progress": progress.to_dict(),
        "state": progress.state.value,
        "percentage": progress.percentage,
        "remaining": progress.remaining,
    }


@router.post("/bulk/reset", dependencies=[Depends(require_admin)])
def bulk_reset(job: BulkConversionJob = Depends(get_bulk_job)):
    """Clear persisted progress unconditionally."""
    job.reset()
    return {"ok": True}


@router.post("/library/import", dependencies=[Depends(require_admin)])
def library_import(store: CacheStore = Depends(get_cache_store)):
    """Register JPEG/PNG files under the image root that the library does not know yet."""
    imported = import_directory(store.image_root)
    return {"imported": imported}
