"""Resumable bulk conversion of the media library, driven one batch per call.

Progress is read from and written back to the ``options`` table on every call, so any
worker can advance the job. Every fetched item moves ``processed`` forward by one,
whatever its outcome, so the next batch never re-fetches a failing item and the job
finishes in ``ceil(total / batch_size)`` calls.
"""
import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from webp_delivery import db
from webp_delivery.cache import CacheStore, get_cache_store
from webp_delivery.config import MAX_BULK_ERRORS, PROGRESS_OPTION_NAME
from webp_delivery.errors import ConversionError, FileAccessError, NoImagesFound, ProgressConflict

logger = logging.getLogger("webp_delivery.bulk")

WEBP_MIME = "image/webp"


class JobState(str, Enum):
    """Persisted job states. Scanning the library happens inside the first advance() and is never stored."""

    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    COMPLETE = "complete"


@dataclass
class BulkProgress:
    total: int = 0
    processed: int = 0
    current_batch: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.processed >= self.total

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.processed)

    @property
    def percentage(self) -> float:
        return self.processed / self.total * 100.0 if self.total else 0.0

    @property
    def state(self) -> JobState:
        if self.total == 0:
            return JobState.UNINITIALIZED
        return JobState.COMPLETE if self.complete else JobState.RUNNING

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "BulkProgress":
        data = data or {}
        return cls(
            total=int(data.get("total", 0)),
            processed=int(data.get("processed", 0)),
            current_batch=int(data.get("current_batch", 0)),
            errors=list(data.get("errors", [])),
        )


@dataclass
class BulkResult:
    progress: BulkProgress
    percentage: float
    remaining: int

    def to_dict(self) -> dict:
        return {"progress": self.progress.to_dict(), "percentage": self.percentage, "remaining": self.remaining}


class BulkConversionJob:
    def __init__(
        self,
        store: Optional[CacheStore] = None,
        option_name: str = PROGRESS_OPTION_NAME,
        max_errors: int = MAX_BULK_ERRORS,
    ):
        self.store = store or get_cache_store()
        self.option_name = option_name
        self.max_errors = max_errors
        self._lock = threading.Lock()

    def _load(self) -> tuple[Optional[BulkProgress], Optional[int]]:
        stored = db.get_option(self.option_name)
        if stored is None:
            return None, None
        value, version = stored
        return BulkProgress.from_dict(value), version

    def get_progress(self) -> BulkProgress:
        progress, _ = self._load()
        return progress or BulkProgress()

    def reset(self) -> None:
        with self._lock:
            db.delete_option(self.option_name)
        logger.info("Bulk conversion progress reset")

    def advance(self, batch_size: int, delete_originals: bool = False) -> BulkResult:
        """Process the next batch and persist progress. Raises NoImagesFound or ProgressConflict."""
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        with self._lock:
            progress, version = self._load()
            if progress is None or progress.total == 0:
                total = db.count_eligible_attachments()
                if total == 0:
                    raise NoImagesFound(
                        "No images found for conversion.",
                        "Please upload some JPEG or PNG images to the media library.",
                    )
                progress = BulkProgress(total=total)
                logger.info("Bulk conversion initialized: %s images", total)

            if progress.complete:
                return BulkResult(progress, progress.percentage, progress.remaining)

            batch = db.list_eligible_attachments(progress.processed, min(batch_size, progress.remaining))
            if not batch:
                logger.warning(
                    "Library has fewer eligible images than the recorded total (%s of %s processed); finishing job",
                    progress.processed, progress.total,
                )
                progress.processed = progress.total
            for record in batch:
                try:
                    self._process_item(record, delete_originals)
                except (ConversionError, FileAccessError, ValueError) as e:
                    self._record_error(progress, record, str(e))
                except Exception as e:
                    logger.exception("Unexpected error converting attachment %s", record["id"])
                    self._record_error(progress, record, f"{type(e).__name__}: {e}")
                progress.processed += 1
            progress.current_batch += 1

            try:
                db.save_option(self.option_name, progress.to_dict(), version)
            except db.OptionVersionConflict as e:
                raise ProgressConflict(
                    "Conversion progress was updated by another request.",
                    "Reload the progress and try again.",
                ) from e
            logger.info(
                "Batch %s done: %s/%s processed, %s errors",
                progress.current_batch, progress.processed, progress.total, len(progress.errors),
            )
            return BulkResult(progress, progress.percentage, progress.remaining)

    def _record_error(self, progress: BulkProgress, record: dict, reason: str) -> None:
        message = f"Error converting {Path(record['file_path']).name}: {reason}"
        if len(progress.errors) < self.max_errors:
            progress.errors.append(message)
        else:
            logger.warning("Error list full (%s); not recording: %s", self.max_errors, message)

    def _resolve(self, record: dict) -> Path:
        path = Path(record["file_path"])
        return path if path.is_absolute() else self.store.image_root / path

    def _process_item(self, record: dict, delete_originals: bool) -> None:
        if record["mime_type"] == WEBP_MIME:
            # Already converted and repointed on an earlier run
            return
        source = self._resolve(record)
        if not source.is_file() or not os.access(source, os.R_OK):
            raise FileAccessError(f"File not accessible: {source.name}", source)
        entry = self.store.ensure(source)
        if delete_originals:
            self._delete_original(record, source, entry.artifact_path)

    def _delete_original(self, record: dict, source: Path, artifact: Path) -> None:
        """Delete the original, then repoint the record, then drop size variants. A failed delete changes nothing."""
        try:
            size = artifact.stat().st_size
        except OSError as e:
            raise FileAccessError("WebP version not found before deletion attempt", artifact) from e
        if size == 0:
            raise FileAccessError("WebP file is empty", artifact)
        try:
            source.unlink()
        except OSError as e:
            raise FileAccessError(f"Failed to delete original file: {e}", source) from e
        db.repoint_attachment(record["id"], str(artifact.resolve()), WEBP_MIME, sizes=[])
        for name in record.get("sizes") or []:
            variant = source.parent / name
            try:
                variant.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove size variant %s: %s", variant, e)
        logger.info("Replaced original %s with %s", source.name, artifact.name)


# Singleton
_bulk_job: Optional[BulkConversionJob] = None


def get_bulk_job() -> BulkConversionJob:
    global _bulk_job
    if _bulk_job is None:
        _bulk_job = BulkConversionJob()
    return _bulk_job
