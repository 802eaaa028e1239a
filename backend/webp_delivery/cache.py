"""On-disk WebP artifact cache keyed by the source's logical path.

Artifacts live at ``<cache_dir>/<key>.webp``. The source mtime observed before a
conversion is recorded as the artifact's own mtime, so an entry is fresh while
``artifact mtime >= source mtime``. Conversions for one key are serialized with a
reference-counted lock; callers that waited re-check freshness and reuse the
artifact the first caller produced.
"""
import hashlib
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from webp_delivery.config import CACHE_DIR, IMAGE_ROOT
from webp_delivery.conversion.service import ConversionEngine, get_conversion_engine
from webp_delivery.errors import ConversionError, FileAccessError

logger = logging.getLogger("webp_delivery.cache")

ARTIFACT_SUFFIX = ".webp"


def cache_key(logical_path: str) -> str:
    """Stable digest of a path relative to the image root."""
    return hashlib.sha256(logical_path.encode("utf-8")).hexdigest()


def is_cache_key(value: str) -> bool:
    return len(value) == 64 and all(c in "0123456789abcdef" for c in value)


@dataclass
class CacheEntry:
    key: str
    artifact_path: Path
    source_path: Path
    source_mtime_ns: int


class KeyedLocks:
    """One lock per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}  # key -> [lock, users]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class CacheStore:
    def __init__(
        self,
        image_root: Union[str, Path] = IMAGE_ROOT,
        cache_dir: Union[str, Path] = CACHE_DIR,
        engine: Optional[ConversionEngine] = None,
    ):
        self.image_root = Path(image_root).resolve()
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.engine = engine or get_conversion_engine()
        self._locks = KeyedLocks()

    def logical_path(self, source_path: Union[str, Path]) -> str:
        """Path relative to the image root, POSIX separators. Raises ValueError outside the root."""
        return Path(source_path).resolve().relative_to(self.image_root).as_posix()

    def key_for(self, source_path: Union[str, Path]) -> str:
        return cache_key(self.logical_path(source_path))

    def artifact_path(self, key: str) -> Path:
        return self.cache_dir / f"{key}{ARTIFACT_SUFFIX}"

    def has_artifact(self, logical_path: str) -> bool:
        """Read-only existence check; never converts."""
        return self.artifact_path(cache_key(logical_path.lstrip("/"))).is_file()

    def lookup(self, source_path: Union[str, Path]) -> Optional[CacheEntry]:
        """Return the fresh entry for source, or None. Never converts."""
        source_path = Path(source_path)
        try:
            source_mtime_ns = source_path.stat().st_mtime_ns
        except OSError:
            return None
        key = self.key_for(source_path)
        artifact = self.artifact_path(key)
        try:
            recorded_ns = artifact.stat().st_mtime_ns
        except OSError:
            return None
        if recorded_ns < source_mtime_ns:
            return None
        return CacheEntry(key=key, artifact_path=artifact, source_path=source_path, source_mtime_ns=recorded_ns)

    def ensure(self, source_path: Union[str, Path]) -> CacheEntry:
        """Return a fresh entry, converting if needed. Raises FileAccessError or ConversionError."""
        source_path = Path(source_path)
        if not source_path.is_file():
            raise FileAccessError(f"File not accessible: {source_path.name}", source_path)
        entry = self.lookup(source_path)
        if entry is not None:
            return entry
        key = self.key_for(source_path)
        with self._locks.hold(key):
            entry = self.lookup(source_path)
            if entry is not None:
                logger.debug("Artifact for %s produced by a concurrent request", source_path.name)
                return entry
            try:
                source_mtime_ns = source_path.stat().st_mtime_ns
            except OSError as e:
                raise FileAccessError(f"File not accessible: {source_path.name}", source_path) from e
            artifact = self.artifact_path(key)
            try:
                self.engine.convert(source_path, artifact)
            except ConversionError:
                self._drop_stale(artifact)
                raise
            try:
                os.utime(artifact, ns=(time.time_ns(), source_mtime_ns))
            except OSError as e:
                logger.warning("Could not record source mtime on %s: %s", artifact, e)
            return CacheEntry(key=key, artifact_path=artifact, source_path=source_path, source_mtime_ns=source_mtime_ns)

    def get_or_create(self, source_path: Union[str, Path]) -> Optional[Path]:
        """Artifact path for source, or None when conversion is unavailable."""
        try:
            return self.ensure(source_path).artifact_path
        except (ConversionError, FileAccessError) as e:
            logger.info("WebP unavailable for %s: %s", source_path, e)
        except ValueError:
            logger.warning("Refusing to cache %s: outside image root %s", source_path, self.image_root)
        return None

    def _drop_stale(self, artifact: Path) -> None:
        if artifact.exists():
            try:
                artifact.unlink()
                logger.info("Removed stale artifact %s after failed regeneration", artifact.name)
            except OSError as e:
                logger.warning("Could not remove stale artifact %s: %s", artifact, e)


# Singleton
_cache_store: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    global _cache_store
    if _cache_store is None:
        _cache_store = CacheStore()
        logger.info("CacheStore initialized (image_root=%s, cache_dir=%s)", _cache_store.image_root, _cache_store.cache_dir)
    return _cache_store
