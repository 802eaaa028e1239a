import os
import tempfile
import threading
import time

# Keep config's import-time directories and database out of the source tree.
_TMP = tempfile.mkdtemp(prefix="webp-delivery-tests-")
os.environ.setdefault("IMAGE_ROOT", os.path.join(_TMP, "uploads"))
os.environ.setdefault("CACHE_DIR", os.path.join(_TMP, "cache"))
os.environ.setdefault("SITE_DIR", os.path.join(_TMP, "site"))
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(_TMP, "default.db"))

import pytest
from PIL import Image

from webp_delivery import config as app_config
from webp_delivery import db
from webp_delivery.cache import CacheStore
from webp_delivery.conversion.service import ConversionEngine


def gradient_image(size=(128, 128)) -> Image.Image:
    w, h = size
    img = Image.new("RGB", size)
    img.putdata([(x * 255 // w, y * 255 // h, (x + y) * 255 // (w + h)) for y in range(h) for x in range(w)])
    return img


class CountingEngine(ConversionEngine):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    def convert(self, source_path, dest_path):
        self.calls += 1
        return super().convert(source_path, dest_path)


class FakeEngine:
    """Writes a small fixed artifact without decoding; optionally slow or failing."""

    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def convert(self, source_path, dest_path):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        tmp = dest_path.with_name(dest_path.name + ".tmp")
        tmp.write_bytes(b"RIFF\x10\x00\x00\x00WEBPVP8 fake")
        os.replace(tmp, dest_path)


@pytest.fixture
def image_root(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def engine():
    return CountingEngine(default_quality=80, high_compression_quality=60, size_threshold=100 * 1024)


@pytest.fixture
def store(image_root, cache_dir, engine):
    return CacheStore(image_root, cache_dir, engine)


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_store(image_root, cache_dir, fake_engine):
    return CacheStore(image_root, cache_dir, fake_engine)


@pytest.fixture
def make_jpeg(image_root):
    """Smooth JPEG saved at maximum quality, so WebP always wins on size."""

    def _make(name="banner.jpg", size=(128, 128)):
        path = image_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        gradient_image(size).save(path, format="JPEG", quality=100, subsampling=0)
        return path

    return _make


@pytest.fixture
def make_png(image_root):
    """Noisy RGBA PNG with a fully transparent left half and half-transparent right half."""

    def _make(name="logo.png", size=(160, 160)):
        path = image_root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        w, h = size
        img = Image.frombytes("RGB", size, os.urandom(w * h * 3))
        alpha = Image.new("L", size, 128)
        alpha.paste(0, (0, 0, w // 2, h))
        img.putalpha(alpha)
        img.save(path, format="PNG")
        return path

    return _make


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setattr(app_config, "DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    db.dispose_engine()
    db.init_db()
    yield
    db.dispose_engine()
