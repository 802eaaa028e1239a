"""WebP conversion engine: decode, pick quality, encode to a temp file, validate, commit."""
import logging
import os
import uuid
from pathlib import Path
from typing import Optional, Union

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from webp_delivery.config import (
    DEFAULT_QUALITY,
    HIGH_COMPRESSION_QUALITY,
    SIZE_THRESHOLD,
    WEBP_METHOD,
)
from webp_delivery.conversion.models import (
    ConversionAttempt,
    ConversionRequest,
    ConversionStage,
    SourceType,
)
from webp_delivery.errors import CommitFailed, ConversionError, InvalidImage, NoSizeBenefit

logger = logging.getLogger("webp_delivery.conversion")

ARTIFACT_MODE = 0o644


def _clamp_quality(value: int) -> int:
    return max(1, min(100, int(value)))


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info


def _to_direct_color(img: Image.Image) -> Image.Image:
    """Expand palette/grayscale frames to RGB(A), keeping transparency."""
    if _has_alpha(img):
        return img if img.mode == "RGBA" else img.convert("RGBA")
    return img if img.mode == "RGB" else img.convert("RGB")


class ConversionEngine:
    """Converts one JPEG/PNG/GIF source into a WebP artifact. No retries; callers decide."""

    def __init__(
        self,
        default_quality: int = DEFAULT_QUALITY,
        high_compression_quality: int = HIGH_COMPRESSION_QUALITY,
        size_threshold: int = SIZE_THRESHOLD,
        method: int = WEBP_METHOD,
    ):
        self.default_quality = _clamp_quality(default_quality)
        self.high_compression_quality = _clamp_quality(high_compression_quality)
        self.size_threshold = size_threshold
        self.method = method

    def select_quality(self, source_type: SourceType, file_size: int) -> int:
        """JPEG gets the default quality; PNG/GIF and anything over the size threshold get high compression."""
        if file_size > self.size_threshold:
            return self.high_compression_quality
        if source_type == SourceType.JPEG:
            return self.default_quality
        return self.high_compression_quality

    def identify(self, source_path: Union[str, Path]) -> ConversionRequest:
        source_path = Path(source_path)
        try:
            with Image.open(source_path) as img:
                fmt = img.format
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise InvalidImage(f"Invalid image file: {e}", source_path) from e
        source_type = SourceType.from_pil_format(fmt)
        if source_type is None:
            raise InvalidImage(f"Unsupported format: {fmt}", source_path)
        return ConversionRequest(source_path, source_type)

    def _decode(self, img: Image.Image, source_type: SourceType) -> tuple[list[Image.Image], dict]:
        if source_type == SourceType.JPEG:
            img = ImageOps.exif_transpose(img)
            return [img if img.mode == "RGB" else img.convert("RGB")], {}
        n_frames = getattr(img, "n_frames", 1)
        if source_type == SourceType.GIF and n_frames > 1:
            frames: list[Image.Image] = []
            durations: list[int] = []
            for frame in ImageSequence.Iterator(img):
                durations.append(int(frame.info.get("duration", 100)))
                frames.append(frame.convert("RGBA"))
            return frames, {
                "save_all": True,
                "append_images": frames[1:],
                "duration": durations,
                "loop": int(img.info.get("loop", 0)),
            }
        img.load()
        return [_to_direct_color(img)], {}

    def _encode(self, frames: list[Image.Image], tmp_path: Path, save_kw: dict) -> None:
        frames[0].save(str(tmp_path), **save_kw)

    def convert(self, source_path: Union[str, Path], dest_path: Union[str, Path]) -> ConversionAttempt:
        """Convert source to dest. Raises ConversionError; nothing is left at dest or in temp on failure."""
        source_path = Path(source_path)
        dest_path = Path(dest_path)
        attempt = ConversionAttempt(source_path, dest_path)
        tmp_path = dest_path.with_name(f"{dest_path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            request = self.identify(source_path)
            attempt.source_type = request.source_type
            attempt.input_size = source_path.stat().st_size
            attempt.quality = self.select_quality(request.source_type, attempt.input_size)

            try:
                with Image.open(source_path) as img:
                    frames, save_kw = self._decode(img, request.source_type)
                    attempt.stage = ConversionStage.ENCODING
                    save_kw.update({"format": "WEBP", "quality": attempt.quality, "method": self.method})
                    dest_path.parent.mkdir(parents=True, exist_ok=True)
                    self._encode(frames, tmp_path, save_kw)
            except ConversionError:
                raise
            except (Image.DecompressionBombError, OSError, ValueError, KeyError) as e:
                if attempt.stage == ConversionStage.DECODING:
                    raise InvalidImage(f"Failed to decode image: {e}", source_path) from e
                raise ConversionError(f"WebP conversion failed: {e}", source_path) from e

            attempt.stage = ConversionStage.VALIDATING
            attempt.output_size = tmp_path.stat().st_size
            if attempt.output_size >= attempt.input_size:
                raise NoSizeBenefit(
                    f"WebP file is larger than original ({attempt.output_size} >= {attempt.input_size} bytes)",
                    source_path,
                )

            attempt.stage = ConversionStage.COMMITTING
            try:
                os.replace(tmp_path, dest_path)
            except OSError as e:
                raise CommitFailed(f"Failed to save WebP file: {e}", source_path) from e
            try:
                os.chmod(dest_path, ARTIFACT_MODE)
            except OSError as e:
                logger.warning("Could not set permissions on %s: %s", dest_path, e)

            attempt.stage = ConversionStage.DONE
            logger.info(
                "Converted %s -> %s (q=%s, %s -> %s bytes)",
                source_path.name, dest_path.name, attempt.quality, attempt.input_size, attempt.output_size,
            )
            return attempt
        except ConversionError as e:
            logger.info("Conversion of %s failed at %s: %s", source_path, attempt.stage.value, e)
            attempt.stage = ConversionStage.FAILED
            attempt.error = str(e)
            raise
        finally:
            if tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError as e:
                    logger.warning("Could not remove temp file %s: %s", tmp_path, e)


# Singleton
_engine: Optional[ConversionEngine] = None


def get_conversion_engine() -> ConversionEngine:
    global _engine
    if _engine is None:
        _engine = ConversionEngine()
        logger.info(
            "ConversionEngine initialized (quality=%s, high_compression=%s, threshold=%s bytes)",
            _engine.default_quality, _engine.high_compression_quality, _engine.size_threshold,
        )
    return _engine
