"""Conversion request/attempt models."""
from enum import Enum
from pathlib import Path
from typing import Optional


class ConversionStage(str, Enum):
    DECODING = "decoding"
    ENCODING = "encoding"
    VALIDATING = "validating"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class SourceType(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"

    @classmethod
    def from_pil_format(cls, fmt: Optional[str]) -> Optional["SourceType"]:
        return {"JPEG": cls.JPEG, "MPO": cls.JPEG, "PNG": cls.PNG, "GIF": cls.GIF}.get((fmt or "").upper())


class ConversionRequest:
    """One source image to convert. Never persisted."""

    def __init__(self, source_path: Path, source_type: SourceType):
        self.source_path = source_path
        self.source_type = source_type


class ConversionAttempt:
    """State of one conversion attempt, for logging and callers that want the numbers."""

    def __init__(self, source_path: Path, dest_path: Path):
        self.source_path = source_path
        self.dest_path = dest_path
        self.stage = ConversionStage.DECODING
        self.source_type: Optional[SourceType] = None
        self.quality: Optional[int] = None
        self.input_size: Optional[int] = None  # bytes
        self.output_size: Optional[int] = None  # bytes
        self.error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.stage == ConversionStage.DONE
