from .service import ConversionEngine, get_conversion_engine
from .models import ConversionAttempt, ConversionRequest, ConversionStage, SourceType

__all__ = [
    "ConversionEngine",
    "get_conversion_engine",
    "ConversionAttempt",
    "ConversionRequest",
    "ConversionStage",
    "SourceType",
]
