"""Processing models: pixel buffers, parameters, artifacts and history records."""
import base64
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ProcessMode(str, Enum):
    COMPRESS = "compress"
    ENHANCE = "enhance"


class EnhanceMethod(str, Enum):
    ALGORITHM = "algorithm"
    AI = "ai"


class CompressionEngine(str, Enum):
    CANVAS = "canvas"
    ALGORITHM = "algorithm"


class OutputFormat(str, Enum):
    ORIGINAL = "original"
    WEBP = "webp"
    PNG = "png"
    JPEG = "jpeg"


FORMAT_TO_MIME = {
    OutputFormat.WEBP: "image/webp",
    OutputFormat.PNG: "image/png",
    OutputFormat.JPEG: "image/jpeg",
}
MIME_TO_FORMAT = {mime: fmt for fmt, mime in FORMAT_TO_MIME.items()}
MIME_TO_EXTENSION = {"image/webp": ".webp", "image/png": ".png", "image/jpeg": ".jpg"}
# Pillow format name -> mime
PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp", "GIF": "image/gif",
    "BMP": "image/bmp", "TIFF": "image/tiff", "AVIF": "image/avif",
}


@dataclass(frozen=True)
class PixelBuffer:
    """Decoded RGBA raster. `data` holds width * height * 4 bytes, row-major."""

    width: int
    height: int
    data: bytes
    source_mime: str = ""

    def __post_init__(self):
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(f"RGBA plane has {len(self.data)} bytes, expected {expected}")


@dataclass(frozen=True)
class ProcessingParams:
    """Caller-supplied processing parameters. `value` is quality (compress) or intensity (enhance)."""

    value: float
    mode: ProcessMode = ProcessMode.COMPRESS
    engine: CompressionEngine = CompressionEngine.ALGORITHM
    enhance_method: EnhanceMethod = EnhanceMethod.ALGORITHM
    output_format: OutputFormat = OutputFormat.ORIGINAL

    def __post_init__(self):
        if not 0.0 <= self.value <= 1.0:
            raise ValueError(f"Quality/intensity must be within [0, 1], got {self.value}")


@dataclass(frozen=True)
class ProcessedArtifact:
    """Encoded output of one processing call.

    `requested_format` is what the caller asked for, `mime_type` is the container
    that was actually written. They differ for the canvas engine, which always
    writes WebP.
    """

    data: bytes
    mime_type: str
    requested_format: OutputFormat = OutputFormat.ORIGINAL
    palette_size: Optional[int] = None
    encode_quality: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def actual_format(self) -> Optional[OutputFormat]:
        return MIME_TO_FORMAT.get(self.mime_type)


@dataclass
class AIAnalysis:
    description: str
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"description": self.description, "tags": list(self.tags)}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AIAnalysis"]:
        if not data:
            return None
        tags = data.get("tags")
        return cls(description=str(data.get("description") or ""), tags=list(tags) if isinstance(tags, list) else [])


def js_round(value: float) -> int:
    """Round half up, matching the ratios the web client has always displayed."""
    return int(math.floor(value + 0.5))


def compression_ratio(original_size: int, processed_size: int) -> int:
    """Percentage saved, signed: positive when the output is smaller."""
    if original_size <= 0:
        return 0
    return js_round((original_size - processed_size) / original_size * 100)


def format_size_change(original_size: int, processed_size: int) -> str:
    """Growth/shrink label used for enhancement results, e.g. "+20%" or "-12.5%"."""
    diff = processed_size - original_size
    if diff == 0 or original_size <= 0:
        return "0%"
    pct = f"{abs(diff) / original_size * 100:.1f}"
    if pct.endswith(".0"):
        pct = pct[:-2]
    return f"+{pct}%" if diff > 0 else f"-{pct}%"


def data_url(data: bytes, mime_type: str) -> str:
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'application/octet-stream'};base64,{b64}"


_last_id = 0
_id_lock = threading.Lock()


def new_record_id() -> str:
    """Millisecond timestamp, bumped when two records are created within the same millisecond."""
    global _last_id
    with _id_lock:
        _last_id = max(_last_id + 1, int(time.time() * 1000))
        return str(_last_id)


@dataclass
class ProcessedImageRecord:
    """One processed image: immutable original plus the current processed output.

    Sizes and the change ratio are always derived from the byte payloads.
    """

    id: str
    original_name: str
    original_mime: str
    original_bytes: bytes
    processed_bytes: bytes
    processed_mime: str
    quality_used: float
    mode: ProcessMode = ProcessMode.COMPRESS
    enhance_method: Optional[EnhanceMethod] = None
    output_format: OutputFormat = OutputFormat.ORIGINAL
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    ai_analysis: Optional[AIAnalysis] = None
    ai_model_used: Optional[str] = None
    ai_generated_text: Optional[str] = None
    ai_original_bytes: Optional[bytes] = None
    ai_original_mime: Optional[str] = None
    saved: bool = False

    @property
    def original_size(self) -> int:
        return len(self.original_bytes)

    @property
    def processed_size(self) -> int:
        return len(self.processed_bytes)

    @property
    def change_ratio(self) -> int:
        return compression_ratio(self.original_size, self.processed_size)

    @property
    def size_change(self) -> str:
        return format_size_change(self.original_size, self.processed_size)

    @property
    def original_preview(self) -> str:
        return data_url(self.original_bytes, self.original_mime)

    @property
    def processed_preview(self) -> str:
        return data_url(self.processed_bytes, self.processed_mime)

    @property
    def is_ai_result(self) -> bool:
        return self.mode == ProcessMode.ENHANCE and self.enhance_method == EnhanceMethod.AI and self.ai_model_used is not None

    def apply_artifact(self, artifact: ProcessedArtifact, quality_used: float) -> None:
        self.processed_bytes = artifact.data
        self.processed_mime = artifact.mime_type
        self.output_format = artifact.requested_format
        self.quality_used = quality_used

    def summary(self, include_previews: bool = False) -> dict:
        out = {
            "id": self.id,
            "original_name": self.original_name,
            "original_mime": self.original_mime,
            "original_size": self.original_size,
            "processed_mime": self.processed_mime,
            "processed_size": self.processed_size,
            "change_ratio": self.change_ratio,
            "size_change": self.size_change,
            "quality_used": self.quality_used,
            "mode": self.mode.value,
            "enhance_method": self.enhance_method.value if self.enhance_method else None,
            "output_format": self.output_format.value,
            "timestamp": self.timestamp,
            "ai_analysis": self.ai_analysis.to_dict() if self.ai_analysis else None,
            "ai_model_used": self.ai_model_used,
            "ai_generated_text": self.ai_generated_text,
            "saved": self.saved,
        }
        if include_previews:
            out["original_preview"] = self.original_preview
            out["processed_preview"] = self.processed_preview
        return out
