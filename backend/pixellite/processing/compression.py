"""Compression strategies: fast single-container ("canvas") and multi-format ("algorithm")."""
import io
import logging
from abc import ABC, abstractmethod
from typing import Optional

from PIL import Image

from pixellite.config import HIGH_QUALITY_CAP, MAX_PALETTE_SIZE, MIN_PALETTE_SIZE
from pixellite.errors import EncodeError
from pixellite.processing.decoder import to_image
from pixellite.processing.models import (
    FORMAT_TO_MIME,
    CompressionEngine,
    OutputFormat,
    PixelBuffer,
    ProcessedArtifact,
    ProcessingParams,
    js_round,
)

logger = logging.getLogger("pixellite.compression")


def clamp_quality(quality: float) -> float:
    """Quality >= 1.0 means "best lossy", never lossless."""
    return HIGH_QUALITY_CAP if quality >= 1.0 else max(0.0, quality)


def pillow_quality(quality: float) -> int:
    """Map a 0.0-1.0 scalar to Pillow's 0-100 quality scale."""
    return max(0, min(100, js_round(quality * 100)))


def palette_size_for_quality(quality: float) -> int:
    return max(MIN_PALETTE_SIZE, min(MAX_PALETTE_SIZE, js_round(quality * 256)))


def encode_image(img: Image.Image, fmt: OutputFormat, quality: Optional[float] = None, lossless: bool = False) -> bytes:
    """
    Encode a Pillow image into webp/jpeg/png bytes.
    quality is the 0.0-1.0 scalar; it is passed through unclamped.
    """
    buf = io.BytesIO()
    save_kw: dict
    if fmt == OutputFormat.WEBP:
        if lossless:
            save_kw = {"format": "WEBP", "lossless": True, "exact": True}
        else:
            save_kw = {"format": "WEBP", "quality": pillow_quality(quality if quality is not None else HIGH_QUALITY_CAP)}
    elif fmt == OutputFormat.JPEG:
        if img.mode != "RGB":
            img = img.convert("RGB")
        q = 1.0 if lossless else (quality if quality is not None else HIGH_QUALITY_CAP)
        save_kw = {"format": "JPEG", "quality": pillow_quality(q), "optimize": True}
        if lossless:
            save_kw["subsampling"] = 0
    elif fmt == OutputFormat.PNG:
        save_kw = {"format": "PNG", "optimize": True}
    else:
        raise EncodeError(f"Cannot encode to container: {fmt}")
    try:
        img.save(buf, **save_kw)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"{fmt.value} encode failed: {e}") from e
    return buf.getvalue()


def encode_png_quantized(img: Image.Image, palette_size: int) -> bytes:
    """Lossy PNG: reduce to palette_size colors, then encode."""
    quantized = img.quantize(colors=palette_size, method=Image.Quantize.FASTOCTREE)
    buf = io.BytesIO()
    quantized.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


class CompressionStrategy(ABC):
    engine: CompressionEngine

    @abstractmethod
    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        ...


class CanvasStrategy(CompressionStrategy):
    """Always writes WebP at the (clamped) quality, whatever format was requested."""

    engine = CompressionEngine.CANVAS

    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        quality = clamp_quality(params.value)
        data = encode_image(to_image(buffer), OutputFormat.WEBP, quality)
        if params.output_format not in (OutputFormat.ORIGINAL, OutputFormat.WEBP):
            logger.info("Canvas engine wrote webp although %s was requested", params.output_format.value)
        return ProcessedArtifact(
            data=data,
            mime_type=FORMAT_TO_MIME[OutputFormat.WEBP],
            requested_format=params.output_format,
            encode_quality=quality,
        )


class AlgorithmStrategy(CompressionStrategy):
    """Per-container compression with palette-quantized (lossy) PNG."""

    engine = CompressionEngine.ALGORITHM

    @staticmethod
    def resolve_format(output_format: OutputFormat, source_mime: str) -> OutputFormat:
        if output_format != OutputFormat.ORIGINAL:
            return output_format
        if source_mime == "image/png":
            return OutputFormat.PNG
        if source_mime == "image/jpeg":
            return OutputFormat.JPEG
        return OutputFormat.WEBP

    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        target = self.resolve_format(params.output_format, buffer.source_mime)
        img = to_image(buffer)
        if target == OutputFormat.PNG:
            palette = palette_size_for_quality(params.value)
            try:
                data = encode_png_quantized(img, palette)
            except (OSError, ValueError) as e:
                logger.warning("Quantized PNG encode failed (%s colors): %s; using full palette", palette, e)
                data = encode_image(img, OutputFormat.PNG)
                palette = None
            return ProcessedArtifact(
                data=data,
                mime_type=FORMAT_TO_MIME[OutputFormat.PNG],
                requested_format=params.output_format,
                palette_size=palette,
            )
        quality = clamp_quality(params.value)
        return ProcessedArtifact(
            data=encode_image(img, target, quality),
            mime_type=FORMAT_TO_MIME[target],
            requested_format=params.output_format,
            encode_quality=quality,
        )


_STRATEGIES = {
    CompressionEngine.CANVAS: CanvasStrategy(),
    CompressionEngine.ALGORITHM: AlgorithmStrategy(),
}


def get_compression_strategy(engine) -> CompressionStrategy:
    try:
        return _STRATEGIES[CompressionEngine(engine)]
    except ValueError:
        raise ValueError(f"Unknown compression engine: {engine}")


def compress(buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
    return get_compression_strategy(params.engine).process(buffer, params)
