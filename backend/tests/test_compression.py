"""Tests for the canvas and algorithm compression strategies."""
import io

import pytest
from PIL import Image

from pixellite.processing import compression
from pixellite.processing.compression import (
    AlgorithmStrategy,
    CanvasStrategy,
    clamp_quality,
    compress,
    get_compression_strategy,
    palette_size_for_quality,
    pillow_quality,
)
from pixellite.processing.decoder import decode_image
from pixellite.processing.models import CompressionEngine, OutputFormat, ProcessingParams


def _params(value, engine=CompressionEngine.ALGORITHM, fmt=OutputFormat.ORIGINAL):
    return ProcessingParams(value=value, engine=engine, output_format=fmt)


class TestQualityMapping:
    def test_full_quality_is_capped_not_lossless(self):
        assert clamp_quality(1.0) == 0.92
        assert pillow_quality(clamp_quality(1.0)) == 92

    def test_quality_below_one_passes_through(self):
        assert clamp_quality(0.5) == 0.5
        assert clamp_quality(0.0) == 0.0

    @pytest.mark.parametrize(
        "quality, expected",
        [(0.0, 2), (0.004, 2), (0.5, 128), (0.75, 192), (1.0, 256)],
    )
    def test_palette_size(self, quality, expected):
        assert palette_size_for_quality(quality) == expected

    def test_palette_size_always_in_range(self):
        for step in range(0, 101):
            size = palette_size_for_quality(step / 100)
            assert 2 <= size <= 256


class TestCanvasStrategy:
    def test_always_writes_webp(self, png_bytes):
        buffer = decode_image(png_bytes, "image/png")
        artifact = CanvasStrategy().process(buffer, _params(0.7, CompressionEngine.CANVAS, OutputFormat.PNG))
        assert artifact.mime_type == "image/webp"
        assert artifact.actual_format == OutputFormat.WEBP
        assert artifact.requested_format == OutputFormat.PNG
        assert Image.open(io.BytesIO(artifact.data)).format == "WEBP"

    def test_full_quality_uses_cap(self, jpeg_bytes):
        buffer = decode_image(jpeg_bytes, "image/jpeg")
        artifact = CanvasStrategy().process(buffer, _params(1.0, CompressionEngine.CANVAS))
        assert artifact.encode_quality == 0.92


class TestAlgorithmStrategy:
    @pytest.mark.parametrize(
        "requested, source, expected",
        [
            (OutputFormat.ORIGINAL, "image/png", OutputFormat.PNG),
            (OutputFormat.ORIGINAL, "image/jpeg", OutputFormat.JPEG),
            (OutputFormat.ORIGINAL, "image/gif", OutputFormat.WEBP),
            (OutputFormat.ORIGINAL, "", OutputFormat.WEBP),
            (OutputFormat.JPEG, "image/png", OutputFormat.JPEG),
            (OutputFormat.WEBP, "image/jpeg", OutputFormat.WEBP),
        ],
    )
    def test_resolve_format(self, requested, source, expected):
        assert AlgorithmStrategy.resolve_format(requested, source) == expected

    def test_png_target_is_palette_quantized(self, png_bytes):
        buffer = decode_image(png_bytes, "image/png")
        artifact = AlgorithmStrategy().process(buffer, _params(0.05))
        assert artifact.mime_type == "image/png"
        assert artifact.palette_size == 13
        img = Image.open(io.BytesIO(artifact.data))
        assert img.mode == "P"
        assert len(img.getcolors(256)) <= 13

    def test_png_quality_zero_uses_two_colors(self, png_bytes):
        buffer = decode_image(png_bytes, "image/png")
        artifact = AlgorithmStrategy().process(buffer, _params(0.0))
        assert artifact.palette_size == 2
        assert len(Image.open(io.BytesIO(artifact.data)).getcolors(256)) <= 2

    def test_rgba_png_keeps_working(self, rgba_png_bytes):
        buffer = decode_image(rgba_png_bytes, "image/png")
        artifact = AlgorithmStrategy().process(buffer, _params(0.5))
        assert artifact.palette_size == 128

    def test_quantize_failure_falls_back_to_full_png(self, png_bytes, monkeypatch):
        def boom(img, palette_size):
            raise ValueError("quantizer exploded")

        monkeypatch.setattr(compression, "encode_png_quantized", boom)
        buffer = decode_image(png_bytes, "image/png")
        artifact = AlgorithmStrategy().process(buffer, _params(0.3))
        assert artifact.mime_type == "image/png"
        assert artifact.palette_size is None
        decoded = Image.open(io.BytesIO(artifact.data)).convert("RGBA")
        assert decoded.tobytes() == buffer.data

    def test_jpeg_target_uses_quality(self, jpeg_bytes):
        buffer = decode_image(jpeg_bytes, "image/jpeg")
        low = AlgorithmStrategy().process(buffer, _params(0.1))
        high = AlgorithmStrategy().process(buffer, _params(0.9))
        assert low.mime_type == "image/jpeg"
        assert low.size < high.size

    def test_jpeg_full_quality_is_capped(self, jpeg_bytes):
        buffer = decode_image(jpeg_bytes, "image/jpeg")
        artifact = AlgorithmStrategy().process(buffer, _params(1.0))
        assert artifact.encode_quality == 0.92

    def test_rgba_to_jpeg(self, rgba_png_bytes):
        buffer = decode_image(rgba_png_bytes, "image/png")
        artifact = AlgorithmStrategy().process(buffer, _params(0.6, fmt=OutputFormat.JPEG))
        assert Image.open(io.BytesIO(artifact.data)).format == "JPEG"


@pytest.mark.parametrize("engine", [CompressionEngine.CANVAS, CompressionEngine.ALGORITHM])
def test_every_ui_step_produces_output(engine, png_bytes):
    buffer = decode_image(png_bytes, "image/png")
    for step in range(0, 21):
        artifact = compress(buffer, _params(round(step * 0.05, 2), engine))
        assert artifact.size > 0


@pytest.mark.parametrize("engine", [CompressionEngine.CANVAS, CompressionEngine.ALGORITHM])
def test_repeat_runs_are_stable(engine, jpeg_bytes):
    buffer = decode_image(jpeg_bytes, "image/jpeg")
    first = compress(buffer, _params(0.6, engine))
    second = compress(buffer, _params(0.6, engine))
    assert first.mime_type == second.mime_type
    assert abs(first.size - second.size) <= max(64, first.size // 20)


def test_unknown_engine_rejected():
    with pytest.raises(ValueError):
        get_compression_strategy("turbo")
