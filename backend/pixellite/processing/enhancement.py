"""Enhancement strategies: convolution sharpening and AI regeneration."""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np

from pixellite.config import AI_IMAGE_MODEL, AI_PROMPT, ENHANCE_ENCODE_QUALITY
from pixellite.errors import AIServiceError
from pixellite.processing.compression import encode_image
from pixellite.processing.decoder import to_image
from pixellite.processing.models import (
    FORMAT_TO_MIME,
    EnhanceMethod,
    OutputFormat,
    PixelBuffer,
    ProcessedArtifact,
    ProcessingParams,
    data_url,
)

logger = logging.getLogger("pixellite.enhancement")


def sharpen(buffer: PixelBuffer, intensity: float) -> PixelBuffer:
    """
    Blend each interior pixel with a 4-neighbour sharpening kernel
    (5*center - up - down - left - right) by `intensity`.
    The 1-pixel border and the alpha channel are left untouched.
    """
    if intensity <= 0 or buffer.width < 3 or buffer.height < 3:
        return buffer
    pixels = np.frombuffer(buffer.data, dtype=np.uint8).reshape(buffer.height, buffer.width, 4)
    rgb = pixels[:, :, :3].astype(np.float64)
    center = rgb[1:-1, 1:-1]
    kernel = center * 5 - rgb[:-2, 1:-1] - rgb[2:, 1:-1] - rgb[1:-1, :-2] - rgb[1:-1, 2:]
    blended = kernel * intensity + center * (1 - intensity)
    out = pixels.copy()
    out[1:-1, 1:-1, :3] = np.rint(np.clip(blended, 0, 255)).astype(np.uint8)
    return PixelBuffer(width=buffer.width, height=buffer.height, data=out.tobytes(), source_mime=buffer.source_mime)


def enhancement_output_format(source_mime: str) -> OutputFormat:
    return OutputFormat.PNG if source_mime == "image/png" else OutputFormat.JPEG


class EnhancementStrategy(ABC):
    method: EnhanceMethod

    @abstractmethod
    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        ...


class AlgorithmEnhancer(EnhancementStrategy):
    method = EnhanceMethod.ALGORITHM

    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        fmt = enhancement_output_format(buffer.source_mime)
        sharpened = sharpen(buffer, params.value)
        data = encode_image(to_image(sharpened), fmt, ENHANCE_ENCODE_QUALITY)
        return ProcessedArtifact(
            data=data,
            mime_type=FORMAT_TO_MIME[fmt],
            requested_format=params.output_format,
            encode_quality=ENHANCE_ENCODE_QUALITY,
        )


class AIEnhancer(EnhancementStrategy):
    """Sends the image and a prompt to the AI relay and returns the generated image as-is."""

    method = EnhanceMethod.AI

    def __init__(self, client, prompt: str = AI_PROMPT, model: str = AI_IMAGE_MODEL):
        self.client = client
        self.prompt = prompt
        self.model = model
        self.last_text: Optional[str] = None

    def process(self, buffer: PixelBuffer, params: ProcessingParams) -> ProcessedArtifact:
        source = encode_image(to_image(buffer), OutputFormat.JPEG, ENHANCE_ENCODE_QUALITY)
        result = self.client.generate_enhanced_image(data_url(source, "image/jpeg"), self.prompt, self.model)
        self.last_text = result.text
        if result.image is None:
            raise AIServiceError(f"Model {self.model} returned no image" + (f": {result.text[:200]}" if result.text else ""))
        logger.info("AI model %s returned %s bytes (%s)", self.model, len(result.image), result.mime_type)
        return ProcessedArtifact(data=result.image, mime_type=result.mime_type, requested_format=params.output_format)


def get_enhancement_strategy(method, client=None, prompt: str = AI_PROMPT, model: str = AI_IMAGE_MODEL) -> EnhancementStrategy:
    method = EnhanceMethod(method)
    if method == EnhanceMethod.AI:
        if client is None:
            raise ValueError("AI enhancement requires an AI client")
        return AIEnhancer(client, prompt=prompt, model=model)
    return AlgorithmEnhancer()
