"""Re-encode an already produced artifact into another container without reprocessing."""
import logging

from pixellite.processing.compression import encode_image
from pixellite.processing.decoder import open_image, sniff_mime
from pixellite.processing.models import FORMAT_TO_MIME, OutputFormat, ProcessedArtifact

logger = logging.getLogger("pixellite.converter")


def convert_format(data: bytes, target: OutputFormat, source_mime: str = "") -> ProcessedArtifact:
    """
    Change only the container of `data`. Pixels are kept at full size; PNG and WebP
    are written losslessly, JPEG at maximum quality.
    """
    target = OutputFormat(target)
    source_mime = source_mime or sniff_mime(data)
    if target == OutputFormat.ORIGINAL or FORMAT_TO_MIME[target] == source_mime:
        return ProcessedArtifact(data=data, mime_type=source_mime, requested_format=target)
    img = open_image(data)
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA")
    out = encode_image(img, target, lossless=True)
    logger.info("Converted %s (%s bytes) to %s (%s bytes)", source_mime, len(data), target.value, len(out))
    return ProcessedArtifact(data=out, mime_type=FORMAT_TO_MIME[target], requested_format=target)
