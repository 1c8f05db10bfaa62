"""Download naming and zip export of processed images."""
import io
import logging
import math
import zipfile
from pathlib import PurePosixPath
from typing import Iterable, Optional

from pixellite.processing.models import MIME_TO_EXTENSION, ProcessedImageRecord, ProcessMode, js_round

logger = logging.getLogger("pixellite.export")


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    k = 1024
    sizes = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes) / math.log(k))), len(sizes) - 1)
    value = round(num_bytes / (k ** i), max(0, decimals))
    text = f"{value:.{max(0, decimals)}f}".rstrip("0").rstrip(".") if decimals > 0 else str(int(value))
    return f"{text} {sizes[i]}"


def _split_name(name: str) -> tuple[str, str]:
    dot = name.rfind(".")
    if dot == -1:
        return name, ""
    return name[:dot], name[dot:]


def processed_filename(original_name: str, value, mode: ProcessMode = ProcessMode.COMPRESS, ai_model: Optional[str] = None) -> str:
    """
    <name>_compressed_<ratio>%<ext>, <name>_enhanced_<intensity%>%<ext> or <name>_<model><ext>.
    For compression `value` is the change ratio, for enhancement the 0-1 intensity.
    """
    base, ext = _split_name(original_name)
    if ProcessMode(mode) == ProcessMode.ENHANCE:
        if ai_model:
            return f"{base}_{ai_model}{ext}"
        return f"{base}_enhanced_{js_round(value * 100)}%{ext}"
    return f"{base}_compressed_{value}%{ext}"


def download_name(record: ProcessedImageRecord) -> str:
    """Processed filename with the extension of the container that was actually written."""
    name = PurePosixPath(record.original_name).name or "image"
    ext = MIME_TO_EXTENSION.get(record.processed_mime)
    if ext and record.processed_mime != record.original_mime:
        name = _split_name(name)[0] + ext
    value = record.quality_used if record.mode == ProcessMode.ENHANCE else record.change_ratio
    return processed_filename(name, value, record.mode, record.ai_model_used)


class _UniqueNames:
    def __init__(self):
        self._used: set[str] = set()

    def __call__(self, filename: str) -> str:
        name = filename
        base, ext = _split_name(filename)
        counter = 1
        while name in self._used:
            name = f"{base}({counter}){ext}"
            counter += 1
        self._used.add(name)
        return name


def create_export_zip(records: Iterable[ProcessedImageRecord], include_originals: bool = False) -> bytes:
    """Zip of processed outputs (and optionally originals), with name collisions suffixed (1), (2)..."""
    unique = _UniqueNames()
    buf = io.BytesIO()
    count = 0
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for record in records:
            zf.writestr(unique(download_name(record)), record.processed_bytes)
            if include_originals:
                zf.writestr(unique(PurePosixPath(record.original_name).name or "image"), record.original_bytes)
            count += 1
    logger.info("Created export zip with %s images (originals=%s)", count, include_originals)
    return buf.getvalue()
