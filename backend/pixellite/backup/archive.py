"""
Backup archive codec.

An archive is a zip holding `metadata.json` (the manifest) and an `images/` folder
with the original and processed bytes of every item, named
`{id}_orig_{name}` / `{id}_comp_{name}` as referenced from the manifest.
"""
import io
import json
import logging
import mimetypes
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Optional

from pixellite.config import BACKUP_VERSION
from pixellite.errors import ArchiveFormatError
from pixellite.processing.decoder import sniff_mime
from pixellite.processing.models import (
    AIAnalysis,
    EnhanceMethod,
    OutputFormat,
    ProcessedImageRecord,
    ProcessMode,
)

logger = logging.getLogger("pixellite.archive")

MANIFEST_NAME = "metadata.json"
CONTENT_DIR = "images/"


@dataclass
class RestoreResult:
    records: list[ProcessedImageRecord] = field(default_factory=list)
    settings: Optional[dict] = None
    skipped: int = 0
    tag: str = ""
    created_at: Optional[int] = None


def _safe_name(name: str) -> str:
    return PurePosixPath(name.replace("\\", "/")).name or "image"


def original_ref(record: ProcessedImageRecord) -> str:
    return f"{record.id}_orig_{_safe_name(record.original_name)}"


def processed_ref(record: ProcessedImageRecord) -> str:
    return f"{record.id}_comp_{_safe_name(record.original_name)}"


def ai_original_ref(record: ProcessedImageRecord) -> str:
    return f"{record.id}_ai_{_safe_name(record.original_name)}"


def manifest_item(record: ProcessedImageRecord) -> dict:
    item = {
        "id": record.id,
        "originalName": record.original_name,
        "originalSize": record.original_size,
        "compressedSize": record.processed_size,
        "compressionRatio": record.change_ratio,
        "qualityUsed": record.quality_used,
        "timestamp": record.timestamp,
        "mode": record.mode.value,
        "originalFileNameRef": original_ref(record),
        "compressedFileNameRef": processed_ref(record),
        "originalType": record.original_mime,
        "compressedType": record.processed_mime,
        "outputFormat": record.output_format.value,
    }
    if record.ai_analysis is not None:
        item["aiData"] = record.ai_analysis.to_dict()
    if record.enhance_method is not None:
        item["enhanceMethod"] = record.enhance_method.value
    if record.ai_model_used:
        item["aiModelUsed"] = record.ai_model_used
    if record.ai_generated_text:
        item["aiGeneratedText"] = record.ai_generated_text
    if record.ai_original_bytes is not None:
        item["aiOriginalFileNameRef"] = ai_original_ref(record)
        item["aiOriginalType"] = record.ai_original_mime
    return item


def build_manifest(records: list[ProcessedImageRecord], settings: Optional[dict], tag: str, timestamp: Optional[int] = None) -> dict:
    manifest = {
        "version": BACKUP_VERSION,
        "timestamp": timestamp if timestamp is not None else int(time.time() * 1000),
        "tag": tag,
        "items": [manifest_item(r) for r in records],
    }
    if settings is not None:
        manifest["settings"] = settings
    return manifest


def serialize_archive(
    records: Iterable[ProcessedImageRecord],
    settings: Optional[dict] = None,
    tag: str = "",
    timestamp: Optional[int] = None,
) -> bytes:
    """Write records (in order) and the settings snapshot into one archive."""
    records = list(records)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for record in records:
            zf.writestr(CONTENT_DIR + original_ref(record), record.original_bytes)
            zf.writestr(CONTENT_DIR + processed_ref(record), record.processed_bytes)
            if record.ai_original_bytes is not None:
                zf.writestr(CONTENT_DIR + ai_original_ref(record), record.ai_original_bytes)
        manifest = build_manifest(records, settings, tag, timestamp)
        zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2, ensure_ascii=False))
    logger.info("Serialized archive with %s items (tag=%r)", len(records), tag)
    return buf.getvalue()


def _read_manifest(zf: zipfile.ZipFile) -> dict:
    try:
        raw = zf.read(MANIFEST_NAME)
    except KeyError:
        raise ArchiveFormatError(f"Invalid backup format: missing {MANIFEST_NAME}")
    try:
        manifest = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ArchiveFormatError(f"Invalid backup format: unreadable {MANIFEST_NAME}: {e}") from e
    if not isinstance(manifest, dict) or not isinstance(manifest.get("items", []), list):
        raise ArchiveFormatError(f"Invalid backup format: {MANIFEST_NAME} has no item list")
    return manifest


def _read_entry(zf: zipfile.ZipFile, ref: Optional[str]) -> Optional[bytes]:
    if not ref:
        return None
    try:
        return zf.read(CONTENT_DIR + ref)
    except KeyError:
        return None


def _record_from_item(item: dict, original: bytes, processed: bytes, ai_original: Optional[bytes]) -> ProcessedImageRecord:
    name = str(item.get("originalName") or "image")
    original_mime = item.get("originalType") or mimetypes.guess_type(name)[0] or sniff_mime(original)
    processed_mime = item.get("compressedType") or sniff_mime(processed)
    method = item.get("enhanceMethod")
    return ProcessedImageRecord(
        id=str(item["id"]),
        original_name=name,
        original_mime=original_mime,
        original_bytes=original,
        processed_bytes=processed,
        processed_mime=processed_mime,
        quality_used=float(item.get("qualityUsed", 0.0)),
        mode=ProcessMode(item.get("mode") or ProcessMode.COMPRESS.value),
        enhance_method=EnhanceMethod(method) if method else None,
        output_format=OutputFormat(item.get("outputFormat") or OutputFormat.ORIGINAL.value),
        timestamp=int(item.get("timestamp") or 0),
        ai_analysis=AIAnalysis.from_dict(item.get("aiData")),
        ai_model_used=item.get("aiModelUsed"),
        ai_generated_text=item.get("aiGeneratedText"),
        ai_original_bytes=ai_original,
        ai_original_mime=item.get("aiOriginalType") if ai_original is not None else None,
        saved=True,
    )


def parse_archive(data: bytes) -> RestoreResult:
    """
    Rebuild records from an archive. A missing or unreadable manifest is fatal;
    items whose content entries are missing are skipped and counted.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise ArchiveFormatError(f"Invalid backup format: not a zip archive ({e})") from e
    with zf:
        manifest = _read_manifest(zf)
        result = RestoreResult(
            settings=manifest.get("settings"),
            tag=str(manifest.get("tag") or ""),
            created_at=manifest.get("timestamp"),
        )
        for item in manifest.get("items", []):
            if not isinstance(item, dict) or "id" not in item:
                result.skipped += 1
                continue
            original = _read_entry(zf, item.get("originalFileNameRef"))
            processed = _read_entry(zf, item.get("compressedFileNameRef"))
            if original is None or processed is None:
                logger.warning("Skipping item %s: content entries missing from archive", item.get("id"))
                result.skipped += 1
                continue
            ai_original = _read_entry(zf, item.get("aiOriginalFileNameRef"))
            try:
                result.records.append(_record_from_item(item, original, processed, ai_original))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping item %s: invalid metadata (%s)", item.get("id"), e)
                result.skipped += 1
    logger.info("Parsed archive: %s items restored, %s skipped", len(result.records), result.skipped)
    return result
