"""API routes for processing, history, settings and remote backups."""
import logging
from typing import Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from pixellite import db
from pixellite.backup.relay import RelayRequest, RequestsRelay, to_proxy_payload
from pixellite.backup.sync import BackupSyncService, WebDAVConfig
from pixellite.config import IMAGE_MIME_TYPES, MAX_IMAGE_SIZE_BYTES, OUTPUT_FORMATS, UPLOAD_CHUNK_SIZE
from pixellite.errors import (
    AIServiceError,
    ArchiveFormatError,
    BackupDeleteError,
    DecodeError,
    EncodeError,
    RecordLockedError,
    RemoteNetworkError,
    RemoteProtocolError,
    RemoteStatusError,
)
from pixellite.processing.export import create_export_zip, download_name
from pixellite.processing.models import OutputFormat, ProcessMode
from pixellite.processing.service import get_processing_service

logger = logging.getLogger("pixellite.api")
router = APIRouter(prefix="/api", tags=["pixellite"])

_sync_service: Optional[BackupSyncService] = None


def get_sync_service(settings: dict) -> BackupSyncService:
    """One sync service (and list cache) per WebDAV configuration."""
    global _sync_service
    config = WebDAVConfig.from_settings(settings)
    if not config.url:
        raise HTTPException(400, "WebDAV is not configured")
    if _sync_service is None or _sync_service.config != config:
        _sync_service = BackupSyncService(config)
    return _sync_service


def _http_error(e: Exception) -> HTTPException:
    """Map pipeline and remote errors to HTTP errors."""
    if isinstance(e, (DecodeError, ArchiveFormatError, ValueError)):
        return HTTPException(400, str(e))
    if isinstance(e, RecordLockedError):
        return HTTPException(409, str(e))
    if isinstance(e, KeyError):
        return HTTPException(404, "Record not found")
    if isinstance(e, BackupDeleteError):
        return HTTPException(502, {"message": str(e), "failed": sorted(e.failures), "failure_count": e.failure_count})
    if isinstance(e, RemoteStatusError):
        return HTTPException(502, {"message": str(e), "status": e.status, "body": e.body_excerpt})
    if isinstance(e, RemoteNetworkError):
        return HTTPException(504, str(e))
    if isinstance(e, (RemoteProtocolError, AIServiceError)):
        return HTTPException(502, str(e))
    logger.exception("Unexpected error: %s", e)
    return HTTPException(500, str(e))


def _record_response(record, applied: Optional[bool] = None) -> dict:
    out = record.summary(include_previews=True)
    if applied is not None:
        out["applied"] = applied
    return out


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/limits")
def get_limits():
    return {
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
        "output_formats": OUTPUT_FORMATS,
    }


@router.post("/process")
async def process_upload(
    file: UploadFile = File(...),
    mode: Optional[str] = Form(None),
    value: Optional[float] = Form(None),
):
    """Process an uploaded image with the configured engine. The result stays unsaved until /save."""
    content_type = (file.content_type or "").lower()
    if content_type and content_type not in IMAGE_MIME_TYPES:
        raise HTTPException(400, f"Unsupported format: {content_type}")
    data = bytearray()
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        data += chunk
        if len(data) > MAX_IMAGE_SIZE_BYTES:
            raise HTTPException(413, f"File too large (max {MAX_IMAGE_SIZE_BYTES // (1024 * 1024)} MB)")
    settings = db.effective_settings()
    try:
        process_mode = ProcessMode(mode or settings.get("default_process_mode", ProcessMode.COMPRESS.value))
        record = await run_in_threadpool(
            get_processing_service().create_record,
            bytes(data),
            file.filename or "image",
            content_type,
            mode=process_mode,
            settings=settings,
            value=value,
        )
    except (DecodeError, EncodeError, ValueError) as e:
        logger.exception("Processing failed for %s: %s", file.filename, e)
        raise _http_error(e)
    return _record_response(record)


def _current(record_id: str):
    record = get_processing_service().get_record(record_id)
    if record is None:
        stored = db.get_record(record_id)
        if stored is None:
            raise HTTPException(404, "Record not found")
        record = get_processing_service().register(stored)
    return record


@router.get("/process/{record_id}")
def get_processed(record_id: str):
    return _record_response(_current(record_id))


@router.post("/process/{record_id}/value")
def set_value(record_id: str, value: float = Body(..., embed=True)):
    """Re-run the current mode at a new quality/intensity."""
    _current(record_id)
    try:
        record, applied = get_processing_service().reprocess(record_id, value, db.effective_settings())
    except Exception as e:
        raise _http_error(e)
    return _record_response(record, applied)


@router.post("/process/{record_id}/mode")
def set_mode(record_id: str, mode: str = Body(..., embed=True)):
    _current(record_id)
    try:
        record, applied = get_processing_service().switch_mode(record_id, ProcessMode(mode), db.effective_settings())
    except Exception as e:
        raise _http_error(e)
    return _record_response(record, applied)


@router.post("/process/{record_id}/format")
def set_format(record_id: str, output_format: str = Body(..., embed=True)):
    """Change the output container; AI results are converted without calling the model again."""
    _current(record_id)
    try:
        record, applied = get_processing_service().change_output_format(record_id, OutputFormat(output_format), db.effective_settings())
    except Exception as e:
        raise _http_error(e)
    return _record_response(record, applied)


@router.post("/process/{record_id}/ai-enhance")
def ai_enhance(record_id: str, prompt: Optional[str] = Body(None, embed=True), model: Optional[str] = Body(None, embed=True)):
    _current(record_id)
    settings = db.effective_settings()
    try:
        record, applied = get_processing_service().enhance_with_ai(
            record_id,
            prompt=prompt or settings.get("ai_prompt"),
            model=model or settings.get("ai_model"),
        )
    except Exception as e:
        logger.exception("AI enhancement failed for %s: %s", record_id, e)
        raise _http_error(e)
    return _record_response(record, applied)


@router.post("/process/{record_id}/analyze")
def analyze(record_id: str, model: Optional[str] = Body(None, embed=True)):
    record = _current(record_id)
    settings = db.effective_settings()
    try:
        get_processing_service().analyze(record_id, model or settings.get("analysis_model"))
    except Exception as e:
        logger.exception("AI analysis failed for %s: %s", record_id, e)
        raise _http_error(e)
    if record.saved:
        db.save_record(record)
    return _record_response(record)


@router.post("/process/{record_id}/save")
def save_to_history(record_id: str):
    """Commit the record to history. It cannot be reprocessed afterwards."""
    _current(record_id)
    record = get_processing_service().commit(record_id)
    db.save_record(record)
    logger.info("Saved %s to history", record_id)
    return _record_response(record)


@router.get("/process/{record_id}/download")
def download_processed(record_id: str):
    record = _current(record_id)
    name = download_name(record)
    return Response(
        content=record.processed_bytes,
        media_type=record.processed_mime or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@router.get("/history")
def list_history():
    return {"items": [r.summary() for r in db.list_records()]}


@router.get("/history/{record_id}")
def get_history_item(record_id: str):
    record = db.get_record(record_id)
    if record is None:
        raise HTTPException(404, "Record not found")
    return _record_response(record)


@router.delete("/history")
def delete_history(ids: list[str] = Body(..., embed=True)):
    deleted = db.delete_records(ids)
    for record_id in ids:
        get_processing_service().discard(record_id)
    return {"deleted": deleted}


@router.post("/history/export")
def export_history(ids: Optional[list[str]] = Body(None, embed=True), include_originals: bool = Body(False, embed=True)):
    records = db.list_records()
    if ids:
        wanted = set(ids)
        records = [r for r in records if r.id in wanted]
    if not records:
        raise HTTPException(404, "No history items to export")
    return Response(
        content=create_export_zip(records, include_originals),
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="pixellite_export.zip"'},
    )


@router.get("/settings")
def get_settings():
    return db.effective_settings()


@router.put("/settings")
def put_settings(settings: dict = Body(...)):
    engine = settings.get("compression_engine")
    if engine is not None and engine not in ("canvas", "algorithm"):
        raise HTTPException(400, f"Unknown compression engine: {engine}")
    if settings.get("output_format") not in (None, *OUTPUT_FORMATS):
        raise HTTPException(400, f"Unknown output format: {settings.get('output_format')}")
    db.save_settings(settings)
    return db.effective_settings()


@router.post("/webdav-proxy")
def webdav_proxy(
    targetUrl: str = Body(...),
    method: str = Body(...),
    credentials: dict = Body(...),
    headers: Optional[dict] = Body(None),
    body: Optional[str] = Body(None),
    depth: Optional[str] = Body(None),
):
    """Relay one WebDAV request with Basic auth and return status plus body."""
    username = (credentials or {}).get("username")
    password = (credentials or {}).get("password")
    if not targetUrl or not method or not username or not password:
        raise HTTPException(400, "Missing required fields")
    if not targetUrl.startswith(("http://", "https://")):
        raise HTTPException(400, "Invalid target URL")
    request = RelayRequest(
        method=method.upper(),
        url=targetUrl,
        username=username,
        password=password,
        headers=headers or {},
        body=body.encode("utf-8") if body is not None else None,
        depth=depth,
    )
    try:
        response = RequestsRelay().send(request)
    except RemoteNetworkError as e:
        raise HTTPException(502, {"error": "Proxy request failed", "message": str(e)})
    return to_proxy_payload(response)


@router.post("/backups/check")
def check_backups():
    service = get_sync_service(db.effective_settings())
    try:
        connected = service.check_connection()
        ready = service.ensure_directory() if connected else False
    except RemoteProtocolError as e:
        logger.warning("WebDAV connection check failed: %s", e)
        return {"connected": False, "error": str(e)}
    return {"connected": connected and ready}


@router.get("/backups")
def list_backups(force_refresh: bool = Query(False)):
    service = get_sync_service(db.effective_settings())
    try:
        entries = service.list_backups(force_refresh=force_refresh)
    except RemoteProtocolError as e:
        raise _http_error(e)
    return {"backups": [e.to_dict() for e in entries]}


@router.post("/backups")
def create_backup(tag: str = Body("", embed=True)):
    settings = db.effective_settings()
    service = get_sync_service(settings)
    records = db.list_records()
    try:
        filename = service.create_backup(records, settings, tag)
    except RemoteProtocolError as e:
        logger.exception("Backup upload failed: %s", e)
        raise _http_error(e)
    return {"filename": filename, "items": len(records)}


@router.post("/backups/restore")
def restore_backup(filename: str = Body(..., embed=True), restore_settings: bool = Body(True, embed=True)):
    """Restore an archive into history; optionally replace the current settings."""
    service = get_sync_service(db.effective_settings())
    try:
        result = service.restore_backup(filename)
    except (RemoteProtocolError, ArchiveFormatError) as e:
        logger.exception("Restore of %s failed: %s", filename, e)
        raise _http_error(e)
    db.save_records(result.records)
    if restore_settings and result.settings:
        db.save_settings(result.settings)
    return {
        "restored": len(result.records),
        "skipped": result.skipped,
        "settings_restored": bool(restore_settings and result.settings),
    }


@router.delete("/backups")
def delete_backups(filenames: list[str] = Body(..., embed=True)):
    service = get_sync_service(db.effective_settings())
    try:
        deleted = service.delete_backups(filenames)
    except RemoteProtocolError as e:
        raise _http_error(e)
    return {"deleted": deleted}


@router.post("/backups/download")
def download_backups(filenames: list[str] = Body(..., embed=True)):
    if not filenames:
        raise HTTPException(400, "filenames required")
    service = get_sync_service(db.effective_settings())
    try:
        if len(filenames) == 1:
            content = service.fetch_backup(filenames[0])
            name = filenames[0]
        else:
            content = service.download_backups_as_zip(filenames)
            name = "PixelLite_Backups.zip"
    except RemoteProtocolError as e:
        raise _http_error(e)
    return Response(content=content, media_type="application/zip", headers={"Content-Disposition": f'attachment; filename="{name}"'})
