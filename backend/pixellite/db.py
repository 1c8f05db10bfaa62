"""Database layer: processed-image history and the settings store.
SQLite by default; set DATABASE_URL or MYSQL_* for MySQL. Startup ensures required tables exist;
on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from pixellite import config as app_config
from pixellite.processing.models import (
    AIAnalysis,
    EnhanceMethod,
    OutputFormat,
    ProcessedImageRecord,
    ProcessMode,
)

logger = logging.getLogger("pixellite.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("history_items", "app_settings")
SETTINGS_KEY = "settings"


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _db_kind() -> str:
    return "SQLite" if _is_sqlite() else "MySQL"


def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = _make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def reset_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS history_items (
            id TEXT PRIMARY KEY,
            timestamp INTEGER NOT NULL,
            original_name TEXT NOT NULL,
            original_mime TEXT,
            original_bytes BLOB NOT NULL,
            processed_mime TEXT,
            processed_bytes BLOB NOT NULL,
            ai_original_bytes BLOB,
            meta_json TEXT,
            saved_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS app_settings (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS history_items (
            id VARCHAR(64) PRIMARY KEY,
            timestamp BIGINT NOT NULL,
            original_name VARCHAR(512) NOT NULL,
            original_mime VARCHAR(100),
            original_bytes LONGBLOB NOT NULL,
            processed_mime VARCHAR(100),
            processed_bytes LONGBLOB NOT NULL,
            ai_original_bytes LONGBLOB,
            meta_json TEXT,
            saved_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS app_settings (
            `key` VARCHAR(100) PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_sqlite():
            _create_sqlite_tables(conn)
        else:
            _create_mysql_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to SQLite file or in-memory so the app can start."""
    global _engine
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))

    try:
        _ensure_tables(get_engine())
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Will try fallback.", kind, e.orig, exc_info=True)
        if not _is_sqlite():
            try:
                sqlite_path = app_config.BASE_DIR / "data" / "pixellite.db"
                sqlite_path.parent.mkdir(parents=True, exist_ok=True)
                app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
                reset_engine()
                _ensure_tables(get_engine())
                logger.warning("MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.", sqlite_path)
                return
            except Exception as fallback_err:
                logger.exception("SQLite file fallback failed: %s. Trying in-memory SQLite.", fallback_err)

    # Last resort: in-memory SQLite so the app can run (history will not persist across restarts)
    app_config.DATABASE_URL = "sqlite:///:memory:"
    reset_engine()
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. History will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _record_meta(record: ProcessedImageRecord) -> str:
    return json.dumps({
        "quality_used": record.quality_used,
        "mode": record.mode.value,
        "enhance_method": record.enhance_method.value if record.enhance_method else None,
        "output_format": record.output_format.value,
        "ai_analysis": record.ai_analysis.to_dict() if record.ai_analysis else None,
        "ai_model_used": record.ai_model_used,
        "ai_generated_text": record.ai_generated_text,
        "ai_original_mime": record.ai_original_mime,
    })


def save_record(record: ProcessedImageRecord) -> None:
    """Insert or replace a history record."""
    params = {
        "id": record.id,
        "timestamp": record.timestamp,
        "original_name": record.original_name,
        "original_mime": record.original_mime,
        "original_bytes": record.original_bytes,
        "processed_mime": record.processed_mime,
        "processed_bytes": record.processed_bytes,
        "ai_original_bytes": record.ai_original_bytes,
        "meta_json": _record_meta(record),
        "now": _now_iso(),
    }
    with session() as conn:
        conn.execute(text("DELETE FROM history_items WHERE id = :id"), {"id": record.id})
        conn.execute(
            text("""
                INSERT INTO history_items (id, timestamp, original_name, original_mime, original_bytes,
                    processed_mime, processed_bytes, ai_original_bytes, meta_json, saved_at)
                VALUES (:id, :timestamp, :original_name, :original_mime, :original_bytes,
                    :processed_mime, :processed_bytes, :ai_original_bytes, :meta_json, :now)
            """),
            params,
        )


def save_records(records: list[ProcessedImageRecord]) -> None:
    for record in records:
        save_record(record)


_SELECT_RECORD = """
    SELECT id, timestamp, original_name, original_mime, original_bytes, processed_mime,
           processed_bytes, ai_original_bytes, meta_json
    FROM history_items
"""


def _row_to_record(row) -> ProcessedImageRecord:
    meta = json.loads(row[8]) if row[8] else {}
    method = meta.get("enhance_method")
    return ProcessedImageRecord(
        id=row[0],
        timestamp=int(row[1]),
        original_name=row[2],
        original_mime=row[3] or "",
        original_bytes=bytes(row[4]),
        processed_mime=row[5] or "",
        processed_bytes=bytes(row[6]),
        ai_original_bytes=bytes(row[7]) if row[7] is not None else None,
        quality_used=float(meta.get("quality_used", 0.0)),
        mode=ProcessMode(meta.get("mode") or ProcessMode.COMPRESS.value),
        enhance_method=EnhanceMethod(method) if method else None,
        output_format=OutputFormat(meta.get("output_format") or OutputFormat.ORIGINAL.value),
        ai_analysis=AIAnalysis.from_dict(meta.get("ai_analysis")),
        ai_model_used=meta.get("ai_model_used"),
        ai_generated_text=meta.get("ai_generated_text"),
        ai_original_mime=meta.get("ai_original_mime"),
        saved=True,
    )


def get_record(record_id: str) -> Optional[ProcessedImageRecord]:
    with get_engine().connect() as conn:
        row = conn.execute(text(_SELECT_RECORD + " WHERE id = :id"), {"id": record_id}).fetchone()
    return _row_to_record(row) if row else None


def list_records() -> list[ProcessedImageRecord]:
    """All history records, newest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(text(_SELECT_RECORD + " ORDER BY timestamp DESC")).fetchall()
    return [_row_to_record(r) for r in rows]


def delete_records(record_ids: list[str]) -> int:
    deleted = 0
    with session() as conn:
        for record_id in record_ids:
            result = conn.execute(text("DELETE FROM history_items WHERE id = :id"), {"id": record_id})
            deleted += result.rowcount or 0
    logger.info("Deleted %s history records", deleted)
    return deleted


def save_settings(settings: dict) -> None:
    key_col = "key" if _is_sqlite() else "`key`"
    params = {"key": SETTINGS_KEY, "value": json.dumps(settings), "now": _now_iso()}
    with session() as conn:
        conn.execute(text(f"DELETE FROM app_settings WHERE {key_col} = :key"), params)
        conn.execute(text(f"INSERT INTO app_settings ({key_col}, value_json, updated_at) VALUES (:key, :value, :now)"), params)


def load_settings() -> Optional[dict]:
    """Stored settings, or None if nothing was saved yet or the stored value is unreadable."""
    key_col = "key" if _is_sqlite() else "`key`"
    with get_engine().connect() as conn:
        row = conn.execute(text(f"SELECT value_json FROM app_settings WHERE {key_col} = :key"), {"key": SETTINGS_KEY}).fetchone()
    if not row:
        return None
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        logger.warning("Stored settings are not valid JSON; using defaults")
        return None


def effective_settings() -> dict:
    """Defaults overlaid with stored settings."""
    merged = json.loads(json.dumps(app_config.DEFAULT_SETTINGS))
    stored = load_settings() or {}
    for key, value in stored.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged
