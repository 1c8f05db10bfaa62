from .archive import RestoreResult, parse_archive, serialize_archive
from .sync import BackupEntry, BackupSyncService, ListCache, WebDAVConfig

__all__ = [
    "RestoreResult",
    "parse_archive",
    "serialize_archive",
    "BackupEntry",
    "BackupSyncService",
    "ListCache",
    "WebDAVConfig",
]
