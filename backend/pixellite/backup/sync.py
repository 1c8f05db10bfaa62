"""Backup synchronization against a WebDAV store through the relay."""
import io
import logging
import re
import time
import xml.etree.ElementTree as ET
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import quote, unquote

from pixellite.backup.archive import RestoreResult, parse_archive, serialize_archive
from pixellite.backup.relay import ProgressCallback, RelayRequest, RelayResponse, RequestsRelay
from pixellite.config import (
    BACKUP_DIR_NAME,
    BACKUP_EXTENSION,
    BACKUP_PREFIX,
    LIST_CACHE_TTL,
    MAX_DELETE_WORKERS,
)
from pixellite.errors import BackupDeleteError, MalformedResponseError, RemoteProtocolError, RemoteStatusError, excerpt
from pixellite.processing.models import ProcessedImageRecord

logger = logging.getLogger("pixellite.sync")

MULTI_STATUS = 207
NOT_FOUND = 404
METHOD_NOT_ALLOWED = 405


@dataclass
class WebDAVConfig:
    url: str
    username: str = ""
    password: str = ""

    @classmethod
    def from_settings(cls, settings: dict) -> "WebDAVConfig":
        webdav = settings.get("webdav") or {}
        return cls(url=webdav.get("url", ""), username=webdav.get("username", ""), password=webdav.get("password", ""))


@dataclass(frozen=True)
class BackupEntry:
    name: str
    last_modified: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "last_modified": self.last_modified}


class ListCache:
    """Last listing result, valid for `ttl` seconds according to `clock`."""

    def __init__(self, ttl: float = LIST_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._timestamp: Optional[float] = None
        self._data: Optional[list[BackupEntry]] = None

    def get(self) -> Optional[list[BackupEntry]]:
        if self._data is None or self._timestamp is None:
            return None
        if self.clock() - self._timestamp >= self.ttl:
            return None
        return self._data

    def put(self, data: list[BackupEntry]) -> None:
        self._data = data
        self._timestamp = self.clock()

    def invalidate(self) -> None:
        self._data = None
        self._timestamp = None


def sanitize_tag(tag: str) -> str:
    return re.sub(r"[^a-zA-Z0-9\-_]", "", tag or "")


def backup_filename(tag: str, now: Optional[datetime] = None) -> str:
    """PixelLite_Backup_<YYYY-MM-DDTHH-MM-SS>_[<tag>].zip"""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H:%M:%S").replace(":", "-").replace(".", "-")
    return f"{BACKUP_PREFIX}{stamp}_[{sanitize_tag(tag)}]{BACKUP_EXTENSION}"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def parse_multistatus(body: bytes) -> list[BackupEntry]:
    """All (name, getlastmodified) pairs in a WebDAV multi-status document."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedResponseError(f"Unparsable multi-status body: {e}") from e
    entries = []
    for resp in root.iter():
        if _local(resp.tag) != "response":
            continue
        href = ""
        last_modified = ""
        for child in resp.iter():
            name = _local(child.tag)
            if name == "href" and not href:
                href = (child.text or "").strip()
            elif name == "getlastmodified" and not last_modified:
                last_modified = (child.text or "").strip()
        segments = [s for s in unquote(href).split("/") if s]
        if segments:
            entries.append(BackupEntry(name=segments[-1], last_modified=last_modified))
    return entries


def is_backup_name(name: str) -> bool:
    return name.startswith(BACKUP_PREFIX) and name.endswith(BACKUP_EXTENSION)


class BackupSyncService:
    """
    List, create, restore, delete and download backup archives in the
    `PixelLite/` folder of a WebDAV store. Nothing here retries; every failure is
    raised as a RemoteProtocolError subclass.
    """

    def __init__(self, config: WebDAVConfig, relay=None, cache: Optional[ListCache] = None, max_workers: int = MAX_DELETE_WORKERS):
        self.config = config
        self.relay = relay or RequestsRelay()
        self.cache = cache or ListCache()
        self.max_workers = max_workers

    @property
    def root_url(self) -> str:
        return self.config.url.rstrip("/")

    @property
    def container_url(self) -> str:
        return f"{self.root_url}/{BACKUP_DIR_NAME}/"

    def file_url(self, filename: str) -> str:
        return self.container_url + quote(filename)

    def _send(self, method: str, url: str, depth: Optional[str] = None, body: Optional[bytes] = None,
              headers: Optional[dict] = None, on_progress: Optional[ProgressCallback] = None) -> RelayResponse:
        request = RelayRequest(
            method=method,
            url=url,
            username=self.config.username,
            password=self.config.password,
            headers=headers or {},
            body=body,
            depth=depth,
        )
        if on_progress is not None:
            return self.relay.send(request, on_progress=on_progress)
        return self.relay.send(request)

    @staticmethod
    def _fail(method: str, url: str, response: RelayResponse) -> RemoteStatusError:
        return RemoteStatusError(method, url, response.status, excerpt(response.body))

    def check_connection(self) -> bool:
        """True when the store root answers a depth-0 listing with 200 or 207."""
        response = self._send("PROPFIND", self.root_url, depth="0")
        ok = response.ok or response.status == MULTI_STATUS
        if not ok:
            logger.warning("WebDAV connection check failed with status %s", response.status)
        return ok

    def _make_collection(self) -> bool:
        url = self.container_url
        response = self._send("MKCOL", url)
        if response.ok or response.status == METHOD_NOT_ALLOWED:
            logger.info("Backup folder ready at %s (MKCOL %s)", url, response.status)
            return True
        raise self._fail("MKCOL", url, response)

    def ensure_directory(self) -> bool:
        url = self.container_url
        response = self._send("PROPFIND", url, depth="0")
        if response.ok or response.status == MULTI_STATUS:
            return True
        if response.status != NOT_FOUND:
            raise self._fail("PROPFIND", url, response)
        return self._make_collection()

    def list_backups(self, force_refresh: bool = False) -> list[BackupEntry]:
        """Backups newest first. Served from the cache unless it expired or force_refresh is set."""
        if not force_refresh:
            cached = self.cache.get()
            if cached is not None:
                return cached
        url = self.container_url
        response = self._send("PROPFIND", url, depth="1")
        if response.status == NOT_FOUND:
            self._make_collection()
            entries: list[BackupEntry] = []
        elif response.ok or response.status == MULTI_STATUS:
            entries = [e for e in parse_multistatus(response.body) if is_backup_name(e.name)]
            entries.sort(key=lambda e: e.name, reverse=True)
        else:
            raise self._fail("PROPFIND", url, response)
        self.cache.put(entries)
        return entries

    def create_backup(
        self,
        records: Iterable[ProcessedImageRecord],
        settings: Optional[dict],
        tag: str = "",
        on_progress: Optional[ProgressCallback] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Upload a new archive and return its filename."""
        self.ensure_directory()
        archive = serialize_archive(records, settings, tag)
        filename = backup_filename(tag, now)
        url = self.file_url(filename)
        response = self._send("PUT", url, body=archive, headers={"Content-Type": "application/zip"}, on_progress=on_progress)
        if not response.ok:
            raise self._fail("PUT", url, response)
        self.cache.invalidate()
        logger.info("Uploaded backup %s (%s bytes)", filename, len(archive))
        return filename

    def fetch_backup(self, filename: str) -> bytes:
        url = self.file_url(filename)
        response = self._send("GET", url)
        if not response.ok:
            raise self._fail("GET", url, response)
        return response.body

    def restore_backup(self, filename: str) -> RestoreResult:
        return parse_archive(self.fetch_backup(filename))

    def _delete_one(self, filename: str) -> int:
        url = self.file_url(filename)
        response = self._send("DELETE", url)
        if response.ok or response.status == NOT_FOUND:
            return response.status
        raise self._fail("DELETE", url, response)

    def delete_backups(self, filenames: list[str]) -> int:
        """
        Delete all files concurrently. Not-found counts as deleted. Raises
        BackupDeleteError naming the failures if any delete failed otherwise.
        """
        if not filenames:
            return 0
        failures: dict[str, Exception] = {}
        deleted = 0
        with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(filenames)))) as executor:
            futures = {executor.submit(self._delete_one, name): name for name in filenames}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    status = future.result()
                    if status == NOT_FOUND:
                        logger.info("Backup %s already gone", name)
                    deleted += 1
                except RemoteProtocolError as e:
                    logger.error("Failed to delete %s: %s", name, e)
                    failures[name] = e
        if deleted:
            self.cache.invalidate()
        if failures:
            raise BackupDeleteError(failures, total=len(filenames))
        return deleted

    def download_backups(self, filenames: list[str], save: Callable[[str, bytes], None]) -> int:
        """Fetch each file in order and hand it to `save`. The first failure aborts the rest."""
        for count, filename in enumerate(filenames, start=1):
            save(filename, self.fetch_backup(filename))
            logger.debug("Downloaded %s (%s/%s)", filename, count, len(filenames))
        return len(filenames)

    def download_backups_as_zip(self, filenames: list[str]) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as zf:
            self.download_backups(filenames, zf.writestr)
        return buf.getvalue()
