"""Generic method + URL + credentials relay to the remote file store."""
import base64
import io
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests
from requests.auth import HTTPBasicAuth

from pixellite.config import RELAY_TIMEOUT, RELAY_USER_AGENT
from pixellite.errors import RemoteNetworkError

logger = logging.getLogger("pixellite.relay")

ProgressCallback = Callable[[float], None]

BINARY_CONTENT_TYPES = ("application/zip", "application/octet-stream")


@dataclass
class RelayRequest:
    method: str
    url: str
    username: str = ""
    password: str = ""
    headers: dict = field(default_factory=dict)
    body: Optional[bytes] = None
    depth: Optional[str] = None


@dataclass
class RelayResponse:
    status: int
    reason: str = ""
    body: bytes = b""
    headers: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""


class ProgressReader(io.BytesIO):
    """
    In-memory body that reports the fraction read after each read() call.
    requests sizes it through tell/seek, so it goes out with a Content-Length
    and no chunked framing.
    """

    def __init__(self, body: bytes, on_progress: ProgressCallback):
        super().__init__(body)
        self._total = len(body)
        self._on_progress = on_progress

    def read(self, size: Optional[int] = -1) -> bytes:
        chunk = super().read(size)
        if chunk:
            self._on_progress(self.tell() / self._total)
        return chunk


class RequestsRelay:
    """Sends relay requests with requests, adding Basic auth and the WebDAV Depth header."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: int = RELAY_TIMEOUT):
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, request: RelayRequest, on_progress: Optional[ProgressCallback] = None) -> RelayResponse:
        headers = {"User-Agent": RELAY_USER_AGENT, **request.headers}
        if request.depth is not None:
            headers["Depth"] = request.depth
        data = request.body
        if data is not None and on_progress is not None:
            if data:
                data = ProgressReader(data, on_progress)
            else:
                on_progress(1.0)
        auth = HTTPBasicAuth(request.username, request.password) if request.username else None
        try:
            resp = self.session.request(
                request.method,
                request.url,
                headers=headers,
                data=data,
                auth=auth,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", request.method, request.url, e)
            raise RemoteNetworkError(f"Network error during {request.method} {request.url}: {e}") from e
        logger.debug("%s %s -> %s", request.method, request.url, resp.status_code)
        return RelayResponse(status=resp.status_code, reason=resp.reason or "", body=resp.content, headers=dict(resp.headers))


def to_proxy_payload(response: RelayResponse) -> dict:
    """JSON envelope returned by the relay endpoint; binary bodies are base64 encoded."""
    content_type = response.content_type
    if any(t in content_type for t in BINARY_CONTENT_TYPES):
        body = {"type": "binary", "data": base64.b64encode(response.body).decode("ascii"), "contentType": content_type}
    else:
        body = {"type": "text", "data": response.text}
    return {
        "ok": response.ok,
        "status": response.status,
        "statusText": response.reason,
        "response": body,
    }
