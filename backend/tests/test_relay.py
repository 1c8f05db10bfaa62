"""Tests for the requests-based relay and the proxy envelope."""
import base64
import http.server
import threading
from unittest.mock import MagicMock

import pytest
import requests

from pixellite.backup.relay import ProgressReader, RelayRequest, RelayResponse, RequestsRelay, to_proxy_payload
from pixellite.errors import RemoteNetworkError


def _session(status=207, body=b"<ok/>", headers=None, reason="Multi-Status"):
    session = MagicMock(spec=requests.Session)
    response = MagicMock()
    response.status_code = status
    response.reason = reason
    response.content = body
    response.headers = headers or {"Content-Type": "application/xml"}
    session.request.return_value = response
    return session


def test_sends_auth_and_depth():
    session = _session()
    relay = RequestsRelay(session=session, timeout=5)
    response = relay.send(RelayRequest("PROPFIND", "https://dav.example.com/", "bob", "pw", depth="1"))
    assert response.status == 207
    assert response.body == b"<ok/>"
    _, kwargs = session.request.call_args
    assert kwargs["headers"]["Depth"] == "1"
    assert kwargs["auth"].username == "bob"
    assert kwargs["auth"].password == "pw"
    assert kwargs["timeout"] == 5


def test_anonymous_request_has_no_auth():
    session = _session()
    RequestsRelay(session=session).send(RelayRequest("GET", "https://dav.example.com/a.zip"))
    _, kwargs = session.request.call_args
    assert kwargs["auth"] is None
    assert "Depth" not in kwargs["headers"]


def test_connection_error_becomes_network_error():
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(RemoteNetworkError, match="refused"):
        RequestsRelay(session=session).send(RelayRequest("GET", "https://dav.example.com/"))


def test_progress_reader_fractions():
    progress = []
    reader = ProgressReader(b"abcdefghij", progress.append)
    assert [reader.read(4), reader.read(4), reader.read(4), reader.read(4)] == [b"abcd", b"efgh", b"ij", b""]
    assert progress == [0.4, 0.8, 1.0]


def test_empty_body_reports_done():
    session = _session(status=201)
    progress = []
    RequestsRelay(session=session).send(RelayRequest("PUT", "https://dav.example.com/a.zip", body=b""), on_progress=progress.append)
    _, kwargs = session.request.call_args
    assert kwargs["data"] == b""
    assert progress == [1.0]


@pytest.fixture
def put_server():
    """Loopback HTTP server that records the headers and body of each PUT."""
    received = []

    class Handler(http.server.BaseHTTPRequestHandler):
        def do_PUT(self):
            length = int(self.headers.get("Content-Length", 0))
            received.append((dict((k.lower(), v) for k, v in self.headers.items()), self.rfile.read(length)))
            self.send_response(201)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = http.server.HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", received
    server.shutdown()
    server.server_close()


def test_upload_with_progress_sends_content_length(put_server):
    base_url, received = put_server
    body = bytes(range(102))
    progress = []
    session = requests.Session()
    session.trust_env = False
    response = RequestsRelay(session=session, timeout=5).send(RelayRequest("PUT", base_url + "/a.zip", "bob", "pw", body=body), on_progress=progress.append)
    assert response.status == 201
    headers, sent = received[0]
    assert "transfer-encoding" not in headers
    assert headers["content-length"] == "102"
    assert sent == body
    assert progress[-1] == 1.0
    assert progress == sorted(progress)


class TestProxyPayload:
    def test_text_body(self):
        payload = to_proxy_payload(RelayResponse(status=207, reason="Multi-Status", body=b"<xml/>", headers={"content-type": "text/xml"}))
        assert payload == {
            "ok": True,
            "status": 207,
            "statusText": "Multi-Status",
            "response": {"type": "text", "data": "<xml/>"},
        }

    def test_binary_body_is_base64(self):
        payload = to_proxy_payload(RelayResponse(status=200, reason="OK", body=b"PK\x03\x04", headers={"Content-Type": "application/zip"}))
        assert payload["ok"] is True
        assert payload["response"]["type"] == "binary"
        assert base64.b64decode(payload["response"]["data"]) == b"PK\x03\x04"
        assert payload["response"]["contentType"] == "application/zip"
