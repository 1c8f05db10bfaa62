"""
Pytest configuration and shared fixtures for PixelLite tests.

Provides Pillow-generated sample images, a scripted relay standing in for the
WebDAV store, and a throwaway SQLite database.
"""
import io
import threading

import pytest
from PIL import Image

from pixellite import config, db
from pixellite.backup.relay import ProgressReader, RelayResponse


def make_image_bytes(fmt: str = "PNG", size=(32, 24), mode: str = "RGB", color=None, pattern: bool = True) -> bytes:
    """Encode a small test image. With pattern=True pixels vary so encoders have work to do."""
    img = Image.new(mode, size, color or ((200, 80, 40, 255) if mode == "RGBA" else (200, 80, 40)))
    if pattern:
        px = img.load()
        for y in range(size[1]):
            for x in range(size[0]):
                value = ((x * 7) ^ (y * 13)) & 0xFF
                px[x, y] = (value, (x * 5) & 0xFF, (y * 9) & 0xFF, 255)[: len(mode)]
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return make_image_bytes


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG")


@pytest.fixture
def rgba_png_bytes():
    return make_image_bytes("PNG", mode="RGBA")


class FakeRelay:
    """
    Relay double. `routes` maps (method, url-suffix) to a RelayResponse, an
    exception, or a list of those consumed in order.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()

    def add(self, method, suffix, response):
        self.routes[(method, suffix)] = response

    def calls_for(self, method):
        return [c for c in self.calls if c.method == method]

    def send(self, request, on_progress=None):
        with self._lock:
            self.calls.append(request)
        if on_progress is not None and request.body is not None:
            if request.body:
                reader = ProgressReader(request.body, on_progress)
                while reader.read(max(1, len(request.body) // 4)):
                    pass
            else:
                on_progress(1.0)
        for (method, suffix), outcome in self.routes.items():
            if method == request.method and request.url.endswith(suffix):
                if isinstance(outcome, list):
                    with self._lock:
                        outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        return RelayResponse(status=404, reason="Not Found")


@pytest.fixture
def fake_relay():
    return FakeRelay()


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the database layer at a fresh SQLite file."""
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    db.reset_engine()
    db.init_db()
    yield db
    db.reset_engine()
