"""Shared fixtures: an in-memory clipboard backend and engines rooted in tmp_path."""
from __future__ import annotations

import io
import threading

import pytest
from PIL import Image

from cliptrail.blobs import ContentStore
from cliptrail.clipboard_util import ClipboardPayload
from cliptrail.engine import ClipboardEngine
from cliptrail.errors import ClipboardReadError
from cliptrail.imaging import dib_from_png, png_from_dib
from cliptrail.persistence import LedgerFile
from cliptrail.store import HistoryLedger


class FakeClipboard:
    """Settable clipboard content; records every write."""

    def __init__(self) -> None:
        self.payload: ClipboardPayload | None = None
        self.error: str | None = None
        self.reads = 0
        self.written: list[tuple[str, object]] = []

    def set_text(self, text: str, source: str = "text") -> None:
        self.payload = ClipboardPayload.of_text(text, source=source)

    def set_image(self, png: bytes) -> None:
        self.payload = ClipboardPayload.of_image(png)

    def read(self) -> ClipboardPayload | None:
        self.reads += 1
        if self.error is not None:
            raise ClipboardReadError(self.error)
        return self.payload

    def write_text(self, text: str) -> None:
        self.written.append(("text", text))
        self.payload = ClipboardPayload.of_text(text)

    def write_image(self, png: bytes) -> None:
        self.written.append(("image", png))
        self.payload = ClipboardPayload.of_image(png)


class DibClipboard(FakeClipboard):
    """Stores images as a 32-bit DIB the way the Win32 backend writes them."""

    def write_image(self, png: bytes) -> None:
        self.written.append(("image", png))
        self.payload = ClipboardPayload.of_image(png_from_dib(dib_from_png(png)), source="win32-dibv5")


class BlockingClipboard(FakeClipboard):
    """While ``hold`` is set, ``read`` parks until ``release`` fires."""

    def __init__(self) -> None:
        super().__init__()
        self.hold = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def read(self) -> ClipboardPayload | None:
        if self.hold:
            self.entered.set()
            self.release.wait(5)
        return super().read()


def make_png(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (4, 3)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def clipboard():
    return FakeClipboard()


@pytest.fixture
def app_dir(tmp_path):
    d = tmp_path / "app"
    d.mkdir()
    return str(d)


@pytest.fixture
def engine(clipboard, app_dir):
    eng = ClipboardEngine(clipboard, app_dir=app_dir, settings_debounce_s=0.05)
    yield eng
    eng.close()


@pytest.fixture
def ledger(tmp_path):
    root = str(tmp_path / "data")
    blobs = ContentStore(root)
    return HistoryLedger(LedgerFile(root), blobs, limit=5)


@pytest.fixture
def png():
    return make_png


@pytest.fixture
def dib_clipboard():
    return DibClipboard()


@pytest.fixture
def blocking_clipboard():
    return BlockingClipboard()
