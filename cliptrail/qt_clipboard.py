from __future__ import annotations

import logging

from PySide6.QtCore import QBuffer, QByteArray, QIODevice
from PySide6.QtGui import QClipboard, QGuiApplication, QImage

from .clipboard_util import ClipboardPayload
from .errors import ClipboardReadError, ClipTrailError

log = logging.getLogger(__name__)


def _png_from_qimage(img: QImage) -> bytes | None:
    if img.isNull():
        return None
    data = QByteArray()
    buf = QBuffer(data)
    buf.open(QIODevice.WriteOnly)
    ok = img.save(buf, "PNG")
    buf.close()
    return bytes(data.data()) if ok else None


class QtClipboard:
    """``QClipboard`` adapter; must be used from the GUI thread."""

    def __init__(self, clipboard: QClipboard | None = None) -> None:
        self._clipboard = clipboard

    def _cb(self) -> QClipboard:
        cb = self._clipboard or QGuiApplication.clipboard()
        if cb is None:
            raise ClipboardReadError("系统剪贴板不可用")
        return cb

    def read(self) -> ClipboardPayload | None:
        mime = self._cb().mimeData()
        if mime is None:
            return None
        if mime.hasImage():
            png = _png_from_qimage(QImage(mime.imageData()))
            if png is not None:
                return ClipboardPayload.of_image(png, source="qt-image")
        if mime.hasUrls():
            paths = [url.toLocalFile() for url in mime.urls() if url.isLocalFile()]
            if paths:
                return ClipboardPayload.of_text("\n".join(paths), source="file-list")
        if mime.hasHtml() and not mime.hasText():
            return ClipboardPayload.of_text(mime.html(), source="html")
        if mime.hasText():
            return ClipboardPayload.of_text(mime.text())
        return None

    def write_text(self, text: str) -> None:
        self._cb().setText(text)

    def write_image(self, png: bytes) -> None:
        img = QImage.fromData(png, "PNG")
        if img.isNull():
            raise ClipTrailError("解析图片失败")
        self._cb().setImage(img)
