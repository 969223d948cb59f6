from __future__ import annotations

import logging
import time
from contextlib import contextmanager

import win32clipboard
import win32con

from .clipboard_util import ClipboardPayload
from .errors import ClipboardReadError, ClipTrailError
from .imaging import dib_from_png, png_from_dib

log = logging.getLogger(__name__)

CF_DIBV5 = getattr(win32con, "CF_DIBV5", 17)
HTML_FORMAT_NAME = "HTML Format"


@contextmanager
def open_clipboard(hwnd: int | None = None, retries: int = 10, delay_s: float = 0.02):
    """Open the Windows clipboard with retry logic, yielding inside the lock."""
    last_exc: Exception | None = None
    for _ in range(max(1, retries)):
        try:
            win32clipboard.OpenClipboard(hwnd)
            last_exc = None
            break
        except Exception as exc:
            last_exc = exc
            time.sleep(delay_s)
    if last_exc is not None:
        raise ClipboardReadError(f"访问系统剪贴板失败: {last_exc}") from last_exc
    try:
        yield
    finally:
        try:
            win32clipboard.CloseClipboard()
        except Exception:
            log.debug("CloseClipboard 异常", exc_info=True)


class Win32Clipboard:
    def __init__(self, hwnd: int | None = None) -> None:
        self._hwnd = hwnd

    def read(self) -> ClipboardPayload | None:
        with open_clipboard(self._hwnd):
            try:
                return self._read_locked()
            except win32clipboard.error as exc:
                raise ClipboardReadError(f"读取剪贴板失败: {exc}") from exc

    def _read_locked(self) -> ClipboardPayload | None:
        for fmt, source in ((CF_DIBV5, "win32-dibv5"), (win32con.CF_DIB, "win32-dib")):
            if win32clipboard.IsClipboardFormatAvailable(fmt):
                dib = win32clipboard.GetClipboardData(fmt)
                if isinstance(dib, (bytes, bytearray)) and dib:
                    png = png_from_dib(bytes(dib))
                    if png is not None:
                        return ClipboardPayload.of_image(png, source=source)

        if win32clipboard.IsClipboardFormatAvailable(win32con.CF_HDROP):
            paths = tuple(win32clipboard.GetClipboardData(win32con.CF_HDROP))
            if paths:
                # image files are resolved by the capture step
                return ClipboardPayload.of_text("\n".join(paths), source="file-list")

        html_fmt = win32clipboard.RegisterClipboardFormat(HTML_FORMAT_NAME)
        if win32clipboard.IsClipboardFormatAvailable(html_fmt) and not win32clipboard.IsClipboardFormatAvailable(
            win32con.CF_UNICODETEXT
        ):
            raw = win32clipboard.GetClipboardData(html_fmt)
            raw_b = raw if isinstance(raw, (bytes, bytearray)) else bytes(raw)
            return ClipboardPayload.of_text(bytes(raw_b).decode("utf-8", errors="ignore"), source="html")

        if win32clipboard.IsClipboardFormatAvailable(win32con.CF_UNICODETEXT):
            text = win32clipboard.GetClipboardData(win32con.CF_UNICODETEXT)
            if isinstance(text, bytes):
                text = text.decode("utf-16-le", errors="replace")
            return ClipboardPayload.of_text(str(text))
        return None

    def write_text(self, text: str) -> None:
        try:
            with open_clipboard(self._hwnd):
                win32clipboard.EmptyClipboard()
                win32clipboard.SetClipboardData(win32con.CF_UNICODETEXT, text)
        except win32clipboard.error as exc:
            raise ClipTrailError(f"写入文本到剪贴板失败: {exc}") from exc

    def write_image(self, png: bytes) -> None:
        dib = dib_from_png(png)
        try:
            with open_clipboard(self._hwnd):
                win32clipboard.EmptyClipboard()
                win32clipboard.SetClipboardData(CF_DIBV5, dib)
        except win32clipboard.error as exc:
            raise ClipTrailError(f"写入图片到剪贴板失败: {exc}") from exc
