from __future__ import annotations

import logging
import signal
import sys

from PySide6.QtCore import QObject, QTimer, QUrl, Signal
from PySide6.QtGui import QDesktopServices
from PySide6.QtWidgets import QApplication

from .engine import ClipboardEngine
from .errors import ClipTrailError
from .qt_clipboard import QtClipboard
from .settings import AppSettings

log = logging.getLogger(__name__)

# Delay after QClipboard.dataChanged so the owner finishes writing all formats.
CHANGE_SETTLE_MS = 120


class _Bridge(QObject):
    settings_changed = Signal(object, object)


def _open_dir(path: str) -> None:
    if not QDesktopServices.openUrl(QUrl.fromLocalFile(path)):
        raise ClipTrailError(f"打开目录失败: {path}")


class ClipTrailApp:
    def __init__(self, argv: list[str] | None = None, app_dir: str | None = None) -> None:
        self.qt_app = QApplication(argv if argv is not None else sys.argv)
        self.qt_app.setQuitOnLastWindowClosed(False)
        self.silent_start = "--autostart" in (argv or sys.argv)

        self.engine = ClipboardEngine(QtClipboard(), app_dir=app_dir, opener=_open_dir)

        self._bridge = _Bridge()
        self._bridge.settings_changed.connect(self._apply_settings)
        # listeners may fire on the debounce thread; hop to the GUI thread
        self.engine.add_settings_listener(self._bridge.settings_changed.emit)

        self._poll_timer = QTimer()
        self._poll_timer.timeout.connect(self.poll_now)
        self._poll_timer.start(self.engine.get_settings().poll_interval_ms)

        self._settle_timer = QTimer()
        self._settle_timer.setSingleShot(True)
        self._settle_timer.timeout.connect(self.poll_now)
        clipboard = self.qt_app.clipboard()
        if clipboard is not None:
            clipboard.dataChanged.connect(lambda: self._settle_timer.start(CHANGE_SETTLE_MS))

        signal.signal(signal.SIGINT, lambda *_: self.qt_app.quit())
        self.poll_now()

    def _apply_settings(self, old: AppSettings, new: AppSettings) -> None:
        if new.poll_interval_ms != old.poll_interval_ms:
            # QTimer.start() restarts an active timer, so only one is ever armed
            self._poll_timer.start(new.poll_interval_ms)
            log.info("轮询间隔调整为 %d ms", new.poll_interval_ms)

    def poll_now(self) -> None:
        try:
            result = self.engine.capture()
        except ClipTrailError as exc:
            log.error("剪贴板捕获失败: %s", exc.message)
            return
        if result is not None and result.is_new:
            log.debug("新历史项 %s", result.item.id)

    def run(self) -> int:
        try:
            return self.qt_app.exec()
        finally:
            self.quit()

    def quit(self) -> None:
        try:
            self._poll_timer.stop()
            self._settle_timer.stop()
        except Exception:
            log.debug("停止定时器异常", exc_info=True)
        try:
            self.engine.close()
        except ClipTrailError as exc:
            log.error("保存设置失败: %s", exc.message)
        try:
            self.qt_app.quit()
        except Exception:
            log.debug("退出应用异常", exc_info=True)
