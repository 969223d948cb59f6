from __future__ import annotations

import logging
import os
from threading import RLock
from typing import Any, Callable, Mapping

from .blobs import ContentStore
from .capture import CaptureCoordinator, CaptureResult
from .clipboard_util import ClipboardBackend
from .errors import ClipTrailError, NotFoundError
from .hotkeys import DEFAULT_SHORTCUT, ShortcutRegistrar
from .imaging import data_url
from .migration import StorageMigration
from .models import ContentKind, HistoryItem, MonotonicClock
from .persistence import LedgerFile
from .scheduling import PollTimer
from .settings import AppSettings, SettingsListener, SettingsManager, default_app_dir
from .store import HistoryFilter, HistoryLedger

log = logging.getLogger(__name__)

Opener = Callable[[str], None]


def to_payload(value: Any) -> Any:
    """camelCase JSON form of command results for a UI or IPC boundary."""
    if isinstance(value, (HistoryItem, AppSettings)):
        return value.to_dict()
    if isinstance(value, CaptureResult):
        return {"item": value.item.to_dict(), "isNew": value.is_new, "source": value.source}
    if isinstance(value, (list, tuple)):
        return [to_payload(v) for v in value]
    return value


class ClipboardEngine:
    """All clipboard-history state behind one lock, exposed as commands."""

    def __init__(
        self,
        backend: ClipboardBackend,
        app_dir: str | None = None,
        opener: Opener | None = None,
        registrar: ShortcutRegistrar | None = None,
        clock: MonotonicClock | None = None,
        settings_debounce_s: float = 0.3,
    ) -> None:
        self._lock = RLock()
        self._backend = backend
        self._opener = opener
        self._registrar = registrar
        self._app_dir = app_dir or default_app_dir()
        self._timer: PollTimer | None = None

        self.settings = SettingsManager(app_dir=self._app_dir, lock=self._lock, debounce_s=settings_debounce_s)
        current = self.settings.load()
        root = self._ensure_layout(self.settings.data_dir(current))

        self.blobs = ContentStore(root)
        self.ledger = HistoryLedger(LedgerFile(root), self.blobs, current.history_limit, lock=self._lock, clock=clock)
        self.ledger.load()
        self.coordinator = CaptureCoordinator(backend, self.ledger, self.blobs, lock=self._lock)

        self.settings.storage_stager = self._stage_storage
        self.settings.add_applier(self._apply_limit)
        self.settings.add_listener(self._on_settings_changed)

    def _ensure_layout(self, root: str) -> str:
        try:
            os.makedirs(ContentStore(root).image_dir, exist_ok=True)
            return root
        except OSError:
            log.exception("创建数据目录失败 %s，改用应用目录", root)
        os.makedirs(ContentStore(self._app_dir).image_dir, exist_ok=True)
        return self._app_dir

    def _stage_storage(self, source_root: str, target_root: str) -> StorageMigration:
        with self._lock:
            # the active root wins over the configured one if startup fell back
            migration = StorageMigration(self.blobs.root, target_root, self.ledger.items(), self.ledger, self.blobs)
            return migration.stage()

    def _apply_limit(self, old: AppSettings, new: AppSettings) -> None:
        if new.history_limit == old.history_limit:
            return
        evicted = self.ledger.set_limit(new.history_limit)
        if evicted:
            log.info("历史上限调整为 %d，淘汰 %d 条", new.history_limit, len(evicted))

    def _on_settings_changed(self, old: AppSettings, new: AppSettings) -> None:
        if new.poll_interval_ms != old.poll_interval_ms and self._timer is not None:
            self._timer.reschedule(new.poll_interval_ms)
        if new.global_shortcut != old.global_shortcut and self._registrar is not None:
            self._register_shortcut(new.global_shortcut)

    def _register_shortcut(self, accelerator: str) -> None:
        try:
            self._registrar.register(accelerator)  # type: ignore[union-attr]
        except ClipTrailError:
            raise
        except Exception as exc:
            raise ClipTrailError(f"注册快捷键失败: {exc}") from exc

    def bind_shortcut(self) -> str | None:
        """Register the configured shortcut at startup, falling back to the default."""
        if self._registrar is None:
            return None
        accelerator = self.get_settings().global_shortcut
        try:
            self._register_shortcut(accelerator)
            return accelerator
        except ClipTrailError as exc:
            log.warning("快捷键 %s 注册失败: %s", accelerator, exc.message)
        if accelerator == DEFAULT_SHORTCUT:
            return None
        try:
            self._register_shortcut(DEFAULT_SHORTCUT)
        except ClipTrailError as exc:
            log.error("默认快捷键注册失败: %s", exc.message)
            return None
        return DEFAULT_SHORTCUT

    def add_settings_listener(self, fn: SettingsListener) -> None:
        self.settings.add_listener(fn)

    def get_settings(self) -> AppSettings:
        return self.settings.settings

    def update_settings(self, payload: Mapping[str, Any]) -> AppSettings:
        return self.settings.update(payload)

    def submit_settings(self, payload: Mapping[str, Any]) -> AppSettings:
        return self.settings.submit(payload)

    def change_storage_dir(self, new_dir: str) -> AppSettings:
        return self.settings.change_storage_dir(new_dir)

    def get_history(self, flt: HistoryFilter | None = None) -> list[HistoryItem]:
        return self.ledger.items(flt)

    def capture(self) -> CaptureResult | None:
        return self.coordinator.capture()

    def poll_clipboard(self) -> HistoryItem | None:
        result = self.coordinator.capture(force=True)
        return result.item if result is not None else None

    def copy_history_item(self, item_id: str) -> None:
        with self._lock:
            item = self.ledger.get(item_id)
            png = self.blobs.get(item.image) if item.image is not None else None
        if item.kind is ContentKind.TEXT:
            self._backend.write_text(item.text or "")
        else:
            self._backend.write_image(png or b"")

    def copy_text(self, text: str) -> None:
        self._backend.write_text(text)

    def toggle_favorite(self, item_id: str) -> HistoryItem | None:
        try:
            return self.ledger.toggle_favorite(item_id)
        except NotFoundError:
            log.warning("收藏切换失败，未找到历史项 %s", item_id)
            return None

    def delete_history_item(self, item_id: str) -> None:
        removed = self.ledger.remove(item_id)
        log.info("已删除历史项 %s", removed.id)

    def clear_history(self) -> int:
        count = self.ledger.clear()
        log.info("已清空 %d 条历史", count)
        return count

    def get_image_preview(self, item_id: str) -> str | None:
        with self._lock:
            item = self.ledger.get(item_id)
            if item.image is None:
                return None
            return data_url(self.blobs.get(item.image))

    def get_storage_dir_path(self) -> str:
        with self._lock:
            return self.blobs.root

    def open_storage_dir(self) -> None:
        if self._opener is None:
            raise ClipTrailError("当前环境无法打开目录")
        self._opener(self.get_storage_dir_path())

    def start_polling(self) -> None:
        with self._lock:
            if self._timer is None:
                self._timer = PollTimer(self.get_settings().poll_interval_ms, self._poll_tick, name="ClipboardPoll")
            self._timer.start()

    def stop_polling(self) -> None:
        with self._lock:
            timer = self._timer
        if timer is not None:
            timer.stop()

    @property
    def poll_timer(self) -> PollTimer | None:
        return self._timer

    def _poll_tick(self) -> None:
        try:
            self.coordinator.capture()
        except ClipTrailError as exc:
            log.error("剪贴板捕获失败: %s", exc.message)

    def close(self) -> None:
        self.stop_polling()
        self.settings.close()
