from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from threading import RLock
from typing import Any, Callable, Mapping, Protocol

from .errors import ClipTrailError, MigrationError, StorageIOError
from .hotkeys import DEFAULT_SHORTCUT, normalize_accelerator
from .persistence import atomic_write_json, quarantine, read_json
from .scheduling import Debouncer

log = logging.getLogger(__name__)

SETTINGS_FILE_NAME = "settings.json"
LOG_FILE_NAME = "cliptrail.log"
POLL_INTERVAL_RANGE = (300, 5000)
HISTORY_LIMIT_RANGE = (50, 5000)
SAVE_DEBOUNCE_S = 0.3


@dataclass(frozen=True, slots=True)
class AppSettings:
    poll_interval_ms: int = 800
    history_limit: int = 300
    global_shortcut: str = DEFAULT_SHORTCUT
    launch_at_startup: bool = False
    always_on_top: bool = False
    storage_dir: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {_CAMEL[f.name]: getattr(self, f.name) for f in fields(self)}


_CAMEL: dict[str, str] = {
    "poll_interval_ms": "pollIntervalMs",
    "history_limit": "historyLimit",
    "global_shortcut": "globalShortcut",
    "launch_at_startup": "launchAtStartup",
    "always_on_top": "alwaysOnTop",
    "storage_dir": "storageDir",
}
_SNAKE: dict[str, str] = {v: k for k, v in _CAMEL.items()}


def default_app_dir() -> str:
    override = os.environ.get("CLIPTRAIL_HOME")
    if override:
        return override
    base = os.environ.get("APPDATA") or os.path.expanduser("~")
    return os.path.join(base, "ClipTrail")


def default_config_path() -> str:
    return os.path.join(default_app_dir(), SETTINGS_FILE_NAME)


def default_log_path() -> str:
    return os.path.join(default_app_dir(), LOG_FILE_NAME)


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    lo, hi = bounds
    return max(lo, min(hi, value))


def _as_int(value: Any, fallback: int, name: str) -> int:
    if isinstance(value, bool):
        log.warning("设置项 %s 的值无效: %r", name, value)
        return fallback
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        log.warning("设置项 %s 的值无效: %r", name, value)
        return fallback


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def validate(payload: Mapping[str, Any], base: AppSettings | None = None) -> AppSettings:
    """Merge a camelCase (or snake_case) partial payload over ``base`` and clamp it.

    Out-of-range numbers are clamped, never rejected; unparseable values keep
    the ``base`` value; unknown keys are ignored.
    """
    base = base or AppSettings()
    values: dict[str, Any] = {}
    for key, value in payload.items():
        name = _SNAKE.get(key, key)
        if name in _CAMEL and value is not None:
            values[name] = value

    poll = _as_int(values.get("poll_interval_ms", base.poll_interval_ms), base.poll_interval_ms, "pollIntervalMs")
    limit = _as_int(values.get("history_limit", base.history_limit), base.history_limit, "historyLimit")
    return AppSettings(
        poll_interval_ms=_clamp(poll, POLL_INTERVAL_RANGE),
        history_limit=_clamp(limit, HISTORY_LIMIT_RANGE),
        global_shortcut=normalize_accelerator(str(values.get("global_shortcut", base.global_shortcut) or "")),
        launch_at_startup=_as_bool(values.get("launch_at_startup", base.launch_at_startup)),
        always_on_top=_as_bool(values.get("always_on_top", base.always_on_top)),
        storage_dir=str(values.get("storage_dir", base.storage_dir) or "").strip(),
    )


class StagedMigration(Protocol):
    def commit(self) -> None: ...

    def discard(self) -> None: ...


StorageStager = Callable[[str, str], StagedMigration]
SettingsListener = Callable[[AppSettings, AppSettings], None]
# Runs before new settings are persisted; raising aborts the update.
SettingsApplier = Callable[[AppSettings, AppSettings], None]


class SettingsManager:
    def __init__(
        self,
        path: str | None = None,
        app_dir: str | None = None,
        lock: RLock | None = None,
        debounce_s: float = SAVE_DEBOUNCE_S,
    ) -> None:
        self._app_dir = app_dir or default_app_dir()
        self._path = path or os.path.join(self._app_dir, SETTINGS_FILE_NAME)
        self._lock = lock or RLock()
        self._settings = AppSettings()
        self._listeners: list[SettingsListener] = []
        self._appliers: list[SettingsApplier] = []
        self._pending: dict[str, Any] = {}
        self._debouncer = Debouncer(debounce_s, self._apply_pending, name="SettingsSave")
        self.storage_stager: StorageStager | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def settings(self) -> AppSettings:
        with self._lock:
            return self._settings

    def data_dir(self, settings: AppSettings | None = None) -> str:
        s = settings or self.settings
        return os.path.abspath(os.path.expanduser(s.storage_dir) if s.storage_dir else self._app_dir)

    def add_listener(self, fn: SettingsListener) -> None:
        self._listeners.append(fn)

    def add_applier(self, fn: SettingsApplier) -> None:
        """Register a step that must succeed together with the settings write.

        Appliers run in order before the file is written. If one raises, or the
        write fails, the appliers that already ran are called again with the
        old and new settings swapped.
        """
        self._appliers.append(fn)

    def load(self) -> AppSettings:
        with self._lock:
            try:
                data = read_json(self._path)
            except StorageIOError as exc:
                log.error("读取设置失败，使用默认设置: %s", exc.message)
                backup = quarantine(self._path) if os.path.isfile(self._path) else None
                if backup:
                    log.warning("损坏的设置文件已备份到 %s", backup)
                data = {}
            if data is None:
                self._settings = AppSettings()
                try:
                    self._write(self._settings)
                except StorageIOError as exc:
                    log.warning("初始化设置文件失败: %s", exc.message)
                return self._settings
            if not isinstance(data, dict):
                log.error("设置文件格式无效，使用默认设置")
                data = {}
            self._settings = validate(data)
            if self._settings.to_dict() != data:
                try:
                    self._write(self._settings)
                except StorageIOError as exc:
                    log.warning("回写校正后的设置失败: %s", exc.message)
            return self._settings

    def validate(self, payload: Mapping[str, Any]) -> AppSettings:
        return validate(payload, self.settings)

    def update(self, payload: Mapping[str, Any]) -> AppSettings:
        with self._lock:
            old = self._settings
            new = validate(payload, old)
            if new == old:
                return old
            applied = self._run_appliers(old, new)
            try:
                if self.data_dir(new) != self.data_dir(old):
                    self._switch_storage(old, new)
                else:
                    self._write(new)
                    self._settings = new
            except ClipTrailError:
                self._revert(applied, old, new)
                raise
            self._notify(old, new)
            return new

    def submit(self, payload: Mapping[str, Any]) -> AppSettings:
        """Queue an edit for a debounced save; returns the settings it will produce."""
        with self._lock:
            for key, value in payload.items():
                self._pending[_SNAKE.get(key, key)] = value
            preview = validate(self._pending, self._settings)
        self._debouncer.trigger()
        return preview

    def flush(self) -> None:
        self._debouncer.flush()

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self._debouncer.cancel()

    def change_storage_dir(self, new_dir: str) -> AppSettings:
        return self.update({"storageDir": new_dir})

    def _apply_pending(self) -> None:
        with self._lock:
            payload, self._pending = self._pending, {}
            if not payload:
                return
            try:
                self.update(payload)
            except ClipTrailError:
                # keep the edit for the next save attempt
                self._pending = {**payload, **self._pending}
                raise

    def _run_appliers(self, old: AppSettings, new: AppSettings) -> list[SettingsApplier]:
        applied: list[SettingsApplier] = []
        try:
            for fn in self._appliers:
                fn(old, new)
                applied.append(fn)
        except ClipTrailError:
            self._revert(applied, old, new)
            raise
        return applied

    def _revert(self, applied: list[SettingsApplier], old: AppSettings, new: AppSettings) -> None:
        for fn in reversed(applied):
            try:
                fn(new, old)
            except ClipTrailError as exc:
                log.error("回滚设置失败: %s", exc.message)

    def _write(self, settings: AppSettings) -> None:
        atomic_write_json(self._path, settings.to_dict())

    def _switch_storage(self, old: AppSettings, new: AppSettings) -> None:
        if self.storage_stager is None:
            raise MigrationError("存储目录迁移不可用")
        staged = self.storage_stager(self.data_dir(old), self.data_dir(new))
        try:
            self._write(new)
        except StorageIOError as exc:
            staged.discard()
            raise MigrationError(f"保存设置失败，已保留原存储目录: {exc.message}") from exc
        self._settings = new
        staged.commit()
        log.info("存储目录已切换到 %s", self.data_dir(new))

    def _notify(self, old: AppSettings, new: AppSettings) -> None:
        first_error: ClipTrailError | None = None
        for fn in list(self._listeners):
            try:
                fn(old, new)
            except ClipTrailError as exc:
                log.warning("应用设置失败: %s", exc.message)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
