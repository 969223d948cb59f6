import os
import sys
import time
import ctypes
import logging

from cliptrail.settings import default_app_dir, default_log_path


def _configure_logging() -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr or open(os.devnull, "w"))]
    try:
        os.makedirs(default_app_dir(), exist_ok=True)
        handlers.append(logging.FileHandler(default_log_path(), encoding="utf-8"))
    except OSError:
        pass
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


_SINGLE_INSTANCE_MUTEX = "Local\\ClipTrail.SingleInstance"
_ERROR_ALREADY_EXISTS = 183
_mutex_handle: int | None = None


def _acquire_single_instance() -> bool:
    global _mutex_handle
    if os.name != "nt":
        return True
    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    create_mutex = kernel32.CreateMutexW
    create_mutex.argtypes = [ctypes.c_void_p, ctypes.c_bool, ctypes.c_wchar_p]
    create_mutex.restype = ctypes.c_void_p
    handle = create_mutex(None, False, _SINGLE_INSTANCE_MUTEX)
    if not handle:
        return True
    _mutex_handle = int(ctypes.cast(handle, ctypes.c_void_p).value or 0)
    return ctypes.get_last_error() != _ERROR_ALREADY_EXISTS


def _release_single_instance() -> None:
    global _mutex_handle
    if os.name != "nt" or not _mutex_handle:
        return
    try:
        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        close_handle = kernel32.CloseHandle
        close_handle.argtypes = [ctypes.c_void_p]
        close_handle.restype = ctypes.c_int
        close_handle(ctypes.c_void_p(_mutex_handle))
    except Exception:
        logging.getLogger(__name__).debug("CloseHandle 异常", exc_info=True)
    _mutex_handle = None


def _msgbox(text: str, title: str = "ClipTrail") -> None:
    """在 --windowed 打包模式下 sys.stderr 为 None，使用 Win32 弹窗通知用户。"""
    if os.name == "nt":
        try:
            MB_OK = 0x0
            MB_ICONINFORMATION = 0x40
            ctypes.windll.user32.MessageBoxW(None, text, title, MB_OK | MB_ICONINFORMATION)
            return
        except Exception:
            pass
    if sys.stderr is not None:
        sys.stderr.write(text + "\n")


def _missing_dependency(e: ModuleNotFoundError) -> None:
    missing = getattr(e, "name", "") or ""
    if missing in ("win32con", "win32clipboard", "PySide6", "PIL"):
        _msgbox(
            f"依赖缺失：{missing}\n"
            "请使用当前解释器安装依赖：\n"
            f"  {sys.executable} -m pip install -e .",
            "ClipTrail - 缺少依赖",
        )


def _run_headless() -> int:
    if os.name != "nt":
        _msgbox("--headless 仅支持 Windows（需要 pywin32）。")
        return 2
    try:
        from cliptrail.engine import ClipboardEngine
        from cliptrail.win_clipboard import Win32Clipboard
    except ModuleNotFoundError as e:
        _missing_dependency(e)
        raise

    engine = ClipboardEngine(Win32Clipboard(), opener=os.startfile)
    engine.start_polling()
    print("Listening clipboard. Press Ctrl+C to exit.")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()
    return 0


def _run_qt() -> int:
    try:
        os.environ.setdefault("QT_LOGGING_RULES", "qt.qpa.window=false")
        from cliptrail.qt_app import ClipTrailApp
    except ModuleNotFoundError as e:
        _missing_dependency(e)
        raise
    app = ClipTrailApp()
    return app.run()


def main() -> None:
    _configure_logging()
    if not _acquire_single_instance():
        _msgbox("ClipTrail 已在运行中。")
        raise SystemExit(0)

    try:
        if "--headless" in sys.argv:
            raise SystemExit(_run_headless())
        raise SystemExit(_run_qt())
    finally:
        _release_single_instance()


if __name__ == "__main__":
    main()
