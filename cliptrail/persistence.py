from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from typing import Any, Iterable

from .errors import StorageIOError, ValidationError
from .models import HistoryItem

log = logging.getLogger(__name__)

HISTORY_FILE_NAME = "clipboard-history.json"


def atomic_write_bytes(path: str, payload: bytes) -> None:
    """Write ``payload`` to a temp file beside ``path``, fsync, then rename over it."""
    directory = os.path.dirname(path) or "."
    tmp_path: str | None = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as exc:
        raise StorageIOError(f"写入文件失败 {path}: {exc}") from exc
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                log.debug("清理临时文件失败 %s", tmp_path, exc_info=True)


def atomic_write_json(path: str, data: Any) -> None:
    text = json.dumps(data, ensure_ascii=False, indent=2)
    atomic_write_bytes(path, text.encode("utf-8"))


def read_json(path: str) -> Any:
    """Return parsed JSON, ``None`` if the file does not exist."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        raise StorageIOError(f"读取文件失败 {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise StorageIOError(f"解析文件失败 {path}: {exc}") from exc


def quarantine(path: str) -> str | None:
    """Move an unreadable file aside so the next write does not destroy it."""
    target = f"{path}.corrupt-{int(time.time() * 1000)}"
    try:
        os.replace(path, target)
    except OSError:
        log.warning("无法备份损坏文件 %s", path, exc_info=True)
        return None
    return target


class LedgerFile:
    def __init__(self, root: str) -> None:
        self.root = root

    @property
    def path(self) -> str:
        return os.path.join(self.root, HISTORY_FILE_NAME)

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> list[HistoryItem]:
        data = read_json(self.path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise StorageIOError(f"历史文件格式无效: {self.path}")
        items: list[HistoryItem] = []
        for row in data:
            try:
                items.append(HistoryItem.from_dict(row))
            except ValidationError as exc:
                log.warning("跳过无效历史项: %s", exc.message)
        return items

    def save(self, items: Iterable[HistoryItem]) -> None:
        atomic_write_json(self.path, [it.to_dict() for it in items])
