"""Storage directory switch: stage a full copy, verify it, then swap roots."""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Sequence

from .blobs import ContentStore, blob_name
from .errors import MigrationError, StorageIOError
from .models import ContentKind, HistoryItem
from .persistence import LedgerFile, atomic_write_bytes
from .store import HistoryLedger, evict_oldest, merge_items, normalized_text_item
from .text_util import content_hash

log = logging.getLogger(__name__)


class StorageMigration:
    """Copy the live history into ``target_root`` and switch to it on ``commit()``.

    A history already present in the target (a directory used before, or one
    shared with another install) is merged with the live one the same way a
    ledger is cleaned at startup. The source directory is only ever read.
    """

    def __init__(
        self,
        source_root: str,
        target_root: str,
        items: Sequence[HistoryItem],
        ledger: HistoryLedger,
        blobs: ContentStore,
    ) -> None:
        self.source_root = source_root
        self.target_root = target_root
        self._items = list(items)
        self._ledger = ledger
        self._blobs = blobs
        self._created: list[str] = []
        self._original_ledger: bytes | None = None
        self._staged = False

    @property
    def items(self) -> list[HistoryItem]:
        return list(self._items)

    def stage(self) -> StorageMigration:
        try:
            self._stage()
            self.verify()
        except MigrationError:
            self.discard()
            raise
        self._staged = True
        return self

    def _stage(self) -> None:
        if os.path.normcase(os.path.abspath(self.source_root)) == os.path.normcase(os.path.abspath(self.target_root)):
            raise MigrationError("新旧存储目录相同")
        try:
            os.makedirs(self.target_root, exist_ok=True)
        except OSError as exc:
            raise MigrationError(f"创建新目录失败: {exc}") from exc
        self._probe_writable()

        target_file = LedgerFile(self.target_root)
        existing = self._existing_items(target_file)
        if existing:
            log.info("目标目录已有 %d 条历史，合并到当前历史", len(existing))
            merged = merge_items(self._items + existing)
            evict_oldest(merged, self._ledger.limit)
            self._items = merged

        source_blobs = ContentStore(self.source_root)
        target_blobs = ContentStore(self.target_root)
        for it in self._items:
            if it.image is None:
                continue
            src = source_blobs.full_path(it.image)
            dst = target_blobs.full_path(it.image)
            if os.path.isfile(dst) and _hash_file(dst) == it.content_hash:
                continue
            try:
                os.makedirs(os.path.dirname(dst), exist_ok=True)
                shutil.copy2(src, dst)
            except OSError as exc:
                raise MigrationError(f"迁移图片文件失败: {exc}") from exc
            self._created.append(dst)

        if not target_file.exists():
            self._created.append(target_file.path)
        try:
            target_file.save(self._items)
        except StorageIOError as exc:
            raise MigrationError(f"迁移历史文件失败: {exc.message}") from exc

    def _existing_items(self, target_file: LedgerFile) -> list[HistoryItem]:
        if not target_file.exists():
            return []
        try:
            with open(target_file.path, "rb") as f:
                self._original_ledger = f.read()
            loaded = target_file.load()
        except OSError as exc:
            raise MigrationError(f"目标目录中的历史文件无法读取: {exc}") from exc
        except StorageIOError as exc:
            raise MigrationError(f"目标目录中的历史文件无法读取: {exc.message}") from exc

        target_blobs = ContentStore(self.target_root)
        kept: list[HistoryItem] = []
        for it in loaded:
            if it.kind is ContentKind.TEXT:
                fixed = normalized_text_item(it)
                if fixed is not None:
                    kept.append(fixed)
            elif it.image is not None and _hash_file(target_blobs.full_path(it.image)) == it.content_hash:
                kept.append(it)
            else:
                log.warning("目标目录图片缺失或不匹配，跳过历史项 %s", it.id)
        return kept

    def _probe_writable(self) -> None:
        try:
            fd, probe = tempfile.mkstemp(prefix=".cliptrail-probe-", dir=self.target_root)
            os.close(fd)
            os.remove(probe)
        except OSError as exc:
            raise MigrationError(f"新目录不可写: {exc}") from exc

    def verify(self) -> None:
        target_blobs = ContentStore(self.target_root)
        for it in self._items:
            if it.image is None:
                continue
            path = target_blobs.full_path(it.image)
            if not os.path.isfile(path) or _hash_file(path) != it.content_hash:
                raise MigrationError(f"图片文件复制不完整: {blob_name(it.content_hash)}")
        try:
            copied = LedgerFile(self.target_root).load()
        except StorageIOError as exc:
            raise MigrationError(f"校验历史文件失败: {exc.message}") from exc
        if [it.id for it in copied] != [it.id for it in self._items]:
            raise MigrationError("历史文件复制不完整")

    def commit(self) -> None:
        if not self._staged:
            raise MigrationError("迁移尚未完成暂存")
        self._blobs.rebase(self.target_root)
        self._ledger.adopt(LedgerFile(self.target_root), self._items)
        self._created = []
        self._original_ledger = None
        log.info("存储已迁移: %s -> %s", self.source_root, self.target_root)

    def discard(self) -> None:
        for path in reversed(self._created):
            try:
                os.remove(path)
            except OSError:
                log.debug("清理暂存文件失败 %s", path, exc_info=True)
        self._created = []
        if self._original_ledger is not None:
            try:
                atomic_write_bytes(LedgerFile(self.target_root).path, self._original_ledger)
            except StorageIOError:
                log.warning("恢复目标历史文件失败 %s", self.target_root, exc_info=True)
            self._original_ledger = None
        self._staged = False


def _hash_file(path: str) -> str:
    try:
        with open(path, "rb") as f:
            return content_hash(ContentKind.IMAGE, f.read())
    except OSError:
        return ""
