from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from threading import RLock
from typing import Callable, Iterable, TypeVar

from .blobs import ContentStore
from .errors import NotFoundError, StorageIOError
from .imaging import canonical_png
from .models import ContentKind, HistoryItem, ImageRef, MonotonicClock, make_item_id
from .persistence import LedgerFile, quarantine
from .text_util import content_hash, normalize_text, text_hash

log = logging.getLogger(__name__)

T = TypeVar("T")

REMOVAL_LOG_SIZE = 64


@dataclass(frozen=True, slots=True)
class Candidate:
    kind: ContentKind
    content_hash: str
    text: str | None = None
    image: ImageRef | None = None

    @property
    def fingerprint(self) -> tuple[ContentKind, str]:
        return (self.kind, self.content_hash)


@dataclass(frozen=True, slots=True)
class HistoryFilter:
    kind: ContentKind | None = None
    favorites_only: bool = False
    keyword: str = ""

    def matches(self, item: HistoryItem) -> bool:
        if self.kind is not None and item.kind is not self.kind:
            return False
        if self.favorites_only and not item.is_favorite:
            return False
        keyword = self.keyword.strip().casefold()
        if keyword:
            return item.text is not None and keyword in item.text.casefold()
        return True


def normalized_text_item(item: HistoryItem) -> HistoryItem | None:
    """Re-normalize and re-hash a stored text item; ``None`` if it is blank."""
    text = normalize_text(item.text or "")
    if not text:
        return None
    digest = text_hash(text)
    if text != item.text or digest != item.content_hash:
        item = replace(item, text=text, content_hash=digest)
    return item


def merge_items(items: Iterable[HistoryItem]) -> list[HistoryItem]:
    """Newest first; duplicates by ``(kind, hash)`` collapse onto the newest copy.

    A duplicate's favorite flag carries over. The sort is stable, so among
    equal ``updated_at`` values earlier input wins.
    """
    ordered = sorted(items, key=lambda it: it.updated_at, reverse=True)
    by_key: dict[tuple[ContentKind, str], int] = {}
    merged: list[HistoryItem] = []
    for it in ordered:
        idx = by_key.get(it.fingerprint)
        if idx is None:
            by_key[it.fingerprint] = len(merged)
            merged.append(it)
        elif it.is_favorite and not merged[idx].is_favorite:
            merged[idx] = replace(merged[idx], is_favorite=True)
    return merged


def evict_oldest(items: list[HistoryItem], limit: int, keep: str | None = None) -> list[HistoryItem]:
    """Pop the oldest non-favorites from ``items`` until it fits ``limit``.

    The item with id ``keep`` is never chosen, so a fresh insert survives even
    when favorites alone fill the limit. Returns the evicted items.
    """
    evicted: list[HistoryItem] = []
    while len(items) > limit:
        idx = next(
            (i for i in range(len(items) - 1, -1, -1) if not items[i].is_favorite and items[i].id != keep),
            None,
        )
        if idx is None:
            break
        evicted.append(items.pop(idx))
    return evicted


class HistoryLedger:
    """Ordered history, newest first, mirrored write-through to the ledger file.

    List position encodes ``updated_at`` order; items with equal timestamps keep
    the order in which they were inserted or touched, which is also the
    eviction tie-break.
    """

    def __init__(
        self,
        ledger_file: LedgerFile,
        blobs: ContentStore,
        limit: int,
        lock: RLock | None = None,
        clock: MonotonicClock | None = None,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._file = ledger_file
        self._blobs = blobs
        self._limit = limit
        self._lock = lock or RLock()
        self._clock = clock or MonotonicClock()
        self._items: list[HistoryItem] = []
        self._removals = 0
        # (serial, fingerprint); None marks a clear
        self._removal_log: deque[tuple[int, tuple[ContentKind, str] | None]] = deque(maxlen=REMOVAL_LOG_SIZE)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def ledger_file(self) -> LedgerFile:
        return self._file

    @property
    def removals(self) -> int:
        """Count of completed ``remove``/``clear`` calls."""
        return self._removals

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def load(self) -> None:
        with self._lock:
            try:
                raw = self._file.load()
            except StorageIOError as exc:
                log.error("读取历史失败，使用空历史: %s", exc.message)
                backup = quarantine(self._file.path) if self._file.exists() else None
                if backup:
                    log.warning("损坏的历史文件已备份到 %s", backup)
                self._items = []
                return

            self._items = self._clean(raw)
            self._evict()
            for it in self._items:
                self._clock.observe(it.updated_at)
            if [it.to_dict() for it in self._items] != [it.to_dict() for it in raw]:
                try:
                    self._file.save(self._items)
                except StorageIOError as exc:
                    log.warning("回写整理后的历史失败: %s", exc.message)
            try:
                removed = self._blobs.sweep(self._image_hashes())
            except StorageIOError as exc:
                log.warning("清理孤立图片失败: %s", exc.message)
            else:
                if removed:
                    log.info("已清理 %d 个孤立图片", removed)

    def _clean(self, raw: list[HistoryItem]) -> list[HistoryItem]:
        cleaned: list[HistoryItem] = []
        for it in raw:
            fixed = normalized_text_item(it) if it.kind is ContentKind.TEXT else self._rehashed_image(it)
            if fixed is not None:
                cleaned.append(fixed)
        return merge_items(cleaned)

    def _rehashed_image(self, item: HistoryItem) -> HistoryItem | None:
        """Check an image item against its blob; re-store blobs hashed another way."""
        try:
            raw = self._blobs.get(item.image)  # type: ignore[arg-type]
        except StorageIOError:
            log.warning("图片文件缺失，丢弃历史项 %s", item.id)
            return None
        if content_hash(ContentKind.IMAGE, raw) == item.content_hash:
            return item
        png = canonical_png(raw)
        if png is None:
            log.warning("图片文件无法解析，丢弃历史项 %s", item.id)
            return None
        try:
            ref, _ = self._blobs.put(png)
        except StorageIOError as exc:
            log.warning("重建图片索引失败 %s: %s", item.id, exc.message)
            return item
        return replace(item, content_hash=ref.content_hash, image=ref)

    def _image_hashes(self) -> list[str]:
        return [it.content_hash for it in self._items if it.image is not None]

    def _write_through(self, mutate: Callable[[], T]) -> T:
        before = list(self._items)
        try:
            result = mutate()
            self._file.save(self._items)
        except Exception:
            self._items = before
            raise
        self._release_blobs(before)
        return result

    def _release_blobs(self, before: list[HistoryItem]) -> None:
        live = set(self._image_hashes())
        for it in before:
            if it.image is not None and it.content_hash not in live:
                self._blobs.delete(it.image)

    def _index_of(self, item_id: str) -> int:
        for i, it in enumerate(self._items):
            if it.id == item_id:
                return i
        raise NotFoundError(item_id)

    def _evict(self, keep: str | None = None) -> list[HistoryItem]:
        return evict_oldest(self._items, self._limit, keep=keep)

    def upsert(self, candidate: Candidate) -> tuple[HistoryItem, bool]:
        with self._lock:

            def _apply() -> tuple[HistoryItem, bool]:
                now = self._clock.now_ms()
                for i, it in enumerate(self._items):
                    if it.fingerprint == candidate.fingerprint:
                        touched = self._items.pop(i).touched(now)
                        self._items.insert(0, touched)
                        return touched, False
                item = HistoryItem(
                    id=make_item_id(candidate.kind, candidate.content_hash, now),
                    kind=candidate.kind,
                    content_hash=candidate.content_hash,
                    created_at=now,
                    updated_at=now,
                    text=candidate.text,
                    image=candidate.image,
                )
                self._items.insert(0, item)
                evicted = self._evict(keep=item.id)
                if evicted:
                    log.debug("淘汰 %d 条历史", len(evicted))
                return item, True

            return self._write_through(_apply)

    def evict(self) -> list[HistoryItem]:
        with self._lock:
            return self._write_through(self._evict)

    def set_limit(self, limit: int) -> list[HistoryItem]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        with self._lock:
            previous = self._limit
            self._limit = limit
            try:
                return self._write_through(self._evict)
            except Exception:
                self._limit = previous
                raise

    def toggle_favorite(self, item_id: str) -> HistoryItem:
        with self._lock:

            def _apply() -> HistoryItem:
                idx = self._index_of(item_id)
                item = self._items[idx]
                item = replace(item, is_favorite=not item.is_favorite)
                self._items[idx] = item
                return item

            return self._write_through(_apply)

    def _record_removal(self, fingerprint: tuple[ContentKind, str] | None) -> None:
        self._removals += 1
        self._removal_log.append((self._removals, fingerprint))

    def removed_since(self, mark: int) -> set[tuple[ContentKind, str]] | None:
        """Fingerprints removed since ``removals`` read ``mark``.

        ``None`` means everything may be gone: a clear happened, or more
        removals than the log keeps.
        """
        with self._lock:
            if mark == self._removals:
                return set()
            entries = [fp for serial, fp in self._removal_log if serial > mark]
            if len(entries) < self._removals - mark or None in entries:
                return None
            return set(entries)  # type: ignore[arg-type]

    def remove(self, item_id: str) -> HistoryItem:
        with self._lock:
            removed = self._write_through(lambda: self._items.pop(self._index_of(item_id)))
            self._record_removal(removed.fingerprint)
            return removed

    def clear(self) -> int:
        with self._lock:

            def _apply() -> int:
                count = len(self._items)
                self._items = []
                return count

            count = self._write_through(_apply)
            self._record_removal(None)
            try:
                self._blobs.sweep()
            except StorageIOError as exc:
                log.warning("清空图片目录失败: %s", exc.message)
            return count

    def get(self, item_id: str) -> HistoryItem:
        with self._lock:
            return self._items[self._index_of(item_id)]

    def items(self, flt: HistoryFilter | None = None) -> list[HistoryItem]:
        with self._lock:
            if flt is None:
                return list(self._items)
            return [it for it in self._items if flt.matches(it)]

    def adopt(self, ledger_file: LedgerFile, items: Iterable[HistoryItem]) -> None:
        """Switch to another ledger file whose content is already ``items``."""
        with self._lock:
            self._file = ledger_file
            self._items = list(items)
            for it in self._items:
                self._clock.observe(it.updated_at)
