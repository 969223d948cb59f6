from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from threading import RLock

from .blobs import ContentStore
from .clipboard_util import ClipboardBackend, ClipboardPayload
from .errors import ClipboardReadError
from .imaging import canonical_png, image_from_text_source
from .models import ContentKind, HistoryItem
from .store import Candidate, HistoryLedger
from .text_util import content_hash, is_internal_log_text, normalize_text, text_hash, text_preview

log = logging.getLogger(__name__)

DIAGNOSTIC_INTERVAL_S = 3.0


@dataclass(frozen=True, slots=True)
class CaptureResult:
    item: HistoryItem
    is_new: bool
    source: str


@dataclass(frozen=True, slots=True)
class _Prepared:
    kind: ContentKind
    content_hash: str
    source: str
    text: str | None = None
    png: bytes | None = None

    @property
    def fingerprint(self) -> tuple[ContentKind, str]:
        return (self.kind, self.content_hash)


def _image(raw: bytes | None, source: str) -> _Prepared | None:
    png = canonical_png(raw) if raw else None
    if png is None:
        return None
    return _Prepared(ContentKind.IMAGE, content_hash(ContentKind.IMAGE, png), source, png=png)


class CaptureCoordinator:
    """Runs one poll → normalize → dedup → upsert attempt per ``capture()`` call."""

    def __init__(
        self,
        backend: ClipboardBackend,
        ledger: HistoryLedger,
        blobs: ContentStore,
        lock: RLock | None = None,
    ) -> None:
        self._backend = backend
        self._ledger = ledger
        self._blobs = blobs
        self._lock = lock or RLock()
        self._guard = threading.Lock()
        self._last_fingerprint: tuple[ContentKind, str] | None = None
        self._last_diagnostic_at = 0.0

    @property
    def last_fingerprint(self) -> tuple[ContentKind, str] | None:
        with self._lock:
            return self._last_fingerprint

    def capture(self, force: bool = False) -> CaptureResult | None:
        """One capture attempt.

        Returns ``None`` when busy, on a read miss, or when the clipboard still
        holds the last captured content. ``force`` skips that last check so an
        explicit poll touches the existing item instead.
        """
        if not self._guard.acquire(blocking=False):
            log.debug("上一次捕获尚未结束，跳过")
            return None
        try:
            return self._capture(force)
        finally:
            self._guard.release()

    def _capture(self, force: bool) -> CaptureResult | None:
        removals = self._ledger.removals
        try:
            payload = self._backend.read()
        except ClipboardReadError as exc:
            self._diagnostic("poll no-capture read failed: %s", text_preview(exc.message))
            return None
        if payload is None:
            self._diagnostic("poll no-capture clipboard empty or unsupported")
            return None

        prepared = self._prepare(payload)
        if prepared is None:
            return None

        with self._lock:
            if not force and prepared.fingerprint == self._last_fingerprint:
                return None
            removed = self._ledger.removed_since(removals)
            if removed is None or prepared.fingerprint in removed:
                # deleted while the read was in flight; not re-captured until the clipboard changes
                log.debug("捕获期间历史项被删除，跳过")
                self._last_fingerprint = prepared.fingerprint
                return None
            if prepared.kind is ContentKind.IMAGE:
                ref, wrote = self._blobs.put(prepared.png or b"")
                candidate = Candidate(ContentKind.IMAGE, prepared.content_hash, image=ref)
            else:
                wrote = False
                ref = None
                candidate = Candidate(ContentKind.TEXT, prepared.content_hash, text=prepared.text)
            try:
                item, is_new = self._ledger.upsert(candidate)
            except Exception:
                if wrote and ref is not None:
                    self._blobs.delete(ref)
                raise
            self._last_fingerprint = prepared.fingerprint

        log.info("history updated with %s item, source=%s", item.kind.value, prepared.source)
        return CaptureResult(item=item, is_new=is_new, source=prepared.source)

    def _prepare(self, payload: ClipboardPayload) -> _Prepared | None:
        if payload.kind is ContentKind.IMAGE:
            return _image(payload.png, payload.source or "image")

        raw = payload.text or ""
        if payload.source == "file-list":
            for line in raw.splitlines():
                prepared = _image(image_from_text_source(line), "file-list-image")
                if prepared is not None:
                    return prepared
            self._diagnostic("poll no-capture file list without image")
            return None

        normalized = normalize_text(raw)
        if not normalized:
            return None
        if payload.source == "html":
            return _image(image_from_text_source(normalized), "html-image")
        if is_internal_log_text(normalized):
            log.info("ignored internal log text in clipboard")
            return None
        prepared = _image(image_from_text_source(normalized), "text-parsed-image")
        if prepared is not None:
            return prepared
        return _Prepared(ContentKind.TEXT, text_hash(normalized), payload.source or "text", text=normalized)

    def _diagnostic(self, msg: str, *args: object) -> None:
        now = time.monotonic()
        if now - self._last_diagnostic_at < DIAGNOSTIC_INTERVAL_S:
            return
        self._last_diagnostic_at = now
        log.debug(msg, *args)
