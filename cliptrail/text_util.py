"""Text normalization and content hashing shared by capture, ledger and blobs."""
from __future__ import annotations

import hashlib
import re

from .models import ContentKind

_RE_WS = re.compile(r"[\r\n\t]")

# Fragments of lines this application writes to its own log file.
_INTERNAL_LOG_MARKERS = (
    "cliptrail.capture: history updated with",
    "cliptrail.capture: poll no-capture",
    "cliptrail.capture: ignored internal log text",
    "source=text-fallback",
)


def normalize_text(raw: str) -> str:
    """Unify line endings to ``\\n`` and strip surrounding whitespace.

    Idempotent: ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    """
    return raw.replace("\r\n", "\n").replace("\r", "\n").strip()


def content_hash(kind: ContentKind, data: bytes) -> str:
    h = hashlib.sha256()
    h.update(kind.value.encode("utf-8"))
    h.update(b"\0")
    h.update(data)
    return h.hexdigest()


def text_hash(normalized: str) -> str:
    return content_hash(ContentKind.TEXT, normalized.encode("utf-8", errors="surrogatepass"))


def text_preview(text: str, max_len: int = 120) -> str:
    s = _RE_WS.sub(" ", text)
    return s if len(s) <= max_len else s[: max_len - 1] + "…"


def is_internal_log_text(text: str) -> bool:
    s = text.strip()
    if not s:
        return False
    return any(marker in s for marker in _INTERNAL_LOG_MARKERS)
