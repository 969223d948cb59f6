from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from .errors import ValidationError


class ContentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"

    @classmethod
    def parse(cls, tag: object) -> "ContentKind":
        try:
            return cls(str(tag))
        except ValueError:
            raise ValidationError(f"不支持的内容类型: {tag!r}") from None


@dataclass(frozen=True, slots=True)
class ImageRef:
    content_hash: str
    path: str


@dataclass(frozen=True, slots=True)
class HistoryItem:
    id: str
    kind: ContentKind
    content_hash: str
    created_at: int
    updated_at: int
    text: str | None = None
    image: ImageRef | None = None
    is_favorite: bool = False

    def __post_init__(self) -> None:
        if self.kind is ContentKind.TEXT and (self.text is None or self.image is not None):
            raise ValidationError("文本项必须且只能包含文本")
        if self.kind is ContentKind.IMAGE and (self.image is None or self.text is not None):
            raise ValidationError("图片项必须且只能包含图片引用")

    @property
    def fingerprint(self) -> tuple[ContentKind, str]:
        return (self.kind, self.content_hash)

    def touched(self, now_ms: int) -> HistoryItem:
        return replace(self, updated_at=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "text": self.text,
            "imagePath": self.image.path if self.image is not None else None,
            "contentHash": self.content_hash,
            "isFavorite": self.is_favorite,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryItem:
        if not isinstance(data, dict):
            raise ValidationError("历史项格式无效")
        kind = ContentKind.parse(data.get("type"))
        content_hash = str(data.get("contentHash") or "")
        item_id = str(data.get("id") or "")
        if not content_hash or not item_id:
            raise ValidationError("历史项缺少 id 或 contentHash")
        try:
            created_at = int(data.get("createdAt") or 0)
            updated_at = int(data.get("updatedAt") or created_at)
        except (TypeError, ValueError):
            raise ValidationError("历史项时间戳无效") from None
        image = None
        text = None
        if kind is ContentKind.IMAGE:
            path = data.get("imagePath")
            if not path:
                raise ValidationError("图片项缺少 imagePath")
            image = ImageRef(content_hash=content_hash, path=str(path))
        else:
            text = str(data.get("text") or "")
        return cls(
            id=item_id,
            kind=kind,
            content_hash=content_hash,
            created_at=created_at,
            updated_at=updated_at,
            text=text,
            image=image,
            is_favorite=bool(data.get("isFavorite", False)),
        )


def make_item_id(kind: ContentKind, content_hash: str, now_ms: int) -> str:
    prefix = "txt" if kind is ContentKind.TEXT else "img"
    return f"{prefix}-{now_ms}-{content_hash[:8]}"


class MonotonicClock:
    """Wall-clock milliseconds that never repeat or go backwards."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def observe(self, ms: int) -> None:
        with self._lock:
            self._last = max(self._last, ms)

    def now_ms(self) -> int:
        with self._lock:
            self._last = max(int(time.time() * 1000), self._last + 1)
            return self._last
