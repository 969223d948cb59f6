"""Backend-neutral clipboard payload and the interface every OS adapter implements."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .models import ContentKind


@dataclass(frozen=True, slots=True)
class ClipboardPayload:
    kind: ContentKind
    text: str | None = None
    png: bytes | None = None
    source: str = ""

    @classmethod
    def of_text(cls, text: str, source: str = "text") -> ClipboardPayload:
        return cls(kind=ContentKind.TEXT, text=text, source=source)

    @classmethod
    def of_image(cls, png: bytes, source: str = "image") -> ClipboardPayload:
        return cls(kind=ContentKind.IMAGE, png=png, source=source)


class ClipboardBackend(Protocol):
    def read(self) -> ClipboardPayload | None:
        """Current clipboard content; ``None`` if empty or of an unsupported type.

        Raises ``ClipboardReadError`` when the platform call fails.
        """
        ...

    def write_text(self, text: str) -> None: ...

    def write_image(self, png: bytes) -> None: ...
