from __future__ import annotations

import logging
import os
from typing import Iterable

from .errors import StorageIOError
from .models import ContentKind, ImageRef
from .persistence import atomic_write_bytes
from .text_util import content_hash

log = logging.getLogger(__name__)

IMAGE_DIR_NAME = "clipboard-images"
_NAME_LEN = 24


def blob_name(digest: str) -> str:
    return f"{digest[:_NAME_LEN]}.png"


class ContentStore:
    """Content-addressed PNG blobs under ``<root>/clipboard-images``."""

    def __init__(self, root: str) -> None:
        self.root = root

    @property
    def image_dir(self) -> str:
        return os.path.join(self.root, IMAGE_DIR_NAME)

    def rebase(self, root: str) -> None:
        self.root = root

    def ref_for(self, digest: str) -> ImageRef:
        return ImageRef(content_hash=digest, path=f"{IMAGE_DIR_NAME}/{blob_name(digest)}")

    def full_path(self, ref: ImageRef) -> str:
        return os.path.join(self.root, *ref.path.split("/"))

    def exists(self, digest: str) -> bool:
        return os.path.isfile(os.path.join(self.image_dir, blob_name(digest)))

    def put(self, png: bytes) -> tuple[ImageRef, bool]:
        """Store ``png``; returns the ref and whether a new file was written."""
        digest = content_hash(ContentKind.IMAGE, png)
        ref = self.ref_for(digest)
        if self.exists(digest):
            return ref, False
        atomic_write_bytes(self.full_path(ref), png)
        return ref, True

    def get(self, ref: ImageRef) -> bytes:
        path = self.full_path(ref)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as exc:
            raise StorageIOError(f"读取图片失败 {path}: {exc}") from exc

    def delete(self, ref: ImageRef) -> bool:
        path = self.full_path(ref)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError:
            log.warning("删除图片失败 %s", path, exc_info=True)
            return False
        return True

    def sweep(self, live_hashes: Iterable[str] = ()) -> int:
        """Delete blob files not referenced by ``live_hashes``; returns the count removed."""
        keep = {blob_name(h) for h in live_hashes}
        try:
            names = os.listdir(self.image_dir)
        except FileNotFoundError:
            return 0
        except OSError as exc:
            raise StorageIOError(f"读取图片目录失败 {self.image_dir}: {exc}") from exc
        removed = 0
        for name in names:
            path = os.path.join(self.image_dir, name)
            if name in keep or not os.path.isfile(path):
                continue
            try:
                os.remove(path)
                removed += 1
            except OSError:
                log.warning("删除孤立图片失败 %s", path, exc_info=True)
        return removed
