from __future__ import annotations


class ClipTrailError(Exception):
    """Base error; ``message`` is safe to show to the user as-is."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ClipboardReadError(ClipTrailError):
    pass


class StorageIOError(ClipTrailError):
    pass


class ValidationError(ClipTrailError):
    pass


class MigrationError(ClipTrailError):
    pass


class NotFoundError(ClipTrailError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"未找到历史项: {item_id}")
        self.item_id = item_id
