import hashlib
import io
import json
import os
import threading
import time

import pytest
from PIL import Image

from cliptrail import settings as settings_mod
from cliptrail.engine import ClipboardEngine, to_payload
from cliptrail.errors import ClipTrailError, NotFoundError, StorageIOError
from cliptrail.imaging import canonical_png
from cliptrail.models import ContentKind
from cliptrail.persistence import LedgerFile
from cliptrail.store import HistoryFilter
from cliptrail.text_util import content_hash


def _history_file(root: str) -> list[dict]:
    with open(os.path.join(root, "clipboard-history.json"), encoding="utf-8") as f:
        return json.load(f)


def test_first_capture_creates_item(engine, clipboard, app_dir):
    clipboard.set_text("hello")
    result = engine.capture()
    assert result is not None and result.is_new
    assert result.item.kind is ContentKind.TEXT
    assert result.item.id.startswith("txt-")
    assert [row["text"] for row in _history_file(app_dir)] == ["hello"]


def test_unchanged_clipboard_is_skipped(engine, clipboard):
    clipboard.set_text("hello")
    assert engine.capture() is not None
    assert engine.capture() is None
    assert len(engine.get_history()) == 1


def test_normalized_duplicates_collapse(engine, clipboard):
    clipboard.set_text("a\r\nb")
    engine.capture()
    clipboard.set_text("a\nb ")
    engine.capture()
    items = engine.get_history()
    assert len(items) == 1
    assert items[0].text == "a\nb"


def test_recopy_touches_existing_item(engine, clipboard):
    clipboard.set_text("A")
    a = engine.capture().item
    clipboard.set_text("B")
    engine.capture()
    clipboard.set_text("A")
    result = engine.capture()
    assert not result.is_new
    assert result.item.id == a.id
    assert result.item.updated_at > a.updated_at
    assert [it.text for it in engine.get_history()] == ["A", "B"]


def test_read_failure_is_not_fatal(engine, clipboard):
    clipboard.error = "OpenClipboard failed"
    assert engine.capture() is None
    assert engine.poll_clipboard() is None
    clipboard.error = None
    clipboard.set_text("back")
    assert engine.poll_clipboard().text == "back"


def test_empty_and_blank_clipboard(engine, clipboard):
    assert engine.capture() is None
    clipboard.set_text("   \r\n ")
    assert engine.capture() is None
    assert engine.get_history() == []


def test_internal_log_text_is_ignored(engine, clipboard):
    clipboard.set_text("12:00 [INFO] cliptrail.capture: history updated with text item, source=text")
    assert engine.capture() is None
    assert engine.get_history() == []


def test_concurrent_capture_is_skipped(engine, clipboard):
    clipboard.set_text("x")
    engine.coordinator._guard.acquire()
    try:
        assert engine.capture() is None
    finally:
        engine.coordinator._guard.release()
    assert clipboard.reads == 0


def test_image_capture_stores_one_blob(engine, clipboard, app_dir, png):
    data = png()
    clipboard.set_image(data)
    item = engine.capture().item
    assert item.kind is ContentKind.IMAGE
    assert item.image.path.startswith("clipboard-images/")
    blob = os.path.join(app_dir, *item.image.path.split("/"))
    with open(blob, "rb") as f:
        assert f.read() == canonical_png(data)

    clipboard.set_text("between")
    engine.capture()
    clipboard.set_image(data)
    again = engine.capture()
    assert again.item.id == item.id
    assert len(os.listdir(os.path.join(app_dir, "clipboard-images"))) == 1

    preview = engine.get_image_preview(item.id)
    assert preview.startswith("data:image/png;base64,")


def test_image_path_text_is_captured_as_image(engine, clipboard, tmp_path, png):
    path = tmp_path / "shot.png"
    path.write_bytes(png((0, 0, 255)))
    clipboard.set_text(str(path))
    result = engine.capture()
    assert result.item.kind is ContentKind.IMAGE
    assert result.source == "text-parsed-image"


def test_file_list_without_image_is_ignored(engine, clipboard, tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("hello", encoding="utf-8")
    clipboard.set_text(str(doc), source="file-list")
    assert engine.capture() is None
    assert engine.get_history() == []


def test_file_list_with_image(engine, clipboard, tmp_path, png):
    img = tmp_path / "a.png"
    img.write_bytes(png())
    clipboard.set_text(f"{tmp_path / 'missing.txt'}\n{img}", source="file-list")
    result = engine.capture()
    assert result.source == "file-list-image"


def test_text_item_has_no_preview(engine, clipboard):
    clipboard.set_text("words")
    item = engine.capture().item
    assert engine.get_image_preview(item.id) is None


def test_copy_history_item_writes_clipboard(engine, clipboard, png):
    clipboard.set_text("one")
    text_item = engine.capture().item
    data = png()
    clipboard.set_image(data)
    image_item = engine.capture().item

    engine.copy_history_item(text_item.id)
    assert clipboard.written[-1] == ("text", "one")
    engine.copy_history_item(image_item.id)
    assert clipboard.written[-1] == ("image", engine.blobs.get(image_item.image))
    with pytest.raises(NotFoundError):
        engine.copy_history_item("txt-0-nothing")


def test_favorite_toggle_and_filters(engine, clipboard):
    clipboard.set_text("keep me")
    item = engine.capture().item
    assert engine.toggle_favorite(item.id).is_favorite
    assert engine.toggle_favorite("txt-0-nothing") is None
    assert [it.id for it in engine.get_history(HistoryFilter(favorites_only=True))] == [item.id]


def test_delete_and_clear(engine, clipboard, app_dir, png):
    clipboard.set_image(png())
    image_item = engine.capture().item
    clipboard.set_text("t")
    engine.capture()

    engine.delete_history_item(image_item.id)
    assert os.listdir(os.path.join(app_dir, "clipboard-images")) == []
    with pytest.raises(NotFoundError):
        engine.delete_history_item(image_item.id)

    assert engine.clear_history() == 1
    assert engine.get_history() == []
    assert _history_file(app_dir) == []


def test_lower_limit_evicts_oldest(engine, clipboard):
    for i in range(55):
        clipboard.set_text(f"item {i}")
        engine.capture()
    engine.update_settings({"historyLimit": 50})
    texts = [it.text for it in engine.get_history()]
    assert len(texts) == 50
    assert texts[0] == "item 54"
    assert "item 4" not in texts


def test_history_survives_restart(clipboard, app_dir):
    first = ClipboardEngine(clipboard, app_dir=app_dir)
    clipboard.set_text("persisted")
    item = first.capture().item
    first.close()

    second = ClipboardEngine(clipboard, app_dir=app_dir)
    try:
        assert [it.id for it in second.get_history()] == [item.id]
        # same clipboard after restart only touches the item
        result = second.capture()
        assert result.item.id == item.id
        assert not result.is_new
    finally:
        second.close()


def test_open_storage_dir(engine, app_dir):
    with pytest.raises(ClipTrailError):
        engine.open_storage_dir()
    opened = []
    eng = ClipboardEngine(engine._backend, app_dir=app_dir, opener=opened.append)
    eng.open_storage_dir()
    assert opened == [app_dir]
    eng.close()


def test_shortcut_registration(clipboard, app_dir):
    class Registrar:
        def __init__(self):
            self.calls = []

        def register(self, accelerator):
            self.calls.append(accelerator)
            if accelerator == "Ctrl+Q":
                raise RuntimeError("already taken")

    reg = Registrar()
    eng = ClipboardEngine(clipboard, app_dir=app_dir, registrar=reg)
    try:
        assert eng.bind_shortcut() == "Alt+Shift+V"
        eng.update_settings({"globalShortcut": "shift + ctrl + x"})
        assert reg.calls[-1] == "Ctrl+Shift+X"
        with pytest.raises(ClipTrailError):
            eng.update_settings({"globalShortcut": "ctrl+q"})
    finally:
        eng.close()


def test_polling_captures_and_reschedules(engine, clipboard):
    clipboard.set_text("polled")
    engine.start_polling()
    try:
        deadline = time.monotonic() + 3.0
        while not engine.get_history() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert [it.text for it in engine.get_history()] == ["polled"]
        engine.update_settings({"pollIntervalMs": 2000})
        assert engine.poll_timer.interval_ms == 2000
        assert engine.poll_timer.running
    finally:
        engine.stop_polling()
    assert not engine.poll_timer.running


def test_to_payload_is_camel_case(engine, clipboard):
    clipboard.set_text("payload")
    result = engine.capture()
    data = to_payload(result)
    assert data["isNew"] is True
    assert data["item"]["contentHash"] == result.item.content_hash
    assert to_payload(engine.get_settings())["pollIntervalMs"] == 800
    assert [row["id"] for row in to_payload(engine.get_history())] == [result.item.id]


def test_scenarios_poll_favorite_delete(engine, clipboard):
    clipboard.set_text("Hello World")
    first = engine.poll_clipboard()
    assert first is not None and first.kind is ContentKind.TEXT
    assert len(engine.get_history()) == 1

    second = engine.poll_clipboard()
    assert second.id == first.id
    assert second.text == first.text
    assert second.updated_at > first.updated_at
    assert len(engine.get_history()) == 1

    assert engine.toggle_favorite(first.id).is_favorite
    engine.update_settings({"historyLimit": 50})
    for i in range(60):
        clipboard.set_text(f"pressure {i}")
        engine.capture()
    ids = [it.id for it in engine.get_history()]
    assert first.id in ids
    assert len(ids) == 50

    engine.delete_history_item(first.id)
    assert first.id not in [it.id for it in engine.get_history()]


def test_repeated_explicit_polls_strictly_advance(engine, clipboard):
    clipboard.set_text("same")
    stamps = [engine.poll_clipboard().updated_at for _ in range(5)]
    assert stamps == sorted(set(stamps))
    assert len(engine.get_history()) == 1


def _translucent_png() -> bytes:
    im = Image.new("RGBA", (6, 4), (10, 120, 200, 128))
    im.putpixel((0, 0), (255, 0, 0, 64))
    out = io.BytesIO()
    im.save(out, format="PNG")
    return out.getvalue()


def test_copy_back_through_dib_touches_the_same_item(dib_clipboard, app_dir):
    engine = ClipboardEngine(dib_clipboard, app_dir=app_dir)
    try:
        dib_clipboard.set_image(_translucent_png())
        first = engine.capture()
        assert first.is_new
        dib_clipboard.set_text("between")
        engine.capture()

        engine.copy_history_item(first.item.id)
        again = engine.capture()

        assert again is not None and not again.is_new
        assert again.item.id == first.item.id
        assert len(engine.get_history(HistoryFilter(kind=ContentKind.IMAGE))) == 1
        assert len(os.listdir(os.path.join(app_dir, "clipboard-images"))) == 1
    finally:
        engine.close()


def test_failed_limit_change_keeps_settings_and_history(engine, clipboard, app_dir, monkeypatch):
    for i in range(60):
        clipboard.set_text(f"item {i}")
        engine.capture()

    def boom(self, items):
        raise StorageIOError("disk full")

    monkeypatch.setattr(LedgerFile, "save", boom)
    with pytest.raises(StorageIOError):
        engine.update_settings({"historyLimit": 50})
    monkeypatch.undo()

    assert engine.get_settings().history_limit == 300
    assert engine.ledger.limit == 300
    assert len(engine.get_history()) == 60
    with open(os.path.join(app_dir, "settings.json"), encoding="utf-8") as f:
        assert json.load(f)["historyLimit"] == 300


def test_settings_write_failure_restores_history_limit(engine, clipboard, monkeypatch):
    for i in range(55):
        clipboard.set_text(f"item {i}")
        engine.capture()

    def fail(path, data):
        raise StorageIOError("read-only")

    monkeypatch.setattr(settings_mod, "atomic_write_json", fail)
    with pytest.raises(StorageIOError):
        engine.update_settings({"historyLimit": 50})

    assert engine.get_settings().history_limit == 300
    assert engine.ledger.limit == 300
    clipboard.set_text("next")
    engine.capture()
    assert len(engine.get_history()) == 51


def _poll_in_background(engine):
    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("item", engine.poll_clipboard()))
    worker.start()
    return worker, result


def test_delete_during_capture_is_not_undone(blocking_clipboard, app_dir):
    engine = ClipboardEngine(blocking_clipboard, app_dir=app_dir)
    try:
        blocking_clipboard.set_text("secret")
        item = engine.capture().item
        blocking_clipboard.hold = True

        worker, result = _poll_in_background(engine)
        assert blocking_clipboard.entered.wait(5)
        engine.delete_history_item(item.id)
        blocking_clipboard.release.set()
        worker.join(5)

        assert result["item"] is None
        assert engine.get_history() == []
        assert _history_file(app_dir) == []
        # the deleted content stays out while the clipboard still holds it
        blocking_clipboard.hold = False
        assert engine.capture() is None
        assert engine.get_history() == []
    finally:
        engine.close()


def test_clear_during_capture_is_not_undone(blocking_clipboard, app_dir):
    engine = ClipboardEngine(blocking_clipboard, app_dir=app_dir)
    try:
        blocking_clipboard.set_text("a")
        engine.capture()
        blocking_clipboard.set_text("b")
        engine.capture()
        blocking_clipboard.hold = True

        worker, result = _poll_in_background(engine)
        assert blocking_clipboard.entered.wait(5)
        assert engine.clear_history() == 2
        blocking_clipboard.release.set()
        worker.join(5)

        assert result["item"] is None
        assert engine.get_history() == []
    finally:
        engine.close()


def test_unrelated_delete_during_capture_keeps_new_content(blocking_clipboard, app_dir):
    engine = ClipboardEngine(blocking_clipboard, app_dir=app_dir)
    try:
        blocking_clipboard.set_text("old")
        old = engine.capture().item
        blocking_clipboard.set_text("new")
        blocking_clipboard.hold = True

        worker, result = _poll_in_background(engine)
        assert blocking_clipboard.entered.wait(5)
        engine.delete_history_item(old.id)
        blocking_clipboard.release.set()
        worker.join(5)

        assert result["item"].text == "new"
        assert [it.text for it in engine.get_history()] == ["new"]
    finally:
        engine.close()


def test_legacy_image_hash_is_migrated_on_load(clipboard, app_dir, png):
    data = png((9, 9, 9))
    legacy = hashlib.sha256(data).hexdigest()
    images = os.path.join(app_dir, "clipboard-images")
    os.makedirs(images)
    with open(os.path.join(images, f"{legacy[:24]}.png"), "wb") as f:
        f.write(data)
    rows = [{"id": "img-1-legacy", "type": "image", "imagePath": f"clipboard-images/{legacy[:24]}.png",
             "contentHash": legacy, "isFavorite": False, "createdAt": 1, "updatedAt": 1}]
    with open(os.path.join(app_dir, "clipboard-history.json"), "w", encoding="utf-8") as f:
        json.dump(rows, f)

    engine = ClipboardEngine(clipboard, app_dir=app_dir)
    try:
        [item] = engine.get_history()
        assert item.content_hash == content_hash(ContentKind.IMAGE, canonical_png(data))
        assert not os.path.exists(os.path.join(images, f"{legacy[:24]}.png"))

        clipboard.set_image(data)
        result = engine.capture()
        assert not result.is_new
        assert result.item.id == "img-1-legacy"
        assert len(os.listdir(images)) == 1
    finally:
        engine.close()
