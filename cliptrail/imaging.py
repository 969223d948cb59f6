from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import re
import struct
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

from PIL import Image, UnidentifiedImageError

log = logging.getLogger(__name__)

BI_BITFIELDS = 3
MAX_SOURCE_FILE_BYTES = 64 * 1024 * 1024
_RE_IMG_SRC = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+))""", re.IGNORECASE)


def _encode_png(im: Image.Image) -> bytes:
    if im.mode not in ("RGB", "RGBA", "L", "LA", "P"):
        im = im.convert("RGBA")
    out = io.BytesIO()
    im.save(out, format="PNG")
    return out.getvalue()


def png_from_encoded(raw: bytes) -> bytes | None:
    """Re-encode any Pillow-readable image as PNG; ``None`` if not an image."""
    if not raw:
        return None
    try:
        with Image.open(io.BytesIO(raw)) as im:
            im.load()
            return _encode_png(im)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        log.debug("图片解码失败", exc_info=True)
        return None


def png_from_rgba(width: int, height: int, rgba: bytes) -> bytes:
    if width <= 0 or height <= 0 or len(rgba) < width * height * 4:
        raise ValueError("图片像素格式无效")
    im = Image.frombytes("RGBA", (width, height), bytes(rgba[: width * height * 4]))
    return _encode_png(im)


def png_from_dib(dib: bytes) -> bytes | None:
    """Convert a CF_DIB / CF_DIBV5 payload to PNG by prepending a BMP file header."""
    if not dib or len(dib) < 40:
        return None
    try:
        header_size = struct.unpack_from("<I", dib, 0)[0]
        if header_size < 40:
            return None
        bit_count = struct.unpack_from("<H", dib, 14)[0]
        compression = struct.unpack_from("<I", dib, 16)[0]
        clr_used = struct.unpack_from("<I", dib, 32)[0]
        if bit_count <= 8:
            palette_entries = clr_used or (1 << bit_count)
        else:
            palette_entries = 0
        masks = 12 if compression == BI_BITFIELDS and header_size == 40 else 0
        offset = 14 + header_size + masks + palette_entries * 4
        bf = b"BM" + struct.pack("<IHHI", 14 + len(dib), 0, 0, offset)
    except struct.error:
        return None
    return png_from_encoded(bf + dib)


def canonical_png(raw: bytes) -> bytes | None:
    """Decode any image and re-encode it as RGBA PNG.

    Equal pixels always give equal bytes, whichever format or encoder the
    clipboard owner used, so the hash of the result identifies the image.
    """
    if not raw:
        return None
    try:
        with Image.open(io.BytesIO(raw)) as im:
            rgba = im.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        log.debug("图片解码失败", exc_info=True)
        return None
    return _encode_png(rgba)


_DIBV5_HEADER_SIZE = 124
_LCS_SRGB = 0x73524742
_LCS_GM_IMAGES = 4


def dib_from_png(png: bytes) -> bytes:
    """32-bit BI_BITFIELDS DIBV5 with an alpha mask, bottom-up rows."""
    with Image.open(io.BytesIO(png)) as im:
        rgba = im.convert("RGBA")
    width, height = rgba.size
    pixels = rgba.transpose(Image.Transpose.FLIP_TOP_BOTTOM).tobytes("raw", "BGRA")
    header = struct.pack(
        "<IiiHHIIiiII4II36x3I4I",
        _DIBV5_HEADER_SIZE,
        width,
        height,
        1,
        32,
        BI_BITFIELDS,
        len(pixels),
        2835,
        2835,
        0,
        0,
        0x00FF0000,
        0x0000FF00,
        0x000000FF,
        0xFF000000,
        _LCS_SRGB,
        0,
        0,
        0,
        _LCS_GM_IMAGES,
        0,
        0,
        0,
    )
    return header + pixels


def rgba_from_png(png: bytes) -> tuple[int, int, bytes]:
    with Image.open(io.BytesIO(png)) as im:
        rgba = im.convert("RGBA")
        return rgba.width, rgba.height, rgba.tobytes()


def data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def _png_from_data_url(url: str) -> bytes | None:
    if not url.startswith("data:image/"):
        return None
    header, sep, payload = url.partition(",")
    if not sep or ";base64" not in header:
        return None
    try:
        raw = base64.b64decode(payload.strip(), validate=False)
    except (binascii.Error, ValueError):
        return None
    return png_from_encoded(raw)


def _file_url_to_path(url: str) -> str | None:
    if not url.lower().startswith("file:"):
        return None
    parsed = urlparse(url)
    if parsed.netloc and parsed.netloc != "localhost":
        return None
    return url2pathname(unquote(parsed.path))


def _png_from_path(path: str) -> bytes | None:
    if not path or "\n" in path or len(path) > 4096:
        return None
    try:
        if not os.path.isfile(path) or os.path.getsize(path) > MAX_SOURCE_FILE_BYTES:
            return None
        with open(path, "rb") as f:
            raw = f.read()
    except OSError:
        return None
    return png_from_encoded(raw)


def image_from_text_source(text: str) -> bytes | None:
    """Resolve text that points at an image (data URL, ``<img>``, file URL or path) to PNG bytes."""
    s = text.strip()
    if len(s) >= 2 and s[0] == s[-1] == '"':
        s = s[1:-1].strip()
    if not s:
        return None

    if s.startswith("data:image/"):
        return _png_from_data_url(s)

    if "<img" in s.lower():
        m = _RE_IMG_SRC.search(s)
        if m:
            src = next(g for g in m.groups() if g is not None)
            if src.startswith("data:image/"):
                png = _png_from_data_url(src)
                if png is not None:
                    return png
            path = _file_url_to_path(src)
            if path is not None:
                png = _png_from_path(path)
                if png is not None:
                    return png
            if os.path.isabs(src):
                png = _png_from_path(src)
                if png is not None:
                    return png

    path = _file_url_to_path(s)
    if path is not None:
        return _png_from_path(path)
    if os.path.isabs(s):
        return _png_from_path(s)
    return None
