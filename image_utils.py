"""Image handling for note uploads.

Phones often hand us HEIC photos, rotated via EXIF, and larger than the
upload limit. Everything here works on raw bytes so the upload widget, the
storage layer and the tests share one path.
"""

import io
import logging
import os
from typing import Optional, Tuple

import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError

LOGGER = logging.getLogger("notesnap")

pillow_heif.register_heif_opener()

MAX_DIM_PX = 4000
HEIC_EXTENSIONS = (".heic", ".heif")
HEIC_BRANDS = (b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1")
QUALITY_LADDER = (85, 80, 75, 70, 65, 60, 55, 50)
DOWNSCALE_QUALITIES = (75, 70, 65, 60, 55, 50)
DOWNSCALE_STEP = 0.9
DOWNSCALE_ROUNDS = 4


def _human_mb(num_bytes: int) -> str:
    return f"{(num_bytes / (1024 * 1024)):.1f}MB"


def _has_alpha(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA"):
        return img.getchannel("A").getextrema()[0] < 255
    return img.mode == "P" and "transparency" in img.info


def _flatten_on_white(img: Image.Image) -> Image.Image:
    if img.mode not in ("RGBA", "LA", "P"):
        return img.convert("RGB")
    rgba = img.convert("RGBA")
    bg = Image.new("RGB", rgba.size, (255, 255, 255))
    bg.paste(rgba, mask=rgba.getchannel("A"))
    return bg


def _encode(img: Image.Image, fmt: str, quality: int = 85) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG":
        rgb = _flatten_on_white(img) if _has_alpha(img) else img.convert("RGB")
        rgb.save(buf, format="JPEG", quality=int(quality), optimize=True)
    else:
        img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


def _open(file_bytes: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(file_bytes))
    img.load()
    return img


# ============================================================
# HEIC
# ============================================================
def is_heic(filename: str, file_bytes: Optional[bytes] = None) -> bool:
    ext = os.path.splitext(filename or "")[1].lower()
    if ext in HEIC_EXTENSIONS:
        return True
    if file_bytes and len(file_bytes) >= 12 and file_bytes[4:8] == b"ftyp":
        return file_bytes[8:12] in HEIC_BRANDS
    return False


def convert_heic_to_jpeg(file_bytes: bytes, quality: int = 90) -> bytes:
    try:
        img = _open(file_bytes)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ValueError("Could not decode HEIC image") from e
    img = ImageOps.exif_transpose(img)
    out = _encode(img, "JPEG", quality=quality)
    LOGGER.info(
        "HEIC converted",
        extra={"ctx": {"component": "image", "from": _human_mb(len(file_bytes)), "to": _human_mb(len(out))}},
    )
    return out


# ============================================================
# VALIDATION / COMPRESSION
# ============================================================
def validate_image_file(file_bytes: bytes, max_mb: float, purpose: str) -> Tuple[bool, str]:
    if not file_bytes:
        return False, "No image data received."
    try:
        w, h = Image.open(io.BytesIO(file_bytes)).size
    except (UnidentifiedImageError, OSError):
        return False, "That file isn't an image we can read. Please upload PNG, JPG or HEIC."

    if w > MAX_DIM_PX or h > MAX_DIM_PX:
        return False, f"Image is {w}x{h}px. The largest allowed is {MAX_DIM_PX}x{MAX_DIM_PX}px."
    if len(file_bytes) > int(max_mb * 1024 * 1024):
        return False, f"{purpose.capitalize() or 'Image'} is {_human_mb(len(file_bytes))}. Keep it under {max_mb:.0f}MB."
    return True, ""


def _compress_bytes_to_limit(
    file_bytes: bytes,
    max_mb: float,
    purpose: str,
    prefer_fmt: Optional[str] = None,
) -> Tuple[bool, bytes, str, str]:
    """Re-encode an image until it fits ``max_mb``.

    Walks a JPEG quality ladder first, then shrinks the image in 10% steps.
    Transparent images stay PNG when that already fits, unless a format was
    asked for explicitly.
    """
    max_bytes = int(max_mb * 1024 * 1024)
    size_bytes = len(file_bytes)

    try:
        img = _open(file_bytes)
    except (UnidentifiedImageError, OSError):
        return False, b"", "", "That file isn't an image we can read. Please upload PNG, JPG or HEIC."

    w, h = img.size
    if w > MAX_DIM_PX or h > MAX_DIM_PX:
        return False, b"", "", f"Image is {w}x{h}px. The largest allowed is {MAX_DIM_PX}x{MAX_DIM_PX}px."

    fmt = (prefer_fmt or "JPEG").upper()
    if (img.format or "").upper() in ("JPG", "JPEG"):
        fmt = "JPEG"
    if prefer_fmt is None and fmt == "JPEG" and _has_alpha(img):
        png = _encode(img, "PNG")
        if len(png) <= max_bytes:
            return True, png, "image/png", ""

    out, quality = None, None
    for q in QUALITY_LADDER:
        candidate = _encode(img, fmt, quality=q)
        if len(candidate) <= max_bytes:
            out, quality = candidate, q
            break

    scale = DOWNSCALE_STEP
    for _ in range(DOWNSCALE_ROUNDS):
        if out is not None:
            break
        smaller = img.resize((max(1, int(w * scale)), max(1, int(h * scale))))
        for q in DOWNSCALE_QUALITIES:
            candidate = _encode(smaller, fmt, quality=q)
            if len(candidate) <= max_bytes:
                out, quality = candidate, q
                break
        scale *= DOWNSCALE_STEP

    if out is None:
        return False, b"", "", f"Image is {_human_mb(size_bytes)} and couldn't be shrunk under {max_mb:.0f}MB."

    LOGGER.info(
        "Image compressed",
        extra={"ctx": {"component": "image", "purpose": purpose, "from": _human_mb(size_bytes),
                       "to": _human_mb(len(out)), "quality": quality}},
    )
    return True, out, "image/jpeg" if fmt == "JPEG" else "image/png", ""


def prepare_upload(filename: str, file_bytes: bytes, max_mb: float,
                   purpose: str = "notes") -> Tuple[bool, bytes, str, str]:
    """HEIC -> JPEG, then compress if still over the limit.

    Returns (ok, bytes, content_type, error).
    """
    content_type = ""
    if is_heic(filename, file_bytes):
        try:
            file_bytes = convert_heic_to_jpeg(file_bytes)
        except ValueError:
            LOGGER.warning("HEIC decode failed", extra={"ctx": {"component": "image", "file": filename}})
            return False, b"", "", "That HEIC photo couldn't be read. Try exporting it as JPEG."
        content_type = "image/jpeg"

    if len(file_bytes) > int(max_mb * 1024 * 1024):
        return _compress_bytes_to_limit(file_bytes, max_mb, purpose)

    ok, msg = validate_image_file(file_bytes, max_mb, purpose)
    if not ok:
        return False, b"", "", msg
    if not content_type:
        fmt = (Image.open(io.BytesIO(file_bytes)).format or "").upper()
        content_type = "image/png" if fmt == "PNG" else "image/jpeg"
    return True, file_bytes, content_type, ""
