"""Shared utility functions for the styleset application."""

import base64
import binascii
import io
import mimetypes
import re
from pathlib import Path

from PIL import Image
from PIL.PngImagePlugin import PngInfo


DATA_URL_PATTERN = re.compile(r'^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w-]+=[\w.-]+)*;base64,(?P<data>.*)$', re.DOTALL)


def decode_image_data(image_data: str) -> tuple[bytes, str | None]:
    """Decode base64 image data, accepting plain base64 or a data URL.

    Args:
        image_data: Base64 string, optionally prefixed with "data:<mime>;base64,"

    Returns:
        Tuple of (raw bytes, mime type from the data URL or None)

    Raises:
        ValueError: If the payload is empty or not valid base64
    """
    mime_type = None
    payload = image_data.strip()

    match = DATA_URL_PATTERN.match(payload)
    if match:
        mime_type = match.group("mime")
        payload = match.group("data")

    if not payload:
        raise ValueError("Image data is empty")

    try:
        return base64.b64decode(payload, validate=True), mime_type
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Image data is not valid base64: {e}") from e


def encode_image_data(data: bytes) -> str:
    """Encode raw image bytes as a base64 string."""
    return base64.b64encode(data).decode("ascii")


def guess_mime_type(path: Path, default: str = "image/png") -> str:
    """Guess an image MIME type from a file name."""
    media_type, _ = mimetypes.guess_type(str(path))
    return media_type or default


def write_png_with_metadata(image_bytes: bytes, dest: Path, metadata: dict) -> Path:
    """Save image bytes as PNG and embed metadata in PNG text chunks.

    The source bytes may be any format Pillow can read; output is always PNG.

    Args:
        image_bytes: Encoded image bytes
        dest: Destination PNG path
        metadata: Key/value pairs stored as PNG text chunks

    Returns:
        The destination path

    Raises:
        ValueError: If the bytes cannot be decoded as an image
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (OSError, Image.DecompressionBombError) as e:
        raise ValueError(f"Could not decode image: {e}") from e

    png_info = PngInfo()
    for key, value in metadata.items():
        if value is None:
            continue
        png_info.add_text(key, str(value))

    dest.parent.mkdir(parents=True, exist_ok=True)
    img.save(dest, format="PNG", pnginfo=png_info)
    return dest


def read_png_metadata(image_path: Path) -> dict:
    """Extract text-chunk metadata from a PNG file.

    Args:
        image_path: Path to a PNG file

    Returns:
        Dictionary with embedded metadata, empty if unreadable
    """
    try:
        with Image.open(image_path) as img:
            return dict(getattr(img, "text", {}))
    except OSError:
        return {}


def ensure_within(file_path: Path, base_dir: Path) -> Path:
    """Validate that a path stays inside a base directory (prevents path traversal).

    Returns:
        The resolved path

    Raises:
        ValueError: If the path is outside base_dir
    """
    resolved = file_path.resolve()
    try:
        resolved.relative_to(base_dir.resolve())
    except ValueError:
        raise ValueError(f"Access denied: {file_path} is outside {base_dir}")
    return resolved
