"""Reads local images into upload payloads, optionally re-encoding them.

Full-quality bytes are uploaded by default. With compression on, the image
is downscaled to fit a bounding box and re-encoded as JPEG, which trades
quality for much faster uploads on slow links.
"""

import asyncio
import io
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image

from wardrobe_sync.storage.base import FileSystem

_EXT_RE = re.compile(r"\.(jpg|jpeg|png|webp)\b")

CONTENT_TYPES = {
    "jpg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}


@dataclass
class UploadPayload:
    data: bytes
    content_type: str


def guess_ext(uri: str) -> Optional[str]:
    """Image extension from a URI, normalized (jpeg -> jpg). None if unknown."""
    m = _EXT_RE.search(uri.lower())
    if not m:
        return None
    ext = m.group(1)
    return "jpg" if ext == "jpeg" else ext


def content_type_for(ext: Optional[str]) -> str:
    return CONTENT_TYPES.get(ext or "jpg", "image/jpeg")


def compress_image(
    data: bytes,
    max_size: Tuple[int, int] = (1600, 2000),
    quality: int = 92,
) -> bytes:
    """Downscale to fit ``max_size`` (aspect preserved) and re-encode as JPEG."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail(max_size, Image.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


async def read_upload_bytes(
    fs: FileSystem,
    uri: str,
    compress: bool = False,
    max_size: Tuple[int, int] = (1600, 2000),
    quality: int = 92,
) -> UploadPayload:
    data = await fs.read_bytes(uri)
    if compress:
        # CPU bound; keep the event loop responsive
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, compress_image, data, max_size, quality)
        return UploadPayload(data, "image/jpeg")
    return UploadPayload(data, content_type_for(guess_ext(uri)))
