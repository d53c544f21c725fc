"""Content-Disposition correction applied when serving."""

from __future__ import annotations

from typing import Optional


IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".bmp", ".gif", ".tiff")


def is_image_path(path: str) -> bool:
    return path.endswith(IMAGE_EXTENSIONS)


def fix_disposition(request_path: str, disposition: Optional[str]) -> str:
    """Force images to render inline; leave every other disposition alone.

    Runs on every response rather than at write time, so stored metadata keeps
    exactly what the origin sent.
    """
    if disposition is None:
        return "inline"
    if "attachment" in disposition and is_image_path(request_path):
        return disposition.replace("attachment", "inline")
    return disposition
