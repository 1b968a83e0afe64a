"""Storage path helpers for photo URLs as stored in the database."""

from __future__ import annotations

import re
from datetime import datetime
from urllib.parse import urlparse

from partysnap.cache.freshness import is_signed_url_fresh

_SIGNED_PATH = re.compile(r"/storage/v1/object/sign/photos/(.+)")
_PUBLIC_PATH = re.compile(r"/storage/v1/object/public/photos/(.+)")


def extract_storage_path(photo_url: str | None) -> str | None:
    """Return the bucket-relative path of a photo, or None if it is not in our bucket.

    Accepts signed URLs, public URLs, ``photos/``-prefixed paths and bare
    relative paths.
    """
    if not photo_url or not isinstance(photo_url, str):
        return None
    if "token=" in photo_url:
        match = _SIGNED_PATH.search(urlparse(photo_url).path)
        if match:
            return match.group(1)
    match = _PUBLIC_PATH.search(photo_url)
    if match:
        return match.group(1)
    if photo_url.startswith("photos/"):
        return photo_url.removeprefix("photos/")
    if "http" not in photo_url and not photo_url.startswith("/"):
        return photo_url
    return None


def needs_url_conversion(url: str | None, now: datetime) -> bool:
    """Whether a stored photo URL must be (re)signed before it is handed to a client."""
    if not url or not isinstance(url, str):
        return False
    if "/public/photos/" in url:
        return True
    if "http" not in url:
        return True
    if "token=" in url:
        return not is_signed_url_fresh(url, now)
    return False
