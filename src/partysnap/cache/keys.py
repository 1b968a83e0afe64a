"""Cache key construction.

Keys must fully determine the payload served from them. Invalidation
patterns always end in ``:*`` so that event ``1`` never matches event ``10``.
"""

from __future__ import annotations

import re

PARTICIPANTS_PREFIX = "participants"
EVENT_PHOTOS_PREFIX = "event_photos"
PHOTO_URL_PREFIX = "photo_urls"
PHOTO_BATCH_PREFIX = "photo_batch"
ALBUM_PREFIX = "album"

_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._/-]")
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def clean_path(path: str) -> str:
    return _UNSAFE_PATH_CHARS.sub("_", path)


# --- Participants ---


def participants_page_key(event_id: str, page: int, limit: int) -> str:
    return f"{PARTICIPANTS_PREFIX}:{event_id}:page:{page}:{limit}"


def participants_metadata_key(event_id: str) -> str:
    return f"{PARTICIPANTS_PREFIX}:{event_id}:metadata"


def participants_pattern(event_id: str) -> str:
    return f"{PARTICIPANTS_PREFIX}:{event_id}:*"


# --- Photo URLs ---


def event_photos_key(event_id: str, sort_by: str, role: str, moderation: str, page: int, limit: int) -> str:
    return f"{EVENT_PHOTOS_PREFIX}:{event_id}:{sort_by}:{role}:{moderation}:{page}:{limit}"


def event_photos_pattern(event_id: str) -> str:
    return f"{EVENT_PHOTOS_PREFIX}:{event_id}:*"


def event_access_key(event_id: str) -> str:
    return f"{EVENT_PHOTOS_PREFIX}:{event_id}:access"


def photo_url_key(path: str) -> str:
    return f"{PHOTO_URL_PREFIX}:{clean_path(path)}"


def photo_batch_key(event_id: str) -> str:
    return f"{PHOTO_BATCH_PREFIX}:{event_id}"


# --- Albums ---


def album_page_key(event_id: str, page: int, limit: int, include_photos: bool = True) -> str:
    suffix = "" if include_photos else ":bare"
    return f"{ALBUM_PREFIX}:{event_id}:page:{page}:limit:{limit}{suffix}"


def album_pages_pattern(event_id: str) -> str:
    return f"{ALBUM_PREFIX}:{event_id}:*"


def album_key(album_id: str, include_photos: bool = True) -> str:
    suffix = "" if include_photos else ":bare"
    return f"{ALBUM_PREFIX}:id:{album_id}{suffix}"


def album_photo_url_prefix(album_id: str) -> str:
    return f"photo:url:album:{album_id}:"


def album_photo_url_key(album_id: str, path: str) -> str:
    return f"{album_photo_url_prefix(album_id)}{_NON_ALNUM.sub('_', path)}"


# --- Analytics ---


def cache_stats_key(namespace: str, kind: str, outcome: str) -> str:
    return f"cache_stats:{namespace}:{kind}:{outcome}"
