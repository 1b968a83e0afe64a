"""Freshness policies for cached payloads that embed signed URLs.

A cached page is only worth serving while every signed URL inside it is
still usable. Storage signs URLs either with a JWT in the ``token`` query
parameter or with a Unix ``Expires`` parameter.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlparse

import jwt

EXPIRY_BUFFER = timedelta(minutes=5)

FreshnessPolicy = Callable[[dict[str, Any], datetime], bool]


def signed_url_expires_at(url: str) -> datetime | None:
    """Return the expiry embedded in a signed URL, or None if it carries none.

    Raises:
        ValueError: The URL carries an expiry marker that cannot be decoded.
    """
    query = parse_qs(urlparse(url).query)
    if "token" in query:
        try:
            claims = jwt.decode(query["token"][0], options={"verify_signature": False, "verify_exp": False})
        except jwt.PyJWTError as exc:
            msg = f"Undecodable signed URL token: {exc}"
            raise ValueError(msg) from exc
        exp = claims.get("exp")
        return datetime.fromtimestamp(int(exp), tz=UTC) if exp is not None else None
    if "Expires" in query:
        return datetime.fromtimestamp(int(query["Expires"][0]), tz=UTC)
    return None


def is_signed_url_fresh(url: str | None, now: datetime, buffer: timedelta = EXPIRY_BUFFER) -> bool:
    if not url:
        return True
    try:
        expires_at = signed_url_expires_at(url)
    except ValueError:
        return False
    return expires_at is None or now + buffer < expires_at


def _all_fresh(urls: Iterable[str | None], now: datetime) -> bool:
    return all(is_signed_url_fresh(url, now) for url in urls)


def _photo_urls_fresh(payload: dict[str, Any], now: datetime) -> bool:
    return _all_fresh((payload.get("urls") or {}).values(), now)


def _album_photos(album: dict[str, Any]) -> Iterable[str | None]:
    return (photo.get("photo_url") for photo in album.get("processed_photos") or [])


def _albums_fresh(payload: dict[str, Any], now: datetime) -> bool:
    albums = payload["albums"] if "albums" in payload else [payload]
    return all(_all_fresh(_album_photos(album), now) for album in albums)


def _always_fresh(_payload: dict[str, Any], _now: datetime) -> bool:
    return True


POLICIES: dict[str, FreshnessPolicy] = {
    "photo_urls": _photo_urls_fresh,
    "albums": _albums_fresh,
    "participants": _always_fresh,
}


def is_payload_still_fresh(kind: str, payload: dict[str, Any], now: datetime) -> bool:
    """Apply the freshness policy registered for ``kind``. Unknown kinds are always fresh."""
    return POLICIES.get(kind, _always_fresh)(payload, now)
