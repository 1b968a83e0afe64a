"""Cache key shapes and signed-URL freshness policies."""

import fnmatch
from datetime import timedelta

import jwt
import pytest
from fakes import START

from partysnap.cache import keys
from partysnap.cache.freshness import is_payload_still_fresh, is_signed_url_fresh, signed_url_expires_at


def signed_url(path, expires_at):
    token = jwt.encode({"url": path, "exp": int(expires_at.timestamp())}, "storage-secret", algorithm="HS256")
    return f"https://cdn.test/storage/v1/object/sign/photos/{path}?token={token}"


class TestKeys:
    def test_event_photos_key_segments_role_and_moderation(self):
        anonymous = keys.event_photos_key("e1", "most_liked", "anonymous", "moderated", 1, 50)
        organizer = keys.event_photos_key("e1", "most_liked", "organizer", "moderated", 1, 50)
        assert anonymous != organizer
        assert anonymous == "event_photos:e1:most_liked:anonymous:moderated:1:50"

    def test_patterns_do_not_match_longer_ids(self):
        assert not fnmatch.fnmatchcase(keys.participants_page_key("10", 1, 20), keys.participants_pattern("1"))
        assert not fnmatch.fnmatchcase(keys.album_page_key("10", 1, 50), keys.album_pages_pattern("1"))
        assert fnmatch.fnmatchcase(keys.participants_metadata_key("1"), keys.participants_pattern("1"))

    def test_event_access_key_is_invalidated_with_the_pages(self):
        assert fnmatch.fnmatchcase(keys.event_access_key("1"), keys.event_photos_pattern("1"))
        assert not fnmatch.fnmatchcase(keys.event_access_key("10"), keys.event_photos_pattern("1"))

    def test_album_keys_distinguish_bare_payloads(self):
        assert keys.album_key("a1") != keys.album_key("a1", include_photos=False)
        assert keys.album_page_key("e1", 1, 50) != keys.album_page_key("e1", 1, 50, include_photos=False)

    def test_clean_path(self):
        assert keys.clean_path("e1/user 1/img(1).jpg") == "e1/user_1/img_1_.jpg"
        assert keys.photo_url_key("a b.jpg") == "photo_urls:a_b.jpg"

    def test_album_photo_url_key(self):
        assert keys.album_photo_url_key("a1", "e1/p.jpg") == "photo:url:album:a1:e1_p_jpg"


class TestSignedUrlFreshness:
    def test_jwt_expiry_is_read(self):
        url = signed_url("e1/p.jpg", START + timedelta(hours=1))
        assert signed_url_expires_at(url) == START + timedelta(hours=1)

    def test_expires_parameter_is_read(self):
        url = f"https://cdn.test/p.jpg?Expires={int((START + timedelta(hours=2)).timestamp())}"
        assert signed_url_expires_at(url) == START + timedelta(hours=2)

    def test_fresh_outside_buffer(self):
        assert is_signed_url_fresh(signed_url("p", START + timedelta(minutes=10)), START) is True

    def test_stale_inside_five_minute_buffer(self):
        assert is_signed_url_fresh(signed_url("p", START + timedelta(minutes=4)), START) is False

    def test_unparsable_token_is_stale(self):
        assert is_signed_url_fresh("https://cdn.test/p.jpg?token=garbage", START) is False

    def test_url_without_expiry_is_fresh(self):
        assert is_signed_url_fresh("https://cdn.test/p.jpg", START) is True


class TestPayloadPolicies:
    def test_photo_urls_policy_checks_every_url(self):
        payload = {
            "urls": {
                "a": signed_url("a", START + timedelta(hours=1)),
                "b": signed_url("b", START + timedelta(minutes=2)),
            }
        }
        assert is_payload_still_fresh("photo_urls", payload, START) is False

    def test_albums_policy_on_page(self):
        page = {"albums": [{"processed_photos": [{"photo_url": signed_url("a", START + timedelta(hours=1))}]}]}
        assert is_payload_still_fresh("albums", page, START) is True

    def test_albums_policy_on_single_album(self):
        album = {"processed_photos": [{"photo_url": signed_url("a", START + timedelta(minutes=1))}]}
        assert is_payload_still_fresh("albums", album, START) is False

    @pytest.mark.parametrize("kind", ["participants", "unknown"])
    def test_other_kinds_always_fresh(self, kind):
        assert is_payload_still_fresh(kind, {"anything": True}, START) is True
