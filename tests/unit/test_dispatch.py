"""Dispatch engine: the validate -> preferences -> rate limit -> tokens -> batch -> send -> record pipeline."""

from dataclasses import replace
from datetime import timedelta

import pytest

from partysnap.notifications.dispatch import DispatchResult, DispatchStatus, SkipReason
from partysnap.notifications.preferences import UserPreferences
from partysnap.notifications.providers.base import DeliveryOutcome
from partysnap.notifications.types import ProviderKind

EXPO = "ExponentPushToken[device-1]"
LIKE = {"eventName": "Beach Party", "likeCount": 15, "photoId": "p1", "eventId": "e1"}


class TestSingleDispatch:
    async def test_photo_liked_to_expo_device(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO, "ios")

        result = await engine.send("u1", "photo_liked", LIKE)

        assert result.status is DispatchStatus.SENT
        assert result.success is True
        assert result.devices_reached == 1
        assert "u1" in notification_store.preferences
        sent = fake_providers[ProviderKind.EXPO].sent
        assert len(sent) == 1
        token, notification = sent[0]
        assert token == EXPO
        assert notification.title == "People love your photo! ❤️"
        entry = notification_store.history[0]
        assert entry["status"] == "sent"
        assert entry["event_id"] == "e1"
        assert entry["photo_id"] == "p1"
        assert result.history_id == entry["id"]

    async def test_invalid_data_is_rejected_before_any_lookup(self, engine, notification_store):
        result = await engine.send("u1", "photo_liked", {"eventName": "Beach Party"})
        assert result.status is DispatchStatus.INVALID
        assert result.reason is SkipReason.INVALID_DATA
        assert "likeCount" in result.error
        assert notification_store.preferences == {}

    async def test_unknown_type(self, engine):
        result = await engine.send("u1", "birthday", {})
        assert result.status is DispatchStatus.INVALID

    async def test_no_tokens(self, engine):
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.status is DispatchStatus.SKIPPED
        assert result.reason is SkipReason.NO_TOKENS
        assert result.success is False

    async def test_master_switch_off(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.preferences["u1"] = UserPreferences(user_id="u1", push_enabled=False)
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.reason is SkipReason.USER_PREFERENCES

    async def test_type_column_off(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.preferences["u1"] = UserPreferences(user_id="u1", photo_likes=False)
        result = await engine.send("u1", "photo_liked", LIKE)
        assert result.reason is SkipReason.TYPE_DISABLED

    async def test_quiet_hours(self, engine, notification_store, clock):
        clock.now = clock.now.replace(hour=23)
        notification_store.add_token("u1", EXPO)
        notification_store.preferences["u1"] = UserPreferences(user_id="u1", quiet_hours_enabled=True)
        result = await engine.send("u1", "photo_liked", LIKE)
        assert result.reason is SkipReason.QUIET_HOURS

    async def test_preference_failure_fails_open(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.fail_preferences = True
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.status is DispatchStatus.SENT

    async def test_history_failure_does_not_fail_dispatch(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.fail_history = True
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.status is DispatchStatus.SENT
        assert result.history_id is None


class TestRateLimit:
    async def test_event_live_second_send_is_limited(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO)
        first = await engine.send("u1", "event_live", {"eventName": "Gala"})
        second = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert first.status is DispatchStatus.SENT
        assert second.reason is SkipReason.RATE_LIMITED
        assert len(fake_providers[ProviderKind.EXPO].sent) == 1

    async def test_photo_liked_eleventh_send_is_limited(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        results = [await engine.send("u1", "photo_liked", LIKE) for _ in range(11)]
        assert all(r.status is DispatchStatus.SENT for r in results[:10])
        assert results[10].reason is SkipReason.RATE_LIMITED

    async def test_limit_is_per_type(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        await engine.send("u1", "event_live", {"eventName": "Gala"})
        result = await engine.send("u1", "event_starting", {"eventName": "Gala", "minutesUntilStart": 15})
        assert result.status is DispatchStatus.SENT

    async def test_window_reopens(self, engine, notification_store, clock):
        notification_store.add_token("u1", EXPO)
        await engine.send("u1", "event_live", {"eventName": "Gala"})
        clock.advance(61)
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.status is DispatchStatus.SENT


class TestMultiProvider:
    async def test_tokens_fan_out_by_provider(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO, "ios")
        notification_store.add_token("u1", "legacy-reg", "android")
        notification_store.add_token("u1", "row-v1", "android", device_token="fcm-device")
        notification_store.add_token("u1", "apns-row", "ios", token_type="apns", device_token="a" * 64)

        result = await engine.send("u1", "event_live", {"eventName": "Gala"})

        assert result.devices_reached == 4
        assert [t for t, _ in fake_providers[ProviderKind.EXPO].sent] == [EXPO]
        assert [t for t, _ in fake_providers[ProviderKind.FCM_LEGACY].sent] == ["legacy-reg"]
        assert [t for t, _ in fake_providers[ProviderKind.FCM_V1].sent] == ["fcm-device"]
        assert [t for t, _ in fake_providers[ProviderKind.APNS].sent] == ["a" * 64]

    async def test_invalid_tokens_are_deactivated_by_row_token(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO)
        notification_store.add_token("u1", "row-v1", "android", device_token="fcm-device")
        fake_providers[ProviderKind.FCM_V1].outcomes["fcm-device"] = DeliveryOutcome.INVALID_TOKEN

        result = await engine.send("u1", "event_live", {"eventName": "Gala"})

        assert result.status is DispatchStatus.PARTIAL
        assert result.invalid_tokens_deactivated == 1
        assert notification_store.active("row-v1") is False
        assert notification_store.row("row-v1")["deactivation_reason"] == "invalid_token"
        assert notification_store.active(EXPO) is True
        assert notification_store.row(EXPO)["last_used_at"] is not None

    async def test_retryable_failure_keeps_token(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO)
        fake_providers[ProviderKind.EXPO].outcomes[EXPO] = DeliveryOutcome.RETRYABLE
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.status is DispatchStatus.FAILED
        assert result.reason is SkipReason.ALL_DEVICES_FAILED
        assert notification_store.active(EXPO) is True
        assert notification_store.history[0]["status"] == "failed"

    async def test_crashing_provider_is_contained(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO)
        notification_store.add_token("u1", "legacy-reg", "android")
        fake_providers[ProviderKind.FCM_LEGACY].raise_on_send = RuntimeError("boom")

        result = await engine.send("u1", "event_live", {"eventName": "Gala"})

        assert result.status is DispatchStatus.PARTIAL
        assert result.devices_reached == 1
        assert result.failed == 1
        assert notification_store.active("legacy-reg") is True

    async def test_unroutable_row_counts_as_failed(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.add_token("u1", "opaque", "web", token_type="fcm_legacy")
        result = await engine.send("u1", "event_live", {"eventName": "Gala"})
        assert result.devices_total == 2
        assert result.devices_reached == 1
        assert result.failed == 1


class TestBatching:
    @pytest.fixture
    def batching_user(self, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.preferences["u1"] = UserPreferences(user_id="u1", batch_mode=True)

    async def test_first_like_goes_out_standalone(self, engine, batching_user, fake_providers):
        await engine.send("u1", "photo_liked", LIKE)
        assert fake_providers[ProviderKind.EXPO].sent[0][1].type == "photo_liked"

    async def test_following_likes_are_summarised_then_absorbed(
        self, engine, batching_user, notification_store, fake_providers
    ):
        results = [await engine.send("u1", "photo_liked", {**LIKE, "likeCount": 1}) for _ in range(6)]

        types = [n.type for _, n in fake_providers[ProviderKind.EXPO].sent]
        assert types == ["photo_liked"] + ["photo_liked_batch"] * 4
        assert results[5].reason is SkipReason.BATCHED
        summary = fake_providers[ProviderKind.EXPO].sent[1][1]
        assert summary.data["batchedCount"] == 2
        assert notification_store.history[-1]["notification_type"] == "photo_liked_batch"

    async def test_window_expiry_restarts_batching(self, engine, batching_user, fake_providers, clock):
        await engine.send("u1", "photo_liked", LIKE)
        clock.advance(timedelta(minutes=31).total_seconds())
        await engine.send("u1", "photo_liked", LIKE)
        assert [n.type for _, n in fake_providers[ProviderKind.EXPO].sent] == ["photo_liked", "photo_liked"]

    async def test_batch_mode_off_never_batches(self, engine, notification_store, fake_providers):
        notification_store.add_token("u1", EXPO)
        for _ in range(3):
            await engine.send("u1", "photo_liked", LIKE)
        assert {n.type for _, n in fake_providers[ProviderKind.EXPO].sent} == {"photo_liked"}

    async def test_non_batchable_type_ignores_batch_mode(self, engine, batching_user, fake_providers):
        await engine.send("u1", "gallery_unlocked", {"eventName": "Gala"})
        await engine.send("u1", "gallery_unlocked", {"eventName": "Gala"})
        assert len(fake_providers[ProviderKind.EXPO].sent) == 2


class TestBulkDispatch:
    async def test_event_live_to_three_users_one_without_tokens(self, engine, notification_store):
        notification_store.add_token("u1", EXPO)
        notification_store.add_token("u2", "ExponentPushToken[device-2]")

        bulk = await engine.send_bulk(["u1", "u2", "u3"], "event_live", {"eventName": "Gala"})

        assert bulk.successful == 2
        assert bulk.failed == 1
        failed = [d for d in bulk.details if not d["success"]]
        assert failed[0]["user_id"] == "u3"
        assert failed[0]["reason"] == "no_tokens"

    async def test_chunks_cover_every_user(self, engine, notification_store):
        engine.chunk_size = 2
        users = [f"u{i}" for i in range(5)]
        for user in users:
            notification_store.add_token(user, f"ExponentPushToken[{user}]")
        bulk = await engine.send_bulk(users, "event_live", {"eventName": "Gala"})
        assert bulk.successful == 5
        assert [d["user_id"] for d in bulk.details] == users

    async def test_one_user_crashing_does_not_fail_the_rest(self, engine, notification_store, monkeypatch):
        notification_store.add_token("u1", EXPO)
        notification_store.add_token("u2", "ExponentPushToken[device-2]")
        original = notification_store.get_active_tokens

        async def flaky(user_id):
            if user_id == "u1":
                raise RuntimeError("boom")
            return await original(user_id)

        monkeypatch.setattr(notification_store, "get_active_tokens", flaky)
        bulk = await engine.send_bulk(["u1", "u2"], "event_live", {"eventName": "Gala"})
        assert bulk.successful == 1
        assert bulk.details[0]["status"] == "error"
        assert bulk.details[0]["reason"] == "internal_error"


class TestSendTest:
    async def test_sends_fixed_copy(self, engine, fake_providers):
        result = await engine.send_test(EXPO, "ios")
        assert result.status is DispatchStatus.SENT
        _, notification = fake_providers[ProviderKind.EXPO].sent[0]
        assert notification.title == "PartySnap Test 🎉"
        assert notification.data["test"] is True

    async def test_unroutable(self, engine):
        result = await engine.send_test("opaque", "web")
        assert result.status is DispatchStatus.INVALID

    async def test_provider_rejection(self, engine, fake_providers):
        fake_providers[ProviderKind.APNS].outcomes["hex"] = DeliveryOutcome.INVALID_TOKEN
        result = await engine.send_test("hex", "ios")
        assert result.status is DispatchStatus.FAILED


def test_result_dict_includes_success():
    body = replace(DispatchResult(status=DispatchStatus.SENT), devices_reached=2).as_dict()
    assert body["success"] is True
    assert body["devices_reached"] == 2
