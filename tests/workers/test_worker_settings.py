"""Tests for the scheduled notification worker."""

from __future__ import annotations

from partysnap.container import ServiceContainer
from partysnap.workers.settings import WorkerSettings, cleanup_tokens, send_event_reminders


class TestWorkerSettings:
    """Job registration."""

    def test_jobs_registered(self) -> None:
        """Both scheduled jobs are callable by name and on a cron."""
        assert cleanup_tokens in WorkerSettings.functions
        assert send_event_reminders in WorkerSettings.functions
        assert len(WorkerSettings.cron_jobs) == 2


class TestJobs:
    """Jobs delegate to the container built at startup."""

    async def test_cleanup_tokens(self, container: ServiceContainer, notification_store) -> None:
        """Token cleanup returns its report as a plain dict."""
        notification_store.add_token("u1", "opaque", "web", token_type="fcm_legacy")
        report = await cleanup_tokens({"container": container})
        assert report["deactivated"] == 1
        assert set(report) == {"validated", "deactivated", "idle_deactivated", "deleted", "history_purged", "errors"}

    async def test_send_event_reminders(self, container: ServiceContainer) -> None:
        """Reminders with no upcoming events send nothing."""
        report = await send_event_reminders({"container": container})
        assert report == {"events_checked": 0, "reminders_sent": 0, "already_sent": 0, "errors": 0}
