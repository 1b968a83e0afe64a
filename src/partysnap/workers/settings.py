"""arq worker for scheduled notification jobs.

Import path for arq CLI: arq partysnap.workers.settings.WorkerSettings
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from arq import cron
from arq.connections import RedisSettings

from partysnap.config import get_settings
from partysnap.container import ServiceContainer, build_container, shutdown_container
from partysnap.middleware.logging import setup_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Build the service graph once per worker process."""
    settings = get_settings()
    setup_logging(settings)
    ctx["container"] = await build_container(settings)
    logger.info("Notification worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    container: ServiceContainer | None = ctx.get("container")
    if container:
        await shutdown_container(container)
    logger.info("Notification worker shut down")


async def cleanup_tokens(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Daily token validation, idle-token deactivation and history retention."""
    container: ServiceContainer = ctx["container"]
    report = await container.maintenance.cleanup_tokens()
    return asdict(report)


async def send_event_reminders(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Every 5 minutes: one-hour reminders and fifteen-minute starting notices."""
    container: ServiceContainer = ctx["container"]
    report = await container.triggers.send_event_reminders()
    if report.reminders_sent:
        logger.info("Sent reminders for %d events", report.reminders_sent)
    return asdict(report)


class WorkerSettings:
    """arq worker settings for scheduled notification jobs."""

    functions = [cleanup_tokens, send_event_reminders]
    cron_jobs = [
        cron(cleanup_tokens, hour={2}, minute={0}, run_at_startup=False),
        cron(send_event_reminders, minute=set(range(0, 60, 5))),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 4
    job_timeout = 600
