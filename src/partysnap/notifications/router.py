"""Notification router: dispatch, push tokens, preferences, webhooks and cron hooks."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from fastapi import APIRouter, Depends, HTTPException

from partysnap.container import ServiceContainer
from partysnap.dependencies import get_container, require_api_key, require_cron_secret, require_webhook_secret
from partysnap.errors import UnroutableTokenError
from partysnap.notifications.routing import classify_token
from partysnap.notifications.schemas import (
    DatabaseChange,
    NotificationStatusRequest,
    NotifyRequest,
    PreferencesUpdateRequest,
    RegisterTokenRequest,
    TokenResponse,
    ValidateTokenRequest,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@router.post("/notify", dependencies=[Depends(require_api_key)])
async def notify(
    body: NotifyRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    """Send a notification to one user or a list of users."""
    if body.user_id:
        result = await container.engine.send(body.user_id, body.type, body.data)
        return {"success": True, "result": result.as_dict()}
    bulk = await container.engine.send_bulk(body.user_ids or [], body.type, body.data)
    return {"success": True, "result": bulk.as_dict()}


@router.post("/notifications/{history_id}/status", dependencies=[Depends(require_api_key)])
async def update_notification_status(
    history_id: str,
    body: NotificationStatusRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    updated = await container.notification_store.update_history_status(history_id, body.status)
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "id": history_id, "status": body.status}


# ---------------------------------------------------------------------------
# Push tokens
# ---------------------------------------------------------------------------


@router.post("/push-tokens", dependencies=[Depends(require_api_key)])
async def register_token(
    body: RegisterTokenRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    try:
        classify_token(body.token, body.platform, body.token_type, body.device_token)
    except UnroutableTokenError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    record = await container.notification_store.register_token(
        body.user_id,
        body.token,
        body.platform,
        device_id=body.device_id,
        token_type=body.token_type,
        device_token=body.device_token,
    )
    logger.info("push_token_registered", user_id=body.user_id, platform=body.platform, token_type=record.token_type)
    return {"success": True, "token": TokenResponse(**asdict(record)).model_dump()}


@router.post("/push-tokens/validate", dependencies=[Depends(require_api_key)])
async def validate_token(
    body: ValidateTokenRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    """Probe a token with its provider and deactivate it when the provider rejects it."""
    try:
        routed = classify_token(body.token, body.platform, body.token_type, body.device_token)
    except UnroutableTokenError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    outcome = await container.providers.get(routed.kind).validate_token(routed.address)
    deactivated = 0
    if outcome.should_deactivate:
        deactivated = await container.notification_store.deactivate_tokens([routed.token], "validation_failed")
    return {
        "valid": outcome.valid,
        "provider": routed.kind,
        "error": outcome.error,
        "deactivated": bool(deactivated),
    }


@router.post("/push-tokens/test", dependencies=[Depends(require_api_key)])
async def send_test_notification(
    body: ValidateTokenRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    result = await container.engine.send_test(body.token, body.platform, body.token_type, body.device_token)
    return result.as_dict()


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}/notification-preferences", dependencies=[Depends(require_api_key)])
async def get_preferences(
    user_id: str,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    prefs = await container.notification_store.get_or_create_preferences(user_id)
    return asdict(prefs)


@router.patch("/users/{user_id}/notification-preferences", dependencies=[Depends(require_api_key)])
async def update_preferences(
    user_id: str,
    body: PreferencesUpdateRequest,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    updates = body.model_dump(exclude_none=True)
    if "timezone" in updates:
        try:
            ZoneInfo(updates["timezone"])
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Unknown timezone") from exc
    prefs = await container.notification_store.update_preferences(user_id, updates)
    return asdict(prefs)


# ---------------------------------------------------------------------------
# Webhooks and scheduled hooks
# ---------------------------------------------------------------------------


@router.post("/webhooks/database", status_code=202, dependencies=[Depends(require_webhook_secret)])
async def database_webhook(
    body: DatabaseChange,
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    """Accept a row change and handle it in the background."""
    container.background.submit(
        container.triggers.handle_change(body.table, body.type, body.record, body.old_record),
        name=f"webhook:{body.table}:{body.type}",
    )
    return {"success": True, "accepted": True}


@router.post("/cron/send-reminders", dependencies=[Depends(require_cron_secret)])
async def cron_send_reminders(
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    report = await container.triggers.send_event_reminders()
    return {"success": True, "results": asdict(report)}


@router.post("/cron/cleanup-tokens", dependencies=[Depends(require_cron_secret)])
async def cron_cleanup_tokens(
    container: ServiceContainer = Depends(get_container),  # noqa: B008
) -> dict[str, Any]:
    report = await container.maintenance.cleanup_tokens()
    return {"success": True, "results": asdict(report)}
