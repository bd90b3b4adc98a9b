"""
Global settings endpoints.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from core.errors import InvalidRequestError
from core.services import Services, get_principal, get_services
from models.event import EventCategory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.get(
    "",
    summary="Get Global Settings",
    description="Current global settings with camelCase keys.",
)
async def get_settings(services: Services = Depends(get_services)) -> dict:
    return {"success": True, "settings": services.global_settings.to_json()}


@router.post(
    "",
    summary="Update Global Settings",
    description="""
    Merge changes into the global settings and apply them immediately.

    Keys may be camelCase or snake_case; nested objects such as
    `caValidityPeriod` merge one level deep. Invalid values are rejected
    with per-field errors and nothing is saved.

    Changing `renewalSchedule` or `enableAutoRenewalJob` reschedules the
    renewal check without a restart.
    """,
)
async def update_settings(
    changes: dict[str, Any] = Body(..., examples=[{"renewalSchedule": "0 3 * * *", "logLevel": "debug"}]),
    services: Services = Depends(get_services),
    principal: Optional[str] = Depends(get_principal),
) -> dict:
    if not changes:
        raise InvalidRequestError("No settings provided")
    # listeners publish on the event bus and must run on the loop thread
    updated = services.settings_store.update(changes)
    await services.event_store.record_event(
        category=EventCategory.CONFIG.value,
        action="settings-updated",
        message=f"Global settings updated: {', '.join(sorted(changes))}",
        details={"changed": sorted(changes)},
        principal=principal,
    )
    return {"success": True, "settings": updated.to_json()}
