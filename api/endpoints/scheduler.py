"""
Renewal scheduler endpoints.
"""

import logging

from fastapi import APIRouter, Depends

from core.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scheduler", tags=["Scheduler"])


@router.get(
    "/status",
    summary="Scheduler Status",
    description="Whether the automatic renewal check is enabled, its cron schedule and next execution.",
)
async def scheduler_status(services: Services = Depends(get_services)) -> dict:
    return {"success": True, **services.scheduler.status()}


@router.post(
    "/check",
    summary="Run Renewal Check Now",
    description="""
    Run the renewal check immediately.

    Standard certificates with auto-renew enabled whose renewal window is
    open are queued; the response lists the queued job ids.
    """,
)
async def run_check(services: Services = Depends(get_services)) -> dict:
    result = await services.scheduler.run_check()
    return {"success": True, **result}
