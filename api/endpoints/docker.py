"""
Docker endpoints used when configuring restart deploy actions.
"""

import logging

from fastapi import APIRouter, Depends, Query

from core.services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/docker", tags=["Docker"])


@router.get(
    "/containers",
    summary="List Containers",
    description="""
    List containers known to the local Docker daemon.

    Returns 503 `DockerUnavailable` when the daemon cannot be reached.
    """,
)
async def list_containers(
    all: bool = Query(True, description="Include stopped containers"),
    services: Services = Depends(get_services),
) -> dict:
    containers = await services.docker.list_containers(include_stopped=all)
    return {"success": True, "containers": containers, "total": len(containers)}
