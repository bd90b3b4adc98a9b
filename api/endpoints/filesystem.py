"""
Filesystem browsing endpoint for picking deploy destinations and import files.
"""

import asyncio
import logging

from fastapi import APIRouter, Query

from core.filesystem_service import list_directory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/filesystem", tags=["Filesystem"])


@router.get(
    "",
    summary="Browse Directory",
    description="List an absolute directory's entries, directories first.",
)
async def browse(
    path: str = Query("/", description="Absolute directory path"),
    show_hidden: bool = Query(False, alias="showHidden", description="Include dot-files"),
) -> dict:
    listing = await asyncio.to_thread(list_directory, path, show_hidden)
    return {"success": True, **listing}
