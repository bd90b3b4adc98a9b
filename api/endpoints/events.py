"""
Push channel and activity log endpoints.

Connected clients receive every bus message as ``{topic, payload}`` over
the ``/ws`` socket; the activity log keeps the same events for review
while no client is connected.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from core.event_bus import Subscription
from core.services import Services, get_services
from models.event import EventFilters, EventSeverity, EventsListResponse, Topic

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events & Activity"])

PING_INTERVAL = 30.0


def _parse_topics(raw: str | None) -> set[Topic] | None:
    if not raw:
        return None
    topics = set()
    for value in raw.split(","):
        value = value.strip()
        if not value:
            continue
        try:
            topics.add(Topic(value))
        except ValueError:
            logger.debug(f"Ignoring unknown topic filter: {value}")
    return topics or None


async def _receive_until_closed(websocket: WebSocket, subscription: Subscription) -> None:
    # client messages are ignored; a disconnect ends the stream
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()


@router.websocket("/ws")
async def push_channel(websocket: WebSocket):
    """
    Stream bus messages to a connected client.

    An optional ``topics`` query parameter (comma-separated) restricts the
    stream. The socket sends ``server-status`` on connect and a ping
    message when idle.
    """
    services: Services = websocket.app.state.services
    await websocket.accept()
    subscription = services.bus.subscribe(_parse_topics(websocket.query_params.get("topics")))
    services.bus.publish_server_status("running")
    logger.info(f"Push client connected ({services.bus.client_count} total)")
    receiver = asyncio.create_task(_receive_until_closed(websocket, subscription))
    try:
        while True:
            message = await subscription.get(timeout=PING_INTERVAL)
            if subscription.closed:
                break
            if message is None:
                await websocket.send_json({"topic": "ping", "payload": {}})
                continue
            await websocket.send_json(message.to_wire())
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        services.bus.unsubscribe(subscription)
        logger.info(f"Push client disconnected ({services.bus.client_count} remaining)")


@router.get(
    "/api/activity",
    response_model=EventsListResponse,
    summary="List Activity",
    description="""
    Page through recorded activity, most recent first.

    **Filtering Options:**
    - `since/until`: Time range filtering
    - `severity`: info, warning, error, critical
    - `category`: certificate, renewal, deployment, scheduler, system, config
    - `resource_id`: Certificate fingerprint
    """,
)
async def list_activity(
    since: Optional[datetime] = Query(None, description="Return events after this timestamp"),
    until: Optional[datetime] = Query(None, description="Return events before this timestamp"),
    severity: Optional[List[EventSeverity]] = Query(None, description="Filter by severity levels"),
    category: Optional[List[str]] = Query(None, description="Filter by categories"),
    resource_id: Optional[str] = Query(None, description="Filter by certificate fingerprint"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Events per page"),
    services: Services = Depends(get_services),
) -> EventsListResponse:
    filters = EventFilters(
        since=since,
        until=until,
        severity=severity,
        category=category,
        resource_id=resource_id,
    )
    await services.event_store.flush()
    return await services.event_store.list_events(filters=filters, page=page, page_size=page_size)


@router.delete("/api/activity", summary="Clear Activity")
async def clear_activity(services: Services = Depends(get_services)) -> dict:
    await services.event_store.flush()
    deleted = await services.event_store.clear()
    return {"success": True, "deleted": deleted}
