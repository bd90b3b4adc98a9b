"""
Activity log storage and retrieval.

Persists every bus message (and other notable actions) in SQLite so the
activity view survives restarts and covers periods with no client connected.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from core.database import Database, deserialize_json, serialize_json
from models.event import (
    BusMessage,
    Event,
    EventCategory,
    EventFilters,
    EventSeverity,
    EventsListResponse,
    Topic,
)

logger = logging.getLogger(__name__)

TOPIC_CATEGORIES = {
    Topic.CERTIFICATE_RENEWED: (EventCategory.RENEWAL, EventSeverity.INFO),
    Topic.CERTIFICATE_UPDATED: (EventCategory.CERTIFICATE, EventSeverity.INFO),
    Topic.CERTIFICATE_DELETED: (EventCategory.CERTIFICATE, EventSeverity.WARNING),
    Topic.RENEWAL_FAILED: (EventCategory.RENEWAL, EventSeverity.ERROR),
    Topic.RENEWAL_STATUS: (EventCategory.RENEWAL, EventSeverity.INFO),
    Topic.CA_PASSPHRASE_REQUIRED: (EventCategory.RENEWAL, EventSeverity.WARNING),
    Topic.SCHEDULER_STATUS_CHANGED: (EventCategory.SCHEDULER, EventSeverity.INFO),
    Topic.SERVER_STATUS: (EventCategory.SYSTEM, EventSeverity.INFO),
    Topic.DEPLOYMENT_COMPLETED: (EventCategory.DEPLOYMENT, EventSeverity.INFO),
}


def describe_message(message: BusMessage) -> str:
    """Human-readable summary of a bus message."""
    p = message.payload
    name = p.get("name") or (p.get("fingerprint") or "")[:16]
    if message.topic == Topic.CERTIFICATE_RENEWED:
        return f"Certificate '{name}' renewed ({p.get('old_fingerprint', '')[:16]} -> {p.get('new_fingerprint', '')[:16]})"
    if message.topic == Topic.CERTIFICATE_UPDATED:
        return f"Certificate '{name}' updated"
    if message.topic == Topic.CERTIFICATE_DELETED:
        return f"Certificate '{name}' deleted"
    if message.topic == Topic.RENEWAL_FAILED:
        return f"Renewal of '{name}' failed: {p.get('error_kind')}: {p.get('message')}"
    if message.topic == Topic.RENEWAL_STATUS:
        return f"Renewal of '{name}' is {p.get('state')}"
    if message.topic == Topic.CA_PASSPHRASE_REQUIRED:
        return f"CA '{name}' needs a passphrase to continue renewal"
    if message.topic == Topic.SCHEDULER_STATUS_CHANGED:
        return f"Scheduler {'enabled' if p.get('enabled') else 'disabled'}, next run {p.get('next_execution')}"
    if message.topic == Topic.DEPLOYMENT_COMPLETED:
        return f"Deployment for '{name}' {'succeeded' if p.get('ok') else 'had failures'}"
    return f"Server {p.get('status')} ({p.get('clients', 0)} client(s))"


class EventStore:
    """Persistent storage and retrieval of activity events."""

    def __init__(self, db: Database):
        self.db = db
        self._pending: set[asyncio.Task] = set()

    async def initialize(self) -> None:
        await self.db.initialize()

    async def record_event(
        self,
        category: str,
        action: str,
        message: str,
        severity: EventSeverity = EventSeverity.INFO,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        source: str = "api",
        principal: str | None = None,
    ) -> Event:
        """
        Record a new event to the database.

        Args:
            category: Event category (certificate, renewal, deployment, scheduler, system, config)
            action: Specific action or bus topic
            message: Human-readable event description
            severity: Event severity level
            resource_type: Type of affected resource
            resource_id: Identifier of affected resource
            details: Additional structured event data
            source: Component that generated the event
            principal: Opaque principal that triggered the event

        Returns:
            The created Event object
        """
        event = Event(
            category=category,
            action=action,
            message=message,
            severity=severity,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            source=source,
            principal=principal,
        )

        data = {
            "id": event.id,
            "timestamp": event.timestamp.isoformat(),
            "severity": event.severity.value,
            "category": event.category,
            "action": event.action,
            "resource_type": event.resource_type,
            "resource_id": event.resource_id,
            "message": event.message,
            "details_json": serialize_json(event.details),
            "source": event.source,
            "principal": event.principal,
        }

        await self.db.insert("events", data)
        logger.debug(f"Recorded event: {event.id} [{event.severity.value}] {event.message}")

        return event

    async def record_bus_message(self, message: BusMessage) -> Event:
        category, severity = TOPIC_CATEGORIES.get(message.topic, (EventCategory.SYSTEM, EventSeverity.INFO))
        fingerprint = message.payload.get("new_fingerprint") or message.payload.get("fingerprint")
        return await self.record_event(
            category=category.value,
            action=message.topic.value,
            message=describe_message(message),
            severity=severity,
            resource_type="certificate" if fingerprint else None,
            resource_id=fingerprint,
            details=message.payload,
            source="event_bus",
            principal=message.payload.get("principal"),
        )

    def listener(self, message: BusMessage) -> None:
        """Bus listener scheduling a background write for each message."""
        if message.topic == Topic.SERVER_STATUS:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._safe_record(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_record(self, message: BusMessage) -> None:
        try:
            await self.record_bus_message(message)
        except Exception as e:
            logger.error(f"Failed to record activity for {message.topic.value}: {e}")

    async def flush(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def list_events(self, filters: EventFilters | None = None, page: int = 1, page_size: int = 50) -> EventsListResponse:
        """
        List events with optional filtering and pagination.

        Args:
            filters: Query filters
            page: Page number (1-indexed)
            page_size: Number of events per page

        Returns:
            Paginated list of events
        """
        where_clauses = []
        params: list[Any] = []

        if filters:
            if filters.since:
                where_clauses.append("timestamp >= ?")
                params.append(filters.since.isoformat())

            if filters.until:
                where_clauses.append("timestamp <= ?")
                params.append(filters.until.isoformat())

            if filters.severity:
                placeholders = ", ".join(["?" for _ in filters.severity])
                where_clauses.append(f"severity IN ({placeholders})")
                params.extend([s.value for s in filters.severity])

            if filters.category:
                placeholders = ", ".join(["?" for _ in filters.category])
                where_clauses.append(f"category IN ({placeholders})")
                params.extend(filters.category)

            if filters.resource_id:
                where_clauses.append("resource_id = ?")
                params.append(filters.resource_id)

        where_sql = " AND ".join(where_clauses) if where_clauses else "1=1"

        count_result = await self.db.fetch_one(f"SELECT COUNT(*) as count FROM events WHERE {where_sql}", tuple(params))
        total = count_result["count"] if count_result else 0

        offset = (page - 1) * page_size
        query = f"""
            SELECT * FROM events
            WHERE {where_sql}
            ORDER BY timestamp DESC
            LIMIT ? OFFSET ?
        """
        params.extend([page_size, offset])

        rows = await self.db.fetch_all(query, tuple(params))
        events = [self._row_to_event(row) for row in rows]

        return EventsListResponse(
            events=events,
            total=total,
            page=page,
            page_size=page_size,
            has_more=(offset + len(events)) < total,
        )

    async def clear(self) -> int:
        deleted = await self.db.execute("DELETE FROM events")
        logger.info(f"Cleared {deleted} activity event(s)")
        return deleted

    async def enforce_retention(self, retention_days: int) -> int:
        """
        Delete events older than retention period.

        Returns:
            Number of events deleted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted = await self.db.execute("DELETE FROM events WHERE timestamp < ?", (cutoff.isoformat(),))

        if deleted > 0:
            logger.info(f"Retention cleanup: deleted {deleted} events older than {retention_days} days")

        return deleted

    def _row_to_event(self, row: dict[str, Any]) -> Event:
        """Convert a database row to an Event object."""
        return Event(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            severity=EventSeverity(row["severity"]),
            category=row["category"],
            action=row["action"],
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            message=row["message"],
            details=deserialize_json(row.get("details_json")),
            source=row.get("source") or "api",
            principal=row.get("principal"),
        )
