"""
Event models for the push channel and the activity log.

Bus messages are delivered to connected clients as ``{topic, payload}``;
every message is also recorded as an activity Event.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Topic(str, Enum):
    """Push channel topics."""

    CERTIFICATE_RENEWED = "certificate-renewed"
    CERTIFICATE_UPDATED = "certificate-updated"
    CERTIFICATE_DELETED = "certificate-deleted"
    RENEWAL_FAILED = "renewal-failed"
    RENEWAL_STATUS = "renewal-status"
    CA_PASSPHRASE_REQUIRED = "ca-passphrase-required"
    SCHEDULER_STATUS_CHANGED = "scheduler-status-changed"
    SERVER_STATUS = "server-status"
    DEPLOYMENT_COMPLETED = "deployment-completed"


class BusMessage(BaseModel):
    """One message on the event bus."""

    topic: Topic
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> dict[str, Any]:
        return {"topic": self.topic.value, "payload": self.payload, "timestamp": self.timestamp.isoformat()}


class EventSeverity(str, Enum):
    """Event severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class EventCategory(str, Enum):
    """Event categories for filtering."""

    CERTIFICATE = "certificate"
    RENEWAL = "renewal"
    DEPLOYMENT = "deployment"
    SCHEDULER = "scheduler"
    SYSTEM = "system"
    CONFIG = "config"


class Event(BaseModel):
    """
    Represents a recorded activity entry.

    Entries are written for every bus message so operators can review
    what happened while no client was connected.
    """

    id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}", description="Unique event identifier")
    timestamp: datetime = Field(default_factory=_utcnow, description="When the event occurred")
    severity: EventSeverity = Field(default=EventSeverity.INFO, description="Event severity level")

    category: str = Field(..., description="Event category (certificate, renewal, deployment, scheduler, system, config)")
    action: str = Field(..., description="Specific action or bus topic")

    resource_type: str | None = Field(None, description="Type of affected resource")
    resource_id: str | None = Field(None, description="Identifier of affected resource (usually a fingerprint)")

    message: str = Field(..., description="Human-readable event description")
    details: dict[str, Any] | None = Field(None, description="Additional structured event data")

    source: str = Field(default="api", description="Component that generated the event")
    principal: str | None = Field(None, description="Opaque principal that triggered the event")


class EventFilters(BaseModel):
    """Query filters for event listing."""

    since: datetime | None = Field(None, description="Return events after this timestamp")
    until: datetime | None = Field(None, description="Return events before this timestamp")
    severity: list[EventSeverity] | None = Field(None, description="Filter by severity levels")
    category: list[str] | None = Field(None, description="Filter by categories")
    resource_id: str | None = Field(None, description="Filter by resource ID")


class EventsListResponse(BaseModel):
    """Paginated list of events."""

    success: bool = True
    events: list[Event] = Field(default_factory=list, description="List of events")
    total: int = Field(..., description="Total number of matching events")
    page: int = Field(default=1, description="Current page number")
    page_size: int = Field(default=50, description="Events per page")
    has_more: bool = Field(default=False, description="More events available")
