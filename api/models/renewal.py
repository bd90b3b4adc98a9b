"""
Renewal job models.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RenewalState(str, Enum):
    """Per-record renewal state machine."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_FOR_PASSPHRASE = "waiting_for_passphrase"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RenewalState.SUCCEEDED, RenewalState.FAILED, RenewalState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return self in (RenewalState.QUEUED, RenewalState.RUNNING, RenewalState.WAITING_FOR_PASSPHRASE)


class RenewalTrigger(str, Enum):
    """What caused a renewal to be queued."""

    MANUAL = "manual"
    SCHEDULER = "scheduler"
    FILE_WATCH = "file_watch"
    DOMAIN_UPDATE = "domain_update"


class DomainChanges(BaseModel):
    """Staged SAN additions/removals, already validated."""

    add_domains: list[str] = Field(default_factory=list)
    add_ips: list[str] = Field(default_factory=list)
    remove: list[str] = Field(default_factory=list)


class ActionResult(BaseModel):
    """Outcome of one deploy action."""

    index: int
    type: str
    ok: bool
    error_kind: str | None = None
    message: str = ""
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0


class DeploymentResult(BaseModel):
    """Outcome of a pipeline run; ok is the AND of every action's ok."""

    fingerprint: str
    ok: bool
    actions: list[ActionResult] = Field(default_factory=list)


class RenewalJobView(BaseModel):
    """Read model of a renewal job."""

    job_id: str = Field(default_factory=lambda: f"job-{uuid.uuid4().hex[:12]}")
    fingerprint: str
    new_fingerprint: str | None = None
    name: str | None = None
    state: RenewalState = RenewalState.QUEUED
    trigger: RenewalTrigger = RenewalTrigger.MANUAL
    error_kind: str | None = None
    message: str | None = None
    queued_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    deployment: DeploymentResult | None = None
    details: dict[str, Any] = Field(default_factory=dict)
