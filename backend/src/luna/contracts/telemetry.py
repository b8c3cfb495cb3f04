"""Structured telemetry records for assistant interactions."""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

TelemetryEventType = Literal[
    "message_sent",
    "intent_resolved",
    "clarify_requested",
    "action_previewed",
    "action_confirmed",
    "action_cancelled",
    "action_failed",
    "playbook_started",
    "playbook_step_completed",
    "playbook_step_skipped",
    "playbook_completed",
    "playbook_aborted",
    "error",
]


class TelemetryEvent(BaseModel):
    """Single assistant interaction event."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session_id: str
    event_type: TelemetryEventType
    metadata: dict[str, Any] = Field(default_factory=dict)
