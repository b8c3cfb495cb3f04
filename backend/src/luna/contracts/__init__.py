"""Contracts package - export key models."""

from luna.contracts.intents import (
    ActionCandidate,
    ActionKind,
    CompleteActionCandidate,
    ExecutionResult,
    HistoryEntry,
    IncompleteActionCandidate,
    InformationalAnswer,
    OPTIONAL_FIELDS,
    REQUIRED_FIELDS,
    ResolverContext,
    ResolverOutcome,
    ResponseItem,
)
from luna.contracts.messages import (
    ActionField,
    ActionPreview,
    ActionStatus,
    ClarifyInfo,
    Message,
    PlaybookProgress,
    QuickAction,
)
from luna.contracts.session import SessionSnapshot
from luna.contracts.telemetry import TelemetryEvent, TelemetryEventType

__all__ = [
    "ActionCandidate",
    "ActionField",
    "ActionKind",
    "ActionPreview",
    "ActionStatus",
    "ClarifyInfo",
    "CompleteActionCandidate",
    "ExecutionResult",
    "HistoryEntry",
    "IncompleteActionCandidate",
    "InformationalAnswer",
    "Message",
    "OPTIONAL_FIELDS",
    "PlaybookProgress",
    "QuickAction",
    "REQUIRED_FIELDS",
    "ResolverContext",
    "ResolverOutcome",
    "ResponseItem",
    "SessionSnapshot",
    "TelemetryEvent",
    "TelemetryEventType",
]
