"""Intent contracts: action kinds, resolver outcomes and domain results."""

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field


class ActionKind(str, Enum):
    """Closed set of write operations the assistant can propose."""

    CREATE_TASK = "create_task"
    UPDATE_TASK_STATUS = "update_task_status"
    CREATE_PROGRAMME = "create_programme"
    UPDATE_PROGRAMME_STATUS = "update_programme_status"
    UPDATE_PROGRAMME_FIELDS = "update_programme_fields"
    RUN_PLAYBOOK = "run_playbook"
    PLAYBOOK_STEP = "playbook_step"


REQUIRED_FIELDS: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.CREATE_TASK: ("title",),
    ActionKind.UPDATE_TASK_STATUS: ("task_title", "new_status"),
    ActionKind.CREATE_PROGRAMME: ("name",),
    ActionKind.UPDATE_PROGRAMME_STATUS: ("programme_name", "programme_status"),
    ActionKind.UPDATE_PROGRAMME_FIELDS: ("programme_name", "update_field", "update_value"),
    ActionKind.RUN_PLAYBOOK: ("playbook_id",),
    ActionKind.PLAYBOOK_STEP: ("playbook_id", "step_id"),
}

# Shown on previews when present, after the required fields.
OPTIONAL_FIELDS: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.CREATE_TASK: ("priority", "due_date", "programme_name", "assignee_name"),
    ActionKind.UPDATE_TASK_STATUS: (),
    ActionKind.CREATE_PROGRAMME: ("description", "start_date", "end_date"),
    ActionKind.UPDATE_PROGRAMME_STATUS: (),
    ActionKind.UPDATE_PROGRAMME_FIELDS: (),
    ActionKind.RUN_PLAYBOOK: ("target_name",),
    ActionKind.PLAYBOOK_STEP: (),
}

_missing_kinds = set(ActionKind) - set(REQUIRED_FIELDS)
if _missing_kinds or set(ActionKind) - set(OPTIONAL_FIELDS):
    raise RuntimeError(f"Field tables incomplete for: {sorted(k.value for k in _missing_kinds)}")


class ResponseItem(BaseModel):
    """Deep-link result row attached to an informational answer."""

    label: str
    detail: str | None = None
    href: str | None = None


class ActionCandidate(BaseModel):
    """Resolver output describing a write operation, possibly incomplete."""

    kind: ActionKind
    params: dict[str, Any] = Field(default_factory=dict)
    title: str | None = None


class CompleteActionCandidate(ActionCandidate):
    """Candidate the resolver believes is fully specified."""


class IncompleteActionCandidate(ActionCandidate):
    """Candidate with at least one required field missing."""

    missing_field: str | None = None
    example: str | None = None


class InformationalAnswer(BaseModel):
    """Read-only answer with optional deep-link items."""

    text: str
    items: list[ResponseItem] = Field(default_factory=list)


ResolverOutcome = Union[InformationalAnswer, CompleteActionCandidate, IncompleteActionCandidate]


class HistoryEntry(BaseModel):
    role: str
    content: str


class ResolverContext(BaseModel):
    """Context passed to the intent resolver alongside the user text."""

    role: str = "member"
    page_context: str | None = None
    history: list[HistoryEntry] = Field(default_factory=list)
    pending_candidate: ActionCandidate | None = None
    playbook_active: bool = False


class ExecutionResult(BaseModel):
    """Domain API response for a confirmed action."""

    result_href: str | None = None
    result_message: str | None = None
    # Merged into the playbook context for later steps.
    context: dict[str, Any] = Field(default_factory=dict)
