"""Conversation contracts: messages, action previews, clarify and playbook progress."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from luna.contracts.intents import ActionKind, ResponseItem
from luna.errors import InvalidTransitionError


class ActionStatus(str, Enum):
    """Lifecycle of an action preview."""

    PENDING = "pending"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    ERROR = "error"


# One-way transitions; a fresh preview is created per command.
ALLOWED_TRANSITIONS: dict[ActionStatus, frozenset[ActionStatus]] = {
    ActionStatus.PENDING: frozenset({ActionStatus.CONFIRMING, ActionStatus.CANCELLED}),
    ActionStatus.CONFIRMING: frozenset({ActionStatus.CONFIRMED, ActionStatus.ERROR}),
    ActionStatus.CONFIRMED: frozenset(),
    ActionStatus.CANCELLED: frozenset(),
    ActionStatus.ERROR: frozenset(),
}


class ActionField(BaseModel):
    """Resolved parameter shown on an action preview."""

    label: str
    value: str


class ActionPreview(BaseModel):
    """A proposed write operation awaiting explicit confirmation."""

    id: str
    action_type: ActionKind
    title: str
    fields: list[ActionField] = Field(default_factory=list)
    status: ActionStatus = ActionStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    result_href: str | None = None
    result_message: str | None = None
    # User text that produced the command; resent on retry.
    origin_text: str = ""
    playbook_step: int | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ActionStatus.PENDING

    @property
    def belongs_to_playbook(self) -> bool:
        return self.playbook_step is not None

    def transition(self, target: ActionStatus) -> None:
        """Move to ``target`` or raise InvalidTransitionError."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move action {self.id} from {self.status.value} to {target.value}",
                context={"action_id": self.id, "from": self.status.value, "to": target.value},
            )
        self.status = target


class ClarifyInfo(BaseModel):
    """Outstanding request for a single missing field."""

    waiting_for: str
    example: str | None = None
    field: str
    intent_type: ActionKind


class PlaybookProgress(BaseModel):
    """Snapshot of a playbook's step progress at the time a step was emitted."""

    playbook_id: str
    playbook_name: str
    step_title: str
    step_kind: Literal["check", "action", "summary"]
    current_step: int = Field(ge=0)
    total_steps: int = Field(gt=0)
    completed: set[int] = Field(default_factory=set)
    skipped: set[int] = Field(default_factory=set)

    @model_validator(mode="after")
    def _check_sets(self) -> "PlaybookProgress":
        if self.completed & self.skipped:
            raise ValueError("completed and skipped step sets must be disjoint")
        if self.current_step in self.completed | self.skipped:
            raise ValueError("current_step must not be already resolved")
        if any(i < 0 or i >= self.total_steps for i in self.completed | self.skipped):
            raise ValueError("resolved step index out of range")
        return self


class Message(BaseModel):
    """Single turn in the conversation log."""

    id: str
    role: Literal["user", "assistant"]
    content: str
    items: list[ResponseItem] = Field(default_factory=list)
    action: ActionPreview | None = None
    clarify: ClarifyInfo | None = None
    playbook_progress: PlaybookProgress | None = None
    retry_content: str | None = None
    # Set on playbook-step failures: retry re-emits this step instead of resending text.
    retry_playbook_step: int | None = None
    # Run id of the playbook that failed; a later run never matches.
    retry_playbook_run: str | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @model_validator(mode="after")
    def _check_payload(self) -> "Message":
        if self.role == "user" and (
            self.items or self.action or self.clarify or self.playbook_progress or self.retry_content
        ):
            raise ValueError("user messages carry content only")
        if self.playbook_progress is not None and (
            self.action is None or self.action.action_type != ActionKind.PLAYBOOK_STEP
        ):
            raise ValueError("playbook_progress requires a playbook_step action")
        if self.retry_playbook_step is not None and self.retry_content is None:
            raise ValueError("retry_playbook_step requires retry_content")
        if self.retry_playbook_run is not None and self.retry_playbook_step is None:
            raise ValueError("retry_playbook_run requires retry_playbook_step")
        return self


class QuickAction(BaseModel):
    """Canned prompt shortcut; equivalent to typing ``prompt``."""

    label: str
    prompt: str
