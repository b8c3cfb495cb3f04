"""Playbook definitions and the step runner for guided multi-step flows."""

from __future__ import annotations

import uuid
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field

from luna.contracts.intents import ResponseItem
from luna.contracts.messages import ActionField, PlaybookProgress
from luna.errors import InvalidTransitionError

StepKind = Literal["check", "action", "summary"]
StepOutcome = Literal["completed", "skipped"]

MANAGER_ROLES = frozenset({"manager", "admin", "super_admin"})


class _TemplateContext(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_template(template: str, context: dict[str, Any]) -> str:
    return template.format_map(_TemplateContext(context))


class StepView(BaseModel):
    """Live data for one step, produced when the step is shown.

    ``text`` and ``fields`` replace the static rendering when set. ``context``
    is merged into the playbook context before the preview is built, and
    ``auto_skip`` marks the step as having nothing to do.
    """

    text: str | None = None
    items: list[ResponseItem] = Field(default_factory=list)
    fields: list[ActionField] | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    auto_skip: bool = False


StepViewFn = Callable[[dict[str, Any]], StepView]


class PlaybookStep(BaseModel):
    """One step; ``prompt`` and field values are templates over the playbook context."""

    id: str
    title: str
    kind: StepKind
    prompt: str
    fields: list[tuple[str, str]] = Field(default_factory=list)
    # Name of the step view that supplies live data, if any.
    view: str | None = None

    def render(self, context: dict[str, Any]) -> tuple[str, list[ActionField]]:
        text = render_template(self.prompt, context)
        rows = [
            ActionField(label=label, value=render_template(value, context))
            for label, value in self.fields
        ]
        return text, [r for r in rows if r.value]


class PlaybookDefinition(BaseModel):
    id: str
    name: str
    description: str
    required_roles: frozenset[str] = MANAGER_ROLES
    requires_target: bool = False
    steps: list[PlaybookStep]
    completion_text: str = "Playbook complete."
    default_context: dict[str, Any] = Field(default_factory=dict)

    def allows(self, role: str | None) -> bool:
        return (role or "member") in self.required_roles


WEEKLY_REVIEW = PlaybookDefinition(
    id="weekly_review",
    name="Weekly review",
    description="Review overdue tasks, blockers, and check-in status across your team",
    steps=[
        PlaybookStep(
            id="overdue",
            title="Team Overdue Tasks",
            kind="check",
            prompt="Review overdue tasks across your team.",
            fields=[("Scope", "Direct reports"), ("Check", "Tasks past their due date")],
            view="team_overdue",
        ),
        PlaybookStep(
            id="blockers",
            title="Team Blockers",
            kind="check",
            prompt="Review blocked tasks across your team.",
            fields=[("Check", "Tasks with status blocked")],
            view="team_blockers",
        ),
        PlaybookStep(
            id="checkins",
            title="Check-in Status",
            kind="check",
            prompt="Review who has not checked in this week.",
            fields=[("Check", "Weekly check-ins")],
            view="checkin_status",
        ),
    ],
    completion_text="Weekly review complete. Consider following up on anything flagged above.",
)

CLOSE_PROGRAMME = PlaybookDefinition(
    id="close_programme",
    name="Close Programme",
    description="Complete open tasks and mark a programme as completed",
    requires_target=True,
    steps=[
        PlaybookStep(
            id="audit_tasks",
            title="Audit Open Tasks",
            kind="check",
            prompt='Review the open tasks in "{target_name}" before closing.',
            fields=[("Programme", "{target_name}")],
            view="audit_open_tasks",
        ),
        PlaybookStep(
            id="complete_tasks",
            title="Complete Open Tasks",
            kind="action",
            prompt='Mark all open tasks in "{target_name}" as done?',
            fields=[("Action", "Set open tasks to Done"), ("Programme", "{target_name}")],
            view="complete_open_tasks",
        ),
        PlaybookStep(
            id="close_status",
            title="Mark Programme Completed",
            kind="action",
            prompt='Update "{target_name}" status to Completed?',
            fields=[("Programme", "{target_name}"), ("To", "Completed")],
        ),
        PlaybookStep(
            id="summary",
            title="Closure Summary",
            kind="summary",
            prompt='Programme "{target_name}" closed. Tasks completed: {tasks_completed}.',
        ),
    ],
    completion_text='"{target_name}" is closed.',
    default_context={"tasks_completed": 0},
)

START_PROGRAMME = PlaybookDefinition(
    id="start_programme",
    name="Start Programme",
    description="Activate a draft programme and create a kickoff task",
    requires_target=True,
    steps=[
        PlaybookStep(
            id="verify",
            title="Verify Programme",
            kind="check",
            prompt='Ready to activate "{target_name}"?',
            fields=[("Programme", "{target_name}")],
            view="verify_programme",
        ),
        PlaybookStep(
            id="activate",
            title="Activate Programme",
            kind="action",
            prompt='Set "{target_name}" to Active?',
            fields=[("Programme", "{target_name}"), ("Action", "Draft -> Active")],
            view="activate_programme",
        ),
        PlaybookStep(
            id="kickoff",
            title="Create Kickoff Task",
            kind="action",
            prompt='Create a kickoff task for "{target_name}"?',
            fields=[("Task", "Kickoff: {target_name}"), ("Priority", "high"), ("Programme", "{target_name}")],
        ),
        PlaybookStep(
            id="summary",
            title="Programme Started",
            kind="summary",
            prompt='"{target_name}" is active and ready.',
        ),
    ],
    completion_text='"{target_name}" is active and ready.',
)

PLAYBOOKS: dict[str, PlaybookDefinition] = {
    p.id: p for p in (WEEKLY_REVIEW, CLOSE_PROGRAMME, START_PROGRAMME)
}


def get_playbook(playbook_id: str) -> PlaybookDefinition | None:
    return PLAYBOOKS.get(playbook_id)


class PlaybookRunner:
    """Tracks one playbook run: current step plus completed/skipped indices.

    Progression is strictly sequential; after resolving step ``i`` the
    current step becomes ``i + 1`` until ``total_steps`` is exhausted.
    Aborting keeps the completed/skipped sets as an audit trail.
    """

    def __init__(
        self,
        definition: PlaybookDefinition,
        context: dict[str, Any] | None = None,
        origin_text: str = "",
    ):
        if not definition.steps:
            raise ValueError("playbook must define at least one step")
        self.definition = definition
        self.context: dict[str, Any] = {**definition.default_context, **(context or {})}
        self.origin_text = origin_text
        self.run_id = uuid.uuid4().hex
        self.current_step: int | None = 0
        self.completed: set[int] = set()
        self.skipped: set[int] = set()
        self.status: Literal["running", "completed", "aborted"] = "running"

    @property
    def total_steps(self) -> int:
        return len(self.definition.steps)

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    def current(self) -> PlaybookStep | None:
        if self.current_step is None:
            return None
        return self.definition.steps[self.current_step]

    def progress(self) -> PlaybookProgress:
        """Snapshot for attaching to the current step's message."""
        step = self.current()
        if step is None or self.current_step is None:
            raise InvalidTransitionError(
                f"Playbook {self.definition.id} has no current step",
                context={"playbook_id": self.definition.id, "status": self.status},
            )
        return PlaybookProgress(
            playbook_id=self.definition.id,
            playbook_name=self.definition.name,
            step_title=step.title,
            step_kind=step.kind,
            current_step=self.current_step,
            total_steps=self.total_steps,
            completed=set(self.completed),
            skipped=set(self.skipped),
        )

    def resolve(
        self,
        index: int,
        outcome: StepOutcome,
        context_update: dict[str, Any] | None = None,
    ) -> PlaybookStep | None:
        """Mark ``index`` completed or skipped; return the next step or None when finished."""
        if not self.is_running or index != self.current_step:
            raise InvalidTransitionError(
                f"Step {index} is not the current step of {self.definition.id}",
                context={"playbook_id": self.definition.id, "current_step": self.current_step},
            )
        if outcome == "completed":
            self.completed.add(index)
        else:
            self.skipped.add(index)
        if context_update:
            self.context.update(context_update)

        next_index = index + 1
        if next_index < self.total_steps:
            self.current_step = next_index
            return self.definition.steps[next_index]
        self.current_step = None
        self.status = "completed"
        return None

    def abort(self) -> None:
        if not self.is_running:
            return
        self.current_step = None
        self.status = "aborted"

    def invariant_holds(self) -> bool:
        resolved = self.completed | self.skipped
        if self.completed & self.skipped:
            return False
        if self.current_step is None:
            return self.status != "running"
        lowest_open = min(i for i in range(self.total_steps) if i not in resolved)
        return self.current_step == lowest_open

    def completion_text(self) -> str:
        return render_template(self.definition.completion_text, self.context)

    def audit(self) -> dict[str, Any]:
        return {
            "playbook_id": self.definition.id,
            "run_id": self.run_id,
            "status": self.status,
            "completed": sorted(self.completed),
            "skipped": sorted(self.skipped),
            "total_steps": self.total_steps,
        }
