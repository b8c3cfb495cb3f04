"""Clarification slot-filler - guarantees previews never carry missing fields."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable

from luna.contracts.intents import OPTIONAL_FIELDS, REQUIRED_FIELDS, ActionCandidate
from luna.contracts.messages import ActionField, ClarifyInfo


@dataclass(frozen=True)
class FieldSpec:
    """Presentation metadata for one candidate parameter."""

    label: str
    prompt_label: str
    question: str
    example: str | None = None


FIELD_SPECS: dict[str, FieldSpec] = {
    "title": FieldSpec("Title", "Task title", "What should the task be called?", 'e.g. "Review Q1 budget"'),
    "task_title": FieldSpec("Task", "Task name", "Which task do you want to update?", 'e.g. "Luna demo notes"'),
    "new_status": FieldSpec(
        "Status", "Status", "What status? Options: todo, in progress, done, blocked.", 'e.g. "done" or "in progress"'
    ),
    "name": FieldSpec("Name", "Programme name", "What should the programme be called?", 'e.g. "Youth Tech Training"'),
    "priority": FieldSpec("Priority", "Priority", "What priority? (low / medium / high / urgent)", "low / medium / high / urgent"),
    "due_date": FieldSpec("Due date", "Due date", "When is it due?", 'e.g. "2026-03-15"'),
    "programme_name": FieldSpec("Programme", "Programme", "Which programme?", 'e.g. "Tek4Teachers Pilot"'),
    "programme_status": FieldSpec(
        "Status",
        "Programme status",
        "What status? Options: draft, active, paused, completed, archived.",
        'e.g. "active" or "paused"',
    ),
    "assignee_name": FieldSpec("Assignee", "Assignee", "Who should this be assigned to?", 'e.g. "Esther"'),
    "description": FieldSpec("Description", "Description", "Brief description of the programme?"),
    "start_date": FieldSpec("Start date", "Start date", "Start date?", 'e.g. "2026-03-01"'),
    "end_date": FieldSpec("End date", "End date", "End date?", 'e.g. "2026-06-30"'),
    "update_field": FieldSpec(
        "Field", "Field to update", "Which field? Options: name, description, start_date, end_date.",
        "name / description / start_date / end_date",
    ),
    "update_value": FieldSpec("New value", "New value", "What should the new value be?", 'e.g. "2026-06-30"'),
    "target_name": FieldSpec("Programme", "Programme name", "Which programme?", 'e.g. "Youth Digital Skills"'),
    "playbook_id": FieldSpec("Playbook", "Playbook", "Which playbook should I run?", 'e.g. "weekly_review"'),
    "step_id": FieldSpec("Step", "Step", "Which step?"),
}

# Resolver-supplied values that mean "not provided yet".
GENERIC_PLACEHOLDERS: dict[str, frozenset[str]] = {
    "title": frozenset({"task", "new task", "a task", "new", "the task"}),
    "name": frozenset({"programme", "new programme", "a programme", "program", "new program"}),
}

ExtraRequiredHook = Callable[[ActionCandidate], tuple[str, ...]]


def field_spec(field: str) -> FieldSpec:
    spec = FIELD_SPECS.get(field)
    if spec is not None:
        return spec
    label = field.replace("_", " ").capitalize()
    return FieldSpec(label, label, f"What is the {field.replace('_', ' ')}?")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class SlotFiller:
    """Linear fill loop over a candidate's declared required fields.

    Asks for one missing field at a time in declared order. No domain
    validation happens here; a supplied value only has to be non-empty.
    """

    def __init__(self, extra_required: ExtraRequiredHook | None = None):
        self._extra_required = extra_required

    def required_fields(self, candidate: ActionCandidate) -> tuple[str, ...]:
        fields = REQUIRED_FIELDS[candidate.kind]
        if self._extra_required is not None:
            extra = tuple(f for f in self._extra_required(candidate) if f not in fields)
            fields = fields + extra
        return fields

    def is_filled(self, field: str, value: Any, supplied: bool = False) -> bool:
        text = _as_text(value)
        if not text:
            return False
        if supplied:
            return True
        return text.lower() not in GENERIC_PLACEHOLDERS.get(field, frozenset())

    def missing_fields(
        self,
        candidate: ActionCandidate,
        supplied: Iterable[str] = (),
    ) -> list[str]:
        """Required fields still empty, in declared order.

        Fields in ``supplied`` were answered in clarify mode and are exempt
        from the placeholder check.
        """
        supplied_set = set(supplied)
        return [
            f for f in self.required_fields(candidate)
            if not self.is_filled(f, candidate.params.get(f), supplied=f in supplied_set)
        ]

    def next_clarify(
        self,
        candidate: ActionCandidate,
        supplied: Iterable[str] = (),
        example_hint: str | None = None,
        hinted_field: str | None = None,
    ) -> ClarifyInfo | None:
        """ClarifyInfo for the first missing field, or None when complete."""
        missing = self.missing_fields(candidate, supplied)
        if not missing:
            return None
        field = missing[0]
        spec = field_spec(field)
        example = example_hint if example_hint and hinted_field in (None, field) else spec.example
        return ClarifyInfo(
            waiting_for=spec.prompt_label,
            example=example,
            field=field,
            intent_type=candidate.kind,
        )

    def fill(self, candidate: ActionCandidate, field: str, value: str) -> ActionCandidate:
        """Return a copy of ``candidate`` with ``field`` set to the literal value."""
        params = dict(candidate.params)
        params[field] = value.strip()
        return candidate.model_copy(update={"params": params})

    def question_for(self, clarify: ClarifyInfo) -> str:
        return field_spec(clarify.field).question

    def preview_fields(self, candidate: ActionCandidate) -> list[ActionField]:
        """Non-empty params as display rows: required first, then optional, then the rest."""
        ordered: list[str] = []
        for field in self.required_fields(candidate) + OPTIONAL_FIELDS[candidate.kind]:
            if field not in ordered:
                ordered.append(field)
        ordered.extend(k for k in candidate.params if k not in ordered)

        rows: list[ActionField] = []
        for field in ordered:
            text = _as_text(candidate.params.get(field))
            if text:
                rows.append(ActionField(label=field_spec(field).label, value=text))
        return rows
