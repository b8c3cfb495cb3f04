"""Dependency injection helpers."""

from __future__ import annotations

from collections import Counter
from datetime import date, timedelta
from typing import Any

from luna.config import Settings, get_settings
from luna.contracts.intents import InformationalAnswer, ResolverContext, ResponseItem
from luna.contracts.messages import ActionField
from luna.orchestration.playbooks import StepView, StepViewFn
from luna.orchestration.session import SessionController
from luna.services.domain import DomainAPI, InMemoryDomainAPI, plural
from luna.services.resolver import IntentResolver, KeywordIntentResolver, Lookup
from luna.services.session_store import SessionStore
from luna.services.telemetry import TelemetryCollector

# Step messages list at most this many records.
MAX_STEP_ITEMS = 8


def _task_item(task: dict[str, Any]) -> ResponseItem:
    detail = task["status"]
    if task.get("due_date"):
        detail = f"Due {task['due_date']} - {task['status']}"
    return ResponseItem(label=task["title"], detail=detail, href=f"/tasks/{task['id']}")


def _is_overdue(task: dict[str, Any], today: str) -> bool:
    due = task.get("due_date")
    return bool(due) and str(due) < today and task["status"] != "done"


def _overdue_tasks(domain: InMemoryDomainAPI) -> list[dict[str, Any]]:
    today = date.today().isoformat()
    return [t for t in domain.query_tasks(open_only=True) if _is_overdue(t, today)]


def _week_start() -> str:
    today = date.today()
    return (today - timedelta(days=today.weekday())).isoformat()


def create_domain_lookups(domain: InMemoryDomainAPI) -> dict[str, Lookup]:
    """Informational lookups answered from the in-memory task store."""

    def overdue(context: ResolverContext) -> InformationalAnswer:
        tasks = _overdue_tasks(domain)
        if not tasks:
            return InformationalAnswer(text="Nothing overdue. Nice work!")
        return InformationalAnswer(
            text=f"{plural(len(tasks), 'overdue task')}:",
            items=[_task_item(t) for t in tasks],
        )

    def open_tasks(context: ResolverContext) -> InformationalAnswer:
        tasks = domain.query_tasks(open_only=True)
        if not tasks:
            return InformationalAnswer(text="You have no open tasks.")
        return InformationalAnswer(text="Your open tasks:", items=[_task_item(t) for t in tasks])

    def blockers(context: ResolverContext) -> InformationalAnswer:
        tasks = domain.query_tasks(status="blocked")
        if not tasks:
            return InformationalAnswer(text="No blocked tasks right now.")
        return InformationalAnswer(text="Blocked tasks:", items=[_task_item(t) for t in tasks])

    def team_summary(context: ResolverContext) -> InformationalAnswer:
        tasks = domain.query_tasks()
        counts = Counter(t["status"] for t in tasks)
        items = [ResponseItem(label=status, detail=str(n)) for status, n in sorted(counts.items())]
        return InformationalAnswer(text=f"{len(tasks)} tasks across the team.", items=items)

    def checkin_status(context: ResolverContext) -> InformationalAnswer:
        if not domain.members:
            return InformationalAnswer(text="No team members to check.")
        missing = domain.missing_checkins(_week_start())
        if not missing:
            return InformationalAnswer(text="Everyone has checked in this week.")
        return InformationalAnswer(
            text=f"{plural(len(missing), 'team member')} missed check-in this week:",
            items=[ResponseItem(label=name, detail="No check-in this week") for name in missing],
        )

    return {
        "my_overdue_tasks": overdue,
        "team_overdue": overdue,
        "my_tasks": open_tasks,
        "blockers": blockers,
        "team_summary": team_summary,
        "checkin_status": checkin_status,
    }


def create_step_views(domain: InMemoryDomainAPI) -> dict[str, StepViewFn]:
    """Live playbook step data read from the in-memory store, keyed by view name."""

    def team_overdue(context: dict[str, Any]) -> StepView:
        tasks = _overdue_tasks(domain)
        if not tasks:
            return StepView(text="No overdue tasks across the team.", context={"overdue_count": 0})
        return StepView(
            text=f"{plural(len(tasks), 'overdue task')} across the team:",
            items=[_task_item(t) for t in tasks[:MAX_STEP_ITEMS]],
            fields=[ActionField(label="Overdue", value=str(len(tasks)))],
            context={"overdue_count": len(tasks)},
        )

    def team_blockers(context: dict[str, Any]) -> StepView:
        tasks = domain.query_tasks(status="blocked")
        if not tasks:
            return StepView(text="Nothing is blocked right now.", context={"blocked_count": 0})
        return StepView(
            text=f"{plural(len(tasks), 'blocked task')}:",
            items=[_task_item(t) for t in tasks[:MAX_STEP_ITEMS]],
            fields=[ActionField(label="Blocked", value=str(len(tasks)))],
            context={"blocked_count": len(tasks)},
        )

    def checkin_status(context: dict[str, Any]) -> StepView:
        if not domain.members:
            return StepView(text="No team members to check.")
        missing = domain.missing_checkins(_week_start())
        if not missing:
            return StepView(text="Everyone has checked in this week.", context={"missing_checkins": 0})
        return StepView(
            text=f"{plural(len(missing), 'team member')} missed check-in this week:",
            items=[ResponseItem(label=name, detail="No check-in this week") for name in missing],
            fields=[ActionField(label="Missing", value=str(len(missing)))],
            context={"missing_checkins": len(missing)},
        )

    def audit_open_tasks(context: dict[str, Any]) -> StepView:
        name = context.get("target_name")
        programme = domain.get_programme(name)
        if programme is None:
            return StepView(text=f'Programme "{name}" not found.')
        tasks = domain.query_tasks(programme_name=programme["name"], open_only=True)
        found = {"open_task_count": len(tasks), "open_task_ids": [t["id"] for t in tasks]}
        if not tasks:
            return StepView(text=f'"{programme["name"]}" has no open tasks.', context=found)
        breakdown = ", ".join(f"{n} {status}" for status, n in sorted(Counter(t["status"] for t in tasks).items()))
        return StepView(
            text=f'"{programme["name"]}" has {plural(len(tasks), "open task")}:',
            items=[_task_item(t) for t in tasks[:MAX_STEP_ITEMS]],
            fields=[
                ActionField(label="Programme", value=programme["name"]),
                ActionField(label="Open tasks", value=str(len(tasks))),
                ActionField(label="Breakdown", value=breakdown),
            ],
            context=found,
        )

    def complete_open_tasks(context: dict[str, Any]) -> StepView:
        name = context.get("target_name")
        count = context.get("open_task_count")
        if count is None:
            count = len(domain.query_tasks(programme_name=name, open_only=True))
        if not count:
            return StepView(text="No open tasks to complete.", auto_skip=True)
        return StepView(
            text=f'Mark {plural(count, "open task")} in "{name}" as done?',
            fields=[
                ActionField(label="Action", value=f"Set {plural(count, 'task')} to Done"),
                ActionField(label="Programme", value=str(name)),
            ],
        )

    def verify_programme(context: dict[str, Any]) -> StepView:
        name = context.get("target_name")
        programme = domain.get_programme(name)
        if programme is None:
            return StepView(text=f'Programme "{name}" not found.')
        already_active = programme["status"] == "active"
        fields = [
            ActionField(label="Programme", value=programme["name"]),
            ActionField(label="Current status", value=programme["status"]),
        ]
        if programme.get("description"):
            fields.append(ActionField(label="Description", value=str(programme["description"])))
        text = f'"{programme["name"]}" is already active.' if already_active else f'Ready to activate "{programme["name"]}".'
        return StepView(text=text, fields=fields, context={"already_active": already_active})

    def activate_programme(context: dict[str, Any]) -> StepView:
        if context.get("already_active"):
            return StepView(text="Already active.", auto_skip=True)
        return StepView()

    return {
        "team_overdue": team_overdue,
        "team_blockers": team_blockers,
        "checkin_status": checkin_status,
        "audit_open_tasks": audit_open_tasks,
        "complete_open_tasks": complete_open_tasks,
        "verify_programme": verify_programme,
        "activate_programme": activate_programme,
    }


def create_domain_api() -> InMemoryDomainAPI:
    """Create the in-process domain API."""
    return InMemoryDomainAPI()


def create_resolver(domain: InMemoryDomainAPI | None = None) -> KeywordIntentResolver:
    """Create keyword resolver, wiring lookups when an in-memory domain is given."""
    lookups = create_domain_lookups(domain) if domain is not None else None
    return KeywordIntentResolver(lookups=lookups)


def create_telemetry_collector(max_events: int | None = None) -> TelemetryCollector:
    """Create telemetry collector instance."""
    return TelemetryCollector(max_events=max_events or get_settings().telemetry_max_events)


def create_session_store(settings: Settings | None = None) -> SessionStore:
    """Create session store instance."""
    _settings = settings or get_settings()
    return SessionStore(
        max_sessions=_settings.max_sessions,
        max_messages_per_session=_settings.max_messages_per_session,
    )


def create_controller(
    resolver: IntentResolver | None = None,
    domain_api: DomainAPI | None = None,
    telemetry: TelemetryCollector | None = None,
    settings: Settings | None = None,
) -> SessionController:
    """Create session controller with default dependencies."""
    _domain = domain_api or create_domain_api()
    in_memory = _domain if isinstance(_domain, InMemoryDomainAPI) else None
    if resolver is None:
        resolver = create_resolver(in_memory)
    return SessionController(
        resolver=resolver,
        domain_api=_domain,
        settings=settings,
        telemetry=telemetry,
        step_views=create_step_views(in_memory) if in_memory is not None else None,
    )
