"""Intent resolver boundary and deterministic keyword routing."""

from __future__ import annotations

from typing import Any, Callable, Protocol

from luna.contracts.intents import (
    ActionKind,
    CompleteActionCandidate,
    IncompleteActionCandidate,
    InformationalAnswer,
    ResolverContext,
    ResolverOutcome,
)
from luna.logging_config import get_logger
from luna.services.sanitize import normalize_command

logger = get_logger(__name__)


class IntentResolver(Protocol):
    """Turns free text into an informational answer or an action candidate."""

    def resolve(self, text: str, context: ResolverContext) -> ResolverOutcome:
        """Resolve ``text``; raise ResolverError when unreachable."""
        ...


Lookup = Callable[[ResolverContext], InformationalAnswer]

# Exact-match routes for quick-action prompts and common short commands.
LOOKUP_ROUTES: dict[str, str] = {
    "my overdue": "my_overdue_tasks",
    "show my overdue tasks": "my_overdue_tasks",
    "show my overdue": "my_overdue_tasks",
    "overdue tasks": "my_overdue_tasks",
    "overdue": "my_overdue_tasks",
    "my tasks": "my_tasks",
    "show my tasks": "my_tasks",
    "check-ins": "checkin_status",
    "checkins": "checkin_status",
    "check ins": "checkin_status",
    "who missed check-in": "checkin_status",
    "who missed check-in this week": "checkin_status",
    "who missed check in": "checkin_status",
    "blockers": "blockers",
    "blocked tasks": "blockers",
    "what is blocking my team": "blockers",
    "team overdue": "team_overdue",
    "team summary": "team_summary",
    "how is my team doing": "team_summary",
}

ACTION_ROUTES: dict[str, tuple[ActionKind, dict[str, Any]]] = {
    "create task": (ActionKind.CREATE_TASK, {"title": ""}),
    "create a task": (ActionKind.CREATE_TASK, {"title": ""}),
    "create programme": (ActionKind.CREATE_PROGRAMME, {"name": ""}),
    "create a programme": (ActionKind.CREATE_PROGRAMME, {"name": ""}),
    "create program": (ActionKind.CREATE_PROGRAMME, {"name": ""}),
    "weekly review": (ActionKind.RUN_PLAYBOOK, {"playbook_id": "weekly_review"}),
    "weekly manager review": (ActionKind.RUN_PLAYBOOK, {"playbook_id": "weekly_review"}),
    "close programme": (ActionKind.RUN_PLAYBOOK, {"playbook_id": "close_programme", "target_name": ""}),
    "start programme": (ActionKind.RUN_PLAYBOOK, {"playbook_id": "start_programme", "target_name": ""}),
}

# Step words only mean something while a playbook is running.
ORPHAN_STEP_COMMANDS = frozenset(
    {"next", "continue", "ok", "okay", "confirm", "skip", "skip step", "pass", "proceed", "go ahead"}
)

NOT_UNDERSTOOD_TEXT = (
    "I'm not sure how to help with that yet. Try one of the quick actions, "
    'or ask something like "Create a task".'
)


class KeywordIntentResolver:
    """Deterministic resolver for canned prompts.

    Informational routes call the matching entry in ``lookups``; anything
    without a route or lookup goes to ``fallback`` when one is configured.
    """

    def __init__(
        self,
        lookups: dict[str, Lookup] | None = None,
        fallback: IntentResolver | None = None,
    ):
        self.lookups = dict(lookups or {})
        self.fallback = fallback

    def resolve(self, text: str, context: ResolverContext) -> ResolverOutcome:
        key = normalize_command(text)

        if key in ACTION_ROUTES:
            kind, params = ACTION_ROUTES[key]
            missing = [name for name, value in params.items() if not str(value).strip()]
            logger.debug("keyword_route_action", route=key, kind=kind.value)
            if missing:
                return IncompleteActionCandidate(kind=kind, params=dict(params), missing_field=missing[0])
            return CompleteActionCandidate(kind=kind, params=dict(params))

        lookup_name = LOOKUP_ROUTES.get(key)
        if lookup_name is not None and lookup_name in self.lookups:
            logger.debug("keyword_route_lookup", route=key, lookup=lookup_name)
            return self.lookups[lookup_name](context)

        if key in ORPHAN_STEP_COMMANDS and not context.playbook_active:
            return InformationalAnswer(
                text='There is no playbook running right now. Try "Weekly review" to start one.'
            )

        if self.fallback is not None:
            return self.fallback.resolve(text, context)
        return InformationalAnswer(text=NOT_UNDERSTOOD_TEXT)
