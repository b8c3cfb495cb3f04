"""Role-filtered canned prompts."""

from __future__ import annotations

from typing import TYPE_CHECKING

from luna.contracts.messages import Message, QuickAction
from luna.orchestration.playbooks import MANAGER_ROLES

if TYPE_CHECKING:
    from luna.orchestration.session import ConversationSession, SessionController

MEMBER_ACTIONS: tuple[QuickAction, ...] = (
    QuickAction(label="Create task", prompt="Create a task"),
    QuickAction(label="My overdue", prompt="Show my overdue tasks"),
    QuickAction(label="Check-ins", prompt="Who missed check-in this week?"),
    QuickAction(label="Blockers", prompt="What is blocking my team?"),
)

MANAGER_ACTIONS: tuple[QuickAction, ...] = (
    QuickAction(label="Create task", prompt="Create a task"),
    QuickAction(label="Create programme", prompt="Create a programme"),
    QuickAction(label="My overdue", prompt="Show my overdue tasks"),
    QuickAction(label="Team overdue", prompt="Team overdue"),
    QuickAction(label="Team summary", prompt="Team summary"),
    QuickAction(label="Weekly review", prompt="Weekly review"),
    QuickAction(label="Check-ins", prompt="Who missed check-in this week?"),
    QuickAction(label="Blockers", prompt="What is blocking my team?"),
)


def quick_actions_for_role(role: str | None) -> tuple[QuickAction, ...]:
    if (role or "member") in MANAGER_ROLES:
        return MANAGER_ACTIONS
    return MEMBER_ACTIONS


def available_quick_actions(session: ConversationSession) -> tuple[QuickAction, ...]:
    """Chips to show for ``session``; none while a request is in flight."""
    if session.typing:
        return ()
    return quick_actions_for_role(session.role)


def run_quick_action(
    controller: SessionController,
    session: ConversationSession,
    action: QuickAction,
) -> Message | None:
    """Same as typing ``action.prompt``."""
    return controller.send_message(session, action.prompt)
