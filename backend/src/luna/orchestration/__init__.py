"""Orchestration package - export the session controller, slot filler and playbooks."""

from luna.orchestration.playbooks import (
    PLAYBOOKS,
    PlaybookDefinition,
    PlaybookRunner,
    PlaybookStep,
    StepView,
    get_playbook,
)
from luna.orchestration.slots import SlotFiller
from luna.orchestration.session import ConversationSession, SessionController
from luna.orchestration.quick_actions import (
    available_quick_actions,
    quick_actions_for_role,
    run_quick_action,
)

__all__ = [
    "PLAYBOOKS",
    "ConversationSession",
    "PlaybookDefinition",
    "PlaybookRunner",
    "PlaybookStep",
    "SessionController",
    "SlotFiller",
    "StepView",
    "available_quick_actions",
    "get_playbook",
    "quick_actions_for_role",
    "run_quick_action",
]
