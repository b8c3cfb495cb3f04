"""Read-only session snapshot handed to hosts and UIs."""

from typing import Any

from pydantic import BaseModel, Field

from luna.contracts.messages import ClarifyInfo, Message, PlaybookProgress


class SessionSnapshot(BaseModel):
    """Deep copy of a conversation session's observable state."""

    session_id: str
    role: str
    page_context: str | None = None
    typing: bool = False
    messages: list[Message] = Field(default_factory=list)
    clarify: ClarifyInfo | None = None
    playbook: PlaybookProgress | None = None
    playbook_history: list[dict[str, Any]] = Field(default_factory=list)
    superseded_message_ids: list[str] = Field(default_factory=list)
    created_at: str
    last_active: str
