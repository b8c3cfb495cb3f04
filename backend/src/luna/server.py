"""Host-agnostic assistant surface with optional MCP transport."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Optional

from luna.errors import LunaError, SessionNotFoundError
from luna.orchestration.quick_actions import available_quick_actions, run_quick_action
from luna.services.telemetry import TelemetryCollector

if TYPE_CHECKING:
    from luna.orchestration.session import ConversationSession, SessionController
    from luna.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class AssistantServer:
    """Dict-in/dict-out surface over the session controller.

    Every operation returns ``{"success": ..., "message": ..., "session": ...}``
    where ``session`` is a snapshot taken after the operation.
    """

    def __init__(
        self,
        controller: SessionController | None = None,
        store: SessionStore | None = None,
    ) -> None:
        self.telemetry: TelemetryCollector | None = None
        self._controller = controller
        self._store = store
        self._issued_session_ids: set[str] = set()
        self._lock = threading.Lock()

    @property
    def controller(self) -> SessionController:
        from luna.deps import create_controller

        with self._lock:
            if self._controller is None:
                self._controller = create_controller(telemetry=self.telemetry)
            return self._controller

    @property
    def store(self) -> SessionStore:
        from luna.deps import create_session_store

        with self._lock:
            if self._store is None:
                self._store = create_session_store()
            return self._store

    def enable_telemetry(self, max_events: int = 1000) -> None:
        """Enable telemetry collection."""
        self.telemetry = TelemetryCollector(max_events=max_events)
        self.controller.telemetry = self.telemetry

    def disable_telemetry(self) -> None:
        self.telemetry = None
        self.controller.telemetry = None

    def get_telemetry(self, n: int = 10) -> list[dict[str, Any]]:
        """Get recent telemetry events as dicts."""
        if self.telemetry is None:
            return []
        return [e.model_dump() for e in self.telemetry.get_latest(n)]

    def open_session(self, role: str = "member", page_context: str | None = None) -> dict[str, Any]:
        store = self.store
        session = store.create(role=role, page_context=page_context)
        live_ids = store.list_session_ids()
        with self._lock:
            self._issued_session_ids.add(session.session_id)
            self._issued_session_ids.intersection_update(live_ids)
        logger.info("Opened session %s (role=%s)", session.session_id, role)
        return {"success": True, "message": None, "session": session.snapshot().model_dump()}

    def snapshot(self, session_id: str) -> dict[str, Any]:
        return self._session(session_id).snapshot().model_dump()

    def send_message(self, session_id: str, text: str) -> dict[str, Any]:
        session = self._session(session_id)
        return self._result(session, self.controller.send_message(session, text))

    def confirm_action(self, session_id: str, action_id: str) -> dict[str, Any]:
        session = self._session(session_id)
        return self._result(session, self.controller.confirm_action(session, action_id))

    def cancel_action(self, session_id: str, action_id: str) -> dict[str, Any]:
        session = self._session(session_id)
        reply = self.controller.cancel_action(session, action_id)
        action = session.find_action(action_id)
        result = self._result(session, reply)
        # A plain cancel appends nothing but still succeeds.
        result["success"] = action is not None and action.status.value == "cancelled"
        return result

    def retry_message(self, session_id: str, message_id: str) -> dict[str, Any]:
        session = self._session(session_id)
        return self._result(session, self.controller.retry_message(session, message_id))

    def abort_playbook(self, session_id: str) -> dict[str, Any]:
        session = self._session(session_id)
        return self._result(session, self.controller.abort_playbook(session))

    def quick_actions(self, session_id: str) -> list[dict[str, Any]]:
        session = self._session(session_id)
        return [a.model_dump() for a in available_quick_actions(session)]

    def run_quick_action(self, session_id: str, label: str) -> dict[str, Any]:
        session = self._session(session_id)
        for action in available_quick_actions(session):
            if action.label == label:
                return self._result(session, run_quick_action(self.controller, session, action))
        return {
            "success": False,
            "error": f"Quick action {label!r} is not available",
            "session": session.snapshot().model_dump(),
        }

    def _session(self, session_id: str) -> ConversationSession:
        # Only ids issued by this server instance are accepted.
        with self._lock:
            issued = session_id in self._issued_session_ids
        session = self.store.get(session_id) if issued else None
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        return session

    @staticmethod
    def _result(session: ConversationSession, reply: Any) -> dict[str, Any]:
        return {
            "success": reply is not None,
            "message": reply.model_dump() if reply is not None else None,
            "session": session.snapshot().model_dump(),
        }


# Global assistant server instance
_assistant_server: Optional[AssistantServer] = None


def get_assistant_server() -> AssistantServer:
    """Get or create assistant server instance."""
    global _assistant_server
    if _assistant_server is None:
        _assistant_server = AssistantServer()
    return _assistant_server


def _guard(call: Any, *args: Any) -> dict[str, Any]:
    try:
        return call(*args)  # type: ignore[no-any-return]
    except LunaError as exc:
        return {"success": False, **exc.to_dict()}


def open_session_tool(role: str = "member", page_context: str | None = None) -> dict[str, Any]:
    """MCP tool: Open a conversation session."""
    return get_assistant_server().open_session(role=role, page_context=page_context)


def send_message_tool(session_id: str, text: str) -> dict[str, Any]:
    """MCP tool: Send a user message."""
    return _guard(get_assistant_server().send_message, session_id, text)


def confirm_action_tool(session_id: str, action_id: str) -> dict[str, Any]:
    """MCP tool: Confirm a pending action preview."""
    return _guard(get_assistant_server().confirm_action, session_id, action_id)


def cancel_action_tool(session_id: str, action_id: str) -> dict[str, Any]:
    """MCP tool: Cancel a pending action preview."""
    return _guard(get_assistant_server().cancel_action, session_id, action_id)


def retry_message_tool(session_id: str, message_id: str) -> dict[str, Any]:
    """MCP tool: Retry a failed message."""
    return _guard(get_assistant_server().retry_message, session_id, message_id)


def abort_playbook_tool(session_id: str) -> dict[str, Any]:
    """MCP tool: Abort the running playbook."""
    return _guard(get_assistant_server().abort_playbook, session_id)


def create_fastmcp_server() -> Any | None:
    """Create FastMCP server wrapping AssistantServer methods."""
    try:
        from fastmcp import FastMCP
    except ImportError:
        logger.warning("fastmcp not installed - MCP transport unavailable")
        return None

    mcp = FastMCP("Luna")

    @mcp.tool()
    def open_session(role: str = "member", page_context: str | None = None) -> dict:  # type: ignore[type-arg]
        """Start a new assistant conversation."""
        return open_session_tool(role=role, page_context=page_context)

    @mcp.tool()
    def send_message(session_id: str, text: str) -> dict:  # type: ignore[type-arg]
        """Send a message to the assistant."""
        return send_message_tool(session_id, text)

    @mcp.tool()
    def confirm_action(session_id: str, action_id: str) -> dict:  # type: ignore[type-arg]
        """Confirm a previewed action."""
        return confirm_action_tool(session_id, action_id)

    @mcp.tool()
    def cancel_action(session_id: str, action_id: str) -> dict:  # type: ignore[type-arg]
        """Cancel a previewed action, skipping it when it is a playbook step."""
        return cancel_action_tool(session_id, action_id)

    @mcp.tool()
    def retry_message(session_id: str, message_id: str) -> dict:  # type: ignore[type-arg]
        """Retry the command behind a failed message."""
        return retry_message_tool(session_id, message_id)

    @mcp.tool()
    def abort_playbook(session_id: str) -> dict:  # type: ignore[type-arg]
        """Stop the running playbook."""
        return abort_playbook_tool(session_id)

    return mcp


if __name__ == "__main__":
    mcp = create_fastmcp_server()
    if mcp:
        mcp.run()
